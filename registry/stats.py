"""
Product Authentication Registry - Summary Statistics
"""

import logging

from access.roles import AuthorizationGate
from ledger.base import Ledger
from .exceptions import RegistryError, wrap_ledger_error
from .schema import RegistryStats, Role


logger = logging.getLogger(__name__)


class StatsAggregator:
    """Present-state counts: ledger product total plus mirrored role counts."""

    def __init__(self, ledger: Ledger, gate: AuthorizationGate):
        self.ledger = ledger
        self.gate = gate

    def stats(self) -> RegistryStats:
        try:
            total = self.ledger.total_product_count()
        except RegistryError as e:
            raise wrap_ledger_error(e, "stats")

        counts = self.gate.mirror.counts()
        stats = RegistryStats(
            total_products=total,
            admin_count=counts[Role.ADMIN],
            manager_count=counts[Role.MANAGER],
            user_count=counts[Role.USER],
        )
        logger.debug(f"Registry stats: {stats.to_dict()}")
        return stats
