"""
Product Authentication Registry - Error Taxonomy

This module defines the tagged failures reported by the registry, the
authorization gate and the ledger adapters. Every error carries a stable
code, a retryable flag and the context needed to act on it.
"""

from typing import Any, Dict, Optional


class RegistryError(Exception):
    """Base registry exception."""

    code = "REGISTRY_ERROR"
    retryable = False

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        super().__init__(message)

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the failure for the presentation layer."""
        return {
            'error': self.code,
            'message': self.message,
            'retryable': self.retryable,
            'context': dict(self.context),
        }


class UnauthorizedError(RegistryError):
    """Role or ownership check failed."""

    code = "UNAUTHORIZED"


class NotOwnerError(UnauthorizedError):
    """Caller is not the current owner of the product."""

    code = "NOT_OWNER"


class NotFoundError(RegistryError):
    """Fingerprint is absent from the ledger."""

    code = "NOT_FOUND"


class ValidationError(RegistryError):
    """Input rejected before reaching the ledger."""

    code = "VALIDATION_ERROR"


class LedgerUnavailableError(RegistryError):
    """Transient ledger transport failure; safe to retry with backoff."""

    code = "LEDGER_UNAVAILABLE"
    retryable = True


class LedgerRejectedError(RegistryError):
    """The ledger processed the call and refused it (revert, RPC error)."""

    code = "LEDGER_REJECTED"


class CacheCorruptError(RegistryError):
    """Persisted metadata cache could not be read or parsed."""

    code = "CACHE_CORRUPT"


class CacheWriteError(RegistryError):
    """Metadata cache could not be flushed to disk."""

    code = "CACHE_WRITE_FAILED"


class DanglingCacheEntryError(RegistryError):
    """Ledger entry removed but the cache entry could not be deleted."""

    code = "DANGLING_CACHE_ENTRY"


class LockTimeoutError(RegistryError):
    """Per-fingerprint lock could not be acquired in time."""

    code = "LOCK_TIMEOUT"
    retryable = True


def wrap_ledger_error(
    error: Exception,
    operation: str,
    fingerprint: Optional[str] = None,
    **context: Any
) -> RegistryError:
    """Attach operation context to a ledger failure."""
    if isinstance(error, RegistryError):
        merged = dict(error.context)
        merged.setdefault('operation', operation)
        if fingerprint:
            merged.setdefault('fingerprint', fingerprint)
        merged.update({k: v for k, v in context.items() if k not in merged})
        wrapped = type(error)(error.message, **merged)
        wrapped.__cause__ = error
        return wrapped

    wrapped = LedgerUnavailableError(
        f"Ledger call failed: {error}",
        operation=operation,
        fingerprint=fingerprint,
        **context
    )
    wrapped.__cause__ = error
    return wrapped
