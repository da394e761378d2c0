#!/usr/bin/env python3
"""
Product Commands for the productauth CLI

Register, verify, inspect, transfer, flag and remove products, and show
their lifecycle history.
"""

import json
from pathlib import Path
from typing import Any, List, Optional

import click
import yaml

from registry.exceptions import ValidationError

from ..context import CLIContext, handle_cli_error, history_row, pass_context, record_row, rows


def load_product_file(file_path: str) -> Any:
    """Load product metadata from a JSON or YAML file."""
    path = Path(file_path)
    try:
        with open(path, 'r') as f:
            if path.suffix in ('.yml', '.yaml'):
                return yaml.safe_load(f)
            return json.load(f)
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
        raise ValidationError(f"Cannot read product file {path}: {e}", file=str(path))


def _show_record(ctx: CLIContext, payload):
    if ctx.tabular:
        details = payload.pop('productDetails')
        payload = {**details, **payload}
    ctx.output(payload)


@click.command('register')
@click.option('--name', help='Product name')
@click.option('--batch', help='Batch number / product ID')
@click.option('--manufacture-date', help='Manufacture date')
@click.option('--expiry-date', help='Expiry date')
@click.option('--details', help='Additional details')
@click.option('--file', 'product_file', type=click.Path(exists=True, dir_okay=False),
              help='JSON/YAML file holding one product')
@pass_context
@handle_cli_error
def register(ctx: CLIContext, name: Optional[str], batch: Optional[str], manufacture_date: Optional[str],
             expiry_date: Optional[str], details: Optional[str], product_file: Optional[str]):
    """Register a product and print its fingerprint."""
    if product_file:
        metadata = load_product_file(product_file)
    else:
        metadata = {
            'name': name,
            'batch': batch,
            'manufactureDate': manufacture_date,
            'expiryDate': expiry_date,
            'details': details,
        }

    receipt = ctx.manager.register(metadata, ctx.require_actor())
    ctx.output(receipt.to_dict())
    if ctx.tabular and not receipt.created:
        click.echo("Product was already registered; nothing written to the ledger.")


@click.command('bulk-register')
@click.argument('product_file', type=click.Path(exists=True, dir_okay=False))
@pass_context
@handle_cli_error
def bulk_register(ctx: CLIContext, product_file: str):
    """Register every product listed in a JSON/YAML file."""
    products = load_product_file(product_file)
    if not isinstance(products, list):
        raise ValidationError("Bulk product file must contain a list", file=product_file)

    result = ctx.manager.bulk_register(products, ctx.require_actor())
    ctx.output(result.to_dict())
    if ctx.tabular and result.partial:
        click.echo(f"Partial success: {result.accepted_count} of {result.total} accepted.")


@click.command('verify')
@click.argument('fingerprint')
@pass_context
@handle_cli_error
def verify(ctx: CLIContext, fingerprint: str):
    """Check whether a fingerprint belongs to an authentic product."""
    authentic = ctx.manager.verify(fingerprint)
    ctx.output({'hash': fingerprint, 'authentic': authentic})


@click.command('details')
@click.argument('fingerprint')
@pass_context
@handle_cli_error
def details(ctx: CLIContext, fingerprint: str):
    """Show ledger state merged with cached metadata."""
    record = ctx.manager.get_details(fingerprint)
    _show_record(ctx, record.to_dict())
    if ctx.tabular and record.metadata_placeholder:
        click.echo("Metadata not in the local cache; showing placeholder details.")


@click.command('history')
@click.argument('fingerprint')
@pass_context
@handle_cli_error
def history(ctx: CLIContext, fingerprint: str):
    """Show the lifecycle timeline of a product."""
    events = [event.to_dict() for event in ctx.manager.reconstruct(fingerprint)]
    ctx.output([history_row(event) for event in events] if ctx.tabular else events)


@click.command('transfer')
@click.argument('fingerprint')
@click.argument('new_owner')
@pass_context
@handle_cli_error
def transfer(ctx: CLIContext, fingerprint: str, new_owner: str):
    """Transfer a product you own to NEW_OWNER."""
    record = ctx.manager.transfer_ownership(fingerprint, ctx.require_actor(), new_owner)
    _show_record(ctx, record.to_dict())


@click.command('set-validity')
@click.argument('fingerprint')
@click.option('--valid/--invalid', required=True, help='New validity flag')
@pass_context
@handle_cli_error
def set_validity(ctx: CLIContext, fingerprint: str, valid: bool):
    """Flag a product valid or invalid (admin only)."""
    record = ctx.manager.set_validity(fingerprint, valid, ctx.require_actor())
    _show_record(ctx, record.to_dict())


@click.command('remove')
@click.argument('fingerprint')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation')
@pass_context
@handle_cli_error
def remove(ctx: CLIContext, fingerprint: str, yes: bool):
    """Remove a product from the ledger and the cache (admin only)."""
    if ctx.get_config('cli.confirm_destructive', True) and not yes:
        click.confirm(f"Remove {fingerprint} from the ledger?", abort=True)

    cache_removed = ctx.manager.remove(fingerprint, ctx.require_actor())
    ctx.output({'hash': fingerprint, 'removed': True, 'cacheEntryRemoved': cache_removed})


@click.command('products')
@click.option('--owner', help='Only products currently owned by this address')
@pass_context
@handle_cli_error
def products(ctx: CLIContext, owner: Optional[str]):
    """List products: every cached product, or those owned by an address."""
    manager = ctx.manager
    records = manager.list_for_user(owner) if owner else manager.list_all()
    payload: List[dict] = [record.to_dict() for record in records]
    limit = ctx.get_config('cli.max_display_items', 50)
    if ctx.tabular:
        ctx.output(rows([record_row(item) for item in payload], limit))
        if limit and len(payload) > limit:
            click.echo(f"Showing {limit} of {len(payload)} products.")
    else:
        ctx.output(payload)


@click.command('stats')
@pass_context
@handle_cli_error
def stats(ctx: CLIContext):
    """Show product and role counts."""
    ctx.output(ctx.manager.stats().to_dict())


PRODUCT_COMMANDS = [
    register, bulk_register, verify, details, history,
    transfer, set_validity, remove, products, stats,
]
