#!/usr/bin/env python3
"""
Role Commands for the productauth CLI
"""

from typing import Tuple

import click

from access.roles import coerce_address

from ..context import CLIContext, handle_cli_error, pass_context


ROLE_NAMES = ['admin', 'manager', 'user', '0', '1', '2']


@click.command('assign-role')
@click.argument('address')
@click.argument('role', type=click.Choice(ROLE_NAMES, case_sensitive=False))
@pass_context
@handle_cli_error
def assign_role(ctx: CLIContext, address: str, role: str):
    """Assign ROLE to ADDRESS (admin only)."""
    user = ctx.manager.assign_role(ctx.require_actor(), address, role)
    ctx.output(user.to_dict())


@click.command('role')
@click.argument('address')
@pass_context
@handle_cli_error
def role(ctx: CLIContext, address: str):
    """Show the ledger role of ADDRESS."""
    address = coerce_address(address)
    current = ctx.runtime().gate.role_of(address)
    ctx.output({'address': address, 'role': int(current), 'roleName': current.label})


@click.command('users')
@pass_context
@handle_cli_error
def users(ctx: CLIContext):
    """List mirrored role assignments."""
    ctx.output([user.to_dict() for user in ctx.runtime().gate.list_users()])


@click.command('sync-roles')
@click.argument('addresses', nargs=-1)
@pass_context
@handle_cli_error
def sync_roles(ctx: CLIContext, addresses: Tuple[str, ...]):
    """Re-read roles from the ledger: the given ADDRESSES, or all notifications."""
    runtime = ctx.runtime()
    if addresses:
        refreshed = runtime.gate.refresh(addresses)
        ctx.output([user.to_dict() for user in refreshed])
    else:
        delivered = runtime.listener.poll_once()
        ctx.output({'notificationsApplied': delivered, 'users': len(runtime.gate.mirror)})


ROLE_COMMANDS = [assign_role, role, users, sync_roles]
