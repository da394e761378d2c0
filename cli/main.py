#!/usr/bin/env python3
"""
Product Authentication Registry - Command Line Interface

Register products, verify authenticity, inspect history and administer
roles against the configured ledger.
"""

import sys
from typing import Optional

import click

from cli import __version__
from cli.commands.config import config
from cli.commands.products import PRODUCT_COMMANDS
from cli.commands.roles import ROLE_COMMANDS
from cli.config import PROFILES
from cli.context import CLIContext, pass_context


@click.group(context_settings={'help_option_names': ['-h', '--help']})
@click.option('--config-file', '-c', type=click.Path(dir_okay=False),
              help='Path to configuration file')
@click.option('--profile', '-p', type=click.Choice(sorted(PROFILES)),
              help='Configuration profile')
@click.option('--output-format', '-o',
              type=click.Choice(['table', 'json', 'yaml']),
              help='Output format')
@click.option('--as', 'actor', metavar='ADDRESS',
              help='Address to act as for mutating commands')
@click.option('--verbose', '-v',
              count=True,
              help='Increase verbosity (-v for INFO, -vv for DEBUG)')
@click.version_option(__version__, prog_name='productauth')
@pass_context
def cli(ctx: CLIContext, config_file: Optional[str], profile: Optional[str],
        output_format: Optional[str], actor: Optional[str], verbose: int):
    """
    Product Authentication Registry Command Line Interface

    Manufacturers register products, customers verify a product hash, and
    admins manage roles and product status.

    Examples:
        productauth --as 0x90f8... register --name Widget --batch B1
        productauth verify 0x3f2a...
        productauth history 0x3f2a...
        productauth --as 0x90f8... assign-role 0xabc... manager
    """
    ctx.config_file = config_file
    ctx.profile = profile
    ctx.actor = actor

    ctx.load_config()
    ctx.verbose = verbose or ctx.get_config('cli.verbose', 0)
    ctx.output_format = output_format or ctx.get_config('cli.output_format', 'table')
    ctx.setup_logging()

    ctx.logger.debug("CLI initialized with context")


for command in PRODUCT_COMMANDS + ROLE_COMMANDS:
    cli.add_command(command)
cli.add_command(config)


def main():
    """Console script entry point."""
    cli(obj=CLIContext())


if __name__ == '__main__':
    sys.exit(main())
