#!/usr/bin/env python3
"""
Configuration Management Commands for the productauth CLI

Commands for inspecting, validating and changing CLI configuration.
"""

import json
import sys
from pathlib import Path
from typing import Optional

import click

from ..config import PROFILES, config_search_paths
from ..context import CLIContext, handle_cli_error, pass_context


@click.group()
def config():
    """
    Configuration management commands.

    Inspect the merged configuration, check it, and change settings.
    """


@config.command('show')
@click.option('--key', help='Specific configuration key to show (dot notation)')
@click.option('--sources', is_flag=True, help='Show configuration sources')
@pass_context
@handle_cli_error
def show_config(ctx: CLIContext, key: Optional[str], sources: bool):
    """
    Display current configuration settings.

    Examples:
        productauth config show
        productauth config show --key ledger.rpc
        productauth config show --sources
    """
    manager = ctx.config_manager

    if sources:
        click.echo("Configuration sources (lowest to highest precedence):")
        for i, source in enumerate(manager.get_sources(), 1):
            click.echo(f"   {i}. {source}")
        return

    if key:
        value = manager.get(key)
        if value is None:
            click.echo(f"Configuration key not found: {key}", err=True)
            sys.exit(1)
        ctx.output(value if isinstance(value, dict) else {key: value}, 'yaml' if ctx.tabular else None)
    else:
        ctx.output(manager.load(), 'yaml' if ctx.tabular else None)


@config.command('validate')
@pass_context
@handle_cli_error
def validate_config(ctx: CLIContext):
    """Check the merged configuration for errors."""
    errors = ctx.config_manager.validate()
    if errors:
        click.echo("Configuration errors:", err=True)
        for error in errors:
            click.echo(f"   - {error}", err=True)
        sys.exit(1)
    click.echo("Configuration is valid.")


@config.command('get')
@click.argument('key')
@pass_context
@handle_cli_error
def get_config(ctx: CLIContext, key: str):
    """Print one configuration value (dot notation)."""
    value = ctx.config_manager.get(key)
    if value is None:
        click.echo(f"Configuration key not found: {key}", err=True)
        sys.exit(1)
    if isinstance(value, dict):
        ctx.output(value, 'yaml')
    else:
        click.echo(value)


@config.command('set')
@click.argument('key')
@click.argument('value')
@click.option('--path', 'save_path', type=click.Path(dir_okay=False),
              help='File to save to (default: ./.productauth.yml)')
@pass_context
@handle_cli_error
def set_config(ctx: CLIContext, key: str, value: str, save_path: Optional[str]):
    """
    Set a configuration value and save the merged configuration.

    Examples:
        productauth config set ledger.backend rpc
        productauth config set cli.output_format json
    """
    try:
        parsed_value = json.loads(value)
    except json.JSONDecodeError:
        parsed_value = value

    manager = ctx.config_manager
    manager.set(key, parsed_value)
    errors = manager.validate()
    if errors:
        click.echo(f"Refusing to save invalid configuration: {'; '.join(errors)}", err=True)
        sys.exit(1)

    target = Path(save_path) if save_path else Path.cwd() / '.productauth.yml'
    manager.save(str(target), format='json' if target.suffix == '.json' else 'yaml')
    click.echo(f"Set {key} = {parsed_value} (saved to {target})")


@config.command('profiles')
@pass_context
def list_profiles(ctx: CLIContext):
    """List built-in configuration profiles."""
    ctx.output(PROFILES, 'yaml' if ctx.tabular else None)


@config.command('search-paths')
def search_paths():
    """Show where configuration files are looked up."""
    for path in config_search_paths():
        marker = "found" if path.exists() else "missing"
        click.echo(f"   {path} ({marker})")
