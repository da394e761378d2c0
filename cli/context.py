#!/usr/bin/env python3
"""
Shared CLI context, output formatting and error handling for the productauth CLI.
"""

import functools
import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import click
import yaml
from tabulate import tabulate

from registry.exceptions import RegistryError, ValidationError
from registry.fingerprint import truncate_fingerprint
from registry.runtime import RegistryRuntime
from registry.storage import StorageError

from .config import ConfigurationManager


class CLIContext:
    """Global CLI context for sharing state across commands."""

    def __init__(self):
        self.config_file: Optional[str] = None
        self.profile: Optional[str] = None
        self.output_format: str = "table"
        self.verbose: int = 0
        self.actor: Optional[str] = None
        self.config_manager: Optional[ConfigurationManager] = None
        self.logger = logging.getLogger('productauth.cli')
        self._runtime: Optional[RegistryRuntime] = None

    def setup_logging(self):
        """Configure logging based on verbosity level."""
        log_levels = {
            0: logging.WARNING,
            1: logging.INFO,
            2: logging.DEBUG
        }
        level = log_levels.get(min(self.verbose, 2), logging.DEBUG)

        logging.basicConfig(
            level=level,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            stream=sys.stderr,
            force=True
        )

        # Suppress verbose third-party logs unless in debug mode
        if self.verbose < 2:
            for name in ('requests', 'urllib3', 'web3'):
                logging.getLogger(name).setLevel(logging.WARNING)

    def load_config(self):
        self.config_manager = ConfigurationManager(self.config_file, self.profile)
        self.config_manager.load()
        self.logger.debug(f"Configuration sources: {self.config_manager.get_sources()}")

    def validate_config(self):
        errors = self.config_manager.validate()
        if errors:
            raise ValidationError("Invalid configuration: " + "; ".join(errors))

    def get_config(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value with fallback to default."""
        return self.config_manager.get(key_path, default)

    @property
    def config(self) -> Dict[str, Any]:
        return self.config_manager.load()

    def runtime(self) -> RegistryRuntime:
        """Start the registry runtime on first use; it is stopped when the command ends."""
        if self._runtime is None:
            self.validate_config()
            runtime = RegistryRuntime(self.config)
            runtime.start(listen=False)
            self._runtime = runtime
            click.get_current_context().call_on_close(self.close)
        return self._runtime

    @property
    def manager(self):
        return self.runtime().manager

    def require_actor(self) -> str:
        """Address the command acts as: --as, then cli.actor from configuration."""
        actor = self.actor or self.get_config('cli.actor')
        if not actor:
            raise ValidationError("No acting address; pass --as or set cli.actor", field="actor")
        return actor

    def close(self):
        if self._runtime is not None:
            runtime, self._runtime = self._runtime, None
            runtime.stop()

    def output(self, data: Any, format_override: Optional[str] = None):
        """Output data in specified format."""
        format_type = format_override or self.output_format

        if format_type == "json":
            click.echo(json.dumps(data, indent=2, default=str))
        elif format_type == "yaml":
            click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False).rstrip())
        else:
            self._output_table(data)

    def _output_table(self, data: Any):
        """Output data in table format."""
        if isinstance(data, dict):
            rows = [[key, self._format_value(value)] for key, value in data.items()]
            click.echo(tabulate(rows, tablefmt='plain', disable_numparse=True))
        elif isinstance(data, list) and data:
            if isinstance(data[0], dict):
                headers = list(data[0].keys())
                rows = [[self._format_value(item.get(h, '')) for h in headers] for item in data]
                click.echo(tabulate(rows, headers=headers, tablefmt='grid', disable_numparse=True))
            else:
                for item in data:
                    click.echo(item)
        elif isinstance(data, list):
            click.echo("(none)")
        else:
            click.echo(str(data))

    def _format_value(self, value: Any) -> str:
        """Flatten nested values into a single table cell."""
        if isinstance(value, dict):
            return ", ".join(f"{k}={v}" for k, v in value.items())
        if isinstance(value, (list, tuple)):
            return ", ".join(str(v) for v in value)
        return str(value)

    @property
    def tabular(self) -> bool:
        return self.output_format == "table"


pass_context = click.make_pass_decorator(CLIContext, ensure=True)


def handle_cli_error(func):
    """Decorator to report registry failures as 'Error [CODE]: message' and exit non-zero."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except KeyboardInterrupt:
            click.echo("\nOperation cancelled by user.", err=True)
            sys.exit(130)
        except (click.ClickException, click.exceptions.Exit, click.exceptions.Abort):
            raise
        except (RegistryError, StorageError) as e:
            ctx = click.get_current_context().find_object(CLIContext)
            code = getattr(e, 'code', 'STORAGE_ERROR')
            message = getattr(e, 'message', str(e))
            click.echo(f"Error [{code}]: {message}", err=True)

            verbose = ctx.verbose if ctx else 0
            if isinstance(e, RegistryError) and e.context and verbose >= 1:
                click.echo(f"Context: {json.dumps(e.context, default=str)}", err=True)
            if isinstance(e, RegistryError) and e.retryable:
                click.echo("This failure is transient; retrying may succeed.", err=True)
            if verbose >= 2:
                click.echo(traceback.format_exc(), err=True)
            sys.exit(1)

    return wrapper


def format_timestamp(ts: Optional[int]) -> str:
    """Format a Unix timestamp for display."""
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def record_row(record: Dict[str, Any]) -> Dict[str, Any]:
    """Condensed table row for a product record payload."""
    details = record.get('productDetails', {})
    return {
        'hash': truncate_fingerprint(record['hash'], 12),
        'name': details.get('name', ''),
        'batch': details.get('batch', ''),
        'owner': record.get('owner'),
        'status': record.get('status'),
        'added': format_timestamp(record.get('additionTime')),
    }


def history_row(event: Dict[str, Any]) -> Dict[str, Any]:
    """Table row for a history event payload."""
    if 'address' in event:
        detail = f"by {event['address'] or 'unknown'}"
    elif 'from' in event:
        detail = f"{event['from'] or 'unknown'} -> {event['to'] or 'unknown'}"
    else:
        status = event.get('status')
        detail = "unknown" if status is None else ("valid" if status else "invalid")
    return {
        'time': format_timestamp(event['timestamp']),
        'event': event['type'] + (" (inferred)" if event.get('inferred') else ""),
        'detail': detail,
    }


def rows(items: List[Dict[str, Any]], limit: int) -> List[Dict[str, Any]]:
    return items[:limit] if limit else items
