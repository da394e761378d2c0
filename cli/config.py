#!/usr/bin/env python3
"""
Settings for the productauth CLI.

Defaults, profiles, YAML/JSON files and PRODUCTAUTH_* environment variables
are merged in that order; later sources win key by key.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from registry.schema import ADDRESS_PATTERN

# Environment variable prefix; nested keys are separated by a double underscore,
# e.g. PRODUCTAUTH_LEDGER__BACKEND=rpc -> {'ledger': {'backend': 'rpc'}}
ENV_PREFIX = 'PRODUCTAUTH_'
ENV_NESTING = '__'

LEDGER_BACKENDS = ('local', 'rpc', 'contract')
OUTPUT_FORMATS = ('table', 'json', 'yaml')

# Development chain's first account; only used by the local ledger
DEFAULT_LOCAL_OWNER = '0x90f8bf6a479f320ead074411a4b0e7944ea8c9c1'

# Default configuration values
DEFAULT_CONFIG = {
    # Ledger connection
    'ledger': {
        'backend': 'local',  # local, rpc, contract
        'owner': DEFAULT_LOCAL_OWNER,
        'state_file': '~/.productauth/ledger_state.json',
        'typed_events': True,
        'rpc': {
            'url': 'http://localhost:8545/rpc',
            'username': None,
            'password': None,
            'timeout': 30,
            'max_retries': 3
        },
        'contract': {
            'rpc_url': 'http://127.0.0.1:8545',
            'address': None,
            'artifact_path': None,
            'private_key': None,
            'chain_id': None,
            'receipt_timeout': 120
        }
    },

    # Metadata cache
    'registry': {
        'data_dir': '~/.productauth/data',
        'cache_file': 'metadata_cache.json',
        'backup_count': 5,
        'backup_on_start': True,
        'lock_timeout': 30
    },

    # RoleAssigned notification polling
    'events': {
        'enabled': True,
        'poll_interval': 5.0
    },

    # Audit trail
    'audit': {
        'log_directory': None,
        'max_memory_events': 1000
    },

    # CLI behavior
    'cli': {
        'output_format': 'table',  # table, json, yaml
        'actor': None,  # default --as address
        'verbose': 0,
        'confirm_destructive': True,
        'max_display_items': 50
    }
}

# Configuration profiles
PROFILES = {
    'production': {
        'ledger': {'backend': 'contract', 'typed_events': False},
        'registry': {'backup_count': 10},
        'cli': {'confirm_destructive': True, 'verbose': 0}
    },
    'development': {
        'ledger': {'backend': 'local'},
        'events': {'poll_interval': 1.0},
        'cli': {'confirm_destructive': False, 'verbose': 1}
    }
}


def config_search_paths() -> List[Path]:
    """Configuration file locations in order of precedence (highest to lowest)."""
    return [
        Path.cwd() / '.productauth.yml',
        Path.cwd() / '.productauth.json',
        Path.home() / '.productauth' / 'config.yml',
        Path.home() / '.productauth' / 'config.json',
    ]


class ConfigurationManager:
    """Layered settings store read by the CLI and the registry runtime."""

    def __init__(self, config_file: Optional[str] = None, profile: Optional[str] = None):
        """
        Args:
            config_file: File loaded instead of the search paths
            profile: Named overlay from PROFILES (production, development)
        """
        self.logger = logging.getLogger(__name__)
        self.config_file = config_file
        self.profile = profile
        self._config_cache = None
        self._config_sources = []

    def load(self) -> Dict[str, Any]:
        """Merge every source once and cache the result."""
        if self._config_cache is not None:
            return self._config_cache

        configs = [copy.deepcopy(DEFAULT_CONFIG)]
        self._config_sources = ["defaults"]

        if self.profile:
            if self.profile not in PROFILES:
                self.logger.warning(f"Unknown configuration profile: {self.profile}")
            else:
                configs.append(PROFILES[self.profile])
                self._config_sources.append(f"profile:{self.profile}")
                self.logger.debug(f"Applied profile: {self.profile}")

        if self.config_file:
            config_data = self._load_config_file(Path(self.config_file).expanduser())
            if config_data:
                configs.append(config_data)
                self._config_sources.append(f"file:{self.config_file}")
        else:
            for config_path in config_search_paths():
                if config_path.exists():
                    config_data = self._load_config_file(config_path)
                    if config_data:
                        configs.append(config_data)
                        self._config_sources.append(f"file:{config_path}")
                        self.logger.debug(f"Loaded config from {config_path}")
                        break  # Use first found config file

        env_config = self._load_environment_variables()
        if env_config:
            configs.append(env_config)
            self._config_sources.append("environment")

        self._config_cache = self._deep_merge(*configs)
        self._expand_paths(self._config_cache)

        return self._config_cache

    def _load_config_file(self, path: Path) -> Optional[Dict[str, Any]]:
        """Read a YAML or JSON mapping; None if unreadable."""
        try:
            with open(path, 'r') as f:
                if path.suffix in ['.yml', '.yaml']:
                    data = yaml.safe_load(f)
                elif path.suffix == '.json':
                    data = json.load(f)
                else:
                    self.logger.warning(f"Unknown config file format: {path}")
                    return None
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            self.logger.error(f"Failed to load config from {path}: {e}")
            return None

        if data is not None and not isinstance(data, dict):
            self.logger.error(f"Config file {path} must contain a mapping")
            return None
        return data

    def _load_environment_variables(self) -> Dict[str, Any]:
        """Collect PRODUCTAUTH_SECTION__KEY variables into a nested mapping."""
        env_config = {}

        for key, value in os.environ.items():
            if not key.startswith(ENV_PREFIX) or ENV_NESTING not in key:
                continue

            parts = key[len(ENV_PREFIX):].lower().split(ENV_NESTING)
            current = env_config
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = self._parse_env_value(value)

        return env_config

    def _parse_env_value(self, value: str) -> Union[str, int, float, bool, None]:
        """Parse environment variable value to appropriate type."""
        if value.lower() in ['true', 'yes']:
            return True
        if value.lower() in ['false', 'no']:
            return False

        # Leading-zero hex such as addresses must stay strings
        if value.startswith('0x'):
            return value

        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value

    def _deep_merge(self, *dicts: Dict[str, Any]) -> Dict[str, Any]:
        result = {}

        for dictionary in dicts:
            for key, value in dictionary.items():
                if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = self._deep_merge(result[key], value)
                else:
                    result[key] = copy.deepcopy(value)

        return result

    def _expand_paths(self, config: Dict[str, Any]):
        """Expand ~ and environment variables in path values."""
        for key, value in config.items():
            if isinstance(value, dict):
                self._expand_paths(value)
            elif isinstance(value, str) and ('~' in value or '$' in value):
                config[key] = os.path.expanduser(os.path.expandvars(value))

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation path.

        Args:
            key_path: Dot-separated path (e.g., 'ledger.rpc.url')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        current = self.load()

        for key in key_path.split('.'):
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default

        return current

    def set(self, key_path: str, value: Any):
        """
        Set configuration value by dot-notation path.

        Args:
            key_path: Dot-separated path (e.g., 'ledger.backend')
            value: Value to set
        """
        config = self.load()

        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value
        self._config_cache = config

    def save(self, path: Optional[str] = None, format: str = 'yaml'):
        """Write the merged settings, by default to .productauth.yml in the working directory."""
        config = self.load()

        if not path:
            path = Path.cwd() / ('.productauth.yml' if format == 'yaml' else '.productauth.json')

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            if format == 'yaml':
                yaml.safe_dump(config, f, default_flow_style=False, sort_keys=False)
            else:
                json.dump(config, f, indent=2)

        self.logger.info(f"Configuration saved to {path}")

    def validate(self) -> List[str]:
        """Return a list of problems; empty means the runtime can be built."""
        config = self.load()
        errors = []

        ledger = config.get('ledger', {})
        backend = ledger.get('backend')
        if backend not in LEDGER_BACKENDS:
            errors.append(f"Invalid ledger backend: {backend}")

        if backend == 'local':
            owner = ledger.get('owner')
            if not isinstance(owner, str) or not ADDRESS_PATTERN.match(owner):
                errors.append(f"Local ledger owner must be a 20-byte hex address: {owner}")

        if backend == 'rpc' and not ledger.get('rpc', {}).get('url'):
            errors.append("Ledger RPC url is required for the rpc backend")

        if backend == 'contract':
            contract = ledger.get('contract', {})
            if not contract.get('address') and not contract.get('artifact_path'):
                errors.append("Contract address or artifact_path is required for the contract backend")
            if not contract.get('rpc_url'):
                errors.append("Contract rpc_url is required for the contract backend")

        output_format = config.get('cli', {}).get('output_format')
        if output_format not in OUTPUT_FORMATS:
            errors.append(f"Invalid output format: {output_format}")

        poll_interval = config.get('events', {}).get('poll_interval')
        if not isinstance(poll_interval, (int, float)) or poll_interval <= 0:
            errors.append("Event poll_interval must be a positive number")

        lock_timeout = config.get('registry', {}).get('lock_timeout')
        if not isinstance(lock_timeout, (int, float)) or lock_timeout <= 0:
            errors.append("Registry lock_timeout must be a positive number")

        return errors

    def get_sources(self) -> List[str]:
        """Names of the sources that contributed, lowest precedence first."""
        self.load()
        return self._config_sources

    def reset(self):
        """Drop cached settings so the next read reloads every source."""
        self._config_cache = None
        self._config_sources = []
