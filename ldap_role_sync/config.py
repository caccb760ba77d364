"""
Configuration loading and management for LDAP Role Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

VALID_SCOPES = ('base', 'one', 'sub')
VALID_MEMBER_FORMATS = ('dn', 'name')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'ldap.bind_dn': 'LDAP_BIND_DN',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._apply_defaults()
        self._validate()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap', {})
        if not ldap_config.get('server_url'):
            errors.append("Missing required LDAP field: server_url")

        for section in ('role', 'user'):
            section_config = self.config.get(section, {})
            if not section_config.get('base_dn'):
                errors.append(f"Missing required field {section}.base_dn")
            if section_config.get('scope') not in VALID_SCOPES:
                errors.append(f"Invalid {section}.scope {section_config.get('scope')!r}, "
                              f"expected one of {', '.join(VALID_SCOPES)}")
            if not section_config.get('object_classes'):
                errors.append(f"No object classes configured for {section}")

        if self.config['role'].get('member_format') not in VALID_MEMBER_FORMATS:
            errors.append(f"Invalid role.member_format {self.config['role'].get('member_format')!r}, "
                          f"expected one of {', '.join(VALID_MEMBER_FORMATS)}")

        if not self.config.get('local_store', {}).get('path'):
            errors.append("Missing required field local_store.path")

        if self.config.get('scan', {}).get('progress_interval', 1) < 1:
            errors.append("scan.progress_interval must be a positive integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'bind_dn': None,
            'bind_password': None,
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 10,
        }
        self._apply_section_defaults('ldap', ldap_defaults)

        role_defaults = {
            'scope': 'sub',
            'name_attribute': 'cn',
            'member_attribute': 'member',
            'member_format': 'dn',
            'member_default': None,
            'object_classes': ['groupofnames'],
            'filter': None,
        }
        self._apply_section_defaults('role', role_defaults)

        user_defaults = {
            'scope': 'sub',
            'name_attribute': 'uid',
            'unique_attribute': None,
            'object_classes': ['inetorgperson'],
            'filter': None,
            'attribute_map': {'cn': 'name', 'sn': 'name', 'mail': 'mail'},
        }
        self._apply_section_defaults('user', user_defaults)

        self._apply_section_defaults('local_store', {'path': None})

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING',
        }
        self._apply_section_defaults('logging', logging_defaults)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        self._apply_section_defaults('error_handling', error_defaults)

        self._apply_section_defaults('scan', {'progress_interval': 1024})

        for section in ('role', 'user'):
            section_config = self.config[section]
            for key in ('name_attribute', 'member_attribute', 'unique_attribute'):
                if section_config.get(key):
                    section_config[key] = section_config[key].lower()
            if isinstance(section_config['object_classes'], str):
                section_config['object_classes'] = [section_config['object_classes']]

    def _apply_section_defaults(self, section: str, defaults: Dict[str, Any]):
        section_config = self.config.get(section)
        if section_config is None:
            section_config = self.config[section] = {}
        for key, value in defaults.items():
            section_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
