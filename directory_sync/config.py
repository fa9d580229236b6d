"""
Configuration loading and management for the directory sync engine.

This module handles loading configuration from YAML files and environment
variables, with validation and defaults, and builds the typed settings and
records the engine components consume.
"""

import os
import yaml
import logging
from dataclasses import dataclass
from typing import Dict, Any, List, Optional

from croniter import croniter

from directory_sync.models import DirectoryServer, ToolSyncConfig, RoleMapping

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""

    code = 'configuration_error'


KNOWN_TOOL_SLUGS = ('github', 'gitlab')
CONFLICT_POLICIES = ('ldap_wins', 'tool_wins', 'manual')
# Keys that would carry secrets inline; secrets come from the credential provider
INLINE_SECRET_KEYS = ('bind_password', 'password', 'token', 'api_token', 'private_token')


def _to_bool(value: str) -> bool:
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class DirectorySettings:
    """Directory client tuning shared by every server."""

    connection_timeout: float = 30
    search_timeout: float = 60
    reconnect_enabled: bool = True
    reconnect_interval: float = 5
    max_reconnect_attempts: int = 3
    page_size: int = 1000
    max_entries: int = 10000

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'DirectorySettings':
        ldap_config = config.get('ldap', {})
        return cls(**{key: ldap_config[key] for key in cls.__dataclass_fields__ if key in ldap_config})


@dataclass
class EngineSettings:
    """Engine-wide limits and policies."""

    max_concurrent_jobs: int = 5
    job_timeout_minutes: float = 120
    default_rate_limit_per_minute: int = 60
    default_conflict_resolution: str = 'ldap_wins'
    conflict_detection_enabled: bool = True
    preview_max_changes: int = 1000
    recent_jobs_limit: int = 20
    max_retries: int = 3
    retry_wait_seconds: float = 5
    scheduler_enabled: bool = True
    scheduler_timezone: str = 'UTC'

    @property
    def job_timeout_seconds(self) -> float:
        return self.job_timeout_minutes * 60

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'EngineSettings':
        engine_config = config.get('engine', {})
        values = {key: engine_config[key] for key in cls.__dataclass_fields__ if key in engine_config}
        error_config = config.get('error_handling', {})
        if 'max_retries' in error_config:
            values['max_retries'] = error_config['max_retries']
        if 'retry_wait_seconds' in error_config:
            values['retry_wait_seconds'] = error_config['retry_wait_seconds']
        scheduler_config = config.get('scheduler', {})
        if 'enabled' in scheduler_config:
            values['scheduler_enabled'] = scheduler_config['enabled']
        if 'timezone' in scheduler_config:
            values['scheduler_timezone'] = scheduler_config['timezone']
        return cls(**values)


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings: config key -> (env var, type)
    ENV_OVERRIDES = {
        'engine.max_concurrent_jobs': ('MAX_CONCURRENT_SYNC_JOBS', int),
        'engine.job_timeout_minutes': ('SYNC_JOB_TIMEOUT_MINUTES', float),
        'engine.default_rate_limit_per_minute': ('DEFAULT_RATE_LIMIT_PER_MINUTE', int),
        'engine.conflict_detection_enabled': ('CONFLICT_DETECTION_ENABLED', _to_bool),
        'engine.preview_max_changes': ('PREVIEW_MAX_CHANGES', int),
        'scheduler.enabled': ('SCHEDULER_ENABLED', _to_bool),
        'ldap.connection_timeout': ('LDAP_CONNECTION_TIMEOUT', float),
        'ldap.search_timeout': ('LDAP_SEARCH_TIMEOUT', float),
        'ldap.reconnect_enabled': ('LDAP_RECONNECT_ENABLED', _to_bool),
        'ldap.reconnect_interval': ('LDAP_RECONNECT_INTERVAL', float),
        'ldap.max_entries': ('DISCOVERY_MAX_ENTRIES', int),
        'ldap.page_size': ('DISCOVERY_PAGE_SIZE', int),
        'audit.forward_url': ('AUDIT_FORWARD_URL', str),
        'logging.level': ('LOG_LEVEL', str),
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
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def load_dict(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and complete an in-memory configuration dictionary."""
        self.config = config
        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for engine settings."""
        for config_key, (env_var, convert) in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value is None or env_value == '':
                continue
            try:
                value = convert(env_value)
            except ValueError:
                raise ConfigurationError(f"Invalid value for {env_var}: {env_value!r}")
            self._set_nested_value(self.config, config_key, value)
            logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        servers = self.config.get('directory_servers') or []
        if not servers:
            errors.append("At least one directory server must be configured")

        server_ids = set()
        for i, server in enumerate(servers):
            prefix = f"directory_servers[{i}]"
            for field_name in ('id', 'host', 'base_dn'):
                if not server.get(field_name):
                    errors.append(f"Missing required field {prefix}.{field_name}")
            if server.get('id') in server_ids:
                errors.append(f"Duplicate directory server id: {server['id']}")
            server_ids.add(server.get('id'))
            for key in INLINE_SECRET_KEYS:
                if key in server:
                    errors.append(f"Inline secret {prefix}.{key} is not allowed; use bind_password_env")

        tool_ids = set()
        for i, tool in enumerate(self.config.get('tools') or []):
            prefix = f"tools[{i}]"
            for field_name in ('id', 'tool_slug', 'server_id'):
                if not tool.get(field_name):
                    errors.append(f"Missing required field {prefix}.{field_name}")
            if tool.get('id') in tool_ids:
                errors.append(f"Duplicate tool config id: {tool['id']}")
            tool_ids.add(tool.get('id'))

            if tool.get('tool_slug') and tool['tool_slug'] not in KNOWN_TOOL_SLUGS:
                errors.append(f"Unknown tool_slug for {prefix}: {tool['tool_slug']}")
            if tool.get('server_id') and tool['server_id'] not in server_ids:
                errors.append(f"{prefix}.server_id references unknown server: {tool['server_id']}")

            policy = tool.get('conflict_resolution')
            if policy and policy not in CONFLICT_POLICIES:
                errors.append(f"Invalid conflict_resolution for {prefix}: {policy}")

            rate = tool.get('rate_limit_per_minute')
            if rate is not None and (not isinstance(rate, int) or rate <= 0):
                errors.append(f"rate_limit_per_minute must be a positive integer for {prefix}")

            schedule = tool.get('schedule_cron')
            if schedule and not croniter.is_valid(schedule):
                errors.append(f"Invalid cron expression for {prefix}: {schedule}")

            for key in INLINE_SECRET_KEYS:
                if key in tool:
                    errors.append(f"Inline secret {prefix}.{key} is not allowed; use credentials_env")

            for j, mapping in enumerate(tool.get('role_mappings') or []):
                if not mapping.get('ldap_group'):
                    errors.append(f"Missing ldap_group for {prefix}.role_mappings[{j}]")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        engine_defaults = {
            'max_concurrent_jobs': 5,
            'job_timeout_minutes': 120,
            'default_rate_limit_per_minute': 60,
            'default_conflict_resolution': 'ldap_wins',
            'conflict_detection_enabled': True,
            'preview_max_changes': 1000,
        }
        engine_config = self.config.setdefault('engine', {})
        for key, value in engine_defaults.items():
            engine_config.setdefault(key, value)

        ldap_defaults = {
            'connection_timeout': 30,
            'search_timeout': 60,
            'reconnect_enabled': True,
            'reconnect_interval': 5,
            'max_reconnect_attempts': 3,
            'page_size': 1000,
            'max_entries': 10000,
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        scheduler_config = self.config.setdefault('scheduler', {})
        scheduler_config.setdefault('enabled', True)
        scheduler_config.setdefault('timezone', 'UTC')

        audit_config = self.config.setdefault('audit', {})
        audit_config.setdefault('forward_url', None)
        audit_config.setdefault('forward_timeout', 5)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        for server in self.config.get('directory_servers', []):
            server.setdefault('name', server['id'])
            server.setdefault('use_ssl', False)
            server.setdefault('verify_ssl', True)

        default_rate = engine_config['default_rate_limit_per_minute']
        default_policy = engine_config['default_conflict_resolution']
        for tool in self.config.setdefault('tools', []):
            tool.setdefault('name', tool['id'])
            tool.setdefault('rate_limit_per_minute', default_rate)
            tool.setdefault('conflict_resolution', default_policy)
            tool.setdefault('verify_ssl', True)
            tool.setdefault('role_mappings', [])


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


def build_directory_servers(config: Dict[str, Any]) -> List[DirectoryServer]:
    """Build directory server records from the ``directory_servers`` section."""
    servers = []
    for entry in config.get('directory_servers', []):
        values = {key: entry[key] for key in DirectoryServer.__dataclass_fields__ if key in entry}
        values['attribute_aliases'] = dict(entry.get('attributes') or entry.get('attribute_aliases') or {})
        values.setdefault('name', entry['id'])
        servers.append(DirectoryServer(**values))
    return servers


def build_tool_configs(config: Dict[str, Any]) -> List[ToolSyncConfig]:
    """Build tool sync configs, including their role mappings, from the ``tools`` section."""
    tool_configs = []
    for entry in config.get('tools', []):
        values = {key: entry[key] for key in ToolSyncConfig.__dataclass_fields__
                  if key in entry and key != 'role_mappings'}
        values.setdefault('name', entry['id'])
        values['role_mappings'] = [
            RoleMapping(
                ldap_group=mapping['ldap_group'],
                mapping_type=mapping.get('type', mapping.get('mapping_type', 'org_role')),
                role=mapping.get('role'),
                team=mapping.get('team'),
            )
            for mapping in entry.get('role_mappings') or []
        ]
        tool_configs.append(ToolSyncConfig(**values))
    return tool_configs
