"""
Stack Catalog - Configuration Management

Supports loading configuration from:
1. YAML config file (--config)
2. Environment variables (STACKCAT_*)
3. Command-line arguments (highest priority)

Config file example:
```yaml
output: "./catalog"

aws:
  source_role_arn: arn:aws:iam::123456789012:role/CatalogReader
  destination_role_name: CatalogStackReader
  external_id: ${STACKCAT_EXTERNAL_ID}  # env var substitution
  regions:
    - eu-west-1
    - us-east-1
  max_concurrency: 3

catalog:
  provider_key: cloudformation-stack-provider
  sink_url: https://catalog.example.com/api/mutations
```
"""
import logging
import os
import re
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .constants import (
    DEFAULT_ANNOTATION_NAMESPACE,
    DEFAULT_LIFECYCLE,
    DEFAULT_LIFECYCLE_TAG,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_OWNER,
    DEFAULT_OWNER_TAG,
    DEFAULT_PROJECT_TAG,
    DEFAULT_PROVIDER_KEY,
    DEFAULT_SESSION_NAME,
)

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './stack-catalog.yaml',
    './stack-catalog.yml',
    '~/.stack-catalog/config.yaml',
    '~/.stack-catalog/config.yml',
]

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'output': 'STACKCAT_OUTPUT',
    'log_level': 'STACKCAT_LOG_LEVEL',
    'aws.profile': 'STACKCAT_AWS_PROFILE',
    'aws.source_role_arn': 'STACKCAT_SOURCE_ROLE_ARN',
    'aws.destination_role_name': 'STACKCAT_DESTINATION_ROLE_NAME',
    'aws.external_id': 'STACKCAT_EXTERNAL_ID',
    'aws.regions': 'STACKCAT_REGIONS',
    'aws.skip_accounts': 'STACKCAT_SKIP_ACCOUNTS',
    'aws.include_suspended': 'STACKCAT_INCLUDE_SUSPENDED',
    'aws.max_concurrency': 'STACKCAT_MAX_CONCURRENCY',
    'aws.cycle_timeout': 'STACKCAT_CYCLE_TIMEOUT',
    'catalog.provider_key': 'STACKCAT_PROVIDER_KEY',
    'catalog.sink_url': 'STACKCAT_SINK_URL',
    'catalog.sink_token': 'STACKCAT_SINK_TOKEN',
}

LIST_KEYS = ('aws.regions', 'aws.skip_accounts')
BOOL_KEYS = ('aws.include_suspended',)
INT_KEYS = ('aws.max_concurrency',)
FLOAT_KEYS = ('aws.cycle_timeout',)


class ConfigError(ValueError):
    """Raised when the merged configuration cannot drive a refresh cycle."""


@dataclass(frozen=True)
class Settings:
    """Validated settings consumed by the refresh engine."""
    destination_role_name: str
    regions: Tuple[str, ...] = ()
    source_role_arn: Optional[str] = None
    profile: Optional[str] = None
    external_id: Optional[str] = None
    session_name: str = DEFAULT_SESSION_NAME
    skip_accounts: Tuple[str, ...] = ()
    include_suspended: bool = False
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    cycle_timeout: Optional[float] = None
    provider_key: str = DEFAULT_PROVIDER_KEY
    annotation_namespace: str = DEFAULT_ANNOTATION_NAMESPACE
    lifecycle_tag: str = DEFAULT_LIFECYCLE_TAG
    owner_tag: str = DEFAULT_OWNER_TAG
    project_tag: str = DEFAULT_PROJECT_TAG
    default_lifecycle: str = DEFAULT_LIFECYCLE
    default_owner: str = DEFAULT_OWNER
    sink_url: Optional[str] = None
    sink_token: Optional[str] = None
    output: str = '.'
    log_level: str = 'INFO'


def _substitute_env_vars(value: Any) -> Any:
    """Substitute ${ENV_VAR} patterns in string values."""
    if isinstance(value, str):
        # Pattern: ${VAR_NAME} or ${VAR_NAME:-default}
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replace(match):
            var_name = match.group(1)
            default = match.group(2) or ''
            return os.environ.get(var_name, default)

        return re.sub(pattern, replace, value)
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _get_nested(data: Dict, key_path: str, default: Any = None) -> Any:
    """Get a nested value from a dict using dot notation."""
    keys = key_path.split('.')
    value = data
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def _set_nested(data: Dict, key_path: str, value: Any) -> None:
    """Set a nested value in a dict using dot notation."""
    keys = key_path.split('.')
    for key in keys[:-1]:
        data = data.setdefault(key, {})
    data[keys[-1]] = value


def _split_list(value: Any) -> List[str]:
    """Accept either a YAML list or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(',') if v.strip()]
    return [str(v).strip() for v in value if str(v).strip()]


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    # Security check: the file may carry a sink token
    file_mode = path.stat().st_mode
    if file_mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    with open(path) as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    return _substitute_env_vars(config)


def find_default_config() -> Optional[str]:
    """Find a config file in default locations."""
    for path in DEFAULT_CONFIG_PATHS:
        expanded = Path(path).expanduser()
        if expanded.exists():
            return str(expanded)
    return None


def load_env_config() -> Dict[str, Any]:
    """Load configuration from environment variables."""
    config: Dict[str, Any] = {}

    for config_key, env_var in ENV_VAR_MAPPING.items():
        value: Any = os.environ.get(env_var)
        if value is None:
            continue
        if config_key in LIST_KEYS:
            value = _split_list(value)
        elif config_key in BOOL_KEYS:
            value = value.lower() in ('true', '1', 'yes')
        _set_nested(config, config_key, value)

    return config


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Merge multiple config dicts. Later configs override earlier ones."""
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_configs(result[key], value)
            elif value is not None:
                result[key] = value

    return result


def args_to_config(args) -> Dict[str, Any]:
    """Convert argparse args to config dict format."""
    config: Dict[str, Any] = {}

    # Map argparse attributes to config structure
    arg_mapping = {
        'output': 'output',
        'log_level': 'log_level',
        'profile': 'aws.profile',
        'source_role_arn': 'aws.source_role_arn',
        'destination_role_name': 'aws.destination_role_name',
        'external_id': 'aws.external_id',
        'regions': 'aws.regions',
        'skip_accounts': 'aws.skip_accounts',
        'include_suspended': 'aws.include_suspended',
        'max_concurrency': 'aws.max_concurrency',
        'cycle_timeout': 'aws.cycle_timeout',
        'provider_key': 'catalog.provider_key',
        'sink_url': 'catalog.sink_url',
    }

    for arg_name, config_key in arg_mapping.items():
        value = getattr(args, arg_name, None)
        if value is None:
            continue
        if config_key in LIST_KEYS:
            value = _split_list(value)
        _set_nested(config, config_key, value)

    return config


def load_config(args) -> Dict[str, Any]:
    """
    Load configuration from all sources and merge them.

    Priority (highest to lowest):
    1. CLI arguments
    2. Config file (--config or default location)
    3. Environment variables

    Returns merged config dict.
    """
    configs = []

    env_config = load_env_config()
    if env_config:
        logger.debug("Loaded config from environment variables")
        configs.append(env_config)

    config_path = getattr(args, 'config', None)
    if config_path:
        configs.append(load_config_file(config_path))
    else:
        default_config = find_default_config()
        if default_config:
            logger.info(f"Found default config file: {default_config}")
            configs.append(load_config_file(default_config))

    configs.append(args_to_config(args))

    return merge_configs(*configs)


def _coerce(key_path: str, value: Any) -> Any:
    if value is None or value == '':
        return None
    try:
        if key_path in INT_KEYS:
            return int(value)
        if key_path in FLOAT_KEYS:
            return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key_path}: {value!r}") from e
    return value


def settings_from_config(config: Dict[str, Any]) -> Settings:
    """
    Validate a merged config dict and turn it into Settings.

    Raises:
        ConfigError: If a required value is missing or malformed
    """
    destination_role_name = _get_nested(config, 'aws.destination_role_name')
    if not destination_role_name:
        raise ConfigError(
            "aws.destination_role_name is required "
            "(--destination-role-name or STACKCAT_DESTINATION_ROLE_NAME)"
        )

    max_concurrency = _coerce('aws.max_concurrency', _get_nested(config, 'aws.max_concurrency'))
    if max_concurrency is not None and max_concurrency < 1:
        raise ConfigError("aws.max_concurrency must be at least 1")

    cycle_timeout = _coerce('aws.cycle_timeout', _get_nested(config, 'aws.cycle_timeout'))
    if cycle_timeout is not None and cycle_timeout <= 0:
        raise ConfigError("aws.cycle_timeout must be positive")

    include_suspended = _get_nested(config, 'aws.include_suspended', False)
    if isinstance(include_suspended, str):
        include_suspended = include_suspended.lower() in ('true', '1', 'yes')

    catalog = config.get('catalog') or {}
    return Settings(
        destination_role_name=destination_role_name,
        regions=tuple(_split_list(_get_nested(config, 'aws.regions'))),
        source_role_arn=_get_nested(config, 'aws.source_role_arn') or None,
        profile=_get_nested(config, 'aws.profile') or None,
        external_id=_get_nested(config, 'aws.external_id') or None,
        session_name=_get_nested(config, 'aws.session_name') or DEFAULT_SESSION_NAME,
        skip_accounts=tuple(_split_list(_get_nested(config, 'aws.skip_accounts'))),
        include_suspended=bool(include_suspended),
        max_concurrency=max_concurrency or DEFAULT_MAX_CONCURRENCY,
        cycle_timeout=cycle_timeout,
        provider_key=catalog.get('provider_key') or DEFAULT_PROVIDER_KEY,
        annotation_namespace=catalog.get('annotation_namespace') or DEFAULT_ANNOTATION_NAMESPACE,
        lifecycle_tag=catalog.get('lifecycle_tag') or DEFAULT_LIFECYCLE_TAG,
        owner_tag=catalog.get('owner_tag') or DEFAULT_OWNER_TAG,
        project_tag=catalog.get('project_tag') or DEFAULT_PROJECT_TAG,
        default_lifecycle=catalog.get('default_lifecycle') or DEFAULT_LIFECYCLE,
        default_owner=catalog.get('default_owner') or DEFAULT_OWNER,
        sink_url=catalog.get('sink_url') or None,
        sink_token=catalog.get('sink_token') or None,
        output=config.get('output') or '.',
        log_level=config.get('log_level') or 'INFO',
    )


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return '''# Stack Catalog Configuration
#
# Environment variable substitution supported:
#   ${VAR_NAME}           - required env var
#   ${VAR_NAME:-default}  - env var with default value

# Output directory (or s3://bucket/prefix) for the cycle report and,
# when no sink_url is set, the catalog mutation document
output: "./catalog"

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO


# =============================================================================
# AWS Settings
# =============================================================================
aws:
  # AWS CLI profile for the base session (optional)
  # profile: management

  # Role assumed once with the base credentials. Its credentials list the
  # organization accounts and assume the per-account role below.
  # Leave unset to use the base credentials directly.
  source_role_arn: arn:aws:iam::123456789012:role/CatalogReader

  # Role name that exists in every account: arn:aws:iam::<account>:role/<name>
  destination_role_name: CatalogStackReader

  # External ID for role assumption (recommended for security)
  # external_id: ${STACKCAT_EXTERNAL_ID}

  # Regions to scan in every account (default: enabled regions)
  regions:
    - us-east-1

  # Accounts never scanned. Their entities disappear from the catalog.
  # skip_accounts:
  #   - "999999999999"

  # Also scan SUSPENDED accounts
  include_suspended: false

  # Accounts scanned in parallel
  max_concurrency: 3

  # Abandon the cycle (and emit nothing) after this many seconds
  # cycle_timeout: 900


# =============================================================================
# Catalog Settings
# =============================================================================
catalog:
  # Location key scoping the full-replacement mutation
  provider_key: cloudformation-stack-provider

  # Annotation namespace: <namespace>/region, <namespace>/accountId, ...
  annotation_namespace: stack-catalog.io

  # POST the mutation here instead of writing it to the output directory
  # sink_url: https://catalog.example.com/api/mutations
  # sink_token: ${STACKCAT_SINK_TOKEN}

  # Stack tags copied onto entities
  lifecycle_tag: lifecycle
  owner_tag: owner
  project_tag: project
  default_lifecycle: unknown
  default_owner: aws
'''
