"""
Bucket Digger - Configuration Management

Supports loading configuration from:
1. YAML config file (--config, or a default location)
2. Environment variables (DIGGER_*)
3. Command-line arguments (highest priority)

Config file example:
```yaml
unit: gb
workers: 20

filter:
  field: name
  regex: "^prod-"

sort:
  key: size
  order: desc

group: region

cost:
  enabled: true
  period_days: 30
  tag: ${DIGGER_COST_TAG:-Name}  # env var substitution

aws:
  profile: my-profile
```
"""
import logging
import os
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .constants import (
    DEFAULT_COST_PERIOD_DAYS,
    DEFAULT_COST_TAG,
    DEFAULT_REGION,
    DEFAULT_SIZE_UNIT,
    DEFAULT_WORKERS,
    FILTER_NONE,
    GROUP_NONE,
    MAX_COST_PERIOD_DAYS,
    METRICS_FAILURE_KEEP,
    MIN_COST_PERIOD_DAYS,
    ORDER_ASC,
    ORDER_DESC,
    SIZE_UNITS,
    SORT_NAME,
    VALID_GROUP_KEYS,
    VALID_METRICS_FAILURE_POLICIES,
    VALID_SORT_KEYS,
    VALID_SORT_ORDERS,
)
from .errors import ConfigError, WorkerCountError
from .filters import BucketFilter, build_filter

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './digger-config.yaml',
    './digger-config.yml',
    '~/.digger/config.yaml',
    '~/.digger/config.yml',
]

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'unit': 'DIGGER_UNIT',
    'workers': 'DIGGER_WORKERS',
    'filter.field': 'DIGGER_FILTER',
    'filter.regex': 'DIGGER_REGEX',
    'sort.key': 'DIGGER_SORT',
    'sort.order': 'DIGGER_ORDER',
    'group': 'DIGGER_GROUP',
    'cost.enabled': 'DIGGER_COST',
    'cost.period_days': 'DIGGER_COST_PERIOD',
    'cost.tag': 'DIGGER_COST_TAG',
    'metrics_failure': 'DIGGER_METRICS_FAILURE',
    'output': 'DIGGER_OUTPUT',
    'log_level': 'DIGGER_LOG_LEVEL',
    'aws.profile': 'DIGGER_AWS_PROFILE',
    'aws.region': 'DIGGER_AWS_REGION',
}

# Keys that hold a nested mapping rather than a value
_SECTIONS = ('filter', 'sort', 'cost', 'aws')

_INT_KEYS = ('workers', 'cost.period_days')
_BOOL_KEYS = ('cost.enabled', 'progress')

# Mapping from config keys to DiggerConfig fields
CONFIG_FIELDS = {
    'unit': 'unit',
    'workers': 'workers',
    'filter.field': 'filter_field',
    'filter.regex': 'filter_regex',
    'sort.key': 'sort_key',
    'sort.order': 'sort_order',
    'group': 'group_by',
    'cost.enabled': 'cost',
    'cost.period_days': 'cost_period_days',
    'cost.tag': 'cost_tag',
    'metrics_failure': 'metrics_failure',
    'output': 'output',
    'log_level': 'log_level',
    'progress': 'show_progress',
    'aws.profile': 'profile',
    'aws.region': 'default_region',
}


@dataclass
class DiggerConfig:
    """Validated settings for one run."""
    unit: str = DEFAULT_SIZE_UNIT
    workers: int = DEFAULT_WORKERS
    filter_field: str = FILTER_NONE
    filter_regex: Optional[str] = None
    sort_key: str = SORT_NAME
    sort_order: str = ORDER_ASC
    group_by: str = GROUP_NONE
    cost: bool = False
    cost_period_days: int = DEFAULT_COST_PERIOD_DAYS
    cost_tag: str = DEFAULT_COST_TAG
    metrics_failure: str = METRICS_FAILURE_KEEP
    profile: Optional[str] = None
    default_region: str = DEFAULT_REGION
    output: Optional[str] = None
    log_level: str = 'INFO'
    show_progress: bool = True

    @property
    def descending(self) -> bool:
        return self.sort_order == ORDER_DESC

    def build_filter(self) -> Optional[BucketFilter]:
        return build_filter(self.filter_field, self.filter_regex)

    def validate(self) -> 'DiggerConfig':
        """
        Normalize and check every setting.

        Raises:
            ConfigError: on the first invalid setting
        """
        self.unit = str(self.unit).lower()
        if self.unit not in SIZE_UNITS:
            raise ConfigError(f"'{self.unit}' is not a valid unit, expected one of: {', '.join(SIZE_UNITS)}")

        if isinstance(self.workers, bool) or not isinstance(self.workers, int) or self.workers < 1:
            raise WorkerCountError(self.workers)

        self.filter_field = str(self.filter_field or FILTER_NONE).lower()
        self.build_filter()

        self.sort_key = str(self.sort_key).lower()
        if self.sort_key not in VALID_SORT_KEYS:
            raise ConfigError(f"'{self.sort_key}' is not a valid sort key, expected one of: {', '.join(VALID_SORT_KEYS)}")

        self.sort_order = str(self.sort_order).lower()
        if self.sort_order not in VALID_SORT_ORDERS:
            raise ConfigError(f"'{self.sort_order}' is not a valid sort order, expected asc or desc")

        self.group_by = str(self.group_by or GROUP_NONE).lower()
        if self.group_by not in VALID_GROUP_KEYS:
            raise ConfigError(f"'{self.group_by}' is not a valid group key, expected one of: {', '.join(VALID_GROUP_KEYS)}")

        if isinstance(self.cost_period_days, bool) or not isinstance(self.cost_period_days, int) \
                or not MIN_COST_PERIOD_DAYS <= self.cost_period_days <= MAX_COST_PERIOD_DAYS:
            raise ConfigError(
                f"'{self.cost_period_days}' is not a valid cost period, it must be between "
                f"{MIN_COST_PERIOD_DAYS} and {MAX_COST_PERIOD_DAYS}"
            )

        if self.cost and not self.cost_tag:
            raise ConfigError("A cost tag is required when cost collection is enabled")

        self.metrics_failure = str(self.metrics_failure).lower()
        if self.metrics_failure not in VALID_METRICS_FAILURE_POLICIES:
            raise ConfigError(
                f"'{self.metrics_failure}' is not a valid metrics failure policy, expected keep or drop"
            )

        if self.output and not self.output.lower().endswith(('.json', '.csv')):
            raise ConfigError(f"Output file must end in .json or .csv: {self.output}")

        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


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


def _check_sections(data: Dict[str, Any], source: str = "configuration") -> None:
    """Raise ConfigError if a section such as 'cost' holds a plain value."""
    for section in _SECTIONS:
        value = data.get(section)
        if value is not None and not isinstance(value, dict):
            raise ConfigError(f"'{section}' in {source} must be a mapping of settings, got {value!r}")


def _coerce(key_path: str, value: Any) -> Any:
    """Convert string values from env vars and YAML to the expected type."""
    if value is None:
        return None
    if key_path in _INT_KEYS and isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            raise ConfigError(f"'{value}' is not a valid integer for {key_path}") from None
    if key_path in _BOOL_KEYS and isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes', 'on')
    return value


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    # Security check: warn if config file has loose permissions
    import stat
    file_mode = path.stat().st_mode
    if file_mode & (stat.S_IRWXG | stat.S_IRWXO):  # Group or world access
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {config_path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    _check_sections(config, f"config file {config_path}")

    # Substitute environment variables
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
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested(config, config_key, _coerce(config_key, value))

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
        'unit': 'unit',
        'workers': 'workers',
        'filter': 'filter.field',
        'regex': 'filter.regex',
        'sort': 'sort.key',
        'order': 'sort.order',
        'group': 'group',
        'cost': 'cost.enabled',
        'cost_period': 'cost.period_days',
        'cost_tag': 'cost.tag',
        'metrics_failure': 'metrics_failure',
        'output': 'output',
        'log_level': 'log_level',
        'profile': 'aws.profile',
        'region': 'aws.region',
    }

    for arg_name, config_key in arg_mapping.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            _set_nested(config, config_key, value)

    if getattr(args, 'no_progress', None):
        config['progress'] = False

    return config


def config_from_dict(data: Dict[str, Any]) -> DiggerConfig:
    """Build and validate a DiggerConfig from a merged config dict."""
    _check_sections(data)
    values = {}
    for key_path, field_name in CONFIG_FIELDS.items():
        value = _coerce(key_path, _get_nested(data, key_path))
        if value is not None:
            values[field_name] = value
    return DiggerConfig(**values).validate()


def load_config(args) -> DiggerConfig:
    """
    Load configuration from all sources and merge them.

    Priority (highest to lowest):
    1. CLI arguments
    2. Config file (--config or default location)
    3. Environment variables

    Raises:
        ConfigError: if a source cannot be read or the result is invalid
    """
    configs = []

    # 1. Environment variables (lowest priority)
    env_config = load_env_config()
    if env_config:
        logger.debug("Loaded config from environment variables")
        configs.append(env_config)

    # 2. Config file
    config_path = getattr(args, 'config', None)
    if config_path:
        configs.append(load_config_file(config_path))
    else:
        default_config = find_default_config()
        if default_config:
            logger.info(f"Found default config file: {default_config}")
            configs.append(load_config_file(default_config))

    # 3. CLI arguments (highest priority)
    configs.append(args_to_config(args))

    return config_from_dict(merge_configs(*configs))


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return '''# Bucket Digger Configuration
#
# Environment variable substitution supported:
#   ${VAR_NAME}           - required env var
#   ${VAR_NAME:-default}  - env var with default value

# Unit used to display bucket sizes: b, kb, mb, gb, tb, pb, eb (base 1000)
unit: mb

# Number of workers enriching buckets in parallel (at least 1)
workers: 10

# Keep only matching buckets
# filter:
#   field: name             # name or storageclasses
#   regex: "^prod-"

# Table ordering
sort:
  key: name                 # name, region, size, files, created, modified, cost
  order: asc                # asc or desc

# Group the table: none or region
group: none

# Amortized cost from Cost Explorer (one query per bucket)
cost:
  enabled: false
  period_days: 30           # 1 to 365
  tag: Name                 # cost allocation tag whose value is the bucket name

# What to do with a bucket whose objects cannot be listed:
#   keep - show it with zeroed metrics
#   drop - leave it out of the table
metrics_failure: keep

# Export the table to a .json or .csv file
# output: ./buckets.json

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO

aws:
  # AWS CLI profile (optional, uses the default credential chain if not set)
  # profile: my-profile

  # Region used to list buckets and look up bucket locations
  region: us-east-1
'''
