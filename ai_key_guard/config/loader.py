"""
Configuration management and loading.

Thresholds and budgets are consumed from a strictly validated YAML file.
Secrets (provisioning key, webhook URL, deployment tokens) come from the
environment and are never read from the YAML.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Set, Tuple

import yaml

from ai_key_guard.core.errors import ConfigurationError
from ai_key_guard.storage.models import Budget, BudgetScope

DEFAULT_ISSUER_BASE_URL = "https://openrouter.ai/api/v1"

DEFAULT_CONFIG_PATH = "ai-key-guard.yaml"

# Starter configuration written by `ai-key-guard init`
DEFAULT_CONFIG_YAML = """\
detection:
  rapid_requests: 100
  burst_tokens: 200000
  off_hours:
    start_hour: 2
    end_hour: 6
    min_requests: 50
  expensive_models:
    - openai/gpt-4
    - openai/gpt-4-turbo
    - anthropic/claude-3-opus
  expensive_model_share: 0.5
  max_origins: 3
  client_denylist:
    - curl
    - wget
    - python-requests

budget:
  daily: 100
  monthly: 1000
  currency: USD

aggregator:
  max_concurrency: 5
  cache_ttl_seconds: 300

rotation:
  max_attempts: 3
  deadline_seconds: 900
  smoke_test: false

storage:
  db_path: .ai-key-guard.db
  report_dir: security-reports
"""


@dataclass(frozen=True)
class QuietHoursConfig:
    """Local hours in which material usage is unexpected."""
    start_hour: int
    end_hour: int
    min_requests: int

    def __post_init__(self):
        for name in ("start_hour", "end_hour"):
            value = getattr(self, name)
            if not 0 <= value <= 23:
                raise ConfigurationError(f"off_hours.{name} must be between 0 and 23")
        if self.start_hour == self.end_hour:
            raise ConfigurationError("off_hours.start_hour and end_hour must differ")
        if self.min_requests < 0:
            raise ConfigurationError("off_hours.min_requests cannot be negative")

    def contains(self, hour: int) -> bool:
        """Whether ``hour`` falls in [start_hour, end_hour), wrapping midnight."""
        if self.start_hour < self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour


@dataclass(frozen=True)
class DetectionThresholds:
    """Thresholds for the anomaly rules."""
    rapid_requests: int
    burst_tokens: int
    off_hours: QuietHoursConfig
    expensive_models: Tuple[str, ...]
    expensive_model_share: float
    max_origins: int
    client_denylist: Tuple[str, ...]

    def __post_init__(self):
        if self.rapid_requests <= 0:
            raise ConfigurationError("rapid_requests must be > 0")
        if self.burst_tokens <= 0:
            raise ConfigurationError("burst_tokens must be > 0")
        if not 0 < self.expensive_model_share <= 1:
            raise ConfigurationError("expensive_model_share must be in (0, 1]")
        if self.max_origins <= 0:
            raise ConfigurationError("max_origins must be > 0")


@dataclass(frozen=True)
class BudgetConfig:
    """Budget limits for spend monitoring."""
    daily: float
    monthly: float
    currency: str = "USD"

    def __post_init__(self):
        """Validate budget values are positive."""
        if self.daily <= 0:
            raise ConfigurationError("daily budget must be > 0")
        if self.monthly <= 0:
            raise ConfigurationError("monthly budget must be > 0")

    def budgets(self) -> Dict[BudgetScope, Budget]:
        return {
            BudgetScope.DAILY: Budget(BudgetScope.DAILY, self.daily, self.currency),
            BudgetScope.MONTHLY: Budget(BudgetScope.MONTHLY, self.monthly, self.currency),
        }


@dataclass(frozen=True)
class AggregatorConfig:
    base_url: str = DEFAULT_ISSUER_BASE_URL
    max_concurrency: int = 5
    cache_ttl_seconds: float = 300.0
    timeout_seconds: float = 30.0

    def __post_init__(self):
        if not 1 <= self.max_concurrency <= 32:
            raise ConfigurationError("aggregator.max_concurrency must be between 1 and 32")
        if self.cache_ttl_seconds < 0:
            raise ConfigurationError("aggregator.cache_ttl_seconds cannot be negative")
        if self.timeout_seconds <= 0:
            raise ConfigurationError("aggregator.timeout_seconds must be > 0")


@dataclass(frozen=True)
class RotationConfig:
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    deadline_seconds: float = 900.0
    max_workers: int = 5
    timeout_seconds: float = 30.0
    name_prefix: str = "key-guard"
    credential_limit: Optional[float] = None
    smoke_test: bool = False
    smoke_test_model: str = "openai/gpt-4o-mini"

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError("rotation.max_attempts must be >= 1")
        if self.backoff_base_seconds < 0 or self.backoff_max_seconds < 0:
            raise ConfigurationError("rotation backoff values cannot be negative")
        if self.deadline_seconds <= 0:
            raise ConfigurationError("rotation.deadline_seconds must be > 0")
        if self.max_workers < 1:
            raise ConfigurationError("rotation.max_workers must be >= 1")
        if self.timeout_seconds <= 0:
            raise ConfigurationError("rotation.timeout_seconds must be > 0")
        if self.credential_limit is not None and self.credential_limit <= 0:
            raise ConfigurationError("rotation.credential_limit must be > 0")


@dataclass(frozen=True)
class NotificationConfig:
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    timeout_seconds: float = 10.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError("notification.max_attempts must be >= 1")
        if self.backoff_base_seconds < 0:
            raise ConfigurationError("notification.backoff_base_seconds cannot be negative")
        if self.timeout_seconds <= 0:
            raise ConfigurationError("notification.timeout_seconds must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    db_path: str = ".ai-key-guard.db"
    report_dir: str = "security-reports"


@dataclass(frozen=True)
class KeyGuardConfig:
    """Complete AI Key Guard configuration."""
    detection: DetectionThresholds
    budget: BudgetConfig
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    rotation: RotationConfig = field(default_factory=RotationConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def load_config(path: str) -> KeyGuardConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfiguration: every run fails
    fast, before any work, when a threshold or budget is missing.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated KeyGuardConfig object

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ConfigurationError("Configuration file is empty")

    return parse_config(raw_config)


def parse_config(raw_config: Dict[str, Any]) -> KeyGuardConfig:
    """Validate an already-parsed configuration mapping."""
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration must be a mapping")

    allowed_top_keys = {'detection', 'budget', 'aggregator', 'rotation', 'notification', 'storage'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ConfigurationError(f"Unknown configuration keys: {unknown_keys}")

    for required in ('detection', 'budget'):
        if required not in raw_config:
            raise ConfigurationError(f"Missing required '{required}' section")

    return KeyGuardConfig(
        detection=_parse_detection(_section(raw_config, 'detection')),
        budget=_parse_budget(_section(raw_config, 'budget')),
        aggregator=_build(AggregatorConfig, _optional_section(
            raw_config, 'aggregator', {'base_url', 'max_concurrency', 'cache_ttl_seconds', 'timeout_seconds'}
        )),
        rotation=_build(RotationConfig, _optional_section(
            raw_config, 'rotation', {
                'max_attempts', 'backoff_base_seconds', 'backoff_max_seconds', 'deadline_seconds',
                'max_workers', 'timeout_seconds', 'name_prefix', 'credential_limit',
                'smoke_test', 'smoke_test_model',
            }
        )),
        notification=_build(NotificationConfig, _optional_section(
            raw_config, 'notification', {'max_attempts', 'backoff_base_seconds', 'timeout_seconds'}
        )),
        storage=_build(StorageConfig, _optional_section(raw_config, 'storage', {'db_path', 'report_dir'})),
    )


def _build(config_cls, values: Dict):
    try:
        return config_cls(**values)
    except TypeError as e:
        raise ConfigurationError(f"Invalid value in {config_cls.__name__}: {e}")


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config[name]
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{name}' must be a dictionary")
    return data


def _optional_section(raw_config: Dict, name: str, allowed_keys: Set[str]) -> Dict:
    if name not in raw_config or raw_config[name] is None:
        return {}
    data = _section(raw_config, name)
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ConfigurationError(f"Unknown keys in {name}: {unknown_keys}")
    return dict(data)


def _parse_budget(data: Dict) -> BudgetConfig:
    allowed_budget_keys = {'daily', 'monthly', 'currency'}
    unknown_budget_keys = set(data.keys()) - allowed_budget_keys
    if unknown_budget_keys:
        raise ConfigurationError(f"Unknown budget keys: {unknown_budget_keys}")

    if 'daily' not in data:
        raise ConfigurationError("Missing required 'daily' budget")
    if 'monthly' not in data:
        raise ConfigurationError("Missing required 'monthly' budget")

    return BudgetConfig(
        daily=_number(data['daily'], 'budget.daily'),
        monthly=_number(data['monthly'], 'budget.monthly'),
        currency=str(data.get('currency', 'USD')),
    )


def _parse_detection(data: Dict) -> DetectionThresholds:
    """Parse and validate anomaly rule thresholds.

    Every threshold is required: the detector has no built-in defaults.
    """
    required_keys = {
        'rapid_requests', 'burst_tokens', 'off_hours', 'expensive_models',
        'expensive_model_share', 'max_origins', 'client_denylist',
    }
    unknown_keys = set(data.keys()) - required_keys
    if unknown_keys:
        raise ConfigurationError(f"Unknown keys in detection: {unknown_keys}")
    missing_keys = required_keys - set(data.keys())
    if missing_keys:
        raise ConfigurationError(f"Missing required detection thresholds: {sorted(missing_keys)}")

    off_hours = data['off_hours']
    if not isinstance(off_hours, dict):
        raise ConfigurationError("'detection.off_hours' must be a dictionary")
    off_hours_keys = {'start_hour', 'end_hour', 'min_requests'}
    if set(off_hours.keys()) != off_hours_keys:
        raise ConfigurationError(f"'detection.off_hours' must define exactly: {sorted(off_hours_keys)}")

    return DetectionThresholds(
        rapid_requests=int(_number(data['rapid_requests'], 'detection.rapid_requests')),
        burst_tokens=int(_number(data['burst_tokens'], 'detection.burst_tokens')),
        off_hours=QuietHoursConfig(
            start_hour=int(_number(off_hours['start_hour'], 'off_hours.start_hour')),
            end_hour=int(_number(off_hours['end_hour'], 'off_hours.end_hour')),
            min_requests=int(_number(off_hours['min_requests'], 'off_hours.min_requests')),
        ),
        expensive_models=_string_list(data['expensive_models'], 'detection.expensive_models'),
        expensive_model_share=_number(data['expensive_model_share'], 'detection.expensive_model_share'),
        max_origins=int(_number(data['max_origins'], 'detection.max_origins')),
        client_denylist=_string_list(data['client_denylist'], 'detection.client_denylist'),
    )


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"'{path}' must be a number")
    return float(value)


def _string_list(value: Any, path: str) -> Tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
        raise ConfigurationError(f"'{path}' must be a list of non-empty strings")
    return tuple(value)
