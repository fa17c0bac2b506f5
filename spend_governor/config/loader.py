"""
Configuration management and loading.

Handles budget settings from an optional YAML file and environment variables.

Resolution order (later wins):
1. Built-in defaults
2. YAML file (lowercase keys, e.g. ``monthly_total: 500``)
3. Environment variables (``MONTHLY_TOTAL`` or ``SPEND_GOVERNOR_MONTHLY_TOTAL``)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import yaml


ENV_PREFIX = "SPEND_GOVERNOR_"

ALERT_THRESHOLDS = (50, 75, 90, 100)

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


@dataclass(frozen=True)
class BudgetConfig:
    """Default spend limits in USD (and units for single requests)."""
    monthly_total: float = 500.0
    monthly_per_user: float = 250.0
    daily_total: float = 50.0
    daily_per_user: float = 25.0
    hourly_total: float = 10.0
    per_request_max_cost: float = 5.0
    per_request_max_units: int = 100_000

    def __post_init__(self):
        """Validate budget values are positive."""
        for name in (
            "monthly_total",
            "monthly_per_user",
            "daily_total",
            "daily_per_user",
            "hourly_total",
            "per_request_max_cost",
            "per_request_max_units",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")


@dataclass(frozen=True)
class AlertChannelConfig:
    """Delivery settings for alert channels. Unset channels are disabled."""
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    email_recipients: Tuple[str, ...] = ()
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: str = "spend-governor@localhost"
    smtp_use_tls: bool = True

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host and self.email_recipients)


@dataclass(frozen=True)
class GovernorConfig:
    """Complete governance configuration."""
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    alert_thresholds: Tuple[int, ...] = ALERT_THRESHOLDS
    hard_stop_at_limit: bool = True
    pause_cooldown_minutes: int = 60
    requests_per_minute: Optional[int] = None
    db_path: str = ".spend-governor.db"
    default_pricing_model: str = "gpt-5"
    channels: AlertChannelConfig = field(default_factory=AlertChannelConfig)

    def __post_init__(self):
        if self.pause_cooldown_minutes < 0:
            raise ValueError("pause_cooldown_minutes cannot be negative")
        if self.requests_per_minute is not None and self.requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be > 0")
        unknown = set(self.alert_thresholds) - set(ALERT_THRESHOLDS)
        if unknown:
            raise ValueError(f"Unsupported alert thresholds: {sorted(unknown)}")


def _parse_float(key: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"'{key}' must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{key}' must be a number, got {value!r}")


def _parse_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"'{key}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{key}' must be an integer, got {value!r}")


def _parse_optional_int(key: str, value: Any) -> Optional[int]:
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return None
    return _parse_int(key, value)


def _parse_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"'{key}' must be a boolean, got {value!r}")


def _parse_str(key: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_list(key: str, value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        items = [str(item).strip() for item in value]
    elif isinstance(value, str):
        items = [item.strip() for item in value.split(",")]
    else:
        raise ValueError(f"'{key}' must be a list or comma-separated string")
    return tuple(item for item in items if item)


# Setting name -> parser. Names double as environment variable names.
_SETTINGS: Dict[str, Callable[[str, Any], Any]] = {
    "MONTHLY_TOTAL": _parse_float,
    "MONTHLY_PER_USER": _parse_float,
    "DAILY_TOTAL": _parse_float,
    "DAILY_PER_USER": _parse_float,
    "HOURLY_TOTAL": _parse_float,
    "PER_REQUEST_MAX_COST": _parse_float,
    "PER_REQUEST_MAX_UNITS": _parse_int,
    "ALERT_AT_50_PERCENT": _parse_bool,
    "ALERT_AT_75_PERCENT": _parse_bool,
    "ALERT_AT_90_PERCENT": _parse_bool,
    "ALERT_AT_100_PERCENT": _parse_bool,
    "HARD_STOP_AT_LIMIT": _parse_bool,
    "PAUSE_COOLDOWN_MINUTES": _parse_int,
    "REQUESTS_PER_MINUTE": _parse_optional_int,
    "DB_PATH": _parse_str,
    "DEFAULT_PRICING_MODEL": _parse_str,
    "ALERT_WEBHOOK_URL": _parse_str,
    "ALERT_WEBHOOK_SECRET": _parse_str,
    "ALERT_EMAIL_RECIPIENTS": _parse_list,
    "SMTP_HOST": _parse_str,
    "SMTP_PORT": _parse_int,
    "SMTP_USERNAME": _parse_str,
    "SMTP_PASSWORD": _parse_str,
    "SMTP_SENDER": _parse_str,
    "SMTP_USE_TLS": _parse_bool,
}


def load_governor_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> GovernorConfig:
    """Load and validate governance configuration.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns.

    Args:
        path: Optional path to a YAML configuration file
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated GovernorConfig object

    Raises:
        FileNotFoundError: If a config path is given but doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    values: Dict[str, Any] = {}

    if path is not None:
        values.update(_load_yaml(path))

    environ = os.environ if environ is None else environ
    for key, parser in _SETTINGS.items():
        for env_key in (key, ENV_PREFIX + key):
            if env_key in environ:
                values[key] = parser(env_key, environ[env_key])

    return _build_config(values)


def _load_yaml(path: str) -> Dict[str, Any]:
    """Read a YAML settings file into parsed setting values.

    Args:
        path: Path to YAML configuration file

    Returns:
        Mapping of setting name to parsed value
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Governor config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")

    unknown_keys = {str(k) for k in raw_config} - {k.lower() for k in _SETTINGS}
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    values = {}
    for raw_key, raw_value in raw_config.items():
        key = str(raw_key).upper()
        values[key] = _SETTINGS[key](str(raw_key), raw_value)
    return values


def _build_config(values: Dict[str, Any]) -> GovernorConfig:
    defaults = GovernorConfig()
    budget_defaults = defaults.budget
    channel_defaults = defaults.channels

    def pick(key: str, default: Any) -> Any:
        value = values.get(key)
        return default if value is None else value

    budget = BudgetConfig(
        monthly_total=pick("MONTHLY_TOTAL", budget_defaults.monthly_total),
        monthly_per_user=pick("MONTHLY_PER_USER", budget_defaults.monthly_per_user),
        daily_total=pick("DAILY_TOTAL", budget_defaults.daily_total),
        daily_per_user=pick("DAILY_PER_USER", budget_defaults.daily_per_user),
        hourly_total=pick("HOURLY_TOTAL", budget_defaults.hourly_total),
        per_request_max_cost=pick("PER_REQUEST_MAX_COST", budget_defaults.per_request_max_cost),
        per_request_max_units=pick("PER_REQUEST_MAX_UNITS", budget_defaults.per_request_max_units),
    )

    thresholds = tuple(
        threshold for threshold in ALERT_THRESHOLDS
        if pick(f"ALERT_AT_{threshold}_PERCENT", True)
    )

    channels = AlertChannelConfig(
        webhook_url=values.get("ALERT_WEBHOOK_URL"),
        webhook_secret=values.get("ALERT_WEBHOOK_SECRET"),
        email_recipients=pick("ALERT_EMAIL_RECIPIENTS", channel_defaults.email_recipients),
        smtp_host=values.get("SMTP_HOST"),
        smtp_port=pick("SMTP_PORT", channel_defaults.smtp_port),
        smtp_username=values.get("SMTP_USERNAME"),
        smtp_password=values.get("SMTP_PASSWORD"),
        smtp_sender=pick("SMTP_SENDER", channel_defaults.smtp_sender),
        smtp_use_tls=pick("SMTP_USE_TLS", channel_defaults.smtp_use_tls),
    )

    return GovernorConfig(
        budget=budget,
        alert_thresholds=thresholds,
        hard_stop_at_limit=pick("HARD_STOP_AT_LIMIT", defaults.hard_stop_at_limit),
        pause_cooldown_minutes=pick("PAUSE_COOLDOWN_MINUTES", defaults.pause_cooldown_minutes),
        requests_per_minute=values.get("REQUESTS_PER_MINUTE"),
        db_path=pick("DB_PATH", defaults.db_path),
        default_pricing_model=pick("DEFAULT_PRICING_MODEL", defaults.default_pricing_model),
        channels=channels,
    )
