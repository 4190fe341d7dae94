"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


class InvalidWindowConfigError(ConfigError):
    """Raised when an SLA window has a non-positive duration or a bad offset."""

    pass


# Metrics where a larger value is worse (latency, loss).
HIGHER_IS_WORSE_METRICS = ("rtt", "loss", "jitter", "dns_time", "http_time")
# Metrics where a smaller value is worse (throughput).
LOWER_IS_WORSE_METRICS = ("download", "upload")
METRIC_NAMES = HIGHER_IS_WORSE_METRICS + LOWER_IS_WORSE_METRICS

BREACH_POLICIES = ("poor", "degraded")


def _window_key(days: int, offset_days: int = 0) -> str:
    """Build the stable key for a window, e.g. ``last_7_days``."""
    key = f"last_{days}_day" if days == 1 else f"last_{days}_days"
    if offset_days:
        key += f"_offset_{offset_days}"
    return key


def _window_label(days: int) -> str:
    return f"Last {days} Day" if days == 1 else f"Last {days} Days"


@dataclass(frozen=True)
class Window:
    """A named rolling lookback period.

    The window ends ``offset_days`` before the reference time and spans
    ``days`` days back from there. With the default offset of zero the window
    ends at the reference time.
    """

    days: int
    label: str = ""
    key: str = ""
    offset_days: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.days, bool) or not isinstance(self.days, int):
            raise InvalidWindowConfigError(f"Window days must be an integer (got {self.days!r})")
        if self.days <= 0:
            raise InvalidWindowConfigError(f"Window duration must be positive (got {self.days} days)")
        if self.offset_days < 0:
            raise InvalidWindowConfigError(f"Window offset must be non-negative (got {self.offset_days} days)")
        # Frozen dataclass: fill derived defaults through object.__setattr__
        if not self.label:
            object.__setattr__(self, "label", _window_label(self.days))
        if not self.key:
            object.__setattr__(self, "key", _window_key(self.days, self.offset_days))

    @property
    def duration(self) -> timedelta:
        return timedelta(days=self.days)

    @property
    def offset(self) -> timedelta:
        return timedelta(days=self.offset_days)


DEFAULT_WINDOWS = (
    Window(days=1),
    Window(days=7),
    Window(days=30),
    Window(days=365),
)


@dataclass(frozen=True)
class MetricThresholdConfig:
    """Default degraded/poor thresholds applied to newly registered agents."""

    degraded: float
    poor: float


DEFAULT_THRESHOLDS: dict[str, MetricThresholdConfig] = {
    "rtt": MetricThresholdConfig(degraded=100, poor=250),
    "loss": MetricThresholdConfig(degraded=2, poor=10),
    "jitter": MetricThresholdConfig(degraded=30, poor=50),
    "dns_time": MetricThresholdConfig(degraded=300, poor=800),
    "http_time": MetricThresholdConfig(degraded=1.0, poor=2.5),
    "download": MetricThresholdConfig(degraded=60, poor=30),
    "upload": MetricThresholdConfig(degraded=20, poor=5),
}


def validate_threshold(metric: str, degraded: float, poor: float) -> None:
    """Check a degraded/poor pair against the metric's polarity.

    Raises:
        ValueError: If the pair is negative or ordered the wrong way.
    """
    if metric not in METRIC_NAMES:
        raise ValueError(f"Unknown metric '{metric}'. Must be one of: {METRIC_NAMES}")
    if degraded < 0 or poor < 0:
        raise ValueError(f"Thresholds for '{metric}' must be non-negative (got {degraded}/{poor})")
    if metric in HIGHER_IS_WORSE_METRICS and not degraded < poor:
        raise ValueError(f"Degraded threshold for '{metric}' must be below poor ({degraded} >= {poor})")
    if metric in LOWER_IS_WORSE_METRICS and not degraded > poor:
        raise ValueError(f"Degraded threshold for '{metric}' must be above poor ({degraded} <= {poor})")


@dataclass(frozen=True)
class SlaConfig:
    """Configuration for SLA windows and compliance policy."""

    windows: tuple[Window, ...] = DEFAULT_WINDOWS
    default_target_percentage: float = 99.5
    breach_policy: str = "poor"  # "poor": only Poor breaks SLA, "degraded": Degraded too
    use_stored_met_flag: bool = True  # trust the agent-reported flag over recomputation
    fleet_window_days: int = 30

    def __post_init__(self) -> None:
        if not self.windows:
            raise InvalidWindowConfigError("At least one SLA window must be configured")
        keys = [w.key for w in self.windows]
        duplicates = {k for k in keys if keys.count(k) > 1}
        if duplicates:
            raise InvalidWindowConfigError(f"Duplicate SLA windows found: {duplicates}")
        if not (0 <= self.default_target_percentage <= 100):
            raise ConfigError(
                f"Default SLA target must be between 0 and 100 (got {self.default_target_percentage})"
            )
        if self.breach_policy not in BREACH_POLICIES:
            raise ConfigError(f"Invalid breach_policy '{self.breach_policy}'. Must be one of: {BREACH_POLICIES}")
        if self.fleet_window_days <= 0:
            raise InvalidWindowConfigError(f"Fleet window must be positive (got {self.fleet_window_days} days)")

    @property
    def fleet_window(self) -> Window:
        return Window(days=self.fleet_window_days)


@dataclass(frozen=True)
class LivenessConfig:
    """Configuration for agent staleness detection."""

    expected_interval_minutes: int = 15  # agents report once per interval
    stale_margin_minutes: int = 5  # grace on top of the interval before "stale"
    grace_multiple: float = 2.0  # beyond this multiple of the online threshold: offline

    def __post_init__(self) -> None:
        if self.expected_interval_minutes < 1:
            raise ConfigError(
                f"Expected reporting interval must be at least 1 minute (got {self.expected_interval_minutes})"
            )
        if self.stale_margin_minutes < 0:
            raise ConfigError(f"Stale margin must be non-negative (got {self.stale_margin_minutes})")
        if self.grace_multiple < 1:
            raise ConfigError(f"Grace multiple must be at least 1 (got {self.grace_multiple})")

    @property
    def expected_interval(self) -> timedelta:
        return timedelta(minutes=self.expected_interval_minutes)

    @property
    def stale_margin(self) -> timedelta:
        return timedelta(minutes=self.stale_margin_minutes)


@dataclass(frozen=True)
class ChartConfig:
    """Configuration for chart series length."""

    raw_points: int = 48  # recent individual checks in the fine-grained charts
    max_buckets: int = 96  # upper bound on bucketed points
    trend_days: int = 30  # default lookback for fleet trends and bucketed charts

    def __post_init__(self) -> None:
        if self.raw_points < 1:
            raise ConfigError(f"Chart raw_points must be at least 1 (got {self.raw_points})")
        if self.max_buckets < 1:
            raise ConfigError(f"Chart max_buckets must be at least 1 (got {self.max_buckets})")
        if self.trend_days < 1:
            raise ConfigError(f"Chart trend_days must be at least 1 (got {self.trend_days})")


def _get_default_db_path() -> str:
    """Get the default database path using XDG-compliant directory."""
    home = Path.home()
    return str(home / ".local" / "share" / "slastatus" / "sla.db")


DEFAULT_DB_PATH = _get_default_db_path()


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for the SQLite check store."""

    path: str = DEFAULT_DB_PATH

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Database path cannot be empty")


@dataclass(frozen=True)
class ApiConfig:
    """Configuration for JSON API server."""

    enabled: bool = True
    port: int = 8080
    request_timeout_seconds: float = 10.0  # per-request deadline passed to store reads
    refresh_interval_ms: int = 60000  # suggested dashboard refresh

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"API port must be between 1 and 65535, got {self.port}")
        if self.request_timeout_seconds <= 0:
            raise ConfigError(f"API request timeout must be positive, got {self.request_timeout_seconds}")
        if self.refresh_interval_ms < 1000:
            raise ConfigError(f"Dashboard refresh interval must be at least 1000ms, got {self.refresh_interval_ms}")


@dataclass(frozen=True)
class CacheConfig:
    """Configuration for the optional report cache (0 disables it)."""

    ttl_seconds: int = 0

    def __post_init__(self) -> None:
        if self.ttl_seconds < 0:
            raise ConfigError(f"Cache ttl_seconds must be non-negative, got {self.ttl_seconds}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    sla: SlaConfig = field(default_factory=SlaConfig)
    liveness: LivenessConfig = field(default_factory=LivenessConfig)
    charts: ChartConfig = field(default_factory=ChartConfig)
    thresholds: dict[str, MetricThresholdConfig] = field(default_factory=lambda: dict(DEFAULT_THRESHOLDS))
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    def __post_init__(self) -> None:
        for metric, threshold in self.thresholds.items():
            try:
                validate_threshold(metric, threshold.degraded, threshold.poor)
            except ValueError as e:
                raise ConfigError(str(e))


def _parse_windows(data: dict | list | None) -> tuple[Window, ...]:
    """Parse the SLA window definitions.

    Accepts a mapping of label to day count::

        windows:
          Last 24 Hours: 1
          Last Week: 7

    or a list of entries with ``days`` and optional ``label``/``offset_days``.
    """
    if data is None:
        return DEFAULT_WINDOWS

    windows: list[Window] = []
    if isinstance(data, dict):
        for label, days in data.items():
            windows.append(Window(days=_as_int(days, f"sla.windows '{label}'"), label=str(label)))
    elif isinstance(data, list):
        for i, entry in enumerate(data):
            if not isinstance(entry, dict):
                raise ConfigError(f"Window entry {i} must be a dictionary")
            if "days" not in entry:
                raise ConfigError(f"Window entry {i} is missing 'days' field")
            windows.append(
                Window(
                    days=_as_int(entry["days"], f"window entry {i}"),
                    label=str(entry.get("label", "")),
                    offset_days=_as_int(entry.get("offset_days", 0), f"window entry {i} offset"),
                )
            )
    else:
        raise ConfigError("'sla.windows' must be a dictionary or a list")

    return tuple(windows)


def _as_int(value: object, what: str) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise InvalidWindowConfigError(f"Invalid day count for {what}: {value!r}")


def _parse_sla_config(data: dict | None) -> SlaConfig:
    """Parse SLA configuration section."""
    if data is None:
        return SlaConfig()
    if not isinstance(data, dict):
        raise ConfigError("'sla' section must be a dictionary")

    return SlaConfig(
        windows=_parse_windows(data.get("windows")),
        default_target_percentage=float(data.get("default_target_percentage", 99.5)),
        breach_policy=str(data.get("breach_policy", "poor")),
        use_stored_met_flag=bool(data.get("use_stored_met_flag", True)),
        fleet_window_days=int(data.get("fleet_window_days", 30)),
    )


def _parse_liveness_config(data: dict | None) -> LivenessConfig:
    """Parse liveness configuration section."""
    if data is None:
        return LivenessConfig()
    if not isinstance(data, dict):
        raise ConfigError("'liveness' section must be a dictionary")

    return LivenessConfig(
        expected_interval_minutes=int(data.get("expected_interval_minutes", 15)),
        stale_margin_minutes=int(data.get("stale_margin_minutes", 5)),
        grace_multiple=float(data.get("grace_multiple", 2.0)),
    )


def _parse_chart_config(data: dict | None) -> ChartConfig:
    """Parse charts configuration section."""
    if data is None:
        return ChartConfig()
    if not isinstance(data, dict):
        raise ConfigError("'charts' section must be a dictionary")

    return ChartConfig(
        raw_points=int(data.get("raw_points", 48)),
        max_buckets=int(data.get("max_buckets", 96)),
        trend_days=int(data.get("trend_days", 30)),
    )


def _parse_thresholds(data: dict | None) -> dict[str, MetricThresholdConfig]:
    """Parse default thresholds, merging partial entries over the defaults."""
    thresholds = dict(DEFAULT_THRESHOLDS)
    if data is None:
        return thresholds
    if not isinstance(data, dict):
        raise ConfigError("'thresholds' section must be a dictionary")

    for metric, entry in data.items():
        if metric not in METRIC_NAMES:
            raise ConfigError(f"Unknown threshold metric '{metric}'. Must be one of: {METRIC_NAMES}")
        if not isinstance(entry, dict):
            raise ConfigError(f"Threshold entry '{metric}' must be a dictionary")
        base = thresholds[metric]
        thresholds[metric] = MetricThresholdConfig(
            degraded=float(entry.get("degraded", base.degraded)),
            poor=float(entry.get("poor", base.poor)),
        )
    return thresholds


def _parse_database_config(data: dict | None) -> DatabaseConfig:
    """Parse database configuration section."""
    if data is None:
        return DatabaseConfig()
    if not isinstance(data, dict):
        raise ConfigError("'database' section must be a dictionary")

    return DatabaseConfig(path=str(data.get("path", DEFAULT_DB_PATH)))


def _parse_api_config(data: dict | None) -> ApiConfig:
    """Parse API configuration section."""
    if data is None:
        return ApiConfig()
    if not isinstance(data, dict):
        raise ConfigError("'api' section must be a dictionary")

    return ApiConfig(
        enabled=bool(data.get("enabled", True)),
        port=int(data.get("port", 8080)),
        request_timeout_seconds=float(data.get("request_timeout_seconds", 10.0)),
        refresh_interval_ms=int(data.get("refresh_interval_ms", 60000)),
    )


def _parse_cache_config(data: dict | None) -> CacheConfig:
    """Parse cache configuration section."""
    if data is None:
        return CacheConfig()
    if not isinstance(data, dict):
        raise ConfigError("'cache' section must be a dictionary")

    return CacheConfig(ttl_seconds=int(data.get("ttl_seconds", 0)))


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - SLASTATUS_DB_PATH: Override database.path
    - SLASTATUS_API_PORT: Override api.port
    - SLASTATUS_API_ENABLED: Override api.enabled (true/false)
    - SLASTATUS_EXPECTED_INTERVAL_MINUTES: Override liveness.expected_interval_minutes
    - SLASTATUS_STALE_MARGIN_MINUTES: Override liveness.stale_margin_minutes
    - SLASTATUS_DEFAULT_TARGET: Override sla.default_target_percentage
    """
    for section in ("database", "api", "liveness", "sla"):
        if config_data.get(section) is None:
            config_data[section] = {}

    db_path = os.environ.get("SLASTATUS_DB_PATH")
    if db_path is not None:
        config_data["database"]["path"] = db_path

    api_port = os.environ.get("SLASTATUS_API_PORT")
    if api_port is not None:
        config_data["api"]["port"] = int(api_port)

    api_enabled = os.environ.get("SLASTATUS_API_ENABLED")
    if api_enabled is not None:
        config_data["api"]["enabled"] = api_enabled.lower() in ("true", "1", "yes")

    interval = os.environ.get("SLASTATUS_EXPECTED_INTERVAL_MINUTES")
    if interval is not None:
        config_data["liveness"]["expected_interval_minutes"] = int(interval)

    margin = os.environ.get("SLASTATUS_STALE_MARGIN_MINUTES")
    if margin is not None:
        config_data["liveness"]["stale_margin_minutes"] = int(margin)

    target = os.environ.get("SLASTATUS_DEFAULT_TARGET")
    if target is not None:
        config_data["sla"]["default_target_percentage"] = float(target)

    return config_data


def load_config(config_path: str | None = None) -> Config:
    """Load and validate configuration from a YAML file.

    Every section is optional. With no path, defaults plus environment
    overrides are returned.

    Args:
        config_path: Path to the YAML configuration file, or None.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    data: dict = {}

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration: {e}")
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}")

        if loaded is not None:
            if not isinstance(loaded, dict):
                raise ConfigError("Configuration must be a YAML dictionary")
            data = loaded

    data = _apply_env_overrides(data)

    try:
        return Config(
            sla=_parse_sla_config(data.get("sla")),
            liveness=_parse_liveness_config(data.get("liveness")),
            charts=_parse_chart_config(data.get("charts")),
            thresholds=_parse_thresholds(data.get("thresholds")),
            database=_parse_database_config(data.get("database")),
            api=_parse_api_config(data.get("api")),
            cache=_parse_cache_config(data.get("cache")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
