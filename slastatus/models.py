"""Data models for agent profiles, check records and SLA results."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .config import METRIC_NAMES, validate_threshold


class AgentType(Enum):
    """Fleet segment an agent belongs to."""

    ISP = "ISP"
    CLIENT = "Client"

    @classmethod
    def parse(cls, value: str | None) -> "AgentType":
        """Parse a reported agent type, defaulting to Client for anything unknown."""
        for member in cls:
            if value == member.value:
                return member
        return cls.CLIENT


class MetricStatus(Enum):
    """Per-dimension classification of a single check."""

    GOOD = "good"
    DEGRADED = "degraded"
    POOR = "poor"


class IntervalStatus(Enum):
    """Combined SLA status of one reporting interval."""

    MET = "met"
    NOT_MET = "not_met"
    UNKNOWN = "unknown"  # nothing measured: excluded from SLA totals


class LivenessState(Enum):
    """Reporting liveness derived from time since last report."""

    ONLINE = "online"
    STALE = "stale"
    OFFLINE = "offline"


@dataclass(frozen=True)
class MetricThreshold:
    """Degraded/poor threshold pair for one metric."""

    degraded: float
    poor: float


@dataclass(frozen=True)
class AgentProfile:
    """Identity and SLA configuration for one monitored agent.

    Attributes:
        agent_id: Stable unique identifier reported by the agent.
        name: Display name.
        agent_type: Fleet segment (ISP or Client).
        is_active: Inactive agents are hidden from fleet views.
        thresholds: Metric name -> threshold pair. Metrics without an entry
            are not evaluated for this agent.
        sla_target_percentage: Target compliance percentage (0-100).
        last_seen: Timestamp of the most recent report, or None if never seen.
        hostname: Last hostname the agent reported, if any.
        source_ip: Last source IP the agent reported from, if any.
    """

    agent_id: str
    name: str
    agent_type: AgentType = AgentType.CLIENT
    is_active: bool = True
    thresholds: dict[str, MetricThreshold] = field(default_factory=dict)
    sla_target_percentage: float = 99.5
    last_seen: datetime | None = None
    hostname: str | None = None
    source_ip: str | None = None

    def __post_init__(self) -> None:
        if not self.agent_id:
            raise ValueError("Agent identifier cannot be empty")
        for metric, threshold in self.thresholds.items():
            if metric not in METRIC_NAMES:
                raise ValueError(f"Unknown threshold metric '{metric}' for agent '{self.agent_id}'")
            validate_threshold(metric, threshold.degraded, threshold.poor)


@dataclass(frozen=True)
class CheckRecord:
    """One reporting interval's measurements for one agent.

    Every measurement is optional: None means the probe did not run or
    failed, which is not the same as a measured zero.
    """

    agent_id: str
    timestamp: datetime
    overall_connectivity: str | None = None
    avg_rtt_ms: float | None = None
    avg_loss_percent: float | None = None
    avg_jitter_ms: float | None = None
    dns_status: str | None = None
    dns_resolve_time_ms: float | None = None
    http_status: str | None = None
    http_response_code: int | None = None
    http_total_time_s: float | None = None
    speedtest_status: str | None = None
    speedtest_download_mbps: float | None = None
    speedtest_upload_mbps: float | None = None
    speedtest_ping_ms: float | None = None
    speedtest_jitter_ms: float | None = None
    detailed_health_summary: str | None = None
    sla_met: bool | None = None  # flag reported by the agent, if any
    agent_type: AgentType | None = None  # segment tag on fleet-wide reads

    @property
    def speedtest_completed(self) -> bool:
        return self.speedtest_status is not None and self.speedtest_status.upper() == "COMPLETED"


@dataclass(frozen=True)
class IntervalClassification:
    """Result of evaluating one check record against a profile.

    Attributes:
        status: Authoritative interval status used for SLA accounting.
        metrics: Metric name -> status for every metric that was present.
        connectivity_failed: True if the record explicitly reported no connectivity.
        computed_met: Recomputed met flag, or None when the interval is Unknown.
        stored_met: Flag supplied by the agent, if any.
    """

    status: IntervalStatus
    metrics: dict[str, MetricStatus] = field(default_factory=dict)
    connectivity_failed: bool = False
    computed_met: bool | None = None
    stored_met: bool | None = None

    @property
    def is_met(self) -> bool:
        return self.status is IntervalStatus.MET

    @property
    def is_unknown(self) -> bool:
        return self.status is IntervalStatus.UNKNOWN

    @property
    def disagrees(self) -> bool:
        """True when the agent's flag and the recomputed flag differ."""
        if self.stored_met is None or self.computed_met is None:
            return False
        return self.stored_met != self.computed_met

    @property
    def worst(self) -> MetricStatus | None:
        """Worst per-metric status, or None if no metric was evaluated."""
        if MetricStatus.POOR in self.metrics.values():
            return MetricStatus.POOR
        if MetricStatus.DEGRADED in self.metrics.values():
            return MetricStatus.DEGRADED
        if self.metrics:
            return MetricStatus.GOOD
        return None


@dataclass(frozen=True)
class WindowResult:
    """SLA compliance over one window.

    Attributes:
        key: Stable window key (e.g. ``last_7_days``).
        label: Human label (e.g. ``Last 7 Days``).
        total_intervals: Intervals with a known status inside the window.
        met_intervals: Intervals that met the SLA.
        achieved_percentage: met/total as a percentage, rounded to 2 places;
            0.0 when there are no intervals.
        target_percentage: SLA target the result is compared against.
        is_target_met: True if there were intervals and the target was reached.
    """

    key: str
    label: str
    total_intervals: int
    met_intervals: int
    achieved_percentage: float
    target_percentage: float
    is_target_met: bool


@dataclass(frozen=True)
class ChartPoint:
    """One point of a chart series.

    Attributes:
        timestamp: Bucket start (or record timestamp in raw mode).
        values: Field name -> mean of the present values, or None if the
            field was absent from every contributing record.
        count: Number of records contributing to the point.
    """

    timestamp: datetime
    values: dict[str, float | None]
    count: int = 1


@dataclass(frozen=True)
class AgentSummary:
    """Fleet view entry for a single agent."""

    profile: AgentProfile
    liveness: LivenessState
    latest: CheckRecord | None = None
    latest_status: IntervalStatus | None = None
    windows: dict[str, WindowResult] = field(default_factory=dict)


@dataclass(frozen=True)
class FleetSummary:
    """Fleet-wide SLA view.

    Attributes:
        agents: One entry per active agent, ordered by type then name.
        segments: Segment name ("all", "ISP", "Client") -> compliance over
            the fleet window, computed from the union of the segment's records.
        trend: One point per UTC day, ascending.
        liveness_counts: Liveness state value -> number of agents.
        segment_filter: Segment the summary was restricted to, if any.
    """

    agents: list[AgentSummary]
    segments: dict[str, WindowResult]
    trend: list[ChartPoint]
    liveness_counts: dict[str, int]
    segment_filter: AgentType | None = None


@dataclass(frozen=True)
class AgentReport:
    """Everything the dashboard shows for one selected agent."""

    profile: AgentProfile
    liveness: LivenessState
    windows: dict[str, WindowResult]
    network_chart: list[ChartPoint]
    speed_chart: list[ChartPoint]
    latest: CheckRecord | None = None
    latest_classification: IntervalClassification | None = None


@dataclass(frozen=True)
class DashboardReport:
    """Response to one dashboard request.

    Exactly one of ``agent`` (agent mode) and ``fleet`` (fleet mode) is set.
    ``segments`` always holds the fleet-wide segment percentages.
    """

    generated_at: datetime
    profiles: list[AgentSummary]
    segments: dict[str, WindowResult]
    refresh_interval_ms: int
    agent: AgentReport | None = None
    fleet: FleetSummary | None = None
