"""Per-interval SLA classification against an agent's thresholds."""

import logging
from dataclasses import dataclass
from enum import Enum

from .models import (
    AgentProfile,
    CheckRecord,
    IntervalClassification,
    IntervalStatus,
    MetricStatus,
    MetricThreshold,
)

logger = logging.getLogger(__name__)


class BreachPolicy(Enum):
    """Which metric status breaks SLA compliance for an interval."""

    POOR_ONLY = "poor"  # Degraded is advisory, only Poor is a breach
    DEGRADED_OR_WORSE = "degraded"


DEFAULT_BREACH_POLICY = BreachPolicy.POOR_ONLY


@dataclass(frozen=True)
class Metric:
    """A measured dimension: threshold name, record attribute and polarity."""

    name: str
    field: str
    higher_is_worse: bool
    needs_speedtest: bool = False


METRICS = (
    Metric("rtt", "avg_rtt_ms", higher_is_worse=True),
    Metric("loss", "avg_loss_percent", higher_is_worse=True),
    Metric("jitter", "avg_jitter_ms", higher_is_worse=True),
    Metric("dns_time", "dns_resolve_time_ms", higher_is_worse=True),
    Metric("http_time", "http_total_time_s", higher_is_worse=True),
    Metric("download", "speedtest_download_mbps", higher_is_worse=False, needs_speedtest=True),
    Metric("upload", "speedtest_upload_mbps", higher_is_worse=False, needs_speedtest=True),
)

# Connectivity values meaning the agent could not reach the network at all.
FAILED_CONNECTIVITY = frozenset({"DISCONNECTED", "DOWN", "FAILED", "FAILURE", "OFFLINE", "ERROR"})


def classify_value(value: float, threshold: MetricThreshold, higher_is_worse: bool) -> MetricStatus:
    """Classify one measured value against a degraded/poor pair.

    Values exactly on a threshold stay in the better tier.
    """
    if higher_is_worse:
        if value > threshold.poor:
            return MetricStatus.POOR
        if value > threshold.degraded:
            return MetricStatus.DEGRADED
        return MetricStatus.GOOD

    if value < threshold.poor:
        return MetricStatus.POOR
    if value < threshold.degraded:
        return MetricStatus.DEGRADED
    return MetricStatus.GOOD


def is_connectivity_failed(value: str | None) -> bool:
    return value is not None and value.strip().upper() in FAILED_CONNECTIVITY


def has_measurement(record: CheckRecord, profile: AgentProfile) -> bool:
    """True if the record carries connectivity or a metric the profile has a threshold for."""
    if record.overall_connectivity is not None:
        return True
    for metric in METRICS:
        if metric.needs_speedtest and not record.speedtest_completed:
            continue
        if metric.name in profile.thresholds and getattr(record, metric.field) is not None:
            return True
    return False


class ThresholdEvaluator:
    """Classifies check records against agent threshold profiles.

    The combined decision is: an interval is met iff connectivity was not
    explicitly failed and no evaluated metric reaches the breach level set
    by ``breach_policy``. An interval where nothing was measured is
    Unknown and takes no part in SLA accounting.

    When ``use_stored_flag`` is set, the flag the agent reported is the
    authoritative status (so dashboards agree with what agents reported);
    the recomputed value is still attached to the classification for
    cross-checking.
    """

    def __init__(
        self,
        breach_policy: BreachPolicy = DEFAULT_BREACH_POLICY,
        use_stored_flag: bool = True,
    ) -> None:
        self.breach_policy = breach_policy
        self.use_stored_flag = use_stored_flag

    def _breaches(self, status: MetricStatus) -> bool:
        if status is MetricStatus.POOR:
            return True
        return status is MetricStatus.DEGRADED and self.breach_policy is BreachPolicy.DEGRADED_OR_WORSE

    def classify_metrics(self, record: CheckRecord, profile: AgentProfile) -> dict[str, MetricStatus]:
        """Classify every present metric that has a threshold in the profile."""
        statuses: dict[str, MetricStatus] = {}
        for metric in METRICS:
            if metric.needs_speedtest and not record.speedtest_completed:
                continue
            value = getattr(record, metric.field)
            if value is None:
                continue
            threshold = profile.thresholds.get(metric.name)
            if threshold is None:
                continue
            statuses[metric.name] = classify_value(value, threshold, metric.higher_is_worse)
        return statuses

    def evaluate(self, record: CheckRecord, profile: AgentProfile) -> IntervalClassification:
        """Classify a record for SLA purposes.

        Args:
            record: The check record to classify.
            profile: The owning agent's profile.

        Returns:
            IntervalClassification with per-metric statuses and the combined status.
        """
        metrics = self.classify_metrics(record, profile)
        connectivity_failed = is_connectivity_failed(record.overall_connectivity)

        if not has_measurement(record, profile):
            return IntervalClassification(
                status=IntervalStatus.UNKNOWN,
                stored_met=record.sla_met,
            )

        computed_met = not connectivity_failed and not any(self._breaches(s) for s in metrics.values())

        met = computed_met
        if self.use_stored_flag and record.sla_met is not None:
            met = record.sla_met
            if met != computed_met:
                logger.debug(
                    "Stored SLA flag for %s at %s disagrees with thresholds (stored=%s, computed=%s)",
                    record.agent_id,
                    record.timestamp,
                    met,
                    computed_met,
                )

        return IntervalClassification(
            status=IntervalStatus.MET if met else IntervalStatus.NOT_MET,
            metrics=metrics,
            connectivity_failed=connectivity_failed,
            computed_met=computed_met,
            stored_met=record.sla_met,
        )
