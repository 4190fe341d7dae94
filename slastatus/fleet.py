"""Fleet-wide SLA summary across agents and segments."""

import logging
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta

from .charts import NETWORK_FIELDS, Granularity, mean, truncate
from .config import Window
from .liveness import LivenessClassifier
from .models import (
    AgentProfile,
    AgentSummary,
    AgentType,
    ChartPoint,
    CheckRecord,
    FleetSummary,
    IntervalClassification,
    IntervalStatus,
    LivenessState,
    WindowResult,
)
from .thresholds import ThresholdEvaluator
from .windows import accumulate, achieved_percentage

logger = logging.getLogger(__name__)

ALL_SEGMENT = "all"


class _MemoClassifier:
    """Classifies each (agent, timestamp) once against the owning agent's profile."""

    def __init__(self, evaluator: ThresholdEvaluator, profiles: Mapping[str, AgentProfile]) -> None:
        self._evaluator = evaluator
        self._profiles = profiles
        self._cache: dict[tuple[str, datetime], IntervalClassification] = {}

    def __call__(self, record: CheckRecord) -> IntervalClassification:
        key = (record.agent_id, record.timestamp)
        cached = self._cache.get(key)
        if cached is None:
            cached = self._evaluator.evaluate(record, self._profiles[record.agent_id])
            self._cache[key] = cached
        return cached


class FleetSummaryComposer:
    """Combines per-agent results into a fleet view.

    Segment compliance is computed from the union of the segment's records,
    never by averaging per-agent percentages, so agents with more intervals
    weigh proportionally more.
    """

    def __init__(
        self,
        evaluator: ThresholdEvaluator,
        liveness: LivenessClassifier,
        fleet_window: Window,
        target_percentage: float,
        trend_days: int = 30,
    ) -> None:
        self.evaluator = evaluator
        self.liveness = liveness
        self.fleet_window = fleet_window
        self.target_percentage = target_percentage
        self.trend_days = trend_days

    def summarize(
        self,
        profiles: Sequence[AgentProfile],
        latest_records: Mapping[str, CheckRecord],
        window_results: Mapping[str, dict[str, WindowResult]],
        records: Iterable[CheckRecord],
        now: datetime,
        segment_filter: AgentType | None = None,
        trend_days: int | None = None,
    ) -> FleetSummary:
        """Build the fleet summary.

        Args:
            profiles: Agents to include (normally the active ones).
            latest_records: Agent id -> most recent check record.
            window_results: Agent id -> per-window results for that agent.
            records: Check records for the agents, covering at least the fleet
                window and the trend period. Records of agents not in
                ``profiles`` are ignored.
            now: Reference time.
            segment_filter: Restrict the summary to one agent type.
            trend_days: Days covered by the daily trend (defaults to the
                composer's ``trend_days``).

        Returns:
            FleetSummary for the selected agents.
        """
        selected = [p for p in profiles if segment_filter is None or p.agent_type is segment_filter]
        selected.sort(key=lambda p: (p.agent_type.value, p.name.lower()))
        by_id = {p.agent_id: p for p in selected}
        classify = _MemoClassifier(self.evaluator, by_id)

        candidates = [r for r in records if r.agent_id in by_id]

        agents = [
            self._agent_summary(profile, latest_records.get(profile.agent_id), window_results, classify, now)
            for profile in selected
        ]

        liveness_counts = {state.value: 0 for state in LivenessState}
        for agent in agents:
            liveness_counts[agent.liveness.value] += 1

        return FleetSummary(
            agents=agents,
            segments=self._segments(candidates, by_id, classify, now, segment_filter),
            trend=self.daily_trend(candidates, classify, now, trend_days),
            liveness_counts=liveness_counts,
            segment_filter=segment_filter,
        )

    def _agent_summary(
        self,
        profile: AgentProfile,
        latest: CheckRecord | None,
        window_results: Mapping[str, dict[str, WindowResult]],
        classify: _MemoClassifier,
        now: datetime,
    ) -> AgentSummary:
        last_seen = profile.last_seen
        if latest is not None and (last_seen is None or latest.timestamp > last_seen):
            last_seen = latest.timestamp

        return AgentSummary(
            profile=profile,
            liveness=self.liveness.classify(last_seen, now),
            latest=latest,
            latest_status=classify(latest).status if latest is not None else None,
            windows=dict(window_results.get(profile.agent_id, {})),
        )

    def segment_results(
        self,
        profiles: Sequence[AgentProfile],
        records: Iterable[CheckRecord],
        now: datetime,
        segment_filter: AgentType | None = None,
    ) -> dict[str, WindowResult]:
        """Segment compliance over the fleet window, without per-agent entries."""
        by_id = {p.agent_id: p for p in profiles if segment_filter is None or p.agent_type is segment_filter}
        classify = _MemoClassifier(self.evaluator, by_id)
        candidates = [r for r in records if r.agent_id in by_id]
        return self._segments(candidates, by_id, classify, now, segment_filter)

    def _segments(
        self,
        records: list[CheckRecord],
        profiles: Mapping[str, AgentProfile],
        classify: _MemoClassifier,
        now: datetime,
        segment_filter: AgentType | None,
    ) -> dict[str, WindowResult]:
        segment_types = [segment_filter] if segment_filter is not None else list(AgentType)

        segments: dict[str, WindowResult] = {}
        if segment_filter is None:
            segments[ALL_SEGMENT] = self._segment_result(records, classify, now)
        for agent_type in segment_types:
            members = [r for r in records if profiles[r.agent_id].agent_type is agent_type]
            segments[agent_type.value] = self._segment_result(members, classify, now)
        return segments

    def _segment_result(self, records: list[CheckRecord], classify: _MemoClassifier, now: datetime) -> WindowResult:
        results = accumulate(records, [self.fleet_window], now, classify, self.target_percentage)
        return results[self.fleet_window.key]

    def daily_trend(
        self,
        records: Iterable[CheckRecord],
        classify: _MemoClassifier,
        now: datetime,
        trend_days: int | None = None,
    ) -> list[ChartPoint]:
        """One point per UTC day with daily and running compliance.

        Each point carries ``total_intervals``, ``met_intervals``,
        ``achieved_percentage`` (None on a day with no known intervals),
        ``cumulative_percentage`` (running compliance from the first day of
        the series) and the mean network metrics for the day.
        """
        cutoff = now - timedelta(days=trend_days or self.trend_days)
        days: dict[datetime, list[CheckRecord]] = {}
        seen: set[tuple[str, datetime]] = set()
        for record in records:
            key = (record.agent_id, record.timestamp)
            if key in seen or record.timestamp < cutoff:
                continue
            seen.add(key)
            days.setdefault(truncate(record.timestamp, Granularity.DAY), []).append(record)

        trend: list[ChartPoint] = []
        running_total = running_met = 0
        for day in sorted(days):
            members = days[day]
            total = met = 0
            for record in members:
                status = classify(record).status
                if status is IntervalStatus.UNKNOWN:
                    continue
                total += 1
                if status is IntervalStatus.MET:
                    met += 1
            running_total += total
            running_met += met

            values: dict[str, float | None] = {
                "total_intervals": float(total),
                "met_intervals": float(met),
                "achieved_percentage": achieved_percentage(met, total) if total else None,
                "cumulative_percentage": achieved_percentage(running_met, running_total) if running_total else None,
            }
            for f in NETWORK_FIELDS:
                values[f] = mean([getattr(r, f) for r in members if getattr(r, f) is not None])

            trend.append(ChartPoint(timestamp=day, values=values, count=len(members)))

        return trend
