"""Report engine: reads the store and runs the SLA components for one request."""

import logging
import sqlite3
from collections import defaultdict
from datetime import UTC, datetime, timedelta

from .charts import Granularity, network_series, speed_series
from .config import Config
from .database import (
    get_latest_record,
    get_latest_record_per_agent,
    get_profile,
    get_records_since,
    get_records_since_all_agents,
    list_active_profiles,
    list_profiles,
    report_cache,
)
from .fleet import FleetSummaryComposer
from .liveness import LivenessClassifier
from .models import (
    AgentProfile,
    AgentReport,
    AgentSummary,
    AgentType,
    CheckRecord,
    DashboardReport,
    FleetSummary,
    IntervalClassification,
    WindowResult,
)
from .thresholds import BreachPolicy, ThresholdEvaluator
from .windows import accumulate_nested

logger = logging.getLogger(__name__)


class ProfileNotFoundError(Exception):
    """Raised when a report is requested for an agent that does not exist."""

    pass


def _later(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


class ReportEngine:
    """Builds agent and fleet reports from the store.

    Stateless apart from configuration: every call reads what it needs
    through the given connection, so one engine can serve concurrent
    requests as long as each uses its own connection.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self.evaluator = ThresholdEvaluator(
            breach_policy=BreachPolicy(config.sla.breach_policy),
            use_stored_flag=config.sla.use_stored_met_flag,
        )
        self.liveness = LivenessClassifier(config.liveness)
        self.composer = FleetSummaryComposer(
            evaluator=self.evaluator,
            liveness=self.liveness,
            fleet_window=config.sla.fleet_window,
            target_percentage=config.sla.default_target_percentage,
            trend_days=config.charts.trend_days,
        )
        report_cache.configure(config.cache.ttl_seconds)

    def _window_span(self) -> timedelta:
        """How far back the configured windows reach."""
        return max(w.duration + w.offset for w in self.config.sla.windows)

    def chart_granularity(self, lookback_days: int | None) -> Granularity:
        """Raw points without a lookback, hourly buckets while they fit, daily beyond."""
        if lookback_days is None:
            return Granularity.RAW
        if lookback_days * 24 <= self.config.charts.max_buckets:
            return Granularity.HOUR
        return Granularity.DAY

    def _cache_key(self, *parts: object, now: datetime) -> tuple:
        grain = int(now.timestamp()) // report_cache.ttl_seconds
        windows = tuple(w.key for w in self.config.sla.windows)
        return (*parts, windows, grain)

    def agent_report(
        self,
        conn: sqlite3.Connection,
        agent_id: str,
        now: datetime,
        lookback_days: int | None = None,
        deadline: float | None = None,
    ) -> AgentReport:
        """Build the per-agent report.

        Args:
            conn: Store connection.
            agent_id: Agent to report on.
            now: Reference time all windows are anchored to.
            lookback_days: Chart lookback. None charts the most recent raw
                checks; a number charts bucketed means over that many days.
            deadline: ``time.monotonic()`` value after which reads abort.

        Raises:
            ProfileNotFoundError: If the agent does not exist.
            ValueError: If ``lookback_days`` is not positive.
            DatabaseError: If a store read fails or runs past the deadline.
        """
        if lookback_days is not None and lookback_days <= 0:
            raise ValueError(f"Lookback must be a positive number of days (got {lookback_days})")

        profile = get_profile(conn, agent_id, deadline=deadline)
        if profile is None:
            raise ProfileNotFoundError(f"Agent not found: {agent_id}")

        span = self._window_span()
        if lookback_days is not None:
            span = max(span, timedelta(days=lookback_days))
        records = get_records_since(conn, agent_id, now - span, deadline=deadline)
        latest = get_latest_record(conn, agent_id, deadline=deadline)

        def classify(record: CheckRecord) -> IntervalClassification:
            return self.evaluator.evaluate(record, profile)

        windows = accumulate_nested(
            records,
            self.config.sla.windows,
            now,
            classify,
            profile.sla_target_percentage,
        )

        granularity = self.chart_granularity(lookback_days)
        if granularity is Granularity.RAW:
            chart_records = records
            max_points = self.config.charts.raw_points
        else:
            chart_start = now - timedelta(days=lookback_days)  # type: ignore[arg-type]
            chart_records = [r for r in records if r.timestamp >= chart_start]
            max_points = self.config.charts.max_buckets

        return AgentReport(
            profile=profile,
            liveness=self.liveness.classify(_later(profile.last_seen, latest.timestamp if latest else None), now),
            windows=windows,
            network_chart=network_series(chart_records, granularity, max_points),
            speed_chart=speed_series(chart_records, granularity, max_points),
            latest=latest,
            latest_classification=classify(latest) if latest is not None else None,
        )

    def _window_results_by_agent(
        self,
        profiles: list[AgentProfile],
        records: list[CheckRecord],
        now: datetime,
    ) -> dict[str, dict[str, WindowResult]]:
        by_agent: dict[str, list[CheckRecord]] = defaultdict(list)
        for record in records:
            by_agent[record.agent_id].append(record)

        results: dict[str, dict[str, WindowResult]] = {}
        for profile in profiles:
            results[profile.agent_id] = accumulate_nested(
                by_agent.get(profile.agent_id, []),
                self.config.sla.windows,
                now,
                lambda r, p=profile: self.evaluator.evaluate(r, p),
                profile.sla_target_percentage,
            )
        return results

    def fleet_report(
        self,
        conn: sqlite3.Connection,
        now: datetime,
        lookback_days: int | None = None,
        segment: AgentType | None = None,
        deadline: float | None = None,
    ) -> FleetSummary:
        """Build the fleet summary over active agents.

        Args:
            conn: Store connection.
            now: Reference time.
            lookback_days: Days covered by the daily trend (defaults to
                the configured ``charts.trend_days``).
            segment: Restrict the summary to one agent type.
            deadline: ``time.monotonic()`` value after which reads abort.

        Raises:
            ValueError: If ``lookback_days`` is not positive.
            DatabaseError: If a store read fails or runs past the deadline.
        """
        if lookback_days is not None and lookback_days <= 0:
            raise ValueError(f"Lookback must be a positive number of days (got {lookback_days})")

        trend_days = lookback_days or self.config.charts.trend_days
        span = max(
            self._window_span(),
            self.config.sla.fleet_window.duration,
            timedelta(days=trend_days),
        )

        profiles = [p for p in list_active_profiles(conn, deadline=deadline) if segment is None or p.agent_type is segment]
        latest = get_latest_record_per_agent(conn, active_only=True, deadline=deadline)
        records = get_records_since_all_agents(conn, now - span, segment=segment, active_only=True, deadline=deadline)

        logger.debug("Fleet report over %d agents and %d records", len(profiles), len(records))

        return self.composer.summarize(
            profiles=profiles,
            latest_records=latest,
            window_results=self._window_results_by_agent(profiles, records, now),
            records=records,
            now=now,
            segment_filter=segment,
            trend_days=trend_days,
        )

    def profile_listing(
        self,
        conn: sqlite3.Connection,
        now: datetime,
        include_inactive: bool = False,
        deadline: float | None = None,
    ) -> list[AgentSummary]:
        """Agents with their liveness, ordered by type then name."""
        if include_inactive:
            profiles = list_profiles(conn, deadline=deadline)
        else:
            profiles = list_active_profiles(conn, deadline=deadline)
        latest = get_latest_record_per_agent(conn, active_only=not include_inactive, deadline=deadline)

        listing = []
        for profile in sorted(profiles, key=lambda p: (p.agent_type.value, p.name.lower())):
            record = latest.get(profile.agent_id)
            last_seen = _later(profile.last_seen, record.timestamp if record else None)
            listing.append(AgentSummary(profile=profile, liveness=self.liveness.classify(last_seen, now), latest=record))
        return listing

    def dashboard(
        self,
        conn: sqlite3.Connection,
        now: datetime | None = None,
        agent_id: str | None = None,
        lookback_days: int | None = None,
        segment: AgentType | None = None,
        deadline: float | None = None,
    ) -> DashboardReport:
        """Answer one dashboard request: agent mode when ``agent_id`` is given, fleet mode otherwise.

        ``segment`` restricts fleet mode to one agent type; it is ignored in
        agent mode.

        Raises:
            ProfileNotFoundError: If ``agent_id`` names no agent.
            ValueError: If ``lookback_days`` is not positive.
            DatabaseError: If a store read fails or runs past the deadline.
        """
        now = now or datetime.now(UTC)

        cache_key = None
        if report_cache.enabled:
            cache_key = self._cache_key(
                "dashboard",
                agent_id,
                segment.value if segment else None,
                self.chart_granularity(lookback_days).value,
                lookback_days,
                now=now,
            )
            cached = report_cache.get(cache_key)
            if cached is not None:
                logger.debug("Report cache hit for %s", cache_key)
                return cached

        profiles = self.profile_listing(conn, now, deadline=deadline)

        agent_report = None
        fleet_summary = None
        if agent_id is not None:
            agent_report = self.agent_report(conn, agent_id, now, lookback_days, deadline=deadline)
            records = get_records_since_all_agents(
                conn, now - self.config.sla.fleet_window.duration, active_only=True, deadline=deadline
            )
            segments = self.composer.segment_results([s.profile for s in profiles], records, now)
        else:
            fleet_summary = self.fleet_report(conn, now, lookback_days, segment=segment, deadline=deadline)
            segments = fleet_summary.segments

        report = DashboardReport(
            generated_at=now,
            profiles=profiles,
            segments=segments,
            refresh_interval_ms=self.config.api.refresh_interval_ms,
            agent=agent_report,
            fleet=fleet_summary,
        )
        if cache_key is not None:
            report_cache.set(cache_key, report)
        return report

