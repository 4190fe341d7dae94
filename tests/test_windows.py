"""Tests for the windows module."""

from datetime import UTC, datetime, timedelta

import pytest

from slastatus.config import DEFAULT_WINDOWS, Window
from slastatus.models import CheckRecord, IntervalClassification, IntervalStatus
from slastatus.windows import (
    accumulate,
    accumulate_nested,
    achieved_percentage,
    is_nested,
    window_bounds,
)

NOW = datetime(2024, 1, 10, 0, 0, 0, tzinfo=UTC)


def _record(timestamp: datetime, met: bool | None, agent_id: str = "agent-1") -> CheckRecord:
    """Record whose classification is carried in sla_met (None means Unknown)."""
    return CheckRecord(agent_id=agent_id, timestamp=timestamp, sla_met=met)


def classify(record: CheckRecord) -> IntervalClassification:
    """Classify from the sla_met flag alone."""
    if record.sla_met is None:
        return IntervalClassification(status=IntervalStatus.UNKNOWN)
    return IntervalClassification(status=IntervalStatus.MET if record.sla_met else IntervalStatus.NOT_MET)


class TestAchievedPercentage:
    """Tests for achieved_percentage function."""

    def test_zero_total(self) -> None:
        """No intervals means 0.0, not a division error."""
        assert achieved_percentage(0, 0) == 0.0

    def test_rounds_to_two_places(self) -> None:
        """Percentages are rounded to 2 decimal places."""
        assert achieved_percentage(2, 3) == 66.67

    def test_bounds(self) -> None:
        """Percentage stays within 0-100."""
        assert achieved_percentage(0, 5) == 0.0
        assert achieved_percentage(5, 5) == 100.0


class TestAccumulate:
    """Tests for accumulate function."""

    def test_one_day_window_example(self) -> None:
        """Only records inside the last day count: 2 of 2 met."""
        records = [
            _record(datetime(2024, 1, 9, 12, 0, tzinfo=UTC), True),
            _record(datetime(2024, 1, 8, 23, 0, tzinfo=UTC), False),
            _record(datetime(2024, 1, 9, 23, 59, tzinfo=UTC), True),
        ]
        window = Window(days=1)

        result = accumulate(records, [window], NOW, classify, 99.5)["last_1_day"]

        assert result.total_intervals == 2
        assert result.met_intervals == 2
        assert result.achieved_percentage == 100.0
        assert result.is_target_met
        assert result.label == "Last 1 Day"

    def test_empty_window(self) -> None:
        """An empty window is 0.0 and not target-met."""
        result = accumulate([], [Window(days=7)], NOW, classify, 99.5)["last_7_days"]

        assert result.total_intervals == 0
        assert result.achieved_percentage == 0.0
        assert not result.is_target_met

    def test_unknown_intervals_excluded(self) -> None:
        """Unknown intervals count toward neither total nor met."""
        records = [
            _record(NOW - timedelta(hours=1), True),
            _record(NOW - timedelta(hours=2), None),
        ]
        result = accumulate(records, [Window(days=1)], NOW, classify, 99.5)["last_1_day"]

        assert result.total_intervals == 1
        assert result.met_intervals == 1

    def test_boundaries_are_inclusive(self) -> None:
        """Records exactly at the cutoff and at now are counted."""
        records = [
            _record(NOW - timedelta(days=1), False),
            _record(NOW, True),
        ]
        result = accumulate(records, [Window(days=1)], NOW, classify, 50.0)["last_1_day"]

        assert result.total_intervals == 2
        assert result.achieved_percentage == 50.0
        assert result.is_target_met

    def test_clock_skewed_record_counts(self) -> None:
        """A record slightly ahead of now still belongs to the current window."""
        records = [_record(NOW + timedelta(seconds=30), True)]
        result = accumulate(records, [Window(days=1)], NOW, classify, 99.5)["last_1_day"]

        assert result.total_intervals == 1
        assert result.met_intervals == 1

    def test_offset_window_keeps_its_end(self) -> None:
        """An offset window still ends at now minus the offset."""
        window = Window(days=1, offset_days=1)
        records = [_record(NOW, True)]

        assert window_bounds(Window(days=1), NOW) == (NOW - timedelta(days=1), None)
        assert accumulate(records, [window], NOW, classify, 99.5)[window.key].total_intervals == 0

    def test_duplicates_count_once(self) -> None:
        """The same agent and timestamp is counted once, first wins."""
        ts = NOW - timedelta(hours=1)
        records = [_record(ts, True), _record(ts, False)]
        result = accumulate(records, [Window(days=1)], NOW, classify, 99.5)["last_1_day"]

        assert result.total_intervals == 1
        assert result.met_intervals == 1

    def test_order_independent(self) -> None:
        """Shuffled input gives the same result."""
        records = [_record(NOW - timedelta(hours=h), h % 3 != 0) for h in range(48)]
        forward = accumulate(records, DEFAULT_WINDOWS, NOW, classify, 99.5)
        backward = accumulate(list(reversed(records)), DEFAULT_WINDOWS, NOW, classify, 99.5)

        assert forward == backward

    def test_offset_window(self) -> None:
        """An offset window covers the day before yesterday only."""
        records = [
            _record(NOW - timedelta(hours=12), False),
            _record(NOW - timedelta(hours=36), True),
        ]
        window = Window(days=1, offset_days=1)
        result = accumulate(records, [window], NOW, classify, 99.5)[window.key]

        assert window.key == "last_1_day_offset_1"
        assert window_bounds(window, NOW) == (NOW - timedelta(days=2), NOW - timedelta(days=1))
        assert result.total_intervals == 1
        assert result.met_intervals == 1

    def test_results_in_window_order(self) -> None:
        """Result keys follow the order windows were given in."""
        windows = [Window(days=30), Window(days=1), Window(days=7)]
        results = accumulate([], windows, NOW, classify, 99.5)

        assert list(results) == ["last_30_days", "last_1_day", "last_7_days"]


class TestAccumulateNested:
    """Tests for accumulate_nested function."""

    @pytest.fixture
    def records(self) -> list[CheckRecord]:
        """Records spread over 400 days at mixed outcomes."""
        records = []
        for hours in range(0, 400 * 24, 7):
            met = None if hours % 11 == 0 else hours % 5 != 0
            records.append(_record(NOW - timedelta(hours=hours), met))
        # Boundary and clock-skewed records
        records.append(_record(NOW - timedelta(days=7), False))
        records.append(_record(NOW + timedelta(hours=1), True))
        return records

    def test_matches_independent_accumulation(self, records: list[CheckRecord]) -> None:
        """The single-pass path gives the same results as independent windows."""
        nested = accumulate_nested(records, DEFAULT_WINDOWS, NOW, classify, 99.5)
        independent = accumulate(records, DEFAULT_WINDOWS, NOW, classify, 99.5)

        assert nested == independent

    def test_longer_windows_contain_shorter(self, records: list[CheckRecord]) -> None:
        """Totals never shrink as windows grow."""
        results = accumulate_nested(records, DEFAULT_WINDOWS, NOW, classify, 99.5)

        assert results["last_7_days"].total_intervals >= results["last_1_day"].total_intervals
        assert results["last_30_days"].total_intervals >= results["last_7_days"].total_intervals
        assert results["last_365_days"].total_intervals >= results["last_30_days"].total_intervals

    def test_falls_back_for_offset_windows(self, records: list[CheckRecord]) -> None:
        """Non-nested windows are computed independently."""
        windows = [Window(days=1), Window(days=1, offset_days=1)]

        assert not is_nested(windows)
        assert accumulate_nested(records, windows, NOW, classify, 99.5) == accumulate(
            records, windows, NOW, classify, 99.5
        )

    def test_idempotent(self, records: list[CheckRecord]) -> None:
        """Repeated runs over the same input agree."""
        first = accumulate_nested(records, DEFAULT_WINDOWS, NOW, classify, 99.5)
        second = accumulate_nested(records, DEFAULT_WINDOWS, NOW, classify, 99.5)

        assert first == second

    def test_clock_skewed_record_counts(self) -> None:
        """The single-pass path also counts records slightly ahead of now."""
        records = [_record(NOW + timedelta(seconds=30), True), _record(NOW - timedelta(hours=2), False)]

        nested = accumulate_nested(records, DEFAULT_WINDOWS, NOW, classify, 99.5)

        assert nested == accumulate(records, DEFAULT_WINDOWS, NOW, classify, 99.5)
        assert nested["last_1_day"].total_intervals == 2
        assert nested["last_365_days"].met_intervals == 1
