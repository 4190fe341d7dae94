"""Tests for the charts module."""

import random
from datetime import UTC, datetime, timedelta

from slastatus.charts import (
    NETWORK_FIELDS,
    Granularity,
    downsample,
    mean,
    network_series,
    speed_series,
    truncate,
)
from slastatus.models import CheckRecord

START = datetime(2024, 1, 10, 0, 0, 0, tzinfo=UTC)


def _record(minutes: int, rtt: float | None = 10.0, **kwargs) -> CheckRecord:
    return CheckRecord(agent_id="agent-1", timestamp=START + timedelta(minutes=minutes), avg_rtt_ms=rtt, **kwargs)


class TestHelpers:
    """Tests for truncate and mean."""

    def test_truncate_hour_and_day(self) -> None:
        """Timestamps truncate to the start of their bucket."""
        ts = datetime(2024, 1, 10, 13, 47, 12, tzinfo=UTC)

        assert truncate(ts, Granularity.HOUR) == datetime(2024, 1, 10, 13, 0, tzinfo=UTC)
        assert truncate(ts, Granularity.DAY) == datetime(2024, 1, 10, 0, 0, tzinfo=UTC)
        assert truncate(ts, Granularity.RAW) == ts

    def test_mean_of_empty_is_none(self) -> None:
        """No values to average gives None."""
        assert mean([]) is None
        assert mean([1.0, 2.0]) == 1.5


class TestRawMode:
    """Tests for raw downsampling."""

    def test_keeps_most_recent_ascending(self) -> None:
        """The newest max_points records come back oldest first."""
        records = [_record(m * 15, rtt=float(m)) for m in range(100)]

        points = downsample(records, Granularity.RAW, 48)

        assert len(points) == 48
        assert points[0].values["avg_rtt_ms"] == 52.0
        assert points[-1].values["avg_rtt_ms"] == 99.0
        assert all(a.timestamp < b.timestamp for a, b in zip(points, points[1:]))

    def test_unordered_input(self) -> None:
        """Output is ascending whatever the input order."""
        records = [_record(m * 15) for m in range(30)]
        random.Random(7).shuffle(records)

        points = downsample(records, Granularity.RAW, 48)

        assert [p.timestamp for p in points] == sorted(p.timestamp for p in points)

    def test_skips_records_without_values(self) -> None:
        """Records with every charted field absent are left out."""
        records = [_record(0), _record(15, rtt=None), _record(30)]

        points = downsample(records, Granularity.RAW, 48)

        assert len(points) == 2

    def test_zero_points(self) -> None:
        """A zero limit gives an empty series."""
        assert downsample([_record(0)], Granularity.RAW, 0) == []


class TestBucketedMode:
    """Tests for hourly and daily downsampling."""

    def test_hourly_means(self) -> None:
        """Values are averaged per hour."""
        records = [_record(0, rtt=10.0), _record(15, rtt=20.0), _record(60, rtt=40.0)]

        points = downsample(records, Granularity.HOUR, 96)

        assert len(points) == 2
        assert points[0].timestamp == START
        assert points[0].values["avg_rtt_ms"] == 15.0
        assert points[0].count == 2
        assert points[1].values["avg_rtt_ms"] == 40.0

    def test_absent_values_not_averaged_as_zero(self) -> None:
        """Missing values are skipped, not counted as zero."""
        records = [_record(0, rtt=10.0, avg_loss_percent=None), _record(15, rtt=None, avg_loss_percent=2.0)]

        point = downsample(records, Granularity.HOUR, 96)[0]

        assert point.values["avg_rtt_ms"] == 10.0
        assert point.values["avg_loss_percent"] == 2.0
        assert point.values["avg_jitter_ms"] is None

    def test_empty_buckets_omitted(self) -> None:
        """Hours with no data are not zero-filled."""
        records = [_record(0), _record(5 * 60)]

        points = downsample(records, Granularity.HOUR, 96)

        assert [p.timestamp for p in points] == [START, START + timedelta(hours=5)]

    def test_keeps_most_recent_buckets(self) -> None:
        """Only the newest max_points buckets are kept."""
        records = [_record(d * 24 * 60, rtt=float(d)) for d in range(10)]

        points = downsample(records, Granularity.DAY, 3)

        assert [p.values["avg_rtt_ms"] for p in points] == [7.0, 8.0, 9.0]

    def test_default_fields(self) -> None:
        """Network fields are charted by default."""
        point = downsample([_record(0)], Granularity.DAY, 10)[0]

        assert set(point.values) == set(NETWORK_FIELDS)


class TestSeries:
    """Tests for network_series and speed_series."""

    def test_speed_series_only_completed(self) -> None:
        """Failed speed tests never show up as throughput."""
        records = [
            _record(0, speedtest_status="COMPLETED", speedtest_download_mbps=90.0, speedtest_upload_mbps=20.0),
            _record(15, speedtest_status="FAILED", speedtest_download_mbps=0.0),
            _record(30, speedtest_status=None),
        ]

        points = speed_series(records, Granularity.RAW, 48)

        assert len(points) == 1
        assert points[0].values["speedtest_download_mbps"] == 90.0

    def test_network_series_fields(self) -> None:
        """Network series carries RTT, loss and jitter."""
        points = network_series([_record(0, avg_loss_percent=0.5, avg_jitter_ms=3.0)], Granularity.RAW, 48)

        assert points[0].values == {"avg_rtt_ms": 10.0, "avg_loss_percent": 0.5, "avg_jitter_ms": 3.0}
