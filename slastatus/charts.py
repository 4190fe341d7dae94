"""Chart series downsampling for dashboard trend charts."""

from collections.abc import Iterable, Sequence
from datetime import datetime
from enum import Enum

from .models import ChartPoint, CheckRecord

NETWORK_FIELDS = ("avg_rtt_ms", "avg_loss_percent", "avg_jitter_ms")
SPEED_FIELDS = (
    "speedtest_download_mbps",
    "speedtest_upload_mbps",
    "speedtest_ping_ms",
    "speedtest_jitter_ms",
)


class Granularity(Enum):
    """Chart bucket size. RAW keeps individual records."""

    RAW = "raw"
    HOUR = "hour"
    DAY = "day"


def truncate(timestamp: datetime, granularity: Granularity) -> datetime:
    """Truncate a timestamp to the start of its bucket."""
    if granularity is Granularity.DAY:
        return timestamp.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity is Granularity.HOUR:
        return timestamp.replace(minute=0, second=0, microsecond=0)
    return timestamp


def mean(values: Sequence[float]) -> float | None:
    """Arithmetic mean, or None for an empty sequence."""
    if not values:
        return None
    return sum(values) / len(values)


def _raw_points(records: list[CheckRecord], max_points: int, fields: Sequence[str]) -> list[ChartPoint]:
    points: list[ChartPoint] = []
    # Walk newest first so the limit keeps the most recent records
    for record in reversed(records):
        if len(points) >= max_points:
            break
        values = {f: getattr(record, f) for f in fields}
        if all(v is None for v in values.values()):
            continue
        points.append(ChartPoint(timestamp=record.timestamp, values=values, count=1))
    points.reverse()
    return points


def _bucketed_points(
    records: list[CheckRecord],
    granularity: Granularity,
    max_points: int,
    fields: Sequence[str],
) -> list[ChartPoint]:
    buckets: dict[datetime, list[CheckRecord]] = {}
    for record in records:
        buckets.setdefault(truncate(record.timestamp, granularity), []).append(record)

    points: list[ChartPoint] = []
    for bucket in sorted(buckets):
        members = buckets[bucket]
        values: dict[str, float | None] = {}
        contributing = 0
        for record in members:
            if any(getattr(record, f) is not None for f in fields):
                contributing += 1
        if contributing == 0:
            continue
        for f in fields:
            values[f] = mean([getattr(r, f) for r in members if getattr(r, f) is not None])
        points.append(ChartPoint(timestamp=bucket, values=values, count=contributing))

    return points[-max_points:]


def downsample(
    records: Iterable[CheckRecord],
    granularity: Granularity,
    max_points: int,
    fields: Sequence[str] = NETWORK_FIELDS,
) -> list[ChartPoint]:
    """Turn check records into an ascending, bounded chart series.

    RAW mode returns up to ``max_points`` of the most recent records with
    their values as-is. Bucketed modes group records by truncated
    timestamp and average each field over only the records where it is
    present; buckets with nothing to average are left out rather than
    zero-filled, and the ``max_points`` most recent buckets are kept.

    Output is ascending by timestamp whatever order the records came in.
    """
    if max_points <= 0:
        return []

    ordered = sorted(records, key=lambda r: r.timestamp)

    if granularity is Granularity.RAW:
        return _raw_points(ordered, max_points, fields)
    return _bucketed_points(ordered, granularity, max_points, fields)


def network_series(
    records: Iterable[CheckRecord],
    granularity: Granularity,
    max_points: int,
) -> list[ChartPoint]:
    """RTT, packet loss and jitter series."""
    return downsample(records, granularity, max_points, NETWORK_FIELDS)


def speed_series(
    records: Iterable[CheckRecord],
    granularity: Granularity,
    max_points: int,
) -> list[ChartPoint]:
    """Throughput series built only from completed speed tests.

    Failed or skipped speed tests are left out entirely so they never show
    up as zero throughput.
    """
    completed = [r for r in records if r.speedtest_completed]
    return downsample(completed, granularity, max_points, SPEED_FIELDS)
