"""Rolling-window SLA accumulation."""

from collections.abc import Callable, Iterable, Sequence
from datetime import datetime

from .config import Window
from .models import CheckRecord, IntervalClassification, IntervalStatus, WindowResult

Classifier = Callable[[CheckRecord], IntervalClassification]


def achieved_percentage(met: int, total: int) -> float:
    """Percentage of met intervals, rounded to 2 places. Zero when total is zero."""
    if total <= 0:
        return 0.0
    return round(met / total * 100, 2)


def build_result(window: Window, total: int, met: int, target_percentage: float) -> WindowResult:
    achieved = achieved_percentage(met, total)
    return WindowResult(
        key=window.key,
        label=window.label,
        total_intervals=total,
        met_intervals=met,
        achieved_percentage=achieved,
        target_percentage=target_percentage,
        is_target_met=total > 0 and achieved >= target_percentage,
    )


def window_bounds(window: Window, now: datetime) -> tuple[datetime, datetime | None]:
    """Return the inclusive (cutoff, end) bounds of a window at ``now``.

    Windows ending at ``now`` have no upper bound (end is None): agent
    clocks run slightly ahead, and such records still belong to the
    current window. Offset windows end at ``now - offset``.
    """
    cutoff = now - window.offset - window.duration
    if window.offset_days == 0:
        return cutoff, None
    return cutoff, now - window.offset


def classify_unique(records: Iterable[CheckRecord], classify: Classifier) -> list[tuple[datetime, IntervalStatus]]:
    """Classify records once each, dropping duplicate (agent, timestamp) arrivals.

    The first record seen for a given agent and timestamp wins.
    """
    seen: set[tuple[str, datetime]] = set()
    intervals: list[tuple[datetime, IntervalStatus]] = []
    for record in records:
        key = (record.agent_id, record.timestamp)
        if key in seen:
            continue
        seen.add(key)
        intervals.append((record.timestamp, classify(record).status))
    return intervals


def accumulate(
    records: Iterable[CheckRecord],
    windows: Sequence[Window],
    now: datetime,
    classify: Classifier,
    target_percentage: float,
) -> dict[str, WindowResult]:
    """Compute SLA compliance for each window independently.

    Every window is evaluated over the full candidate set, so windows may
    overlap arbitrarily or be disjoint. Records may arrive in any order.

    Args:
        records: Check records (any order; duplicates tolerated).
        windows: Windows to compute.
        now: Reference time the windows are anchored to.
        classify: Maps a record to its interval classification.
        target_percentage: SLA target used for ``is_target_met``.

    Returns:
        Window key -> WindowResult, in the order of ``windows``.
    """
    intervals = classify_unique(records, classify)

    results: dict[str, WindowResult] = {}
    for window in windows:
        cutoff, end = window_bounds(window, now)
        total = met = 0
        for timestamp, status in intervals:
            if status is IntervalStatus.UNKNOWN or timestamp < cutoff:
                continue
            if end is not None and timestamp > end:
                continue
            total += 1
            if status is IntervalStatus.MET:
                met += 1
        results[window.key] = build_result(window, total, met, target_percentage)
    return results


def is_nested(windows: Sequence[Window]) -> bool:
    """True if the windows share an end point, so each contains all shorter ones."""
    return all(w.offset_days == 0 for w in windows)


def accumulate_nested(
    records: Iterable[CheckRecord],
    windows: Sequence[Window],
    now: datetime,
    classify: Classifier,
    target_percentage: float,
) -> dict[str, WindowResult]:
    """Single-pass variant of :func:`accumulate` for nested windows.

    Each interval is counted once in the tightest window that contains it,
    then counts are summed outward from the shortest window. Produces the
    same results as :func:`accumulate`; falls back to it when the windows
    are not nested.
    """
    if not is_nested(windows):
        return accumulate(records, windows, now, classify, target_percentage)

    ordered = sorted(windows, key=lambda w: w.days)
    cutoffs = [window_bounds(w, now)[0] for w in ordered]
    totals = [0] * len(ordered)
    mets = [0] * len(ordered)

    for timestamp, status in classify_unique(records, classify):
        if status is IntervalStatus.UNKNOWN:
            continue
        for i, cutoff in enumerate(cutoffs):
            if timestamp >= cutoff:
                totals[i] += 1
                if status is IntervalStatus.MET:
                    mets[i] += 1
                break

    by_key: dict[str, WindowResult] = {}
    total = met = 0
    for i, window in enumerate(ordered):
        total += totals[i]
        met += mets[i]
        by_key[window.key] = build_result(window, total, met, target_percentage)

    return {w.key: by_key[w.key] for w in windows}
