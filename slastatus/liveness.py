"""Agent liveness classification from time since last report."""

from datetime import datetime, timedelta

from .config import LivenessConfig
from .models import LivenessState

DEFAULT_GRACE_MULTIPLE = 2.0


def classify(
    last_seen: datetime | None,
    now: datetime,
    expected_interval: timedelta,
    stale_margin: timedelta,
    grace_multiple: float = DEFAULT_GRACE_MULTIPLE,
) -> LivenessState:
    """Classify an agent as online, stale or offline.

    Online while the silence is within one expected interval plus the stale
    margin, stale up to ``grace_multiple`` times that, offline beyond it or
    if the agent never reported.

    Args:
        last_seen: Time of the agent's last report, or None.
        now: Reference time.
        expected_interval: How often the agent is expected to report.
        stale_margin: Extra allowance before the agent counts as stale.
        grace_multiple: Multiple of the online threshold before offline.

    Returns:
        The liveness state.
    """
    if last_seen is None:
        return LivenessState.OFFLINE

    silence = now - last_seen
    online_threshold = expected_interval + stale_margin

    if silence <= online_threshold:
        return LivenessState.ONLINE
    if silence <= online_threshold * grace_multiple:
        return LivenessState.STALE
    return LivenessState.OFFLINE


class LivenessClassifier:
    """Liveness classification bound to configured thresholds."""

    def __init__(self, config: LivenessConfig) -> None:
        self.config = config

    def classify(self, last_seen: datetime | None, now: datetime) -> LivenessState:
        return classify(
            last_seen,
            now,
            self.config.expected_interval,
            self.config.stale_margin,
            self.config.grace_multiple,
        )
