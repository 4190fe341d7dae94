"""Parsing of agent metric submissions into check records."""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Any

from .database import parse_timestamp
from .models import AgentType, CheckRecord

logger = logging.getLogger(__name__)

# Placeholder values agents send for a probe that did not produce a value.
ABSENT_VALUES = ("N/A", "")

MAX_AGENT_ID_LENGTH = 100


class SubmissionError(Exception):
    """Raised when an agent submission cannot be accepted."""

    pass


@dataclass(frozen=True)
class Submission:
    """A parsed agent submission, ready to be stored."""

    record: CheckRecord
    agent_type: AgentType
    hostname: str | None = None
    source_ip: str | None = None


def _nested(payload: dict, *keys: str) -> Any:
    """Walk nested dictionaries, returning None for anything missing or absent."""
    current: Any = payload
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    if current is None or (isinstance(current, str) and current.strip() in ABSENT_VALUES):
        return None
    return current


def _as_float(value: Any, what: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise SubmissionError(f"Invalid number for {what}: {value!r}")
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise SubmissionError(f"Invalid number for {what}: {value!r}")
    # NaN/inf would poison averages and cannot be serialized back to JSON
    if result != result or result in (float("inf"), float("-inf")):
        raise SubmissionError(f"Non-finite number for {what}: {value!r}")
    return result


def _as_int(value: Any, what: str) -> int | None:
    number = _as_float(value, what)
    return int(number) if number is not None else None


def _as_text(value: Any) -> str | None:
    return str(value) if value is not None else None


def _parse_sla_flag(value: Any) -> bool | None:
    """Agents report ``MET`` / ``NOT_MET``; anything else leaves the flag unset."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().upper()
    if text == "MET":
        return True
    if text in ("NOT_MET", "NOT MET"):
        return False
    return None


def _parse_source_ip(value: Any) -> str | None:
    if value is None:
        return None
    try:
        return str(ipaddress.ip_address(str(value).strip()))
    except ValueError:
        logger.debug("Ignoring invalid source IP %r", value)
        return None


def parse_submission(payload: Any, remote_addr: str | None = None) -> Submission:
    """Parse one agent submission.

    The payload is the nested JSON agents send::

        {
          "agent_identifier": "branch-01",
          "timestamp": "2024-01-10T12:00:00Z",
          "agent_type": "Client",
          "ping_summary": {"average_rtt_ms": 23.1, ...},
          "dns_resolution": {"status": "OK", "resolve_time_ms": 12},
          "http_check": {...},
          "speed_test": {...},
          "current_sla_met_status": "MET"
        }

    ``"N/A"`` and empty strings mean the value is absent. Unknown agent
    types become Client.

    Args:
        payload: Decoded JSON body.
        remote_addr: Address the request came from, used when the payload
            does not report a valid source IP.

    Returns:
        Parsed submission.

    Raises:
        SubmissionError: If required fields are missing or values are invalid.
    """
    if not isinstance(payload, dict):
        raise SubmissionError("Submission must be a JSON object")

    agent_id = _nested(payload, "agent_identifier")
    timestamp_raw = _nested(payload, "timestamp")
    if agent_id is None or timestamp_raw is None:
        raise SubmissionError("Invalid data: missing timestamp or agent_identifier")

    agent_id = str(agent_id).strip()
    if len(agent_id) > MAX_AGENT_ID_LENGTH:
        raise SubmissionError(f"agent_identifier must be at most {MAX_AGENT_ID_LENGTH} characters")

    try:
        timestamp = parse_timestamp(str(timestamp_raw))
    except ValueError:
        raise SubmissionError(f"Invalid timestamp: {timestamp_raw!r}")

    connectivity = _nested(payload, "overall_connectivity")
    if connectivity is None:
        connectivity = _nested(payload, "ping_summary", "status")

    record = CheckRecord(
        agent_id=agent_id,
        timestamp=timestamp,
        overall_connectivity=_as_text(connectivity),
        avg_rtt_ms=_as_float(_nested(payload, "ping_summary", "average_rtt_ms"), "average_rtt_ms"),
        avg_loss_percent=_as_float(
            _nested(payload, "ping_summary", "average_packet_loss_percent"), "average_packet_loss_percent"
        ),
        avg_jitter_ms=_as_float(_nested(payload, "ping_summary", "average_jitter_ms"), "average_jitter_ms"),
        dns_status=_as_text(_nested(payload, "dns_resolution", "status")),
        dns_resolve_time_ms=_as_float(_nested(payload, "dns_resolution", "resolve_time_ms"), "resolve_time_ms"),
        http_status=_as_text(_nested(payload, "http_check", "status")),
        http_response_code=_as_int(_nested(payload, "http_check", "response_code"), "response_code"),
        http_total_time_s=_as_float(_nested(payload, "http_check", "total_time_s"), "total_time_s"),
        speedtest_status=_as_text(_nested(payload, "speed_test", "status")),
        speedtest_download_mbps=_as_float(_nested(payload, "speed_test", "download_mbps"), "download_mbps"),
        speedtest_upload_mbps=_as_float(_nested(payload, "speed_test", "upload_mbps"), "upload_mbps"),
        speedtest_ping_ms=_as_float(_nested(payload, "speed_test", "ping_ms"), "ping_ms"),
        speedtest_jitter_ms=_as_float(_nested(payload, "speed_test", "jitter_ms"), "jitter_ms"),
        detailed_health_summary=_as_text(_nested(payload, "detailed_health_summary")),
        sla_met=_parse_sla_flag(_nested(payload, "current_sla_met_status")),
    )

    source_ip = _parse_source_ip(_nested(payload, "agent_source_ip")) or _parse_source_ip(remote_addr)

    return Submission(
        record=record,
        agent_type=AgentType.parse(_as_text(_nested(payload, "agent_type"))),
        hostname=_as_text(_nested(payload, "agent_hostname")),
        source_ip=source_ip,
    )
