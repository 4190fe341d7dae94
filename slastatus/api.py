"""HTTP API server for SLA reports and agent submissions."""

import json
import logging
import math
import sqlite3
import threading
import time
from collections import defaultdict
from datetime import UTC, datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, unquote, urlsplit

from .config import Config
from .database import (
    DatabaseError,
    QueryTimeoutError,
    StoreUnavailableError,
    connect_readonly,
    format_timestamp,
    get_profile,
    record_submission,
)
from .engine import ProfileNotFoundError, ReportEngine
from .ingest import SubmissionError, parse_submission
from .models import (
    AgentProfile,
    AgentReport,
    AgentSummary,
    AgentType,
    ChartPoint,
    CheckRecord,
    DashboardReport,
    FleetSummary,
    IntervalClassification,
    LivenessState,
    WindowResult,
)

logger = logging.getLogger(__name__)

# Rate limiting configuration.
# Allows 60 requests per minute per IP, enough for dashboards refreshing
# every minute and agents submitting every few minutes.
RATE_LIMIT_MAX_REQUESTS = 60
RATE_LIMIT_WINDOW_SECONDS = 60

# Largest accepted submission body.
MAX_BODY_BYTES = 64 * 1024


class RateLimiter:
    """Simple sliding window rate limiter by IP address.

    Allows up to max_requests requests per IP within the time window.
    Thread-safe for use in multi-threaded HTTP server.
    """

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
    ) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def is_allowed(self, client_ip: str) -> bool:
        """Check if a request from the given IP is allowed.

        Args:
            client_ip: The client's IP address.

        Returns:
            True if the request is allowed, False if rate limited.
        """
        now = time.monotonic()
        cutoff = now - self._window_seconds

        with self._lock:
            timestamps = self._requests[client_ip]
            timestamps[:] = [ts for ts in timestamps if ts > cutoff]

            if len(timestamps) >= self._max_requests:
                return False

            timestamps.append(now)
            return True

    def cleanup(self) -> None:
        """Remove stale entries from the rate limiter."""
        now = time.monotonic()
        cutoff = now - self._window_seconds

        with self._lock:
            empty_ips = []
            for ip, timestamps in self._requests.items():
                timestamps[:] = [ts for ts in timestamps if ts > cutoff]
                if not timestamps:
                    empty_ips.append(ip)
            for ip in empty_ips:
                del self._requests[ip]


class ApiError(Exception):
    """Raised when an API operation fails."""

    pass


class BadRequestError(ApiError):
    """Raised for invalid query parameters or request bodies."""

    pass


# =============================================================================
# SERIALIZATION
# =============================================================================


def _number(value: float | int | None) -> float | int | None:
    """JSON-safe number: NaN and infinities become null."""
    if value is None:
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _timestamp(value: datetime | None) -> str | None:
    return format_timestamp(value) if value is not None else None


def _window_result_to_dict(result: WindowResult) -> dict[str, Any]:
    return {
        "label": result.label,
        "total_intervals": result.total_intervals,
        "met_intervals": result.met_intervals,
        "achieved_percentage": _number(result.achieved_percentage),
        "target_percentage": _number(result.target_percentage),
        "is_target_met": result.is_target_met,
    }


def _chart_point_to_dict(point: ChartPoint) -> dict[str, Any]:
    data: dict[str, Any] = {"timestamp": _timestamp(point.timestamp), "count": point.count}
    for field, value in point.values.items():
        data[field] = _number(value)
    return data


def _record_to_dict(record: CheckRecord) -> dict[str, Any]:
    return {
        "agent_id": record.agent_id,
        "timestamp": _timestamp(record.timestamp),
        "overall_connectivity": record.overall_connectivity,
        "avg_rtt_ms": _number(record.avg_rtt_ms),
        "avg_loss_percent": _number(record.avg_loss_percent),
        "avg_jitter_ms": _number(record.avg_jitter_ms),
        "dns_status": record.dns_status,
        "dns_resolve_time_ms": _number(record.dns_resolve_time_ms),
        "http_status": record.http_status,
        "http_response_code": record.http_response_code,
        "http_total_time_s": _number(record.http_total_time_s),
        "speedtest_status": record.speedtest_status,
        "speedtest_download_mbps": _number(record.speedtest_download_mbps),
        "speedtest_upload_mbps": _number(record.speedtest_upload_mbps),
        "speedtest_ping_ms": _number(record.speedtest_ping_ms),
        "speedtest_jitter_ms": _number(record.speedtest_jitter_ms),
        "detailed_health_summary": record.detailed_health_summary,
        "sla_met": record.sla_met,
    }


def _classification_to_dict(classification: IntervalClassification) -> dict[str, Any]:
    return {
        "status": classification.status.value,
        "metrics": {name: status.value for name, status in classification.metrics.items()},
        "connectivity_failed": classification.connectivity_failed,
        "computed_met": classification.computed_met,
        "stored_met": classification.stored_met,
    }


def _profile_to_dict(profile: AgentProfile) -> dict[str, Any]:
    """Full profile configuration, as served to agents."""
    return {
        "agent_id": profile.agent_id,
        "name": profile.name,
        "agent_type": profile.agent_type.value,
        "is_active": profile.is_active,
        "sla_target_percentage": _number(profile.sla_target_percentage),
        "thresholds": {
            metric: {"degraded": _number(t.degraded), "poor": _number(t.poor)}
            for metric, t in profile.thresholds.items()
        },
        "last_seen": _timestamp(profile.last_seen),
        "hostname": profile.hostname,
        "source_ip": profile.source_ip,
    }


def _agent_summary_to_dict(summary: AgentSummary) -> dict[str, Any]:
    data: dict[str, Any] = {
        "agent_id": summary.profile.agent_id,
        "name": summary.profile.name,
        "agent_type": summary.profile.agent_type.value,
        "is_active": summary.profile.is_active,
        "liveness": summary.liveness.value,
        "last_check": _timestamp(summary.latest.timestamp) if summary.latest else None,
    }
    if summary.latest_status is not None:
        data["latest_status"] = summary.latest_status.value
    if summary.windows:
        data["periods"] = {key: _window_result_to_dict(r) for key, r in summary.windows.items()}
    return data


def _agent_report_to_dict(report: AgentReport) -> dict[str, Any]:
    return {
        "agent_id": report.profile.agent_id,
        "name": report.profile.name,
        "agent_type": report.profile.agent_type.value,
        "target_sla_percentage": _number(report.profile.sla_target_percentage),
        "liveness": report.liveness.value,
        "periods": {key: _window_result_to_dict(r) for key, r in report.windows.items()},
        "rtt_chart_data": [_chart_point_to_dict(p) for p in report.network_chart],
        "speed_chart_data": [_chart_point_to_dict(p) for p in report.speed_chart],
        "latest_check": _record_to_dict(report.latest) if report.latest else None,
        "latest_classification": (
            _classification_to_dict(report.latest_classification) if report.latest_classification else None
        ),
    }


def _fleet_to_dict(fleet: FleetSummary) -> dict[str, Any]:
    return {
        "segment": fleet.segment_filter.value if fleet.segment_filter else None,
        "agents": [_agent_summary_to_dict(a) for a in fleet.agents],
        "trend": [_chart_point_to_dict(p) for p in fleet.trend],
        "liveness_counts": dict(fleet.liveness_counts),
    }


def build_dashboard_response(report: DashboardReport) -> dict[str, Any]:
    """Build the JSON body for a dashboard report."""
    response: dict[str, Any] = {
        "generated_at": _timestamp(report.generated_at),
        "mode": "agent" if report.agent is not None else "fleet",
        "profiles": [_agent_summary_to_dict(p) for p in report.profiles],
        "segments": {name: _window_result_to_dict(r) for name, r in report.segments.items()},
        "dashboard_refresh_interval_ms": report.refresh_interval_ms,
    }
    if report.agent is not None:
        response["agent"] = _agent_report_to_dict(report.agent)
    if report.fleet is not None:
        response["fleet"] = _fleet_to_dict(report.fleet)
    return response


def _parse_days(values: list[str] | None) -> int | None:
    if not values:
        return None
    try:
        days = int(values[0])
    except ValueError:
        raise BadRequestError(f"Invalid days parameter: {values[0]!r}")
    if days <= 0:
        raise BadRequestError("days must be a positive integer")
    return days


def _parse_segment(values: list[str] | None) -> AgentType | None:
    if not values or values[0].lower() == "all":
        return None
    for agent_type in AgentType:
        if values[0].lower() == agent_type.value.lower():
            return agent_type
    raise BadRequestError(f"Invalid segment: {values[0]!r}")


class SlaHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the SLA API endpoints."""

    # Class-level references set by factory
    config: Config | None = None
    engine: ReportEngine | None = None
    write_conn: sqlite3.Connection | None = None  # shared, writes go through the store lock
    rate_limiter: RateLimiter | None = None

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("API %s - %s", self.address_string(), format % args)

    def _check_rate_limit(self) -> bool:
        """Check if the request should be rate limited.

        Returns:
            True if request is allowed, False if rate limited.
            Sends 429 response automatically if rate limited.
        """
        if self.rate_limiter is None:
            return True

        client_ip = self.client_address[0]
        if not self.rate_limiter.is_allowed(client_ip):
            logger.warning("Rate limit exceeded for %s", client_ip)
            self._send_error_json(429, "Rate limit exceeded. Try again later.")
            return False
        return True

    def _send_json(self, code: int, data: dict[str, Any]) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2, allow_nan=False).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-cache, no-store, max-age=0")
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def _deadline(self) -> float:
        assert self.config is not None
        return time.monotonic() + self.config.api.request_timeout_seconds

    def do_GET(self) -> None:
        """Handle GET requests."""
        if not self._check_rate_limit():
            return

        url = urlsplit(self.path)
        query = parse_qs(url.query)
        try:
            if url.path == "/health":
                self._send_json(200, {"status": "ok"})
            elif url.path == "/stats":
                self._handle_stats(query)
            elif url.path == "/agents":
                self._handle_agents()
            elif url.path == "/profiles" or url.path.startswith("/profiles/"):
                agent_id = unquote(url.path[len("/profiles/"):]) if url.path.startswith("/profiles/") else ""
                agent_id = agent_id or (query.get("agent_id") or [""])[0]
                if agent_id:
                    self._handle_profile(agent_id)
                else:
                    self._send_error_json(400, "Missing agent_id parameter.")
            else:
                self._send_error_json(404, "Not found")
        except BadRequestError as e:
            self._send_error_json(400, str(e))
        except ProfileNotFoundError as e:
            self._send_error_json(404, str(e))
        except StoreUnavailableError as e:
            logger.error("Store unavailable for %s: %s", url.path, e)
            self._send_error_json(503, "Database not available")
        except QueryTimeoutError as e:
            logger.warning("Deadline exceeded for %s: %s", self.path, e)
            self._send_error_json(504, "Request timed out")
        except DatabaseError as e:
            logger.error("Database error in %s: %s", url.path, e)
            self._send_error_json(500, "Database error")
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")

    def do_POST(self) -> None:
        """Handle POST requests."""
        if not self._check_rate_limit():
            return

        try:
            if urlsplit(self.path).path == "/submit":
                self._handle_submit()
            else:
                self._send_error_json(404, "Not found")
        except Exception as e:
            logger.exception("Error handling POST request: %s", e)
            self._send_error_json(500, "Internal server error")

    def _open_store(self) -> sqlite3.Connection:
        assert self.config is not None
        return connect_readonly(self.config.database.path)

    def _handle_stats(self, query: dict[str, list[str]]) -> None:
        """Handle GET /stats endpoint - agent mode with agent_id, fleet mode otherwise."""
        assert self.engine is not None
        agent_id = (query.get("agent_id") or [None])[0] or None
        days = _parse_days(query.get("days"))
        segment = _parse_segment(query.get("segment"))

        conn = self._open_store()
        try:
            report = self.engine.dashboard(
                conn,
                now=datetime.now(UTC),
                agent_id=agent_id,
                lookback_days=days,
                segment=segment,
                deadline=self._deadline(),
            )
        finally:
            conn.close()

        self._send_json(200, build_dashboard_response(report))

    def _handle_agents(self) -> None:
        """Handle GET /agents endpoint."""
        assert self.engine is not None
        conn = self._open_store()
        try:
            listing = self.engine.profile_listing(
                conn, datetime.now(UTC), include_inactive=True, deadline=self._deadline()
            )
        finally:
            conn.close()

        counts = {state.value: 0 for state in LivenessState}
        for summary in listing:
            counts[summary.liveness.value] += 1
        self._send_json(
            200,
            {
                "agents": [_agent_summary_to_dict(s) for s in listing],
                "summary": {"total": len(listing), **counts},
            },
        )

    def _handle_profile(self, agent_id: str) -> None:
        """Handle GET /profiles/<agent_id> endpoint - configuration for one agent."""
        conn = self._open_store()
        try:
            profile = get_profile(conn, agent_id, deadline=self._deadline())
        finally:
            conn.close()

        if profile is None:
            self._send_error_json(
                404,
                f"Profile not found for agent_id '{agent_id}'. "
                "Agent will be auto-created on next data submission with default thresholds.",
            )
            return
        logger.debug("Served profile config for agent %s", agent_id)
        self._send_json(200, _profile_to_dict(profile))

    def _read_json_body(self) -> Any:
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            raise BadRequestError("Invalid Content-Length header")
        if length <= 0:
            raise BadRequestError("Request body is required")
        if length > MAX_BODY_BYTES:
            raise BadRequestError(f"Request body too large (max {MAX_BODY_BYTES} bytes)")

        raw = self.rfile.read(length)
        try:
            return json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise BadRequestError(f"Invalid JSON body: {e}")

    def _handle_submit(self) -> None:
        """Handle POST /submit endpoint - store one agent submission."""
        assert self.config is not None
        if self.write_conn is None:
            self._send_error_json(503, "Database not available")
            return

        try:
            submission = parse_submission(self._read_json_body(), remote_addr=self.client_address[0])
        except (BadRequestError, SubmissionError) as e:
            logger.warning("Rejected submission from %s: %s", self.client_address[0], e)
            self._send_json(400, {"status": "error", "message": str(e)})
            return

        agent_id = submission.record.agent_id
        try:
            created, inserted = record_submission(
                self.write_conn,
                submission.record,
                submission.agent_type,
                received_at=datetime.now(UTC),
                default_thresholds=self.config.thresholds,
                default_target_percentage=self.config.sla.default_target_percentage,
                hostname=submission.hostname,
                source_ip=submission.source_ip,
            )
        except DatabaseError as e:
            logger.error("Failed to store submission for %s: %s", agent_id, e)
            self._send_json(500, {"status": "error", "message": "Server error while storing metrics"})
            return

        if inserted:
            logger.info("Metrics stored for agent %s at %s", agent_id, format_timestamp(submission.record.timestamp))
        else:
            logger.info("Duplicate submission ignored for agent %s at %s", agent_id, submission.record.timestamp)
        self._send_json(
            200,
            {
                "status": "success",
                "message": f"Metrics received for agent {agent_id}",
                "agent_created": created,
                "duplicate": not inserted,
            },
        )


def _create_handler_class(
    config: Config,
    engine: ReportEngine,
    write_conn: sqlite3.Connection | None,
    rate_limiter: RateLimiter | None = None,
) -> type:
    """Create a handler class with configuration, engine and store bound."""

    class BoundSlaHandler(SlaHandler):
        pass

    BoundSlaHandler.config = config
    BoundSlaHandler.engine = engine
    BoundSlaHandler.write_conn = write_conn
    BoundSlaHandler.rate_limiter = rate_limiter
    return BoundSlaHandler


class ApiServer:
    """Threaded HTTP API server for SLA reports."""

    def __init__(
        self,
        config: Config,
        write_conn: sqlite3.Connection | None,
        engine: ReportEngine | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        """Initialize the API server.

        Args:
            config: Full configuration (API, database and report settings).
            write_conn: Read-write connection used for submissions.
                Reports open their own read-only connection per request.
            engine: Report engine; built from ``config`` when omitted.
            rate_limiter: Per-IP limiter; a default one when omitted.
        """
        self.config = config
        self.write_conn = write_conn
        self.engine = engine or ReportEngine(config)
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()
        self._rate_limiter = rate_limiter or RateLimiter()

    def start(self) -> None:
        """Start the API server in a background thread.

        Raises:
            ApiError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("API server is already running")
            return

        port = self.config.api.port
        try:
            handler_class = _create_handler_class(
                self.config,
                self.engine,
                self.write_conn,
                self._rate_limiter,
            )
            self._server = ThreadingHTTPServer(("", port), handler_class)
            self._server.daemon_threads = True
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="api-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("API server started on port %d", port)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ApiError(
                    f"Port {port} is already in use. "
                    f"Another process may be using this port, or slastatus is already running."
                )
            elif e.errno == 13:  # EACCES
                raise ApiError(
                    f"Permission denied for port {port}. "
                    f"Ports below 1024 require root privileges. "
                    f"Use a port >= 1024 or run with elevated permissions."
                )
            else:
                raise ApiError(f"Failed to start API server on port {port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        last_cleanup = time.monotonic()
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()
            if time.monotonic() - last_cleanup > RATE_LIMIT_WINDOW_SECONDS:
                self._rate_limiter.cleanup()
                last_cleanup = time.monotonic()

    def stop(self) -> None:
        """Stop the API server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping API server...")
        self._shutdown_event.set()

        if self._server:
            self._server.server_close()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._server = None
        self._thread = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
