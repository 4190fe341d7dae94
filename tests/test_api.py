"""Tests for the API module."""

import json
import socket
import sqlite3
import time
import urllib.error
import urllib.request
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from slastatus.api import (
    ApiError,
    ApiServer,
    RateLimiter,
    _chart_point_to_dict,
    _profile_to_dict,
    _window_result_to_dict,
    build_dashboard_response,
)
from slastatus.config import ApiConfig, Config, DatabaseConfig
from slastatus.database import get_profile, init_db, insert_check, save_profile
from slastatus.engine import ReportEngine
from slastatus.models import (
    AgentProfile,
    AgentType,
    ChartPoint,
    CheckRecord,
    MetricThreshold,
    WindowResult,
)

RTT = {"rtt": MetricThreshold(degraded=100, poor=250)}


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "test.db")


@pytest.fixture
def db_conn(db_path: str) -> sqlite3.Connection:
    """Create a database connection with initialized tables."""
    conn = init_db(db_path)
    yield conn
    conn.close()


def get_free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


def _config(port: int, db_path: str) -> Config:
    return Config(api=ApiConfig(port=port), database=DatabaseConfig(path=db_path))


def _get(server: ApiServer, path: str) -> tuple[int, dict]:
    """GET a path and return status code and decoded body, errors included."""
    url = f"http://localhost:{server.config.api.port}{path}"
    try:
        with urllib.request.urlopen(url, timeout=5) as response:
            return response.status, json.loads(response.read().decode())
    except urllib.error.HTTPError as e:
        return e.code, json.loads(e.read().decode())


def _post(server: ApiServer, path: str, body: bytes) -> tuple[int, dict]:
    """POST a raw body and return status code and decoded body."""
    request = urllib.request.Request(
        f"http://localhost:{server.config.api.port}{path}",
        data=body,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=5) as response:
            return response.status, json.loads(response.read().decode())
    except urllib.error.HTTPError as e:
        return e.code, json.loads(e.read().decode())


def _submission(agent_id: str = "branch-01", timestamp: str = "2024-01-10T12:00:00Z") -> bytes:
    return json.dumps(
        {
            "agent_identifier": agent_id,
            "agent_type": "ISP",
            "agent_hostname": "edge-router",
            "timestamp": timestamp,
            "overall_connectivity": "CONNECTED",
            "ping_summary": {"average_rtt_ms": 23.5, "average_packet_loss_percent": 0},
            "current_sla_met_status": "MET",
        }
    ).encode()


class TestRateLimiter:
    """Tests for RateLimiter class."""

    def test_allows_up_to_limit(self) -> None:
        """Requests within the limit are allowed, the next is refused."""
        limiter = RateLimiter(max_requests=2, window_seconds=60)

        assert limiter.is_allowed("10.0.0.1")
        assert limiter.is_allowed("10.0.0.1")
        assert not limiter.is_allowed("10.0.0.1")

    def test_limits_are_per_ip(self) -> None:
        """One client's usage does not affect another."""
        limiter = RateLimiter(max_requests=1, window_seconds=60)

        assert limiter.is_allowed("10.0.0.1")
        assert limiter.is_allowed("10.0.0.2")

    def test_window_expires(self) -> None:
        """Old requests stop counting once the window passes."""
        limiter = RateLimiter(max_requests=1, window_seconds=0.05)

        assert limiter.is_allowed("10.0.0.1")
        time.sleep(0.1)
        assert limiter.is_allowed("10.0.0.1")


class TestSerialization:
    """Tests for the JSON serializers."""

    def test_window_result(self) -> None:
        """Window results keep counts, percentages and the verdict."""
        result = WindowResult(
            key="last_1_day",
            label="Last 1 Day",
            total_intervals=4,
            met_intervals=3,
            achieved_percentage=75.0,
            target_percentage=99.5,
            is_target_met=False,
        )

        data = _window_result_to_dict(result)

        assert data == {
            "label": "Last 1 Day",
            "total_intervals": 4,
            "met_intervals": 3,
            "achieved_percentage": 75.0,
            "target_percentage": 99.5,
            "is_target_met": False,
        }

    def test_chart_point_nan_becomes_null(self) -> None:
        """Non-finite values never reach the JSON body."""
        point = ChartPoint(
            timestamp=datetime(2024, 1, 10, 12, 0, tzinfo=UTC),
            values={"avg_rtt_ms": float("nan"), "avg_jitter_ms": None, "avg_loss_percent": 0.5},
        )

        data = _chart_point_to_dict(point)

        assert data["timestamp"] == "2024-01-10T12:00:00Z"
        assert data["avg_rtt_ms"] is None
        assert data["avg_jitter_ms"] is None
        assert data["avg_loss_percent"] == 0.5

    def test_profile(self) -> None:
        """Profiles serialize with their thresholds."""
        profile = AgentProfile(agent_id="a", name="Alpha", agent_type=AgentType.ISP, thresholds=RTT)

        data = _profile_to_dict(profile)

        assert data["agent_type"] == "ISP"
        assert data["thresholds"] == {"rtt": {"degraded": 100, "poor": 250}}
        assert data["last_seen"] is None

    def test_dashboard_response_fleet_mode(self, db_conn: sqlite3.Connection) -> None:
        """Fleet mode carries the fleet block and no agent block."""
        save_profile(db_conn, AgentProfile(agent_id="a", name="Alpha", thresholds=RTT))
        report = ReportEngine(Config()).dashboard(db_conn, now=datetime(2024, 1, 10, tzinfo=UTC))

        data = build_dashboard_response(report)

        assert data["mode"] == "fleet"
        assert "agent" not in data
        assert data["fleet"]["agents"][0]["agent_id"] == "a"
        assert data["dashboard_refresh_interval_ms"] == 60000
        json.dumps(data, allow_nan=False)


class TestApiServer:
    """Tests for ApiServer class."""

    def test_starts_and_stops(self, db_conn: sqlite3.Connection, db_path: str) -> None:
        """Server starts and stops without errors."""
        server = ApiServer(_config(get_free_port(), db_path), db_conn)

        assert not server.is_running
        server.start()
        assert server.is_running

        server.stop()
        assert not server.is_running

    def test_stop_without_start_is_safe(self, db_conn: sqlite3.Connection, db_path: str) -> None:
        """Calling stop() without start() doesn't cause errors."""
        server = ApiServer(_config(get_free_port(), db_path), db_conn)

        server.stop()  # Should not raise

    def test_raises_on_port_conflict(self, db_conn: sqlite3.Connection, db_path: str) -> None:
        """Raises ApiError when port is already in use."""
        config = _config(get_free_port(), db_path)
        server1 = ApiServer(config, db_conn)
        server2 = ApiServer(config, db_conn)

        try:
            server1.start()
            with pytest.raises(ApiError):
                server2.start()
        finally:
            server1.stop()
            server2.stop()


class TestApiEndpoints:
    """Integration tests for API endpoints."""

    @pytest.fixture
    def running_server(self, db_conn: sqlite3.Connection, db_path: str) -> ApiServer:
        """Start a server and yield it, stopping after test."""
        server = ApiServer(_config(get_free_port(), db_path), db_conn)
        server.start()
        # Give server time to start
        time.sleep(0.1)
        yield server
        server.stop()

    @pytest.fixture
    def agents(self, db_conn: sqlite3.Connection) -> None:
        """One met and one missed client agent with recent records."""
        now = datetime.now(UTC).replace(microsecond=0)
        save_profile(db_conn, AgentProfile(agent_id="a", name="Alpha", thresholds=RTT))
        save_profile(db_conn, AgentProfile(agent_id="b", name="Bravo", thresholds=RTT))
        for i in range(4):
            ts = now - timedelta(minutes=15 * i)
            insert_check(db_conn, CheckRecord(agent_id="a", timestamp=ts, avg_rtt_ms=20.0))
            insert_check(db_conn, CheckRecord(agent_id="b", timestamp=ts, avg_rtt_ms=400.0))

    def test_health(self, running_server: ApiServer) -> None:
        """GET /health answers without touching the store."""
        status, data = _get(running_server, "/health")

        assert status == 200
        assert data == {"status": "ok"}

    def test_stats_fleet_mode(self, running_server: ApiServer, agents: None) -> None:
        """GET /stats without agent_id reports the whole fleet."""
        status, data = _get(running_server, "/stats")

        assert status == 200
        assert data["mode"] == "fleet"
        assert data["segments"]["Client"]["achieved_percentage"] == 50.0
        assert data["segments"]["Client"]["total_intervals"] == 8
        assert [a["agent_id"] for a in data["fleet"]["agents"]] == ["a", "b"]
        assert data["fleet"]["liveness_counts"]["online"] == 2

    def test_stats_agent_mode(self, running_server: ApiServer, agents: None) -> None:
        """GET /stats?agent_id= reports one agent with its charts."""
        status, data = _get(running_server, "/stats?agent_id=a")

        assert status == 200
        assert data["mode"] == "agent"
        agent = data["agent"]
        assert agent["agent_id"] == "a"
        assert agent["periods"]["last_1_day"]["achieved_percentage"] == 100.0
        assert len(agent["rtt_chart_data"]) == 4
        assert agent["latest_check"]["avg_rtt_ms"] == 20.0
        assert data["segments"]["all"]["achieved_percentage"] == 50.0

    def test_stats_with_days(self, running_server: ApiServer, agents: None) -> None:
        """A lookback switches the charts to bucketed points."""
        status, data = _get(running_server, "/stats?agent_id=a&days=1")

        assert status == 200
        assert 1 <= len(data["agent"]["rtt_chart_data"]) <= 2

    def test_stats_segment_filter(self, running_server: ApiServer, agents: None) -> None:
        """segment=isp leaves no client agents in the fleet view."""
        status, data = _get(running_server, "/stats?segment=isp")

        assert status == 200
        assert data["fleet"]["agents"] == []
        assert data["fleet"]["segment"] == "ISP"

    def test_stats_unknown_agent(self, running_server: ApiServer) -> None:
        """An unknown agent_id is a 404."""
        status, data = _get(running_server, "/stats?agent_id=nobody")

        assert status == 404
        assert "nobody" in data["error"]

    @pytest.mark.parametrize("days", ["0", "-3", "week"])
    def test_stats_bad_days(self, running_server: ApiServer, days: str) -> None:
        """Non-positive or non-numeric days are rejected."""
        status, data = _get(running_server, f"/stats?days={days}")

        assert status == 400
        assert "days" in data["error"]

    def test_stats_bad_segment(self, running_server: ApiServer) -> None:
        """Unknown segments are rejected."""
        status, _ = _get(running_server, "/stats?segment=Router")

        assert status == 400

    def test_agents(self, running_server: ApiServer, agents: None, db_conn: sqlite3.Connection) -> None:
        """GET /agents lists every agent, inactive included, with a summary."""
        save_profile(db_conn, AgentProfile(agent_id="old", name="Old", is_active=False))

        status, data = _get(running_server, "/agents")

        assert status == 200
        assert {a["agent_id"] for a in data["agents"]} == {"a", "b", "old"}
        assert data["summary"] == {"total": 3, "online": 2, "stale": 0, "offline": 1}

    def test_profile_found(self, running_server: ApiServer, agents: None) -> None:
        """GET /profiles/<id> returns the agent's configuration."""
        status, data = _get(running_server, "/profiles/a")

        assert status == 200
        assert data["agent_id"] == "a"
        assert data["thresholds"]["rtt"] == {"degraded": 100.0, "poor": 250.0}

    def test_profile_query_parameter(self, running_server: ApiServer, agents: None) -> None:
        """The agent can also be named with ?agent_id=."""
        status, data = _get(running_server, "/profiles?agent_id=b")

        assert status == 200
        assert data["name"] == "Bravo"

    def test_profile_not_found(self, running_server: ApiServer) -> None:
        """Unknown profiles are a 404 explaining auto-creation."""
        status, data = _get(running_server, "/profiles/nobody")

        assert status == 404
        assert "auto-created" in data["error"]

    def test_profile_missing_id(self, running_server: ApiServer) -> None:
        """GET /profiles without an id is a 400."""
        status, data = _get(running_server, "/profiles")

        assert status == 400
        assert data["error"] == "Missing agent_id parameter."

    def test_unknown_path(self, running_server: ApiServer) -> None:
        """Unknown paths are a 404."""
        status, _ = _get(running_server, "/nope")

        assert status == 404

    def test_submit_creates_agent(self, running_server: ApiServer, db_conn: sqlite3.Connection) -> None:
        """A first submission stores the record and creates the profile."""
        status, data = _post(running_server, "/submit", _submission())

        assert status == 200
        assert data["status"] == "success"
        assert data["agent_created"] is True
        assert data["duplicate"] is False

        profile = get_profile(db_conn, "branch-01")
        assert profile.name == "edge-router"
        assert profile.agent_type is AgentType.ISP

    def test_submit_duplicate(self, running_server: ApiServer) -> None:
        """Resending the same interval is accepted but not stored twice."""
        _post(running_server, "/submit", _submission())
        status, data = _post(running_server, "/submit", _submission())

        assert status == 200
        assert data["agent_created"] is False
        assert data["duplicate"] is True

    def test_submit_then_report(self, running_server: ApiServer) -> None:
        """A submitted record shows up in the agent report."""
        now = datetime.now(UTC).replace(microsecond=0)
        _post(running_server, "/submit", _submission(timestamp=now.strftime("%Y-%m-%dT%H:%M:%SZ")))

        status, data = _get(running_server, "/stats?agent_id=branch-01")

        assert status == 200
        assert data["agent"]["periods"]["last_1_day"]["total_intervals"] == 1
        assert data["agent"]["liveness"] == "online"

    def test_submit_missing_fields(self, running_server: ApiServer) -> None:
        """A submission without identifier is a 400 with a message."""
        status, data = _post(running_server, "/submit", json.dumps({"timestamp": "2024-01-10T12:00:00Z"}).encode())

        assert status == 400
        assert data["status"] == "error"
        assert "agent_identifier" in data["message"]

    def test_submit_invalid_json(self, running_server: ApiServer) -> None:
        """A body that is not JSON is a 400."""
        status, data = _post(running_server, "/submit", b"{not json")

        assert status == 400
        assert "Invalid JSON" in data["message"]


class TestApiFailures:
    """Tests for store and rate limit failures."""

    def test_missing_store_is_503(self, tmp_path: Path) -> None:
        """Reports against a missing database file are a 503."""
        config = _config(get_free_port(), str(tmp_path / "missing.db"))
        server = ApiServer(config, None)
        server.start()
        time.sleep(0.1)
        try:
            status, data = _get(server, "/stats")
            assert status == 503
            assert data["error"] == "Database not available"
        finally:
            server.stop()

    def test_rate_limited(self, db_conn: sqlite3.Connection, db_path: str) -> None:
        """Requests beyond the limit get a 429."""
        server = ApiServer(
            _config(get_free_port(), db_path),
            db_conn,
            rate_limiter=RateLimiter(max_requests=1, window_seconds=60),
        )
        server.start()
        time.sleep(0.1)
        try:
            first, _ = _get(server, "/health")
            second, data = _get(server, "/health")
            assert first == 200
            assert second == 429
            assert "Rate limit" in data["error"]
        finally:
            server.stop()
