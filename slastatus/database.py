"""SQLite store for agent profiles and check records."""

import logging
import sqlite3
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import METRIC_NAMES, MetricThresholdConfig
from .models import AgentProfile, AgentType, CheckRecord, MetricThreshold

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Raised when a database operation fails."""

    pass


class StoreUnavailableError(DatabaseError):
    """Raised when the database cannot be opened at all."""

    pass


class QueryTimeoutError(DatabaseError):
    """Raised when a read runs past the caller's deadline."""

    pass


class MalformedRecordError(DatabaseError):
    """Raised for a stored row that cannot be turned into a record."""

    pass


# Global lock for thread-safe writes through a shared connection.
# Readers use their own read-only connections and never take it.
_db_lock = threading.Lock()

# Stored timestamps are UTC, second precision, always in this exact format
# so that lexical comparisons in SQL match chronological order.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# How many SQLite VM instructions run between deadline checks.
PROGRESS_HANDLER_OPCODES = 1000

# Latest-record reads rank this many rows per agent, newest first, and keep
# the newest one that parses.
LATEST_CANDIDATES = 5

# Rows whose timestamp does not start with a date can sort above
# every real date, so they are filtered before ranking.
_WELL_FORMED_TIMESTAMP = "c.timestamp GLOB '[0-9][0-9][0-9][0-9]-[0-9][0-9]-[0-9][0-9]*'"


def format_timestamp(value: datetime) -> str:
    """Format a datetime in the canonical store format (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored or reported timestamp into an aware UTC datetime.

    Raises:
        ValueError: If the value is not a recognizable ISO-8601 timestamp.
    """
    if not isinstance(value, str):
        raise ValueError(f"Timestamp must be a string, got {type(value).__name__}")
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC).replace(microsecond=0)


# =============================================================================
# REPORT CACHE (Per-key with TTL)
# =============================================================================
# Optional read-through cache for computed reports. Keys include the query
# time rounded to the TTL grain, and every write through insert_check()
# clears it, so a cached report never outlives a newer stored record
# written by this process. Disabled while ttl_seconds is 0.


class _ReportCache:
    """Thread-safe keyed cache with TTL."""

    def __init__(self, ttl_seconds: int = 0):
        self._lock = threading.Lock()
        self._ttl_seconds = ttl_seconds
        self._cache: dict[tuple, tuple[float, Any]] = {}

    @property
    def enabled(self) -> bool:
        return self._ttl_seconds > 0

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def configure(self, ttl_seconds: int) -> None:
        """Set the TTL and drop everything cached so far."""
        with self._lock:
            self._ttl_seconds = ttl_seconds
            self._cache.clear()

    def get(self, key: tuple) -> Any | None:
        """Get a cached value if present and not expired."""
        with self._lock:
            if key not in self._cache:
                return None

            cached_at, value = self._cache[key]
            if time.monotonic() - cached_at <= self._ttl_seconds:
                return value

            del self._cache[key]
            return None

    def set(self, key: tuple, value: Any) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._cache[key] = (time.monotonic(), value)

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()


report_cache = _ReportCache()


_THRESHOLD_COLUMNS = [f"{metric}_{level}" for metric in METRIC_NAMES for level in ("degraded", "poor")]

_PROFILE_COLUMNS = [
    "agent_id",
    "name",
    "agent_type",
    "is_active",
    "sla_target_percentage",
    "last_seen",
    "hostname",
    "source_ip",
    *_THRESHOLD_COLUMNS,
]

_CHECK_COLUMNS = [
    "agent_id",
    "timestamp",
    "overall_connectivity",
    "avg_rtt_ms",
    "avg_loss_percent",
    "avg_jitter_ms",
    "dns_status",
    "dns_resolve_time_ms",
    "http_status",
    "http_response_code",
    "http_total_time_s",
    "speedtest_status",
    "speedtest_download_mbps",
    "speedtest_upload_mbps",
    "speedtest_ping_ms",
    "speedtest_jitter_ms",
    "detailed_health_summary",
    "sla_met",
]

_CHECK_SELECT = ", ".join(f"c.{col}" for col in _CHECK_COLUMNS) + ", p.agent_type AS profile_agent_type"


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Read-write database connection with WAL mode enabled.

    Raises:
        DatabaseError: If database initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        threshold_ddl = ",\n".join(f"                {col} REAL" for col in _THRESHOLD_COLUMNS)
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS agent_profiles (
                agent_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                agent_type TEXT NOT NULL DEFAULT 'Client',
                is_active INTEGER NOT NULL DEFAULT 1,
                sla_target_percentage REAL NOT NULL DEFAULT 99.5,
                last_seen TEXT,
                hostname TEXT,
                source_ip TEXT,
{threshold_ddl}
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS checks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                overall_connectivity TEXT,
                avg_rtt_ms REAL,
                avg_loss_percent REAL,
                avg_jitter_ms REAL,
                dns_status TEXT,
                dns_resolve_time_ms REAL,
                http_status TEXT,
                http_response_code INTEGER,
                http_total_time_s REAL,
                speedtest_status TEXT,
                speedtest_download_mbps REAL,
                speedtest_upload_mbps REAL,
                speedtest_ping_ms REAL,
                speedtest_jitter_ms REAL,
                detailed_health_summary TEXT,
                sla_met INTEGER,
                UNIQUE (agent_id, timestamp)
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_checks_timestamp
            ON checks(timestamp)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_checks_agent_id_timestamp
            ON checks(agent_id, timestamp)
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise DatabaseError(f"Failed to create database directory: {e}")


def connect_readonly(db_path: str) -> sqlite3.Connection:
    """Open a read-only connection for one reporting request.

    Raises:
        StoreUnavailableError: If the database file is missing or cannot be opened.
    """
    if not Path(db_path).exists():
        raise StoreUnavailableError(f"Database file not found: {db_path}")
    try:
        conn = sqlite3.connect(f"{Path(db_path).resolve().as_uri()}?mode=ro", uri=True, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn
    except sqlite3.Error as e:
        raise StoreUnavailableError(f"Could not open database {db_path}: {e}")


@contextmanager
def _deadline_guard(conn: sqlite3.Connection, deadline: float | None) -> Iterator[None]:
    """Abort any statement on ``conn`` that is still running past ``deadline``.

    ``deadline`` is a ``time.monotonic()`` value.
    """
    if deadline is None:
        yield
        return

    if time.monotonic() > deadline:
        raise QueryTimeoutError("Request deadline passed before the query started")

    conn.set_progress_handler(lambda: 1 if time.monotonic() > deadline else 0, PROGRESS_HANDLER_OPCODES)
    try:
        yield
    except sqlite3.OperationalError as e:
        if time.monotonic() > deadline:
            raise QueryTimeoutError(f"Query exceeded request deadline: {e}")
        raise
    finally:
        conn.set_progress_handler(None, 0)


def _fetchall(conn: sqlite3.Connection, query: str, params: tuple, deadline: float | None) -> list[sqlite3.Row]:
    with _deadline_guard(conn, deadline):
        return conn.execute(query, params).fetchall()


def _row_to_profile(row: sqlite3.Row) -> AgentProfile:
    thresholds: dict[str, MetricThreshold] = {}
    for metric in METRIC_NAMES:
        degraded = row[f"{metric}_degraded"]
        poor = row[f"{metric}_poor"]
        if degraded is not None and poor is not None:
            thresholds[metric] = MetricThreshold(degraded=float(degraded), poor=float(poor))

    last_seen: datetime | None = None
    if row["last_seen"]:
        try:
            last_seen = parse_timestamp(row["last_seen"])
        except ValueError:
            logger.warning("Ignoring unparseable last_seen %r for agent %s", row["last_seen"], row["agent_id"])

    try:
        return AgentProfile(
            agent_id=row["agent_id"],
            name=row["name"],
            agent_type=AgentType.parse(row["agent_type"]),
            is_active=bool(row["is_active"]),
            thresholds=thresholds,
            sla_target_percentage=float(row["sla_target_percentage"]),
            last_seen=last_seen,
            hostname=row["hostname"],
            source_ip=row["source_ip"],
        )
    except ValueError as e:
        raise DatabaseError(f"Invalid profile '{row['agent_id']}': {e}")


def _row_to_record(row: sqlite3.Row) -> CheckRecord:
    """Convert a checks row into a CheckRecord.

    Raises:
        MalformedRecordError: If the row's timestamp cannot be parsed.
    """
    try:
        timestamp = parse_timestamp(row["timestamp"])
    except ValueError:
        raise MalformedRecordError(f"Unparseable timestamp {row['timestamp']!r} for agent {row['agent_id']}")

    sla_met = row["sla_met"]
    profile_type = row["profile_agent_type"] if "profile_agent_type" in row.keys() else None

    return CheckRecord(
        agent_id=row["agent_id"],
        timestamp=timestamp,
        overall_connectivity=row["overall_connectivity"],
        avg_rtt_ms=row["avg_rtt_ms"],
        avg_loss_percent=row["avg_loss_percent"],
        avg_jitter_ms=row["avg_jitter_ms"],
        dns_status=row["dns_status"],
        dns_resolve_time_ms=row["dns_resolve_time_ms"],
        http_status=row["http_status"],
        http_response_code=row["http_response_code"],
        http_total_time_s=row["http_total_time_s"],
        speedtest_status=row["speedtest_status"],
        speedtest_download_mbps=row["speedtest_download_mbps"],
        speedtest_upload_mbps=row["speedtest_upload_mbps"],
        speedtest_ping_ms=row["speedtest_ping_ms"],
        speedtest_jitter_ms=row["speedtest_jitter_ms"],
        detailed_health_summary=row["detailed_health_summary"],
        sla_met=bool(sla_met) if sla_met is not None else None,
        agent_type=AgentType.parse(profile_type) if profile_type is not None else None,
    )


def _rows_to_records(rows: list[sqlite3.Row]) -> list[CheckRecord]:
    """Convert rows, logging and skipping any malformed one."""
    records: list[CheckRecord] = []
    for row in rows:
        try:
            records.append(_row_to_record(row))
        except MalformedRecordError as e:
            logger.warning("Skipping malformed check record: %s", e)
    return records


# =============================================================================
# WRITE PATH
# =============================================================================


def save_profile(conn: sqlite3.Connection, profile: AgentProfile) -> None:
    """Insert or fully replace an agent profile.

    Thread-safe: acquires global lock before database access.

    Raises:
        DatabaseError: If the write fails.
    """
    values: dict[str, Any] = {
        "agent_id": profile.agent_id,
        "name": profile.name,
        "agent_type": profile.agent_type.value,
        "is_active": 1 if profile.is_active else 0,
        "sla_target_percentage": profile.sla_target_percentage,
        "last_seen": format_timestamp(profile.last_seen) if profile.last_seen else None,
        "hostname": profile.hostname,
        "source_ip": profile.source_ip,
    }
    for metric in METRIC_NAMES:
        threshold = profile.thresholds.get(metric)
        values[f"{metric}_degraded"] = threshold.degraded if threshold else None
        values[f"{metric}_poor"] = threshold.poor if threshold else None

    columns = ", ".join(_PROFILE_COLUMNS)
    placeholders = ", ".join(f":{col}" for col in _PROFILE_COLUMNS)
    try:
        with _db_lock:
            conn.execute(f"INSERT OR REPLACE INTO agent_profiles ({columns}) VALUES ({placeholders})", values)
            conn.commit()
            report_cache.invalidate()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to save profile {profile.agent_id}: {e}")


def _insert_check_row(conn: sqlite3.Connection, record: CheckRecord) -> bool:
    values = {col: getattr(record, col) for col in _CHECK_COLUMNS}
    values["timestamp"] = format_timestamp(record.timestamp)
    values["sla_met"] = None if record.sla_met is None else (1 if record.sla_met else 0)

    columns = ", ".join(_CHECK_COLUMNS)
    placeholders = ", ".join(f":{col}" for col in _CHECK_COLUMNS)
    cursor = conn.execute(f"INSERT OR IGNORE INTO checks ({columns}) VALUES ({placeholders})", values)
    return cursor.rowcount > 0


def insert_check(conn: sqlite3.Connection, record: CheckRecord) -> bool:
    """Insert a check record, ignoring a duplicate (agent, timestamp).

    Thread-safe: acquires global lock before database access.

    Returns:
        True if a new row was stored, False if it was a duplicate.

    Raises:
        DatabaseError: If the insert fails.
    """
    try:
        with _db_lock:
            inserted = _insert_check_row(conn, record)
            conn.commit()
            report_cache.invalidate()
        return inserted
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert check record: {e}")


def _upsert_profile_row(
    conn: sqlite3.Connection,
    agent_id: str,
    agent_type: AgentType,
    seen: str,
    default_thresholds: Mapping[str, MetricThresholdConfig],
    default_target_percentage: float,
    hostname: str | None,
    source_ip: str | None,
) -> bool:
    row = conn.execute("SELECT agent_id FROM agent_profiles WHERE agent_id = ?", (agent_id,)).fetchone()
    if row is not None:
        conn.execute(
            """
            UPDATE agent_profiles
            SET last_seen = ?, hostname = ?, source_ip = ?, agent_type = ?
            WHERE agent_id = ?
            """,
            (seen, hostname, source_ip, agent_type.value, agent_id),
        )
        return False

    values: dict[str, Any] = {
        "agent_id": agent_id,
        "name": hostname or agent_id,
        "agent_type": agent_type.value,
        "is_active": 1,
        "sla_target_percentage": default_target_percentage,
        "last_seen": seen,
        "hostname": hostname,
        "source_ip": source_ip,
    }
    for metric in METRIC_NAMES:
        threshold = default_thresholds.get(metric)
        values[f"{metric}_degraded"] = threshold.degraded if threshold else None
        values[f"{metric}_poor"] = threshold.poor if threshold else None

    columns = ", ".join(_PROFILE_COLUMNS)
    placeholders = ", ".join(f":{col}" for col in _PROFILE_COLUMNS)
    conn.execute(f"INSERT INTO agent_profiles ({columns}) VALUES ({placeholders})", values)
    logger.info("Registered new agent %s (%s)", agent_id, agent_type.value)
    return True


def upsert_profile(
    conn: sqlite3.Connection,
    agent_id: str,
    agent_type: AgentType,
    received_at: datetime,
    default_thresholds: Mapping[str, MetricThresholdConfig],
    default_target_percentage: float,
    hostname: str | None = None,
    source_ip: str | None = None,
) -> bool:
    """Register an unknown agent or refresh a known one's reporting details.

    Unknown agents are created active, named after their hostname, with the
    given default thresholds and target. Known agents get their last-seen
    time, hostname, source IP and type updated; their thresholds are left
    alone.

    Thread-safe: acquires global lock before database access.

    Returns:
        True if the agent was newly registered.

    Raises:
        DatabaseError: If the write fails.
    """
    try:
        with _db_lock:
            with conn:
                created = _upsert_profile_row(
                    conn,
                    agent_id,
                    agent_type,
                    format_timestamp(received_at),
                    default_thresholds,
                    default_target_percentage,
                    hostname,
                    source_ip,
                )
            report_cache.invalidate()
        return created
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to upsert profile {agent_id}: {e}")


def record_submission(
    conn: sqlite3.Connection,
    record: CheckRecord,
    agent_type: AgentType,
    received_at: datetime,
    default_thresholds: Mapping[str, MetricThresholdConfig],
    default_target_percentage: float,
    hostname: str | None = None,
    source_ip: str | None = None,
) -> tuple[bool, bool]:
    """Store one agent submission: upsert its profile and insert the check.

    Both writes happen in one transaction, so a failure stores nothing.

    Returns:
        Tuple of (profile_created, check_inserted).

    Raises:
        DatabaseError: If the write fails.
    """
    try:
        with _db_lock:
            with conn:
                created = _upsert_profile_row(
                    conn,
                    record.agent_id,
                    agent_type,
                    format_timestamp(received_at),
                    default_thresholds,
                    default_target_percentage,
                    hostname,
                    source_ip,
                )
                inserted = _insert_check_row(conn, record)
            report_cache.invalidate()
        return created, inserted
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to store submission for {record.agent_id}: {e}")


# =============================================================================
# READ PATH
# =============================================================================


def list_profiles(conn: sqlite3.Connection, deadline: float | None = None) -> list[AgentProfile]:
    """Get all agent profiles ordered by type and name.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        rows = _fetchall(
            conn,
            "SELECT * FROM agent_profiles ORDER BY agent_type, is_active DESC, name COLLATE NOCASE",
            (),
            deadline,
        )
        return [_row_to_profile(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to list profiles: {e}")


def list_active_profiles(conn: sqlite3.Connection, deadline: float | None = None) -> list[AgentProfile]:
    """Get all active agent profiles ordered by type and name.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        rows = _fetchall(
            conn,
            "SELECT * FROM agent_profiles WHERE is_active = 1 ORDER BY agent_type, name COLLATE NOCASE",
            (),
            deadline,
        )
        return [_row_to_profile(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to list active profiles: {e}")


def get_profile(conn: sqlite3.Connection, agent_id: str, deadline: float | None = None) -> AgentProfile | None:
    """Get a single agent profile.

    Returns:
        The profile, or None if no agent has this identifier.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        rows = _fetchall(conn, "SELECT * FROM agent_profiles WHERE agent_id = ?", (agent_id,), deadline)
        return _row_to_profile(rows[0]) if rows else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get profile {agent_id}: {e}")


def get_latest_record(conn: sqlite3.Connection, agent_id: str, deadline: float | None = None) -> CheckRecord | None:
    """Get the most recent well-formed check record for an agent.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        rows = _fetchall(
            conn,
            f"""
            SELECT {_CHECK_SELECT}
            FROM checks c
            LEFT JOIN agent_profiles p ON p.agent_id = c.agent_id
            WHERE c.agent_id = ? AND {_WELL_FORMED_TIMESTAMP}
            ORDER BY c.timestamp DESC
            LIMIT ?
            """,
            (agent_id, LATEST_CANDIDATES),
            deadline,
        )
        records = _rows_to_records(rows)
        return max(records, key=lambda r: r.timestamp) if records else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get latest record for {agent_id}: {e}")


def get_latest_record_per_agent(
    conn: sqlite3.Connection,
    active_only: bool = True,
    deadline: float | None = None,
) -> dict[str, CheckRecord]:
    """Get the most recent well-formed check record for every agent.

    A few candidates are ranked per agent so that an unparseable newest row
    is skipped in favour of the next one.

    Raises:
        DatabaseError: If the query fails.
    """
    active_clause = "WHERE p.is_active = 1" if active_only else ""
    try:
        rows = _fetchall(
            conn,
            f"""
            WITH latest_checks AS (
                SELECT
                    c.*,
                    ROW_NUMBER() OVER (PARTITION BY c.agent_id ORDER BY c.timestamp DESC) AS rn
                FROM checks c
                WHERE {_WELL_FORMED_TIMESTAMP}
            )
            SELECT {_CHECK_SELECT}
            FROM latest_checks c
            JOIN agent_profiles p ON p.agent_id = c.agent_id
            {active_clause}
            {"AND" if active_only else "WHERE"} c.rn <= {LATEST_CANDIDATES}
            ORDER BY c.agent_id
            """,
            (),
            deadline,
        )
        latest: dict[str, CheckRecord] = {}
        for record in _rows_to_records(rows):
            current = latest.get(record.agent_id)
            if current is None or record.timestamp > current.timestamp:
                latest[record.agent_id] = record
        return latest
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get latest records: {e}")


def get_records_since(
    conn: sqlite3.Connection,
    agent_id: str,
    since: datetime,
    deadline: float | None = None,
) -> list[CheckRecord]:
    """Get an agent's check records from ``since`` onwards, oldest first.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        rows = _fetchall(
            conn,
            f"""
            SELECT {_CHECK_SELECT}
            FROM checks c
            LEFT JOIN agent_profiles p ON p.agent_id = c.agent_id
            WHERE c.agent_id = ? AND c.timestamp >= ?
            ORDER BY c.timestamp ASC
            """,
            (agent_id, format_timestamp(since)),
            deadline,
        )
        return _rows_to_records(rows)
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get records for {agent_id}: {e}")


def get_records_since_all_agents(
    conn: sqlite3.Connection,
    since: datetime,
    segment: AgentType | None = None,
    active_only: bool = False,
    deadline: float | None = None,
) -> list[CheckRecord]:
    """Get check records of every agent from ``since`` onwards, oldest first.

    Each record is tagged with its agent's type.

    Args:
        conn: Database connection.
        since: Earliest timestamp to include.
        segment: Only include agents of this type.
        active_only: Only include active agents.
        deadline: ``time.monotonic()`` value after which the query is aborted.

    Raises:
        DatabaseError: If the query fails.
    """
    clauses = ["c.timestamp >= ?"]
    params: list[Any] = [format_timestamp(since)]
    if segment is not None:
        clauses.append("p.agent_type = ?")
        params.append(segment.value)
    if active_only:
        clauses.append("p.is_active = 1")

    try:
        rows = _fetchall(
            conn,
            f"""
            SELECT {_CHECK_SELECT}
            FROM checks c
            JOIN agent_profiles p ON p.agent_id = c.agent_id
            WHERE {" AND ".join(clauses)}
            ORDER BY c.timestamp ASC, c.agent_id
            """,
            tuple(params),
            deadline,
        )
        return _rows_to_records(rows)
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get fleet records: {e}")
