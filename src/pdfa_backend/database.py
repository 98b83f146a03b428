"""
SQLite persistence for quota records, conversion jobs and expansion requests.

All three collections live in one database file so a job completion and its
quota consumption can commit in the same transaction. Writers that must
check-then-mutate open ``Database.transaction()``, which issues
``BEGIN IMMEDIATE`` and therefore serialises them.

The repositories are stateless: every method takes the live connection of the
caller's transaction and returns plain records from ``records.py``.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from .models import ExpansionStatus, JobStatus
from .records import ConversionJob, ExpansionRequest, QuotaRecord

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_DB_PATH = Path("data/pdfa.db")


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """
    Serialize a timezone-aware datetime to a fixed-width UTC ISO string.

    Fixed width keeps lexicographic order equal to chronological order, which
    the expiry queries rely on.
    """
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    return datetime.fromisoformat(s)


def _serialize_date(d: date) -> str:
    return d.isoformat()


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS quota_records (
        identity TEXT NOT NULL,
        usage_date TEXT NOT NULL,
        consumed INTEGER NOT NULL DEFAULT 0 CHECK (consumed >= 0),
        daily_limit INTEGER NOT NULL CHECK (daily_limit > 0),
        expanded INTEGER NOT NULL DEFAULT 0,
        expanded_at TEXT,
        expires_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (identity, usage_date)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_quota_expiry ON quota_records(expanded, expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_quota_usage_date ON quota_records(usage_date)",
    """
    CREATE TABLE IF NOT EXISTS conversion_jobs (
        id TEXT PRIMARY KEY,
        identity TEXT NOT NULL,
        original_name TEXT NOT NULL,
        original_size INTEGER NOT NULL,
        original_key TEXT,
        converted_name TEXT,
        converted_key TEXT,
        converted_size INTEGER,
        status TEXT NOT NULL,
        error TEXT,
        processing_duration_ms INTEGER,
        metadata TEXT,
        user_agent TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_identity_created ON conversion_jobs(identity, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON conversion_jobs(status)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON conversion_jobs(created_at)",
    """
    CREATE TABLE IF NOT EXISTS expansion_requests (
        id TEXT PRIMARY KEY,
        identity TEXT NOT NULL,
        contact_email TEXT NOT NULL,
        contact_name TEXT NOT NULL,
        organization TEXT,
        justification TEXT NOT NULL,
        requested_limit INTEGER NOT NULL,
        status TEXT NOT NULL,
        admin_notes TEXT,
        user_agent TEXT,
        processed_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_requests_identity_created ON expansion_requests(identity, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_requests_status ON expansion_requests(status)",
    # At most one pending request per identity.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_requests_one_pending
    ON expansion_requests(identity) WHERE status = 'pending'
    """,
]


class Database:
    """
    SQLite database shared by the ledger, job tracker and expansion workflow.

    Thread-safe: each call opens its own connection; WAL mode lets readers
    proceed while a single ``BEGIN IMMEDIATE`` writer holds the lock.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        _ensure_db_dir(self.db_path)
        self._init_db()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection; commits on success, rolls back on error."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Connection holding the write lock for the duration of the block."""
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                conn.execute(statement)
        logger.debug(f"Database ready at {self.db_path}")


class QuotaRepository:
    """Row access for ``quota_records``."""

    def find(self, conn: sqlite3.Connection, identity: str, day: date) -> Optional[QuotaRecord]:
        row = conn.execute(
            "SELECT * FROM quota_records WHERE identity = ? AND usage_date = ?",
            (identity, _serialize_date(day)),
        ).fetchone()
        return self._row_to_record(row) if row else None

    def latest_before(self, conn: sqlite3.Connection, identity: str, day: date) -> Optional[QuotaRecord]:
        """Most recent record of ``identity`` strictly before ``day``."""
        row = conn.execute(
            """
            SELECT * FROM quota_records
            WHERE identity = ? AND usage_date < ?
            ORDER BY usage_date DESC LIMIT 1
            """,
            (identity, _serialize_date(day)),
        ).fetchone()
        return self._row_to_record(row) if row else None

    def insert_if_absent(self, conn: sqlite3.Connection, record: QuotaRecord) -> bool:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO quota_records (
                identity, usage_date, consumed, daily_limit, expanded,
                expanded_at, expires_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.identity,
                _serialize_date(record.usage_date),
                record.consumed,
                record.limit,
                int(record.expanded),
                _serialize_datetime(record.expanded_at),
                _serialize_datetime(record.expires_at),
                _serialize_datetime(record.created_at),
                _serialize_datetime(record.updated_at),
            ),
        )
        return cursor.rowcount > 0

    def increment_within_limit(
        self, conn: sqlite3.Connection, identity: str, day: date, count: int, now: datetime
    ) -> bool:
        """Add ``count`` to ``consumed`` only if the result stays within the limit."""
        cursor = conn.execute(
            """
            UPDATE quota_records
            SET consumed = consumed + ?, updated_at = ?
            WHERE identity = ? AND usage_date = ? AND consumed + ? <= daily_limit
            """,
            (count, _serialize_datetime(now), identity, _serialize_date(day), count),
        )
        return cursor.rowcount == 1

    def set_expansion(
        self,
        conn: sqlite3.Connection,
        identity: str,
        day: date,
        limit: int,
        expanded_at: datetime,
        expires_at: datetime,
    ) -> None:
        conn.execute(
            """
            UPDATE quota_records
            SET daily_limit = ?, expanded = 1, expanded_at = ?, expires_at = ?, updated_at = ?
            WHERE identity = ? AND usage_date = ?
            """,
            (
                limit,
                _serialize_datetime(expanded_at),
                _serialize_datetime(expires_at),
                _serialize_datetime(expanded_at),
                identity,
                _serialize_date(day),
            ),
        )

    def clear_expansion(
        self, conn: sqlite3.Connection, identity: str, day: date, default_limit: int, now: datetime
    ) -> None:
        conn.execute(
            """
            UPDATE quota_records
            SET daily_limit = ?, expanded = 0, expanded_at = NULL, expires_at = NULL, updated_at = ?
            WHERE identity = ? AND usage_date = ?
            """,
            (default_limit, _serialize_datetime(now), identity, _serialize_date(day)),
        )

    def clear_expired(self, conn: sqlite3.Connection, now: datetime, default_limit: int) -> int:
        stamp = _serialize_datetime(now)
        cursor = conn.execute(
            """
            UPDATE quota_records
            SET daily_limit = ?, expanded = 0, expanded_at = NULL, expires_at = NULL, updated_at = ?
            WHERE expanded = 1 AND expires_at IS NOT NULL AND expires_at < ?
            """,
            (default_limit, stamp, stamp),
        )
        return cursor.rowcount

    def reset_consumed(self, conn: sqlite3.Connection, identity: str, day: date, now: datetime) -> None:
        conn.execute(
            "UPDATE quota_records SET consumed = 0, updated_at = ? WHERE identity = ? AND usage_date = ?",
            (_serialize_datetime(now), identity, _serialize_date(day)),
        )

    def day_totals(self, conn: sqlite3.Connection, day: date) -> Dict[str, int]:
        row = conn.execute(
            """
            SELECT
                COUNT(*) AS total_identities,
                COALESCE(SUM(CASE WHEN consumed > 0 THEN 1 ELSE 0 END), 0) AS active_identities,
                COALESCE(SUM(consumed), 0) AS total_conversions,
                COALESCE(SUM(CASE WHEN consumed >= daily_limit THEN 1 ELSE 0 END), 0) AS identities_at_limit,
                COALESCE(SUM(CASE WHEN expanded = 1 THEN 1 ELSE 0 END), 0) AS expanded_identities
            FROM quota_records WHERE usage_date = ?
            """,
            (_serialize_date(day),),
        ).fetchone()
        return {key: int(row[key]) for key in row.keys()}

    def delete_before(self, conn: sqlite3.Connection, day: date, now: datetime) -> int:
        """Delete records older than ``day``, keeping those that still carry an active expansion."""
        cursor = conn.execute(
            """
            DELETE FROM quota_records
            WHERE usage_date < ? AND NOT (expanded = 1 AND expires_at >= ?)
            """,
            (_serialize_date(day), _serialize_datetime(now)),
        )
        return cursor.rowcount

    def _row_to_record(self, row: sqlite3.Row) -> QuotaRecord:
        return QuotaRecord(
            identity=row["identity"],
            usage_date=date.fromisoformat(row["usage_date"]),
            consumed=row["consumed"],
            limit=row["daily_limit"],
            expanded=bool(row["expanded"]),
            expanded_at=_deserialize_datetime(row["expanded_at"]),
            expires_at=_deserialize_datetime(row["expires_at"]),
            created_at=_deserialize_datetime(row["created_at"]),
            updated_at=_deserialize_datetime(row["updated_at"]),
        )


class JobRepository:
    """Row access for ``conversion_jobs``."""

    def insert(self, conn: sqlite3.Connection, job: ConversionJob) -> None:
        conn.execute(
            """
            INSERT INTO conversion_jobs (
                id, identity, original_name, original_size, original_key,
                converted_name, converted_key, converted_size, status, error,
                processing_duration_ms, metadata, user_agent, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id,
                job.identity,
                job.original_name,
                job.original_size,
                job.original_key,
                job.converted_name,
                job.converted_key,
                job.converted_size,
                job.status.value,
                job.error,
                job.processing_duration_ms,
                json.dumps(job.metadata),
                job.user_agent,
                _serialize_datetime(job.created_at),
                _serialize_datetime(job.updated_at),
            ),
        )

    def find(self, conn: sqlite3.Connection, job_id: str) -> Optional[ConversionJob]:
        row = conn.execute("SELECT * FROM conversion_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def set_status(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        expected: JobStatus,
        status: JobStatus,
        now: datetime,
    ) -> bool:
        """Compare-and-set the status; returns False when the row moved on already."""
        cursor = conn.execute(
            "UPDATE conversion_jobs SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (status.value, _serialize_datetime(now), job_id, expected.value),
        )
        return cursor.rowcount == 1

    def set_original_key(self, conn: sqlite3.Connection, job_id: str, key: str, now: datetime) -> None:
        conn.execute(
            "UPDATE conversion_jobs SET original_key = ?, updated_at = ? WHERE id = ?",
            (key, _serialize_datetime(now), job_id),
        )

    def mark_completed(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        expected: JobStatus,
        converted_name: str,
        converted_key: Optional[str],
        converted_size: int,
        duration_ms: int,
        metadata: Dict[str, str],
        now: datetime,
    ) -> bool:
        cursor = conn.execute(
            """
            UPDATE conversion_jobs
            SET status = ?, converted_name = ?, converted_key = ?, converted_size = ?,
                processing_duration_ms = ?, metadata = ?, error = NULL, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                JobStatus.COMPLETED.value,
                converted_name,
                converted_key,
                converted_size,
                duration_ms,
                json.dumps(metadata),
                _serialize_datetime(now),
                job_id,
                expected.value,
            ),
        )
        return cursor.rowcount == 1

    def mark_failed(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        expected: JobStatus,
        error: str,
        duration_ms: Optional[int],
        now: datetime,
    ) -> bool:
        cursor = conn.execute(
            """
            UPDATE conversion_jobs
            SET status = ?, error = ?, processing_duration_ms = ?,
                converted_name = NULL, converted_key = NULL, converted_size = NULL, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                JobStatus.FAILED.value,
                error,
                duration_ms,
                _serialize_datetime(now),
                job_id,
                expected.value,
            ),
        )
        return cursor.rowcount == 1

    def list_for_identity(
        self, conn: sqlite3.Connection, identity: str, limit: int, offset: int
    ) -> List[ConversionJob]:
        rows = conn.execute(
            """
            SELECT * FROM conversion_jobs WHERE identity = ?
            ORDER BY created_at DESC, id LIMIT ? OFFSET ?
            """,
            (identity, limit, offset),
        ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def count_for_identity(self, conn: sqlite3.Connection, identity: str) -> int:
        return conn.execute(
            "SELECT COUNT(*) FROM conversion_jobs WHERE identity = ?", (identity,)
        ).fetchone()[0]

    def count_completed(
        self, conn: sqlite3.Connection, identity: str, since: Optional[datetime] = None
    ) -> int:
        query = "SELECT COUNT(*) FROM conversion_jobs WHERE identity = ? AND status = ?"
        params: list = [identity, JobStatus.COMPLETED.value]
        if since is not None:
            query += " AND created_at >= ?"
            params.append(_serialize_datetime(since))
        return conn.execute(query, params).fetchone()[0]

    def created_before(self, conn: sqlite3.Connection, cutoff: datetime) -> List[ConversionJob]:
        rows = conn.execute(
            "SELECT * FROM conversion_jobs WHERE created_at < ? ORDER BY created_at",
            (_serialize_datetime(cutoff),),
        ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def delete_many(self, conn: sqlite3.Connection, job_ids: Sequence[str]) -> int:
        if not job_ids:
            return 0
        placeholders = ", ".join("?" for _ in job_ids)
        cursor = conn.execute(f"DELETE FROM conversion_jobs WHERE id IN ({placeholders})", list(job_ids))
        return cursor.rowcount

    def key_in_use(self, conn: sqlite3.Connection, key: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM conversion_jobs WHERE original_key = ? OR converted_key = ? LIMIT 1",
            (key, key),
        ).fetchone()
        return row is not None

    def _row_to_job(self, row: sqlite3.Row) -> ConversionJob:
        return ConversionJob(
            id=row["id"],
            identity=row["identity"],
            original_name=row["original_name"],
            original_size=row["original_size"],
            status=JobStatus(row["status"]),
            created_at=_deserialize_datetime(row["created_at"]),
            updated_at=_deserialize_datetime(row["updated_at"]),
            original_key=row["original_key"],
            converted_name=row["converted_name"],
            converted_key=row["converted_key"],
            converted_size=row["converted_size"],
            error=row["error"],
            processing_duration_ms=row["processing_duration_ms"],
            metadata=json.loads(row["metadata"] or "{}"),
            user_agent=row["user_agent"],
        )


class RequestRepository:
    """Row access for ``expansion_requests``."""

    def insert(self, conn: sqlite3.Connection, request: ExpansionRequest) -> None:
        conn.execute(
            """
            INSERT INTO expansion_requests (
                id, identity, contact_email, contact_name, organization,
                justification, requested_limit, status, admin_notes,
                user_agent, processed_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request.id,
                request.identity,
                request.contact_email,
                request.contact_name,
                request.organization,
                request.justification,
                request.requested_limit,
                request.status.value,
                request.admin_notes,
                request.user_agent,
                _serialize_datetime(request.processed_at),
                _serialize_datetime(request.created_at),
                _serialize_datetime(request.updated_at),
            ),
        )

    def find(self, conn: sqlite3.Connection, request_id: str) -> Optional[ExpansionRequest]:
        row = conn.execute("SELECT * FROM expansion_requests WHERE id = ?", (request_id,)).fetchone()
        return self._row_to_request(row) if row else None

    def find_pending(self, conn: sqlite3.Connection, identity: str) -> Optional[ExpansionRequest]:
        row = conn.execute(
            "SELECT * FROM expansion_requests WHERE identity = ? AND status = ? LIMIT 1",
            (identity, ExpansionStatus.PENDING.value),
        ).fetchone()
        return self._row_to_request(row) if row else None

    def latest(self, conn: sqlite3.Connection, identity: str) -> Optional[ExpansionRequest]:
        row = conn.execute(
            "SELECT * FROM expansion_requests WHERE identity = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (identity,),
        ).fetchone()
        return self._row_to_request(row) if row else None

    def transition(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        expected: ExpansionStatus,
        status: ExpansionStatus,
        admin_notes: Optional[str],
        now: datetime,
    ) -> bool:
        stamp = _serialize_datetime(now)
        cursor = conn.execute(
            """
            UPDATE expansion_requests
            SET status = ?, admin_notes = ?, processed_at = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (status.value, admin_notes, stamp, stamp, request_id, expected.value),
        )
        return cursor.rowcount == 1

    def list_for_identity(
        self, conn: sqlite3.Connection, identity: str, limit: int, offset: int
    ) -> List[ExpansionRequest]:
        rows = conn.execute(
            """
            SELECT * FROM expansion_requests WHERE identity = ?
            ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?
            """,
            (identity, limit, offset),
        ).fetchall()
        return [self._row_to_request(row) for row in rows]

    def count_for_identity(self, conn: sqlite3.Connection, identity: str) -> int:
        return conn.execute(
            "SELECT COUNT(*) FROM expansion_requests WHERE identity = ?", (identity,)
        ).fetchone()[0]

    def delete_closed_before(self, conn: sqlite3.Connection, cutoff: datetime) -> int:
        cursor = conn.execute(
            "DELETE FROM expansion_requests WHERE status IN (?, ?) AND updated_at < ?",
            (ExpansionStatus.REJECTED.value, ExpansionStatus.CANCELLED.value, _serialize_datetime(cutoff)),
        )
        return cursor.rowcount

    def _row_to_request(self, row: sqlite3.Row) -> ExpansionRequest:
        return ExpansionRequest(
            id=row["id"],
            identity=row["identity"],
            contact_email=row["contact_email"],
            contact_name=row["contact_name"],
            organization=row["organization"],
            justification=row["justification"],
            requested_limit=row["requested_limit"],
            status=ExpansionStatus(row["status"]),
            admin_notes=row["admin_notes"],
            user_agent=row["user_agent"],
            processed_at=_deserialize_datetime(row["processed_at"]),
            created_at=_deserialize_datetime(row["created_at"]),
            updated_at=_deserialize_datetime(row["updated_at"]),
        )
