"""
Per-identity, per-day conversion ledger.

The ledger is the single source of truth for remaining capacity. Every
operation that checks and then mutates a record runs inside one
``BEGIN IMMEDIATE`` transaction, so concurrent callers for the same
(identity, day) are serialised by SQLite and can never over-consume.

Expansion expiry is enforced in two places:
- lazily, whenever a record is read through ``get_or_init`` (and therefore by
  ``remaining``, ``try_consume`` and ``info``)
- periodically, by ``sweep_expired`` (see ``maintenance.MaintenanceWorker``)
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, datetime, timedelta
from typing import Dict, Optional

from .database import Database, QuotaRepository
from .models import UsageInfo
from .records import QuotaRecord
from .utils import Clock, utcnow

logger = logging.getLogger(__name__)


class QuotaLedger:
    """
    Owns ``QuotaRecord`` state.

    Attributes:
        default_limit: Daily limit for identities without an active expansion
    """

    def __init__(
        self,
        database: Database,
        default_limit: int = 10,
        clock: Clock = utcnow,
        repository: Optional[QuotaRepository] = None,
    ) -> None:
        if default_limit <= 0:
            raise ValueError("default_limit must be positive")
        self._db = database
        self.default_limit = default_limit
        self._clock = clock
        self._repo = repository or QuotaRepository()

    def now(self) -> datetime:
        return self._clock()

    def today(self) -> date:
        return self._clock().date()

    # -- transactional entry points -------------------------------------

    def get_or_init(self, identity: str, day: Optional[date] = None) -> QuotaRecord:
        """Return the record for (identity, day), creating it on first use."""
        with self._db.transaction() as conn:
            return self.get_or_init_in(conn, identity, day or self.today())

    def remaining(self, identity: str, day: Optional[date] = None) -> int:
        return self.get_or_init(identity, day).remaining

    def try_consume(self, identity: str, day: Optional[date] = None, count: int = 1) -> bool:
        """
        Atomically consume ``count`` conversions.

        Returns:
            True if the units were consumed, False (with no mutation) if fewer
            than ``count`` remain.
        """
        with self._db.transaction() as conn:
            return self.try_consume_in(conn, identity, day or self.today(), count)

    def apply_expansion(
        self, identity: str, day: Optional[date], new_limit: int, duration_days: int
    ) -> QuotaRecord:
        with self._db.transaction() as conn:
            return self.apply_expansion_in(conn, identity, day or self.today(), new_limit, duration_days)

    def clear_expansion(self, identity: str, day: Optional[date] = None) -> QuotaRecord:
        day = day or self.today()
        with self._db.transaction() as conn:
            self.get_or_init_in(conn, identity, day)
            self._repo.clear_expansion(conn, identity, day, self.default_limit, self.now())
            record = self._repo.find(conn, identity, day)
        logger.info(f"Expansion cleared for {identity} on {day}")
        return record

    def reset(self, identity: str, day: Optional[date] = None) -> QuotaRecord:
        """Explicitly reset ``consumed`` to zero."""
        day = day or self.today()
        with self._db.transaction() as conn:
            self.get_or_init_in(conn, identity, day)
            self._repo.reset_consumed(conn, identity, day, self.now())
            record = self._repo.find(conn, identity, day)
        logger.info(f"Usage reset for {identity} on {day}")
        return record

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Clear every expansion whose ``expires_at`` is in the past.

        A single UPDATE statement, so it is safe alongside ordinary traffic and
        idempotent: a second run finds nothing left to clear.

        Returns:
            Number of records whose expansion was cleared
        """
        now = now or self.now()
        with self._db.transaction() as conn:
            count = self._repo.clear_expired(conn, now, self.default_limit)
        if count:
            logger.info(f"Expired expansions cleared: {count}")
        return count

    def info(self, identity: str) -> UsageInfo:
        return self.get_or_init(identity).to_usage_info()

    def today_stats(self) -> Dict[str, int]:
        with self._db.connection() as conn:
            return self._repo.day_totals(conn, self.today())

    def purge_before(self, day: date) -> int:
        """Retention cleanup; records holding an active expansion are kept."""
        with self._db.transaction() as conn:
            return self._repo.delete_before(conn, day, self.now())

    # -- helpers usable inside a caller's transaction -------------------

    def get_or_init_in(self, conn: sqlite3.Connection, identity: str, day: date) -> QuotaRecord:
        """
        ``get_or_init`` on a connection that already holds the write lock.

        A new day starts at ``consumed=0`` under whatever limit is in effect:
        an active expansion carried by the identity's latest earlier record is
        inherited, otherwise the default limit applies.
        """
        now = self.now()
        record = self._repo.find(conn, identity, day)
        if record is None:
            self._repo.insert_if_absent(conn, self._fresh_record(conn, identity, day, now))
            record = self._repo.find(conn, identity, day)

        if record.expansion_expired(now):
            self._repo.clear_expansion(conn, identity, day, self.default_limit, now)
            record = self._repo.find(conn, identity, day)
            logger.info(f"Expansion for {identity} expired; limit back to {self.default_limit}")
        return record

    def try_consume_in(self, conn: sqlite3.Connection, identity: str, day: date, count: int) -> bool:
        if count <= 0:
            raise ValueError("count must be positive")
        self.get_or_init_in(conn, identity, day)
        consumed = self._repo.increment_within_limit(conn, identity, day, count, self.now())
        if not consumed:
            logger.warning(f"Quota exhausted for {identity} on {day} (requested {count})")
        return consumed

    def apply_expansion_in(
        self, conn: sqlite3.Connection, identity: str, day: date, new_limit: int, duration_days: int
    ) -> QuotaRecord:
        if new_limit <= 0:
            raise ValueError("new_limit must be positive")
        now = self.now()
        self.get_or_init_in(conn, identity, day)
        self._repo.set_expansion(conn, identity, day, new_limit, now, now + timedelta(days=duration_days))
        logger.info(f"Expansion applied for {identity}: limit {new_limit} for {duration_days} day(s)")
        return self._repo.find(conn, identity, day)

    def _fresh_record(self, conn: sqlite3.Connection, identity: str, day: date, now: datetime) -> QuotaRecord:
        previous = self._repo.latest_before(conn, identity, day)
        if previous is not None and previous.expansion_active(now):
            return QuotaRecord(
                identity=identity,
                usage_date=day,
                consumed=0,
                limit=previous.limit,
                expanded=True,
                expanded_at=previous.expanded_at,
                expires_at=previous.expires_at,
                created_at=now,
                updated_at=now,
            )
        return QuotaRecord(
            identity=identity,
            usage_date=day,
            consumed=0,
            limit=self.default_limit,
            created_at=now,
            updated_at=now,
        )
