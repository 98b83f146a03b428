"""
Tests for the per-identity daily quota ledger.

Tests cover:
- Record initialization and the default limit
- Atomic consumption, including concurrent callers
- Expansion application, lazy expiry and the periodic sweep
- Day rollover and inheritance of active expansions
- Retention purge
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from pdfa_backend.quota_ledger import QuotaLedger

IDENTITY = "203.0.113.7"


class TestGetOrInit:
    """Tests for record creation."""

    def test_new_identity_starts_at_default_limit(self, ledger, clock):
        """A first lookup creates a fresh record for today."""
        record = ledger.get_or_init(IDENTITY)
        assert record.usage_date == clock().date()
        assert record.consumed == 0
        assert record.limit == 10
        assert record.remaining == 10
        assert record.expanded is False
        assert record.expires_at is None

    def test_repeated_lookup_returns_same_record(self, ledger):
        """A second lookup does not reset the counter."""
        ledger.try_consume(IDENTITY)
        assert ledger.get_or_init(IDENTITY).consumed == 1

    def test_concurrent_initialization_creates_one_record(self, ledger, database):
        """Racing initializers converge on a single row."""
        with ThreadPoolExecutor(max_workers=8) as pool:
            records = list(pool.map(lambda _: ledger.get_or_init(IDENTITY), range(16)))

        assert all(record.consumed == 0 for record in records)
        with database.connection() as conn:
            count = conn.execute(
                "SELECT COUNT(*) FROM quota_records WHERE identity = ?", (IDENTITY,)
            ).fetchone()[0]
        assert count == 1

    def test_default_limit_must_be_positive(self, database):
        with pytest.raises(ValueError):
            QuotaLedger(database, default_limit=0)


class TestTryConsume:
    """Tests for atomic consumption."""

    def test_consume_until_limit(self, ledger):
        """Exactly ``limit`` units can be consumed, then consumption is refused."""
        results = [ledger.try_consume(IDENTITY) for _ in range(11)]
        assert results == [True] * 10 + [False]
        assert ledger.get_or_init(IDENTITY).consumed == 10

    def test_refused_consumption_does_not_mutate(self, ledger):
        """Asking for more than remains leaves the counter untouched."""
        ledger.try_consume(IDENTITY, count=8)
        assert ledger.try_consume(IDENTITY, count=3) is False
        assert ledger.remaining(IDENTITY) == 2

    def test_non_positive_count_is_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.try_consume(IDENTITY, count=0)

    def test_concurrent_consumers_never_exceed_limit(self, ledger):
        """Twenty racing consumers against a limit of ten: exactly ten win."""
        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(lambda _: ledger.try_consume(IDENTITY), range(20)))

        assert results.count(True) == 10
        record = ledger.get_or_init(IDENTITY)
        assert record.consumed == 10
        assert record.remaining == 0

    def test_identities_are_independent(self, ledger):
        ledger.try_consume(IDENTITY, count=10)
        assert ledger.remaining("198.51.100.1") == 10


class TestExpansion:
    """Tests for applying and expiring expansions."""

    def test_apply_expansion_raises_limit(self, ledger, clock):
        ledger.try_consume(IDENTITY, count=4)
        record = ledger.apply_expansion(IDENTITY, None, new_limit=100, duration_days=30)

        assert record.limit == 100
        assert record.expanded is True
        assert record.consumed == 4
        assert record.expanded_at == clock()
        assert record.expires_at == clock() + timedelta(days=30)

    def test_expansion_lapses_lazily(self, ledger, clock):
        """Reading a record after its expiry restores the default limit."""
        ledger.apply_expansion(IDENTITY, None, new_limit=100, duration_days=0)
        clock.advance(minutes=1)

        record = ledger.get_or_init(IDENTITY)
        assert record.limit == 10
        assert record.expanded is False
        assert record.expires_at is None

    def test_clear_expansion(self, ledger):
        ledger.apply_expansion(IDENTITY, None, new_limit=100, duration_days=30)
        record = ledger.clear_expansion(IDENTITY)
        assert record.limit == 10
        assert record.expanded is False

    def test_sweep_is_idempotent(self, ledger, clock):
        """The sweep clears every lapsed expansion once and then finds nothing."""
        ledger.apply_expansion(IDENTITY, None, new_limit=100, duration_days=0)
        ledger.apply_expansion("198.51.100.1", None, new_limit=50, duration_days=0)
        ledger.apply_expansion("198.51.100.2", None, new_limit=50, duration_days=30)
        clock.advance(minutes=1)

        assert ledger.sweep_expired() == 2
        assert ledger.sweep_expired() == 0
        assert ledger.get_or_init("198.51.100.2").expanded is True

    def test_non_positive_limit_is_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.apply_expansion(IDENTITY, None, new_limit=0, duration_days=30)


class TestDayRollover:
    """Tests for the transition to a new UTC day."""

    def test_new_day_starts_from_zero(self, ledger, clock):
        yesterday = clock().date()
        ledger.try_consume(IDENTITY, count=10)
        clock.advance(days=1)

        assert ledger.remaining(IDENTITY) == 10
        assert ledger.get_or_init(IDENTITY, yesterday).consumed == 10

    def test_new_day_inherits_active_expansion(self, ledger, clock):
        ledger.apply_expansion(IDENTITY, None, new_limit=100, duration_days=30)
        ledger.try_consume(IDENTITY, count=40)
        clock.advance(days=1)

        record = ledger.get_or_init(IDENTITY)
        assert record.consumed == 0
        assert record.limit == 100
        assert record.expanded is True

    def test_new_day_does_not_inherit_lapsed_expansion(self, ledger, clock):
        ledger.apply_expansion(IDENTITY, None, new_limit=100, duration_days=1)
        clock.advance(days=2)

        record = ledger.get_or_init(IDENTITY)
        assert record.limit == 10
        assert record.expanded is False

    def test_info_reports_usage(self, ledger):
        ledger.try_consume(IDENTITY, count=8)
        info = ledger.info(IDENTITY)
        assert info.conversions_used_today == 8
        assert info.remaining_conversions == 2
        assert info.usage_percentage == 80.0
        assert info.near_limit is True
        assert info.at_limit is False


class TestMaintenance:
    """Tests for reset, stats and purge."""

    def test_reset_clears_consumed(self, ledger):
        ledger.try_consume(IDENTITY, count=10)
        assert ledger.reset(IDENTITY).consumed == 0
        assert ledger.try_consume(IDENTITY) is True

    def test_today_stats(self, ledger):
        ledger.try_consume(IDENTITY, count=10)
        ledger.try_consume("198.51.100.1", count=2)
        ledger.get_or_init("198.51.100.2")

        stats = ledger.today_stats()
        assert stats["total_identities"] == 3
        assert stats["active_identities"] == 2
        assert stats["total_conversions"] == 12
        assert stats["identities_at_limit"] == 1

    def test_purge_keeps_active_expansions(self, ledger, clock):
        """Old plain records are deleted; old records carrying a live expansion stay."""
        ledger.try_consume(IDENTITY)
        ledger.apply_expansion("198.51.100.1", None, new_limit=100, duration_days=30)
        clock.advance(days=10)

        assert ledger.purge_before(clock().date() - timedelta(days=7)) == 1
        assert ledger.get_or_init("198.51.100.1").limit == 100
