"""Tests for the points ledger and incremental aggregation."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.sql.dml import Update

from leaderboard_engine.core.errors import ConcurrencyConflictError, NotFoundError, ValidationError
from leaderboard_engine.models import ContextType, Period, PointAggregate, PointTransaction
from leaderboard_engine.services import aggregation_service, config_service, leaderboard_service, ledger_service
from leaderboard_engine.services.notifier import MILESTONE_REACHED

T = datetime(2025, 11, 12, 10, 0)


def _aggregate(db, student_id, period, context_id="C"):
    return db.execute(
        select(PointAggregate.total).where(
            PointAggregate.student_id == student_id,
            PointAggregate.context_id == context_id,
            PointAggregate.period == period,
        )
    ).scalar_one_or_none()


def _total(db, student_id, **kwargs):
    return ledger_service.get_total(
        db, student_id=student_id, context_type=ContextType.CLASS, context_id="C", **kwargs
    )


class TestRecordPoints:
    """Tests for ledger_service.record_points."""

    def test_award_updates_every_period(self, db, award):
        result = award("A", 50, "grade-1", T)
        assert not result.duplicate
        assert result.totals == {period: 50 for period in Period}
        assert result.event.periods == tuple(Period)
        for period in Period:
            assert _aggregate(db, "A", period) == 50

    def test_duplicate_source_event_is_a_no_op(self, db, award):
        first = award("A", 50, "grade-1", T)
        second = award("A", 50, "grade-1", T)
        assert second.duplicate
        assert second.transaction.transaction_id == first.transaction.transaction_id
        assert second.event is None
        assert _total(db, "A") == 50
        assert _aggregate(db, "A", Period.WEEKLY) == 50
        assert db.execute(select(func.count()).select_from(PointTransaction)).scalar_one() == 1

    def test_same_source_event_in_other_context_is_distinct(self, db, award):
        award("A", 50, "grade-1", T)
        result = award("A", 30, "grade-1", T, context_id="D")
        assert not result.duplicate
        assert _aggregate(db, "A", Period.WEEKLY, context_id="D") == 30

    def test_totals_accumulate(self, db, award):
        award("A", 50, "grade-1", T)
        result = award("A", 25, "grade-2", datetime(2025, 11, 14, 9))
        assert result.totals[Period.WEEKLY] == 75
        assert result.totals[Period.DAILY] == 25

    @pytest.mark.parametrize(
        "overrides",
        [{"amount": 0}, {"source_event_id": ""}, {"student_id": ""}, {"category": ""}],
    )
    def test_invalid_input_is_rejected(self, db, runtime, overrides):
        values = dict(
            student_id="A",
            context_type=ContextType.CLASS,
            context_id="C",
            amount=10,
            category="quiz",
            source_event_id="e1",
            timestamp=T,
        )
        values.update(overrides)
        with pytest.raises(ValidationError):
            ledger_service.record_points(db, runtime, **values)

    def test_milestones_emit_webhooks_once(self, db, award, dispatcher):
        first = award("A", 60, "e1", T)
        assert first.milestones_crossed == []
        second = award("A", 50, "e2", T)
        assert second.milestones_crossed == [100]
        award("A", 10, "e3", T)

        dispatcher.dispatch.assert_called_once()
        (payloads,), _ = dispatcher.dispatch.call_args
        assert [payload["event"] for payload in payloads] == [MILESTONE_REACHED]
        assert payloads[0]["data"]["milestone"] == 100
        assert payloads[0]["data"]["points"] == 110

    def test_milestones_fire_when_all_time_is_not_enabled(self, db, runtime, award, dispatcher):
        config_service.update_config(db, ContextType.CLASS, "C", {"enabled_periods": ["weekly"]}, runtime.settings)
        db.commit()

        result = award("A", 150, "e1", T)
        assert result.totals == {Period.WEEKLY: 150}
        assert result.milestones_crossed == [100]
        assert result.all_time_total == 150
        (payloads,), _ = dispatcher.dispatch.call_args
        assert payloads[0]["data"]["milestone"] == 100
        assert payloads[0]["data"]["points"] == 150

    def test_unrelated_integrity_errors_are_not_reported_as_reversals(self, db, runtime, award, monkeypatch):
        award("A", 10, "e1", T)
        monkeypatch.setattr(ledger_service, "_find_by_source", lambda *args: None)
        with pytest.raises(IntegrityError):
            ledger_service.record_points(
                db,
                runtime,
                student_id="A",
                context_type=ContextType.CLASS,
                context_id="C",
                amount=10,
                category="quiz",
                source_event_id="e1",
                timestamp=T,
            )
        db.rollback()

    def test_writers_take_the_shared_context_lock(self, db, runtime, monkeypatch):
        calls = []
        monkeypatch.setattr(
            aggregation_service,
            "lock_context",
            lambda session, context_type, context_id, exclusive=False: calls.append(
                (context_type, context_id, exclusive)
            ),
        )
        ledger_service.record_points(
            db,
            runtime,
            student_id="A",
            context_type=ContextType.CLASS,
            context_id="C",
            amount=10,
            category="quiz",
            source_event_id="e1",
            timestamp=T,
        )
        assert calls == [(ContextType.CLASS, "C", False)]

    def test_conflicting_updates_surface_as_retryable(self, db, runtime, award, monkeypatch):
        award("A", 10, "e1", T)
        original = db.execute

        def losing(statement, *args, **kwargs):
            if isinstance(statement, Update):
                return MagicMock(rowcount=0)
            return original(statement, *args, **kwargs)

        monkeypatch.setattr(db, "execute", losing)
        with pytest.raises(ConcurrencyConflictError):
            ledger_service.record_points(
                db,
                runtime,
                student_id="A",
                context_type=ContextType.CLASS,
                context_id="C",
                amount=10,
                category="quiz",
                source_event_id="e2",
                timestamp=T,
            )
        monkeypatch.undo()
        db.rollback()
        assert _total(db, "A") == 10


class TestReversal:
    """Tests for ledger_service.reverse_points."""

    def _reverse(self, db, runtime, transaction_id, source_event_id):
        result = ledger_service.reverse_points(db, runtime, transaction_id, source_event_id=source_event_id)
        db.commit()
        runtime.after_commit(result)
        return result

    def test_reversal_cancels_award_in_original_buckets(self, db, runtime, award):
        original = award("A", 50, "e1", T)
        result = self._reverse(db, runtime, original.transaction.transaction_id, "rev-1")
        assert result.transaction.amount == -50
        assert result.transaction.awarded_at == T
        assert result.transaction.category == ledger_service.REVERSAL_CATEGORY
        assert _total(db, "A") == 0
        assert _aggregate(db, "A", Period.WEEKLY) == 0

    def test_reversal_replay_is_idempotent(self, db, runtime, award):
        original = award("A", 50, "e1", T)
        self._reverse(db, runtime, original.transaction.transaction_id, "rev-1")
        replay = self._reverse(db, runtime, original.transaction.transaction_id, "rev-1")
        assert replay.duplicate
        assert _total(db, "A") == 0

    def test_second_reversal_is_rejected(self, db, runtime, award):
        original = award("A", 50, "e1", T)
        self._reverse(db, runtime, original.transaction.transaction_id, "rev-1")
        with pytest.raises(ValidationError):
            ledger_service.reverse_points(
                db, runtime, original.transaction.transaction_id, source_event_id="rev-2"
            )
        db.rollback()
        assert _total(db, "A") == 0

    def test_reversal_cannot_be_reversed(self, db, runtime, award):
        original = award("A", 50, "e1", T)
        reversal = self._reverse(db, runtime, original.transaction.transaction_id, "rev-1")
        with pytest.raises(ValidationError):
            ledger_service.reverse_points(
                db, runtime, reversal.transaction.transaction_id, source_event_id="rev-2"
            )

    def test_unknown_transaction(self, db, runtime):
        with pytest.raises(NotFoundError):
            ledger_service.reverse_points(db, runtime, "missing", source_event_id="rev-1")


class TestGetTotal:
    """Tests for ledger_service.get_total."""

    def test_range_is_half_open(self, db, award):
        award("A", 10, "e1", datetime(2025, 11, 10))
        award("A", 20, "e2", datetime(2025, 11, 11))
        award("A", 40, "e3", datetime(2025, 11, 12))
        assert _total(db, "A") == 70
        assert _total(db, "A", start=datetime(2025, 11, 11)) == 60
        assert _total(db, "A", end=datetime(2025, 11, 11)) == 10
        assert _total(db, "A", start=datetime(2025, 11, 11), end=datetime(2025, 11, 12)) == 20

    def test_student_without_awards_has_zero(self, db, award):
        award("A", 10, "e1", T)
        assert _total(db, "nobody") == 0

    def test_unknown_context(self, db):
        with pytest.raises(NotFoundError):
            _total(db, "nobody")

    def test_total_never_decreases_without_negative_awards(self, db, award):
        seen = []
        for index, amount in enumerate([5, 10, 15]):
            award("A", amount, f"e{index}", T)
            seen.append(_total(db, "A"))
        assert seen == sorted(seen)


class TestRecompute:
    """Tests for rebuilding aggregates from the ledger."""

    def test_drifted_totals_are_repaired(self, db, runtime, award):
        award("A", 50, "e1", T)
        award("B", 30, "e2", T)
        row = db.execute(
            select(PointAggregate).where(PointAggregate.student_id == "A", PointAggregate.period == Period.WEEKLY)
        ).scalar_one()
        row.total = 999
        db.commit()

        summary, targets = leaderboard_service.rebuild_context(db, runtime, ContextType.CLASS, "C")
        db.commit()

        assert summary == {"transactions": 2, "aggregates": 10, "drifted": 1}
        assert _aggregate(db, "A", Period.WEEKLY) == 50
        assert targets

    def test_unknown_context(self, db, runtime):
        with pytest.raises(NotFoundError):
            leaderboard_service.rebuild_context(db, runtime, ContextType.CLASS, "nowhere")

    def test_rebuild_locks_the_context_before_reading(self, db, runtime, award, monkeypatch):
        award("A", 50, "e1", T)
        order = []
        original_execute = db.execute

        def tracking(statement, *args, **kwargs):
            order.append("execute")
            return original_execute(statement, *args, **kwargs)

        monkeypatch.setattr(db, "execute", tracking)
        monkeypatch.setattr(
            aggregation_service,
            "lock_context",
            lambda session, context_type, context_id, exclusive=False: order.append(("lock", exclusive)),
        )
        aggregation_service.recompute_context(
            db, ContextType.CLASS, "C", bucketing=runtime.bucketing, periods=list(Period)
        )
        assert order[0] == ("lock", True)


class TestContextLock:
    """Tests for the per-context advisory lock."""

    def _session(self, dialect):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = dialect
        return session

    def test_postgres_rebuild_takes_exclusive_lock(self):
        session = self._session("postgresql")
        aggregation_service.lock_context(session, ContextType.CLASS, "C", exclusive=True)
        statement, params = session.execute.call_args.args
        assert "pg_advisory_xact_lock(" in str(statement)
        assert params == {"key": aggregation_service.context_lock_key(ContextType.CLASS, "C")}

    def test_postgres_writers_share_the_lock(self):
        session = self._session("postgresql")
        aggregation_service.lock_context(session, ContextType.CLASS, "C")
        statement, _ = session.execute.call_args.args
        assert "pg_advisory_xact_lock_shared(" in str(statement)

    def test_sqlite_takes_no_lock(self):
        session = self._session("sqlite")
        aggregation_service.lock_context(session, ContextType.CLASS, "C", exclusive=True)
        session.execute.assert_not_called()

    def test_keys_are_stable_and_distinct(self):
        key = aggregation_service.context_lock_key(ContextType.CLASS, "C")
        assert key == aggregation_service.context_lock_key(ContextType.CLASS, "C")
        assert key != aggregation_service.context_lock_key(ContextType.SUBJECT, "C")
        assert -(2**63) <= key < 2**63
