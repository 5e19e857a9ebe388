from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError
from app.services.subscription import PaymentFailureLedger

NOW = dt.datetime(2025, 2, 1, tzinfo=dt.timezone.utc)


def _open(db, user_id: int = 1, detected_at: dt.datetime = NOW, days: int = 3):
    failure = PaymentFailureLedger(db).record(
        user_id=user_id,
        remote_subscription_id="I-1",
        detected_at=detected_at,
        grace_period_ends_at=detected_at + dt.timedelta(days=days),
    )
    db.commit()
    return failure


class TestPaymentFailureLedger:
    def test_open_failure_round_trip(self, db_session):
        failure = _open(db_session)
        ledger = PaymentFailureLedger(db_session)
        found = ledger.open_failure(1)
        assert found.id == failure.id
        assert found.retry_count == 0
        assert not found.is_resolved

    def test_second_unresolved_failure_is_refused_by_database(self, db_session):
        _open(db_session)
        with pytest.raises(IntegrityError):
            _open(db_session)
        db_session.rollback()

    def test_resolved_failures_do_not_block_new_ones(self, db_session):
        first = _open(db_session)
        ledger = PaymentFailureLedger(db_session)
        ledger.resolve(first.id, NOW + dt.timedelta(days=1), "recovered")
        db_session.commit()

        second = _open(db_session, detected_at=NOW + dt.timedelta(days=20))
        history = ledger.history(1)
        assert [f.id for f in history] == [first.id, second.id]
        assert history[0].resolution == "recovered"
        assert ledger.open_failure(1).id == second.id

    def test_resolve_twice_conflicts(self, db_session):
        failure = _open(db_session)
        ledger = PaymentFailureLedger(db_session)
        ledger.resolve(failure.id, NOW, "recovered")
        db_session.commit()
        with pytest.raises(ConflictError):
            ledger.resolve(failure.id, NOW, "grace_expired")

    def test_mark_retry_counts(self, db_session):
        failure = _open(db_session)
        ledger = PaymentFailureLedger(db_session)
        later = NOW + dt.timedelta(hours=5)
        ledger.mark_retry(failure.id, later)
        ledger.mark_retry(failure.id, later)
        db_session.commit()
        found = ledger.open_failure(1)
        assert found.retry_count == 2
        assert found.last_retry_at == later

    def test_expired_grace_periods(self, db_session):
        _open(db_session, user_id=1, detected_at=NOW)
        _open(db_session, user_id=2, detected_at=NOW + dt.timedelta(days=2))
        ledger = PaymentFailureLedger(db_session)

        assert ledger.expired_grace_periods(NOW + dt.timedelta(days=2)) == []
        due = ledger.expired_grace_periods(NOW + dt.timedelta(days=3))
        assert [f.user_id for f in due] == [1]

    def test_days_remaining_rounds_up(self, db_session):
        failure = _open(db_session)
        assert failure.days_remaining(NOW) == 3
        assert failure.days_remaining(NOW + dt.timedelta(hours=1)) == 3
        assert failure.days_remaining(NOW + dt.timedelta(days=2, hours=23)) == 1
        assert failure.days_remaining(NOW + dt.timedelta(days=4)) == 0
