"""
Tests for the per-payment lock registry.
"""

import pytest

from commission_core.core import locks
from commission_core.core.exceptions import NotFoundError


@pytest.fixture
def payment(make_user, make_client, make_payment):
    return make_payment(make_client(sold_by=make_user()), "100")


class TestPaymentLock:

    def test_yields_row_and_releases_registry_slot(self, db, payment):
        with locks.payment_lock(db, payment.id) as locked:
            assert locked.id == payment.id
            assert payment.id in locks._payment_locks

        assert payment.id not in locks._payment_locks

    def test_nested_holders_share_one_slot(self, db, payment):
        lock = locks._checkout(payment.id)
        try:
            assert locks._payment_locks[payment.id] == [lock, 1]
            with locks.payment_lock(db, payment.id):
                assert locks._payment_locks[payment.id][1] == 2
                assert lock.locked()
            assert locks._payment_locks[payment.id] == [lock, 1]
        finally:
            locks._checkin(payment.id)

        assert payment.id not in locks._payment_locks

    def test_unknown_payment_releases_slot(self, db):
        with pytest.raises(NotFoundError):
            with locks.payment_lock(db, 555555):
                pass

        assert 555555 not in locks._payment_locks

    def test_registry_does_not_grow_with_payments_seen(self, db, make_user, make_client, make_payment):
        client = make_client(sold_by=make_user())
        for amount in ("10", "20", "30"):
            p = make_payment(client, amount)
            with locks.payment_lock(db, p.id):
                pass

        assert locks._payment_locks == {}
