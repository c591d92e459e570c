"""Per-payment serialisation.

Calculation, recalculation and reversal all run their read-modify-write under
the same lock: an in-process lock keyed by payment id (serialises requests
within one worker, and is the only guard on SQLite) plus a row-level
``SELECT ... FOR UPDATE`` on the payment (serialises across workers on
PostgreSQL).
"""
import logging
import threading
from contextlib import contextmanager

from sqlalchemy import select
from sqlalchemy.orm import Session

from commission_core.core.exceptions import NotFoundError
from commission_core.models.payment import Payment

logger = logging.getLogger(__name__)

_registry_guard = threading.Lock()
# payment id -> [lock, holders]; dropped once no caller holds or waits on it
_payment_locks: dict = {}


def _checkout(payment_id: int) -> threading.Lock:
    with _registry_guard:
        slot = _payment_locks.get(payment_id)
        if slot is None:
            slot = [threading.Lock(), 0]
            _payment_locks[payment_id] = slot
        slot[1] += 1
        return slot[0]


def _checkin(payment_id: int):
    with _registry_guard:
        slot = _payment_locks[payment_id]
        slot[1] -= 1
        if slot[1] == 0:
            del _payment_locks[payment_id]


@contextmanager
def payment_lock(db: Session, payment_id: int):
    """Hold the payment lock and yield the freshly re-read, row-locked payment."""
    lock = _checkout(payment_id)
    try:
        with lock:
            payment = db.execute(
                select(Payment)
                .where(Payment.id == payment_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if payment is None:
                raise NotFoundError("Payment", payment_id)
            logger.debug(f"Acquired lock for payment {payment_id}")
            yield payment
    finally:
        _checkin(payment_id)
