"""Earner notification sinks.

Sinks accept ``(earner_id, message, signed_amount)``. Delivery is the sink's
own concern: callers dispatch after their transaction has committed, and a
failing sink is logged without undoing the commission work it reports on.
"""
import logging
import requests
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from commission_core.core.config import settings
from commission_core.models.notification import Notification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EarnerNotice:
    earner_id: int
    message: str
    signed_amount: Optional[Decimal] = None
    type: str = "commission"
    payroll_run_id: Optional[int] = None


def format_signed(amount: Decimal) -> str:
    return f"+${amount:,.2f}" if amount >= 0 else f"-${abs(amount):,.2f}"


class DatabaseNotificationSink:
    """Stores notifications for the dashboard to display."""

    def __init__(self, db: Session):
        self.db = db

    def send(self, notice: EarnerNotice):
        self.db.add(
            Notification(
                user_id=notice.earner_id,
                type=notice.type,
                category="commission",
                message=notice.message,
                amount=notice.signed_amount,
                payroll_run_id=notice.payroll_run_id,
                is_read=False,
            )
        )
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise


class WebhookNotificationSink:
    """Posts notifications to an outbound webhook URL."""

    def __init__(self, url: str, timeout: int = 15):
        self.url = url
        self.timeout = timeout

    def send(self, notice: EarnerNotice):
        payload = {
            "earner_id": notice.earner_id,
            "type": notice.type,
            "message": notice.message,
            "amount": str(notice.signed_amount) if notice.signed_amount is not None else None,
            "payroll_run_id": notice.payroll_run_id,
        }
        resp = requests.post(
            self.url,
            json=payload,
            headers={
                "Content-Type": "application/json",
                "X-Commission-Event": notice.type,
                "X-Commission-Timestamp": datetime.utcnow().isoformat(),
            },
            timeout=self.timeout,
        )
        if resp.status_code >= 400:
            logger.warning(f"Notification webhook {notice.type} returned {resp.status_code}: {resp.text[:200]}")
        else:
            logger.info(f"Notification webhook {notice.type} sent for earner {notice.earner_id}")


class NotificationDispatcher:
    def __init__(self, sinks: Iterable):
        self.sinks: List = list(sinks)

    def deliver(self, notices: Iterable[EarnerNotice]) -> int:
        delivered = 0
        for notice in notices:
            for sink in self.sinks:
                try:
                    sink.send(notice)
                except Exception as e:
                    logger.error(
                        f"Notification to earner {notice.earner_id} via {type(sink).__name__} failed: {e}",
                        exc_info=True,
                    )
            delivered += 1
        return delivered


def build_dispatcher(db: Session) -> NotificationDispatcher:
    sinks = [DatabaseNotificationSink(db)]
    if settings.NOTIFICATION_WEBHOOK_URL:
        sinks.append(WebhookNotificationSink(settings.NOTIFICATION_WEBHOOK_URL, settings.NOTIFICATION_WEBHOOK_TIMEOUT))
    return NotificationDispatcher(sinks)
