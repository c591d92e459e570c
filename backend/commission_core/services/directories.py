"""Collaborator adapters backed by the local database.

Payment intake, the client directory and the earner directory are owned by
the surrounding system; these classes are the seam the commission services
read them through.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from commission_core.core.exceptions import NotFoundError
from commission_core.models.client import Client, CommissionSplit
from commission_core.models.payment import Payment
from commission_core.models.user import User
from commission_core.schemas.payment import PaymentCreate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientProfile:
    client_id: int
    lead_source: Optional[str]
    sold_by_user_id: Optional[int]
    assigned_coach_id: Optional[int]

    @property
    def primary_earner_id(self) -> Optional[int]:
        # Default 'sold_by' to the assigned coach if not explicitly set
        return self.sold_by_user_id or self.assigned_coach_id


@dataclass(frozen=True)
class SplitRow:
    user_id: int
    role_in_sale: str
    split_percentage: Decimal


class ClientDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get_client(self, client_id: int) -> ClientProfile:
        client = self.db.query(Client).filter(Client.id == client_id).first()
        if not client:
            raise NotFoundError("Client", client_id)
        return ClientProfile(
            client_id=client.id,
            lead_source=client.lead_source,
            sold_by_user_id=client.sold_by_user_id,
            assigned_coach_id=client.assigned_coach_id,
        )

    def get_splits(self, client_id: int) -> List[SplitRow]:
        rows = (
            self.db.query(CommissionSplit)
            .filter(CommissionSplit.client_id == client_id)
            .order_by(CommissionSplit.id)
            .all()
        )
        return [
            SplitRow(
                user_id=r.user_id,
                role_in_sale=r.role_in_sale,
                split_percentage=Decimal(str(r.split_percentage)),
            )
            for r in rows
        ]


class EarnerDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get_commission_config(self, user_id: int) -> dict:
        """Override object for an earner; empty when the user or config is missing."""
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user or not isinstance(user.commission_config, dict):
            return {}
        return dict(user.commission_config)


class PaymentIntake:
    """Records captured charges. One payment per processor charge id."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, payment_id: int) -> Payment:
        payment = self.db.query(Payment).filter(Payment.id == payment_id).first()
        if not payment:
            raise NotFoundError("Payment", payment_id)
        return payment

    def record(self, data: PaymentCreate) -> Tuple[Payment, bool]:
        """Store a payment; returns (payment, created)."""
        if data.processor_payment_id:
            existing = (
                self.db.query(Payment)
                .filter(Payment.processor_payment_id == data.processor_payment_id)
                .first()
            )
            if existing:
                logger.info(
                    f"Payment intake: {data.processor_payment_id} already recorded as payment {existing.id}"
                )
                return existing, False

        if not self.db.query(Client.id).filter(Client.id == data.client_id).first():
            raise NotFoundError("Client", data.client_id)

        net = data.net_amount if data.net_amount is not None else data.amount - data.processor_fee
        payment = Payment(
            processor_payment_id=data.processor_payment_id,
            client_id=data.client_id,
            amount=data.amount,
            processor_fee=data.processor_fee,
            net_amount=net,
            payment_date=data.payment_date,
            status=data.status,
            commission_calculated=False,
            refund_amount=Decimal("0"),
            refund_compensated_amount=Decimal("0"),
        )
        self.db.add(payment)
        self.db.commit()
        self.db.refresh(payment)
        logger.info(f"Payment intake: recorded payment {payment.id} ({payment.amount}) for client {payment.client_id}")
        return payment, True
