"""
Shared fixtures: an in-memory SQLite database and small record factories.

DATABASE_URL must be set before commission_core is imported, since the
engine is built from settings at import time.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("NOTIFICATION_WEBHOOK_URL", None)

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import commission_core.models  # noqa: F401
from commission_core.core.database import Base
from commission_core.models.client import Client, CommissionSplit
from commission_core.models.payment import Payment
from commission_core.models.user import User
from commission_core.services.notifications import NotificationDispatcher
from commission_core.services.payroll_periods import PayrollCalendar
from commission_core.services.rates import CommissionRates


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def rates():
    return CommissionRates(company_lead_rate=Decimal("0.50"), self_gen_rate=Decimal("0.70"))


@pytest.fixture
def calendar():
    return PayrollCalendar()


class RecordingSink:
    def __init__(self):
        self.notices = []

    def send(self, notice):
        self.notices.append(notice)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def dispatcher(sink):
    return NotificationDispatcher([sink])


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(name=None, commission_config=None, role="coach"):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            email=f"earner{n}@example.com",
            full_name=name or f"Earner {n}",
            role=role,
            commission_config=commission_config,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_client(db):
    def _make(name="Jane Client", lead_source="company_driven", sold_by=None, coach=None, splits=()):
        client = Client(
            name=name,
            lead_source=lead_source,
            sold_by_user_id=sold_by.id if sold_by else None,
            assigned_coach_id=coach.id if coach else None,
        )
        db.add(client)
        db.flush()
        for user, pct, role in splits:
            db.add(
                CommissionSplit(
                    client_id=client.id,
                    user_id=user.id,
                    role_in_sale=role,
                    split_percentage=Decimal(str(pct)),
                )
            )
        db.commit()
        db.refresh(client)
        return client

    return _make


@pytest.fixture
def make_payment(db):
    def _make(client, amount, fee="0", payment_date=datetime(2025, 1, 6, 10, 0), status="succeeded"):
        amount = Decimal(str(amount))
        fee = Decimal(str(fee))
        payment = Payment(
            client_id=client.id,
            amount=amount,
            processor_fee=fee,
            net_amount=amount - fee,
            payment_date=payment_date,
            status=status,
            commission_calculated=False,
            refund_amount=Decimal("0"),
            refund_compensated_amount=Decimal("0"),
        )
        db.add(payment)
        db.commit()
        db.refresh(payment)
        return payment

    return _make
