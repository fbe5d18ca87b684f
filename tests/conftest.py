import os
import sqlite3
import uuid

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)


# SQLite uses JSON instead of JSONB
def _patch_jsonb_for_sqlite():
    """Make JSONB compile as JSON for SQLite dialect."""
    from sqlalchemy.dialects.sqlite.base import SQLiteTypeCompiler

    if not hasattr(SQLiteTypeCompiler, "_original_visit_JSONB"):
        if hasattr(SQLiteTypeCompiler, "visit_JSONB"):
            SQLiteTypeCompiler._original_visit_JSONB = SQLiteTypeCompiler.visit_JSONB

        def visit_JSONB(self, type_, **kw):
            return self.visit_JSON(type_, **kw)

        SQLiteTypeCompiler.visit_JSONB = visit_JSONB


_patch_jsonb_for_sqlite()

from app import models  # noqa: E402,F401
from app.models.billing import Payment, PaymentStatus  # noqa: E402
from app.models.catalog import (  # noqa: E402
    CheckoutSession,
    Plan,
    PlanCycle,
    Price,
    Product,
    ProductType,
)
from app.schemas.admin_billing import AdminActor  # noqa: E402
from app.services.events import build_dispatcher  # noqa: E402
from tests.mocks import RecordingGateway  # noqa: E402


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        # Use PostgreSQL for tests (recommended)
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={
                "check_same_thread": False,
            },
            poolclass=StaticPool,
        )

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, _connection_record):
            # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs behave
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_sqlite(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)

    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        autocommit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def file_sessionmaker(tmp_path):
    """Independent sessions on one SQLite file, for interleaving two connections."""
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'billing.db'}")
    Base.metadata.create_all(engine)
    try:
        yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    finally:
        engine.dispose()


@pytest.fixture()
def gateway():
    return RecordingGateway()


@pytest.fixture()
def events(gateway):
    return build_dispatcher(gateway)


@pytest.fixture()
def user_id():
    return uuid.uuid4()


@pytest.fixture()
def admin_actor():
    return AdminActor(id=uuid.uuid4(), email="ops@example.com", roles=["admin"])


@pytest.fixture()
def subscription_product(db_session):
    product = Product(name="Pro profile", type=ProductType.subscription)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture()
def monthly_plan(db_session, subscription_product):
    plan = Plan(
        product_id=subscription_product.id,
        code=f"pro-monthly-{uuid.uuid4().hex[:8]}",
        name="Pro monthly",
        cycle=PlanCycle.monthly,
    )
    db_session.add(plan)
    db_session.commit()
    return plan


@pytest.fixture()
def yearly_plan(db_session, subscription_product):
    plan = Plan(
        product_id=subscription_product.id,
        code=f"pro-yearly-{uuid.uuid4().hex[:8]}",
        name="Pro yearly",
        cycle=PlanCycle.yearly,
    )
    db_session.add(plan)
    db_session.commit()
    return plan


@pytest.fixture()
def monthly_price(db_session, subscription_product, monthly_plan):
    price = Price(
        product_id=subscription_product.id,
        plan_id=monthly_plan.id,
        amount=1_000_000,
        currency="IRR",
    )
    db_session.add(price)
    db_session.commit()
    return price


@pytest.fixture()
def job_price(db_session):
    product = Product(
        name="Job post pack",
        type=ProductType.job_post,
        metadata_={"jobCredits": 5},
    )
    db_session.add(product)
    db_session.flush()
    price = Price(product_id=product.id, amount=250_000, currency="IRR")
    db_session.add(price)
    db_session.commit()
    return price


@pytest.fixture()
def course_price(db_session):
    product = Product(name="Interview course", type=ProductType.course)
    db_session.add(product)
    db_session.flush()
    price = Price(product_id=product.id, amount=500_000, currency="IRR")
    db_session.add(price)
    db_session.commit()
    return price


@pytest.fixture()
def make_payment(db_session, user_id):
    """Create a committed payment for ``price`` through a checkout session."""

    def _make(price, status=PaymentStatus.paid, amount=None, owner=None, provider_ref=None):
        owner = owner or user_id
        checkout = CheckoutSession(user_id=owner, price_id=price.id, provider="zarinpal")
        db_session.add(checkout)
        db_session.flush()
        payment = Payment(
            user_id=owner,
            checkout_session_id=checkout.id,
            provider="zarinpal",
            provider_ref=provider_ref or f"ref-{uuid.uuid4().hex[:12]}",
            status=status,
            amount=price.amount if amount is None else amount,
            refunded_amount=0,
            currency=price.currency,
        )
        db_session.add(payment)
        db_session.commit()
        return payment

    return _make

