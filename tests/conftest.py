import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from courtflow.db.session import Base
from courtflow.models.audit_log import AuditLog  # noqa: F401
from courtflow.models.flow_slot import FlowSlot  # noqa: F401
from courtflow.schemas.booking import CustomerInfo, TimeSlot
from courtflow.services.flow_storage import FlowStorage
from courtflow.services.payos_client import PayOSProvider
from courtflow.services.providers import GenericProvider
from courtflow.services.reservation_flow import countdowns, runtimes
from courtflow.services.vnpay_client import VNPayProvider
from tests.helpers import PAYOS_KEY, SESSION_ID, VNPAY_SECRET, VNPAY_TMN, FakeBackend, FakeClock

@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend(clock):
    return FakeBackend(clock)


@pytest.fixture
def storage(db):
    return FlowStorage(db, SESSION_ID)


@pytest.fixture
def providers():
    return {
        "payos": PayOSProvider(checksum_key=PAYOS_KEY, allow_unsigned_success=False),
        "vnpay": VNPayProvider(hash_secret=VNPAY_SECRET, tmn_code=VNPAY_TMN),
        "generic": GenericProvider(),
    }


@pytest.fixture(autouse=True)
def reset_runtime_state():
    yield
    countdowns.stop_all()
    runtimes.clear()


@pytest.fixture
def slots():
    return [
        TimeSlot(courtId="court-1", date="2026-05-02", start="18:00", end="19:00", price=120000),
        TimeSlot(courtId="court-1", date="2026-05-02", start="19:00", end="20:00", price=80000),
    ]


@pytest.fixture
def customer():
    return CustomerInfo(fullName="Nguyen Van An", phone="0912 345 678", email="An@Example.com")


