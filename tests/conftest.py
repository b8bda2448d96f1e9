import os

# Set testing environment variables before the application is imported
os.environ["TESTING"] = "1"
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///./test.db")

import pytest
from datetime import datetime, timedelta
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from opd_allocation.core.database import Base, build_engine, get_db
from opd_allocation.core.security import UserRole, create_access_token
from opd_allocation.main import app
from opd_allocation.models import Doctor, Slot, SlotStatus, Token, WaitingEntry, WaitingStatus
from opd_allocation.schemas.allocation import TokenRequest

NOW = datetime(2026, 3, 2, 8, 0, 0)


class FakeClock:
    """Controllable replacement for datetime.utcnow."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'opd.db'}")
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
def clock():
    return FakeClock()


@pytest.fixture
def doctor(db):
    doctor = Doctor(name="Dr. Asha Rao", specialization="General", average_consultation_time=15)
    db.add(doctor)
    db.commit()
    db.refresh(doctor)
    return doctor


@pytest.fixture
def make_slot(db):
    """Build a slot ``hours`` after ``base`` (defaults to NOW)."""
    def _make_slot(doctor, hours, capacity=10, minutes=30, base=NOW, status=SlotStatus.OPEN):
        start = base + timedelta(hours=hours)
        slot = Slot(
            doctor_id=doctor.id,
            start_time=start,
            end_time=start + timedelta(minutes=minutes),
            max_capacity=capacity,
            current_occupancy=0,
            status=status,
        )
        db.add(slot)
        db.commit()
        db.refresh(slot)
        return slot
    return _make_slot


def token_request(doctor, source, slot=None, earliest=None, reason=None):
    return TokenRequest(
        doctor_id=doctor.id,
        source=source,
        preferred_slot_id=slot.id if slot is not None else None,
        earliest_time=earliest,
        reason=reason,
    )


def assert_slot_invariants(db):
    """occupancy == |admitted| <= capacity for every slot."""
    db.expire_all()
    for slot in db.query(Slot).all():
        assert slot.current_occupancy == len(slot.admitted_tokens), slot
        assert slot.current_occupancy <= slot.max_capacity, slot


def assert_dense_positions(db, doctor_id):
    """Waiting positions for a doctor are exactly 1..N."""
    db.expire_all()
    positions = sorted(
        e.queue_position
        for e in db.query(WaitingEntry).filter(
            WaitingEntry.doctor_id == doctor_id,
            WaitingEntry.status == WaitingStatus.WAITING,
        )
    )
    assert positions == list(range(1, len(positions) + 1))


def tokens_in(db, slot):
    db.expire_all()
    return db.query(Token).filter(Token.slot_id == slot.id).all()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def auth_headers():
    def _headers(requester_id=1, role=UserRole.PATIENT):
        token = create_access_token(requester_id, role)
        return {"Authorization": f"Bearer {token}"}
    return _headers
