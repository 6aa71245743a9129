import os
from concurrent.futures import Executor, Future
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from appointd.core import config  # noqa: E402
from appointd.database import Base  # noqa: E402
from appointd.models import availability, notification, payment  # noqa: E402,F401
from appointd.models.appointment import Appointment  # noqa: E402
from appointd.models.availability import AvailabilityWindow  # noqa: E402
from appointd.models.user import Role, User  # noqa: E402
from appointd.services.lifecycle import Actor  # noqa: E402
from appointd.services.notifications import NotificationDispatcher  # noqa: E402

DOCTOR_ID = 1
PATIENT_ID = 2
OTHER_PATIENT_ID = 3
ADMIN_ID = 4


class InlineExecutor(Executor):
    """Runs submitted work on the calling thread."""

    def __init__(self):
        self.calls = []

    def submit(self, fn, /, *args, **kwargs):
        self.calls.append((fn, args, kwargs))
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class RecordingSender:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.events = []

    def __call__(self, event) -> None:
        if self.failures:
            self.failures -= 1
            raise RuntimeError('channel unavailable')
        self.events.append(event)


@pytest.fixture
def db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def users(db):
    db.add_all([
        User(id=DOCTOR_ID, email='doctor@example.com', full_name='Dr. Ada', role=Role.DOCTOR.value,
             consultation_fee=Decimal('100.00')),
        User(id=PATIENT_ID, email='patient@example.com', full_name='Pat', role=Role.PATIENT.value),
        User(id=OTHER_PATIENT_ID, email='other@example.com', full_name='Olive', role=Role.PATIENT.value),
        User(id=ADMIN_ID, email='admin@example.com', full_name='Admin', role=Role.ADMIN.value),
    ])
    db.commit()


@pytest.fixture
def wednesday_window(db, users):
    window = AvailabilityWindow(doctor_id=DOCTOR_ID, weekday=2, start_minute=9 * 60, end_minute=10 * 60)
    db.add(window)
    db.commit()
    return window


@pytest.fixture
def senders():
    return {'email': RecordingSender(), 'in-app': RecordingSender()}


@pytest.fixture
def make_dispatcher():
    def _make(senders, max_attempts: int = 3, sleep=lambda seconds: None) -> NotificationDispatcher:
        return NotificationDispatcher(
            senders=senders,
            executor=InlineExecutor(),
            max_attempts=max_attempts,
            backoff_seconds=0.5,
            sleep=sleep,
        )

    return _make


@pytest.fixture
def dispatcher(make_dispatcher, senders):
    return make_dispatcher(senders)


@pytest.fixture
def webhook_secret(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setattr(config, 'PAYMENT_WEBHOOK_SECRET', 'test-webhook-secret')
    return 'test-webhook-secret'


@pytest.fixture
def doctor() -> Actor:
    return Actor(actor_id=DOCTOR_ID, role=Role.DOCTOR.value)


@pytest.fixture
def patient() -> Actor:
    return Actor(actor_id=PATIENT_ID, role=Role.PATIENT.value)


@pytest.fixture
def other_patient() -> Actor:
    return Actor(actor_id=OTHER_PATIENT_ID, role=Role.PATIENT.value)


@pytest.fixture
def admin() -> Actor:
    return Actor(actor_id=ADMIN_ID, role=Role.ADMIN.value)


@pytest.fixture
def now() -> datetime:
    # A Sunday, so the coming Wednesday has no same-day cutoff.
    return datetime(2026, 11, 1, 12, 0)


@pytest.fixture
def wednesday() -> date:
    return date(2026, 11, 4)


@pytest.fixture
def recording_sender():
    return RecordingSender


@pytest.fixture
def make_appointment(db, users):
    def _make(status: str = 'scheduled', start: datetime = datetime(2026, 11, 4, 9, 0), **fields) -> Appointment:
        values = {
            'patient_id': PATIENT_ID,
            'doctor_id': DOCTOR_ID,
            'start_time': start,
            'end_time': start + timedelta(minutes=30),
            'duration_minutes': 30,
            'appointment_type': 'video',
            'status': status,
            'consultation_fee': Decimal('100.00'),
            'status_changed_at': datetime(2026, 11, 1, 12, 0),
        }
        values.update(fields)
        appointment = Appointment(**values)
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment

    return _make


class ClosedExecutor(Executor):
    """An executor that has already been shut down."""

    def submit(self, fn, /, *args, **kwargs):
        raise RuntimeError('cannot schedule new futures after shutdown')


@pytest.fixture
def closed_dispatcher(senders):
    return NotificationDispatcher(senders=senders, executor=ClosedExecutor())
