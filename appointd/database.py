import logging
from contextlib import contextmanager
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from appointd.core import config


logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL

_connect_args = {'check_same_thread': False} if DATABASE_URL.startswith('sqlite') else {}
engine = create_engine(DATABASE_URL, echo=config.DATABASE_ECHO, connect_args=_connect_args)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_appointment_schema_checked = False

# Advisory lock namespace for per-doctor booking sections ("ap" in ASCII).
DOCTOR_LOCK_NAMESPACE = 0x6170
_doctor_locks: dict[int, Lock] = {}
_doctor_locks_guard = Lock()


def ensure_appointment_schema() -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    with _schema_lock:
        if _appointment_schema_checked:
            return

        inspector = inspect(engine)

        if 'appointments' not in inspector.get_table_names():
            _appointment_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('appointments')}
        migration_steps = [
            ('prescription_file', 'ALTER TABLE appointments ADD COLUMN prescription_file VARCHAR'),
            ('status_changed_at', 'ALTER TABLE appointments ADD COLUMN status_changed_at TIMESTAMP'),
            ('session_started_at', 'ALTER TABLE appointments ADD COLUMN session_started_at TIMESTAMP'),
            ('doctor_joined_at', 'ALTER TABLE appointments ADD COLUMN doctor_joined_at TIMESTAMP'),
            ('patient_joined_at', 'ALTER TABLE appointments ADD COLUMN patient_joined_at TIMESTAMP'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    logger.info('Adding column appointments.%s', column_name)
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_doctor_range ON appointments(doctor_id, start_time, end_time)')
            )
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_appointments_doctor_start_active '
                    "ON appointments(doctor_id, start_time) WHERE status != 'cancelled'"
                )
            )

        _appointment_schema_checked = True


def _process_lock_for(doctor_id: int) -> Lock:
    with _doctor_locks_guard:
        return _doctor_locks.setdefault(doctor_id, Lock())


@contextmanager
def doctor_lock(db: Session, doctor_id: int):
    """Serialize booking check-and-insert for one doctor.

    The process-local lock covers threads of this worker; on PostgreSQL a
    transaction-scoped advisory lock extends the section across workers and is
    released by the caller's commit or rollback.
    """
    with _process_lock_for(doctor_id):
        if db.get_bind().dialect.name == 'postgresql':
            db.execute(
                text('SELECT pg_advisory_xact_lock(:namespace, :doctor_id)'),
                {'namespace': DOCTOR_LOCK_NAMESPACE, 'doctor_id': doctor_id},
            )
        yield


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
