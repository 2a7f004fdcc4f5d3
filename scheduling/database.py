import os
from dotenv import load_dotenv
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker


load_dotenv()
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./scheduling.db")

engine = create_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_time_slot_schema_checked = False


def ensure_time_slot_schema(bind=None) -> None:
    """Add columns and indexes introduced after the first deployments."""
    global _time_slot_schema_checked

    if _time_slot_schema_checked:
        return

    with _schema_lock:
        if _time_slot_schema_checked:
            return

        target = bind or engine
        inspector = inspect(target)

        if 'time_slots' not in inspector.get_table_names():
            _time_slot_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('time_slots')}
        migration_steps = [
            ('external_event_id', 'ALTER TABLE time_slots ADD COLUMN external_event_id VARCHAR(255)'),
            ('patient_id', 'ALTER TABLE time_slots ADD COLUMN patient_id VARCHAR(64)'),
            ('created_by', 'ALTER TABLE time_slots ADD COLUMN created_by VARCHAR(64)'),
        ]

        with target.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_time_slots_doctor_date ON time_slots(doctor_id, date, start_time)')
            )
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_time_slots_doctor_event '
                    'ON time_slots(doctor_id, external_event_id)'
                )
            )

        _time_slot_schema_checked = True
