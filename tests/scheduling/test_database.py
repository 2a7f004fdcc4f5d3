from sqlalchemy import create_engine, inspect, text

from scheduling import database


def test_ensure_time_slot_schema_upgrades_legacy_table(monkeypatch) -> None:
    engine = create_engine('sqlite:///:memory:')
    with engine.begin() as connection:
        connection.execute(
            text(
                'CREATE TABLE time_slots ('
                'id VARCHAR(32) PRIMARY KEY, doctor_id VARCHAR(64), date DATE, '
                'start_time VARCHAR(5), end_time VARCHAR(5), status VARCHAR(16))'
            )
        )
    monkeypatch.setattr(database, '_time_slot_schema_checked', False)

    database.ensure_time_slot_schema(bind=engine)
    database.ensure_time_slot_schema(bind=engine)

    inspector = inspect(engine)
    columns = {column['name'] for column in inspector.get_columns('time_slots')}
    indexes = {index['name']: index for index in inspector.get_indexes('time_slots')}
    assert {'external_event_id', 'patient_id', 'created_by'} <= columns
    assert indexes['uq_time_slots_doctor_event']['unique']
    assert 'idx_time_slots_doctor_date' in indexes


def test_ensure_time_slot_schema_skips_missing_table(monkeypatch) -> None:
    engine = create_engine('sqlite:///:memory:')
    monkeypatch.setattr(database, '_time_slot_schema_checked', False)

    database.ensure_time_slot_schema(bind=engine)

    assert database._time_slot_schema_checked is True
    assert inspect(engine).get_table_names() == []
