from datetime import date, timedelta

import pytest

from scheduling.core.errors import ConcurrencyError
from scheduling.models.doctor_lock import DoctorLockLease
from scheduling.models.time_slot import utcnow
from scheduling.services.availability_service import build_availability_service
from scheduling.services.locks import DoctorLockRegistry

DAY = date(2024, 6, 10)
NEXT_DAY = date(2024, 6, 11)


def add_lease(session_factory, doctor_id: str, expires_in: timedelta) -> None:
    db = session_factory()
    try:
        now = utcnow()
        db.add(
            DoctorLockLease(
                doctor_id=doctor_id,
                holder='other-process',
                operation='sync',
                acquired_at=now,
                expires_at=now + expires_in,
            )
        )
        db.commit()
    finally:
        db.close()


def lease_holders(session_factory) -> list[str]:
    db = session_factory()
    try:
        return [lease.holder for lease in db.query(DoctorLockLease).all()]
    finally:
        db.close()


def test_locks_are_independent_per_doctor(session_factory) -> None:
    locks = DoctorLockRegistry(session_factory, timeout=0)

    with locks.hold('doc-1'):
        assert locks.is_locked('doc-1')
        with locks.hold('doc-2'):
            assert locks.is_locked('doc-2')

    assert not locks.is_locked('doc-1')
    assert lease_holders(session_factory) == []


def test_registry_forgets_released_doctors(session_factory) -> None:
    locks = DoctorLockRegistry(session_factory, timeout=0)

    for index in range(5):
        with locks.hold(f'doc-{index}'):
            assert locks.tracked_doctors() == 1

    assert locks.tracked_doctors() == 0


def test_registry_forgets_doctor_after_failed_acquire(session_factory) -> None:
    holder = DoctorLockRegistry(session_factory, timeout=0)
    contender = DoctorLockRegistry(session_factory, timeout=0)

    with holder.hold('doc-1'):
        with pytest.raises(ConcurrencyError):
            with contender.hold('doc-1'):
                pass

    assert contender.tracked_doctors() == 0


def test_lease_is_shared_between_registries(session_factory) -> None:
    first = DoctorLockRegistry(session_factory, timeout=0.1)
    second = DoctorLockRegistry(session_factory, timeout=0.1)

    with first.hold('doc-1', operation='generate_standard'):
        assert second.is_locked('doc-1')
        with pytest.raises(ConcurrencyError):
            with second.hold('doc-1'):
                pass

    with second.hold('doc-1'):
        assert first.is_locked('doc-1')


def test_live_lease_from_another_process_blocks(session_factory) -> None:
    add_lease(session_factory, 'doc-1', timedelta(minutes=5))
    locks = DoctorLockRegistry(session_factory, timeout=0)

    assert locks.is_locked('doc-1')
    with pytest.raises(ConcurrencyError):
        with locks.hold('doc-1'):
            pass

    assert lease_holders(session_factory) == ['other-process']


def test_expired_lease_is_taken_over(session_factory) -> None:
    add_lease(session_factory, 'doc-1', timedelta(minutes=-1))
    locks = DoctorLockRegistry(session_factory, timeout=0)

    assert not locks.is_locked('doc-1')
    with locks.hold('doc-1'):
        holders = lease_holders(session_factory)
        assert len(holders) == 1
        assert holders != ['other-process']

    assert lease_holders(session_factory) == []


def test_separately_built_services_serialize_generation(session_factory, cipher, calendar, add_doctor) -> None:
    doctor_id = add_doctor()
    worker_a = build_availability_service(
        session_factory,
        cipher,
        client_class=calendar.connect,
        lock_timeout=0.1,
        background_audit=False,
    )
    worker_b = build_availability_service(
        session_factory,
        cipher,
        client_class=calendar.connect,
        lock_timeout=0.1,
        background_audit=False,
    )
    working_hours = {'start_time': '09:00', 'end_time': '11:00'}

    with worker_a._locks.hold(doctor_id, operation='sync'):
        with pytest.raises(ConcurrencyError):
            worker_b.generate_standard_time_slots(doctor_id, DAY, NEXT_DAY, 30, working_hours)
        with pytest.raises(ConcurrencyError):
            worker_b.sync_with_calendar(doctor_id, DAY, NEXT_DAY)

    assert worker_b.get_time_slots(doctor_id, DAY, NEXT_DAY) == []
    assert calendar.connected_with is None

    result = worker_b.generate_standard_time_slots(doctor_id, DAY, NEXT_DAY, 30, working_hours)
    assert len(result.created) == 4
