from datetime import time

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from appointd.routes.availability_routes import (
    CreateWindowRequest,
    UpdateWindowRequest,
    create_window,
    delete_window,
    list_doctor_windows,
    list_slots,
    update_window,
)
from appointd.services.lifecycle import Actor


@pytest.fixture(autouse=True)
def frozen_routes(monkeypatch: pytest.MonkeyPatch, now) -> None:
    monkeypatch.setattr('appointd.routes.availability_routes.ensure_database_ready', lambda: None)
    monkeypatch.setattr('appointd.services.availability.local_now', lambda: now)


@pytest.mark.parametrize('weekday', [0, 8])
def test_create_window_request_rejects_non_iso_weekday(weekday: int) -> None:
    with pytest.raises(ValidationError):
        CreateWindowRequest(weekday=weekday, start_time=time(9, 0), end_time=time(10, 0))


def test_create_window_request_rejects_partial_minutes() -> None:
    with pytest.raises(ValidationError):
        CreateWindowRequest(weekday=3, start_time=time(9, 0, 30), end_time=time(10, 0))


def test_list_slots_formats_times(db, wednesday_window, doctor, patient, wednesday) -> None:
    assert list_slots(doctor_id=doctor.actor_id, slot_date=wednesday, actor=patient, db=db) == ['09:00', '09:30']


def test_list_slots_is_empty_for_unknown_doctor(db, users, patient, wednesday) -> None:
    assert list_slots(doctor_id=99, slot_date=wednesday, actor=patient, db=db) == []


def test_create_window_uses_the_calling_doctor(db, users, doctor) -> None:
    response = create_window(
        data=CreateWindowRequest(weekday=3, start_time=time(13, 0), end_time=time(15, 30)),
        actor=doctor,
        db=db,
    )

    assert response.doctor_id == doctor.actor_id
    assert response.weekday == 3
    assert (response.start_time, response.end_time) == ('13:00', '15:30')


def test_create_window_is_doctor_only(db, users, patient) -> None:
    with pytest.raises(HTTPException) as exception_info:
        create_window(
            data=CreateWindowRequest(weekday=3, start_time=time(13, 0), end_time=time(15, 0)),
            actor=patient,
            db=db,
        )

    assert exception_info.value.status_code == 403


def test_create_window_maps_inverted_range_to_400(db, users, doctor) -> None:
    with pytest.raises(HTTPException) as exception_info:
        create_window(
            data=CreateWindowRequest(weekday=3, start_time=time(15, 0), end_time=time(13, 0)),
            actor=doctor,
            db=db,
        )

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail['error'] == 'ValidationError'


def test_update_and_list_windows(db, wednesday_window, doctor, patient) -> None:
    update_window(
        window_id=wednesday_window.id,
        data=UpdateWindowRequest(end_time=time(11, 0)),
        actor=doctor,
        db=db,
    )

    windows = list_doctor_windows(doctor_id=doctor.actor_id, weekday=3, actor=patient, db=db)

    assert [(w.start_time, w.end_time) for w in windows] == [('09:00', '11:00')]


def test_delete_window_of_another_doctor_is_404(db, wednesday_window, users) -> None:
    with pytest.raises(HTTPException) as exception_info:
        delete_window(window_id=wednesday_window.id, actor=Actor(actor_id=5, role='doctor'), db=db)

    assert exception_info.value.status_code == 404


def test_delete_window_removes_its_slots(db, wednesday_window, doctor, patient, wednesday) -> None:
    delete_window(window_id=wednesday_window.id, actor=doctor, db=db)

    assert list_slots(doctor_id=doctor.actor_id, slot_date=wednesday, actor=patient, db=db) == []
