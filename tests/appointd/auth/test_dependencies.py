import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from appointd.auth.dependencies import actor_from_claims, get_current_actor, require_role
from appointd.auth.jwt_handler import create_access_token
from appointd.models.user import Role
from appointd.services.lifecycle import Actor


def _credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme='Bearer', credentials=token)


def test_get_current_actor_reads_subject_and_role() -> None:
    token = create_access_token(7, Role.DOCTOR.value)

    assert get_current_actor(_credentials(token)) == Actor(actor_id=7, role='doctor')


def test_get_current_actor_rejects_garbage_token() -> None:
    with pytest.raises(HTTPException) as exception_info:
        get_current_actor(_credentials('not-a-jwt'))

    assert exception_info.value.status_code == 401


@pytest.mark.parametrize(
    'claims',
    [{'sub': 'abc', 'role': 'doctor'}, {'sub': '3', 'role': 'payment-gate'}, {'role': 'patient'}],
)
def test_actor_from_claims_rejects_bad_claims(claims: dict) -> None:
    with pytest.raises(HTTPException) as exception_info:
        actor_from_claims(claims)

    assert exception_info.value.status_code == 401


def test_require_role_forbids_other_roles() -> None:
    require_role(Actor(actor_id=1, role='admin'), Role.ADMIN, Role.DOCTOR)

    with pytest.raises(HTTPException) as exception_info:
        require_role(Actor(actor_id=2, role='patient'), Role.DOCTOR)

    assert exception_info.value.status_code == 403
