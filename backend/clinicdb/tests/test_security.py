from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import HTTPException

from clinicdb.security import (
    CurrentContext,
    Role,
    create_access_token,
    decode_context,
    require_roles,
)


def test_token_round_trip():
    token = create_access_token(data={"sub": "user-1", "clinic_id": "clinic-1", "role": "clinic_admin"})

    context = decode_context(token)

    assert context == CurrentContext(user_id="user-1", clinic_id="clinic-1", role=Role.CLINIC_ADMIN)


def test_role_defaults_to_clinic_user():
    token = create_access_token(data={"sub": "user-1", "clinic_id": "clinic-1"})

    assert decode_context(token).role == Role.CLINIC_USER


@pytest.mark.parametrize(
    "data, expires",
    [
        ({"sub": "user-1"}, None),
        ({"sub": "user-1", "clinic_id": "clinic-1", "role": "owner"}, None),
        ({"sub": "user-1", "clinic_id": "clinic-1"}, timedelta(minutes=-5)),
    ],
)
def test_invalid_tokens_are_unauthorized(data, expires):
    token = create_access_token(data=data, expires_delta=expires)

    with pytest.raises(HTTPException) as excinfo:
        decode_context(token)

    assert excinfo.value.status_code == 401


def test_garbage_token_is_unauthorized():
    with pytest.raises(HTTPException):
        decode_context("not-a-jwt")


def test_require_roles():
    admin_only = require_roles(Role.CLINIC_ADMIN)

    admin = CurrentContext(user_id="u", clinic_id="c", role=Role.CLINIC_ADMIN)
    system = CurrentContext(user_id="u", clinic_id="c", role=Role.SYSTEM_ADMIN)
    user = CurrentContext(user_id="u", clinic_id="c", role=Role.CLINIC_USER)

    assert admin_only(current=admin) is admin
    assert admin_only(current=system) is system
    with pytest.raises(HTTPException) as excinfo:
        admin_only(current=user)
    assert excinfo.value.status_code == 403

    with pytest.raises(ValueError):
        require_roles("owner")
