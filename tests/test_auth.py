from datetime import timedelta

import jwt
import pytest

from smart_library import auth
from smart_library.config import settings
from smart_library.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from smart_library.models import Role, utcnow


def test_register_returns_user_and_working_token(db_file):
    user, token = auth.register_user("Grace", "Grace@Example.com ", "hopper")

    assert user.email == "grace@example.com"
    assert user.role is Role.STUDENT
    assert user.password_hash != "hopper"
    assert auth.authenticate(token).id == user.id


@pytest.mark.parametrize("requested,expected", [
    (None, Role.STUDENT),
    ("student", Role.STUDENT),
    ("librarian", Role.STUDENT),
    ("ADMIN", Role.ADMIN),
])
def test_register_role(db_file, requested, expected):
    user, _ = auth.register_user("Someone", "someone@example.com", "pw", requested)
    assert user.role is expected


def test_register_duplicate_email(db_file):
    auth.register_user("Grace", "grace@example.com", "pw")
    with pytest.raises(ConflictError, match="already exists"):
        auth.register_user("Grace Again", "GRACE@example.com", "pw2")


@pytest.mark.parametrize("name,email,password", [
    ("", "a@example.com", "pw"),
    ("Name", "", "pw"),
    ("Name", "a@example.com", ""),
    ("Name", "not-an-email", "pw"),
])
def test_register_validation(db_file, name, email, password):
    with pytest.raises(ValidationError):
        auth.register_user(name, email, password)


def test_login(student):
    user, token = auth.login("ADA@example.com", "secret123")
    assert user.id == student.id
    assert auth.authenticate(token).id == student.id


@pytest.mark.parametrize("email,password", [
    ("ada@example.com", "wrong"),
    ("nobody@example.com", "secret123"),
])
def test_login_rejects_bad_credentials(student, email, password):
    with pytest.raises(UnauthorizedError, match="Invalid credentials"):
        auth.login(email, password)


def test_login_requires_fields(db_file):
    with pytest.raises(ValidationError):
        auth.login("", "")


def test_inactive_account_cannot_login_or_authenticate(student):
    token = auth.create_access_token(student)
    auth.set_user_active(student.id, False)

    with pytest.raises(UnauthorizedError):
        auth.login("ada@example.com", "secret123")
    with pytest.raises(UnauthorizedError):
        auth.authenticate(token)

    auth.set_user_active(student.id, True)
    assert auth.authenticate(token).id == student.id


def test_token_claims(student):
    claims = auth.decode_access_token(auth.create_access_token(student))
    assert claims["sub"] == str(student.id)
    assert claims["role"] == "student"
    assert claims["exp"] > claims["iat"]


def test_expired_token(student):
    issued = utcnow() - timedelta(minutes=settings.jwt_expiration_minutes + 1)
    token = auth.create_access_token(student, now=issued)
    with pytest.raises(UnauthorizedError, match="expired"):
        auth.authenticate(token)


@pytest.mark.parametrize("token", [None, "", "not-a-jwt"])
def test_missing_or_malformed_token(db_file, token):
    with pytest.raises(UnauthorizedError):
        auth.authenticate(token)


def test_token_with_foreign_signature(student):
    token = jwt.encode(
        {"sub": str(student.id), "role": "admin", "exp": utcnow() + timedelta(hours=1)},
        "some-other-secret-that-is-long-enough-for-hs256",
        algorithm="HS256",
    )
    with pytest.raises(UnauthorizedError, match="invalid"):
        auth.authenticate(token)


def test_token_for_deleted_user(db_file, student):
    token = auth.create_access_token(student)
    student.id = 999
    with pytest.raises(UnauthorizedError):
        auth.authenticate(auth.create_access_token(student))
    assert auth.authenticate(token).email == "ada@example.com"


def test_require_admin(student, admin):
    assert auth.require_admin(admin) is admin
    with pytest.raises(ForbiddenError):
        auth.require_admin(student)


def test_set_user_active_missing_user(db_file):
    with pytest.raises(NotFoundError):
        auth.set_user_active(404, False)
