"""Registration, login and the bearer-token gate.

Passwords are hashed with bcrypt and access tokens are HS256 JWTs carrying
the user id and role. ``authenticate`` is the single entry point every
protected operation goes through; ``require_admin`` is the role guard.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Optional, Tuple

import bcrypt
import jwt

from smart_library.config import settings
from smart_library.database import get_db_connection
from smart_library.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from smart_library.models import Role, User, to_timestamp, utcnow
from smart_library.validators import EmailValidator, TextValidator

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def create_access_token(user: User, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    payload = {
        "sub": str(user.id),
        "role": user.role.value,
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_expiration_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Not authorized, token expired") from None
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Not authorized, token invalid") from None


# ------------------------- User store ------------------------- #
def get_user(user_id: int) -> Optional[User]:
    conn = get_db_connection()
    try:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_row(row) if row else None
    finally:
        conn.close()


def get_user_by_email(email: str) -> Optional[User]:
    conn = get_db_connection()
    try:
        row = conn.execute(
            "SELECT * FROM users WHERE email = ?", (EmailValidator.normalize_email(email),)
        ).fetchone()
        return User.from_row(row) if row else None
    finally:
        conn.close()


def set_user_active(user_id: int, active: bool) -> User:
    conn = get_db_connection()
    try:
        cursor = conn.execute("UPDATE users SET is_active = ? WHERE id = ?", (int(active), user_id))
        conn.commit()
        if cursor.rowcount == 0:
            raise NotFoundError("User not found")
    finally:
        conn.close()
    logger.info(f"User {user_id} {'activated' if active else 'deactivated'}")
    return get_user(user_id)


def create_user(name: str, email: str, password: str, role: Role = Role.STUDENT) -> User:
    """Validate and insert a new account. Raises ConflictError for a taken email."""
    name = TextValidator.require(name, "Name")
    email = EmailValidator.normalize_email(email)
    if not email or not password:
        raise ValidationError("Name, email and password are required")
    if not EmailValidator.is_valid_email(email):
        raise ValidationError("Invalid email format")

    conn = get_db_connection()
    try:
        cursor = conn.execute(
            """
            INSERT INTO users (name, email, password_hash, role, points, is_active, created_at)
            VALUES (?, ?, ?, ?, 0, 1, ?)
            """,
            (name, email, hash_password(password), role.value, to_timestamp(utcnow())),
        )
        conn.commit()
        user_id = cursor.lastrowid
    except sqlite3.IntegrityError as e:
        raise ConflictError("User already exists") from e
    finally:
        conn.close()

    logger.info(f"Registered {role.value} account {email}")
    return get_user(user_id)


def register_user(name: str, email: str, password: str, role: Optional[str] = None) -> Tuple[User, str]:
    user = create_user(name, email, password, Role.from_request(role))
    return user, create_access_token(user)


def login(email: str, password: str) -> Tuple[User, str]:
    if not email or not password:
        raise ValidationError("Email and password are required")

    user = get_user_by_email(email)
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        logger.warning(f"Failed login for {EmailValidator.normalize_email(email)}")
        raise UnauthorizedError("Invalid credentials")
    return user, create_access_token(user)


# ------------------------- Gate ------------------------- #
def authenticate(token: Optional[str]) -> User:
    """Resolve a bearer token to an active user or raise UnauthorizedError."""
    if not token:
        raise UnauthorizedError("Not authorized, token missing")

    claims = decode_access_token(token)
    try:
        user_id = int(claims.get("sub", ""))
    except (TypeError, ValueError):
        raise UnauthorizedError("Not authorized, token invalid") from None

    user = get_user(user_id)
    if not user or not user.is_active:
        raise UnauthorizedError("Not authorized, user not found")
    return user


def require_admin(user: User) -> User:
    if not user.is_admin:
        raise ForbiddenError("Access denied: admin only")
    return user
