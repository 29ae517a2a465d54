"""Password, email and token primitives.

Passwords are hashed with PBKDF2-HMAC-SHA256 using a random per-password
salt; the stored form is ``base64(salt + derived_key)``.  Session tokens are
HS256 JWTs signed with the configured key.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import jwt
from pydantic import BaseModel

from errors import InternalError
from schemas import PRIVILEGED_ROLES, Role

SALT_SIZE = 16
HASH_SIZE = 32
ITERATIONS = 100_000

# at least 5 characters, one lowercase, one uppercase, one digit
_PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d).{5,}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", re.IGNORECASE)

PASSWORD_POLICY = (
    "Password must be at least 5 characters long, contain at least one uppercase "
    "letter, one lowercase letter, and one number"
)


def is_valid_password(password: Optional[str]) -> bool:
    if not password or not password.strip():
        return False
    return _PASSWORD_RE.match(password) is not None


def is_valid_email(email: Optional[str]) -> bool:
    if not email or not email.strip():
        return False
    return _EMAIL_RE.match(email) is not None


def _derive(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, ITERATIONS, dklen=HASH_SIZE)


def hash_password(password: str) -> str:
    salt = secrets.token_bytes(SALT_SIZE)
    return base64.b64encode(salt + _derive(password, salt)).decode("ascii")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        raw = base64.b64decode(hashed_password.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError):
        return False
    if len(raw) != SALT_SIZE + HASH_SIZE:
        return False
    salt, expected = raw[:SALT_SIZE], raw[SALT_SIZE:]
    return hmac.compare_digest(_derive(password, salt), expected)


class Identity(BaseModel):
    """Claims carried by a session token."""

    username: str
    role: str
    email: str = ""
    user_id: str = ""
    is_active: bool = True

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMINISTRATOR.value


class TokenService:
    def __init__(
        self,
        key: Optional[str],
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        expiration_hours: int = 8,
        algorithm: str = "HS256",
    ):
        self.key = key
        self.issuer = issuer
        self.audience = audience
        self.expiration = timedelta(hours=expiration_hours)
        self.algorithm = algorithm

    def issue(self, identity: Identity) -> Tuple[str, datetime]:
        """Return ``(token, expires_at)`` for the identity."""
        if not self.key:
            raise InternalError("Server configuration error")
        now = datetime.now(timezone.utc)
        expires = now + self.expiration
        claims = {
            "sub": identity.username,
            "role": identity.role,
            "email": identity.email,
            "user_id": identity.user_id,
            "is_active": identity.is_active,
            "iat": now,
            "exp": expires,
        }
        if self.issuer:
            claims["iss"] = self.issuer
        if self.audience:
            claims["aud"] = self.audience
        return jwt.encode(claims, self.key, algorithm=self.algorithm), expires

    def verify(self, token: Optional[str]) -> Optional[Identity]:
        """Return the identity of a valid token, ``None`` for anything else."""
        if not token or not self.key:
            return None
        options = {"require": ["exp", "sub"], "verify_aud": self.audience is not None}
        try:
            claims = jwt.decode(
                token,
                self.key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options=options,
            )
        except jwt.PyJWTError:
            return None
        return Identity(
            username=claims["sub"],
            role=claims.get("role", ""),
            email=claims.get("email", ""),
            user_id=claims.get("user_id", ""),
            is_active=bool(claims.get("is_active", True)),
        )
