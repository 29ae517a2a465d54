"""Authentication.

Registration, login and token verification.  Tokens are signed JWTs and are
not stored server side, so logout only acknowledges the request; a token
stays valid until it expires.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from audit import AuditContext, AuditLog
from errors import InternalError, UnauthorizedError, ValidationError
from schemas import Role
from security import (
    PASSWORD_POLICY,
    Identity,
    TokenService,
    is_valid_email,
    is_valid_password,
    verify_password,
)
from users import UserDirectory, public_user

# Privileged roles are granted only through the administrator role update
REGISTRATION_ROLES = (Role.REGISTERED_USER.value,)

INVALID_CREDENTIALS = "Invalid username or password"


class AuthService:
    def __init__(self, users: UserDirectory, tokens: TokenService, audit: AuditLog, context: AuditContext):
        self.users = users
        self.tokens = tokens
        self.audit = audit
        self.context = context

    def _log(self, level: str, message: str) -> None:
        self.audit.record(self.context, level, message)

    def register(self, username: str, password: str, email: str, role: Optional[str] = None) -> Dict[str, Any]:
        self._log("INFORMATION", f"Registration attempt for user: {username}")

        if not (username or "").strip() or not (password or "").strip() or not (email or "").strip():
            self._log("WARNING", "Registration attempt with missing fields")
            raise ValidationError("Username, Password and Email are required")
        if not is_valid_email(email.strip()):
            self._log("WARNING", f"Registration attempt with invalid email: {email}")
            raise ValidationError("Invalid email format")
        if not is_valid_password(password):
            self._log("WARNING", "Registration attempt with a password that does not meet the policy")
            raise ValidationError(PASSWORD_POLICY)
        if role and role not in REGISTRATION_ROLES:
            self._log("WARNING", f"Registration attempt with invalid role: {role}")
            raise ValidationError("Invalid role specified")

        user = self.users.create(
            username=username.strip(),
            email=email.strip().lower(),
            password=password,
            role=role or Role.REGISTERED_USER.value,
        )
        self._log("INFORMATION", f"User registered: {user['username']}")
        return public_user(user)

    def login(self, username: str, password: str) -> Dict[str, Any]:
        self._log("INFORMATION", f"Login attempt for user: {username}")

        if not (username or "").strip() or not (password or "").strip():
            self._log("WARNING", "Login attempt with missing credentials")
            raise ValidationError("Username and password are required")
        if not self.tokens.key:
            self._log("ERROR", "Token signing key is not configured")
            raise InternalError("Server configuration error")

        user = self.users.get_by_username(username.strip())
        if user is None or not user["is_active"] or not verify_password(password, user["password_hash"]):
            self._log("WARNING", f"Failed login for user: {username}")
            raise UnauthorizedError(INVALID_CREDENTIALS)

        identity = Identity(
            username=user["username"],
            role=user["role"],
            email=user["email"],
            user_id=user["id"],
            is_active=user["is_active"],
        )
        token, expires = self.tokens.issue(identity)
        self._log("INFORMATION", f"Successful login for user: {username}")
        return {"token": token, "expires": expires, "user": public_user(user)}

    def verify(self, token: Optional[str]) -> Optional[Identity]:
        return self.tokens.verify(token)

    def logout(self, identity: Identity) -> Dict[str, str]:
        self._log("INFORMATION", f"Logout for user: {identity.username}")
        return {"message": "Logged out successfully"}
