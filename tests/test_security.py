from datetime import datetime, timedelta, timezone

import jwt
import pytest

from errors import InternalError
from security import (
    Identity,
    TokenService,
    hash_password,
    is_valid_email,
    is_valid_password,
    verify_password,
)


@pytest.mark.parametrize(
    "password, expected",
    [
        ("abc12", False),  # no uppercase
        ("Abcde", False),  # no digit
        ("ABC12", False),  # no lowercase
        ("Ab1", False),  # too short
        ("Abc12", True),
        ("LongerPassw0rd", True),
        ("", False),
        (None, False),
        ("     ", False),
    ],
)
def test_password_policy(password, expected):
    assert is_valid_password(password) is expected


@pytest.mark.parametrize(
    "email, expected",
    [
        ("reader@example.com", True),
        ("first.last@library.org.uk", True),
        ("no-at-sign.com", False),
        ("reader@nodot", False),
        ("two words@example.com", False),
        ("", False),
        (None, False),
    ],
)
def test_email_policy(email, expected):
    assert is_valid_email(email) is expected


def test_hash_then_verify_same_password():
    stored = hash_password("Abc12")
    assert verify_password("Abc12", stored)


def test_verify_rejects_other_password():
    stored = hash_password("Abc12")
    assert not verify_password("Abc13", stored)
    assert not verify_password("abc12", stored)


def test_hash_is_salted():
    assert hash_password("Abc12") != hash_password("Abc12")


def test_verify_rejects_malformed_hash():
    assert not verify_password("Abc12", "not base64 !!")
    assert not verify_password("Abc12", "c2hvcnQ=")


def _identity():
    return Identity(username="ana", role="Librarian", email="ana@example.com", user_id="abc", is_active=True)


def test_token_round_trip(tokens):
    token, expires = tokens.issue(_identity())
    identity = tokens.verify(token)
    assert identity == _identity()
    assert expires - datetime.now(timezone.utc) <= timedelta(hours=8)
    assert expires - datetime.now(timezone.utc) > timedelta(hours=7, minutes=59)


def test_token_signed_with_other_key_is_rejected(tokens):
    token, _ = TokenService("another-signing-key-0123456789abcdef0123").issue(_identity())
    assert tokens.verify(token) is None


def test_expired_token_is_rejected(tokens):
    claims = {
        "sub": "ana",
        "role": "Librarian",
        "exp": datetime.now(timezone.utc) - timedelta(minutes=1),
    }
    token = jwt.encode(claims, tokens.key, algorithm="HS256")
    assert tokens.verify(token) is None


def test_verify_without_token_is_anonymous(tokens):
    assert tokens.verify(None) is None
    assert tokens.verify("garbage") is None


def test_audience_and_issuer_are_checked():
    strict = TokenService("audience-signing-key-0123456789abcdef012", issuer="library", audience="web")
    token, _ = strict.issue(_identity())
    assert strict.verify(token) is not None

    other_audience = TokenService("audience-signing-key-0123456789abcdef012", issuer="library", audience="mobile")
    assert other_audience.verify(token) is None


def test_issue_without_key_is_a_configuration_error():
    with pytest.raises(InternalError):
        TokenService(None).issue(_identity())


def test_identity_privileges():
    assert Identity(username="a", role="Administrator").is_admin
    assert Identity(username="a", role="Administrator").is_privileged
    assert Identity(username="a", role="Librarian").is_privileged
    assert not Identity(username="a", role="RegisteredUser").is_privileged
