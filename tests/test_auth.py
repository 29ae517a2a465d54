import pytest

from auth import AuthService
from errors import ConflictError, InternalError, UnauthorizedError, ValidationError
from security import TokenService


@pytest.fixture
def service(users, tokens, audit, context):
    return AuthService(users, tokens, audit, context)


def test_register_returns_public_fields(service):
    user = service.register("ana", "Secret123", " Ana@Example.com ")
    assert set(user) == {"id", "username", "email", "role"}
    assert user["email"] == "ana@example.com"
    assert user["role"] == "RegisteredUser"


def test_register_stores_a_hash_not_the_password(service, db):
    service.register("ana", "Secret123", "ana@example.com")
    stored = db["user"].find_one({"username": "ana"})
    assert stored["password_hash"] != "Secret123"
    assert stored["is_active"] is True


def test_duplicate_username_is_a_conflict(service, db):
    service.register("ana", "Secret123", "ana@example.com")
    with pytest.raises(ConflictError):
        service.register("ana", "Secret123", "other@example.com")
    assert db["user"].count_documents({}) == 1


def test_duplicate_email_is_a_conflict(service, db):
    service.register("ana", "Secret123", "ana@example.com")
    with pytest.raises(ConflictError):
        service.register("bea", "Secret123", "ANA@example.com")
    assert db["user"].count_documents({}) == 1


def test_username_is_case_sensitive(service):
    service.register("ana", "Secret123", "ana@example.com")
    service.register("Ana", "Secret123", "ana2@example.com")


@pytest.mark.parametrize(
    "username, password, email, role",
    [
        ("", "Secret123", "ana@example.com", None),
        ("ana", "", "ana@example.com", None),
        ("ana", "Secret123", "   ", None),
        ("ana", "Secret123", "not-an-email", None),
        ("ana", "abc12", "ana@example.com", None),
        ("ana", "Secret123", "ana@example.com", "Superuser"),
        ("ana", "Secret123", "ana@example.com", "Librarian"),
        ("ana", "Secret123", "ana@example.com", "Administrator"),
    ],
)
def test_register_validation(service, db, username, password, email, role):
    with pytest.raises(ValidationError):
        service.register(username, password, email, role)
    assert db["user"].count_documents({}) == 0


def test_login_issues_a_token_for_the_user(service, users, tokens):
    users.create("ana", "ana@example.com", "Secret123", "Librarian")
    result = service.login("ana", "Secret123")

    assert result["user"]["username"] == "ana"
    identity = tokens.verify(result["token"])
    assert identity.username == "ana"
    assert identity.role == "Librarian"
    assert identity.user_id == result["user"]["id"]


def test_login_rejects_bad_password(service):
    service.register("ana", "Secret123", "ana@example.com")
    with pytest.raises(UnauthorizedError):
        service.login("ana", "Wrong123")


def test_login_rejects_unknown_user(service):
    with pytest.raises(UnauthorizedError) as excinfo:
        service.login("nobody", "Secret123")
    assert excinfo.value.message == "Invalid username or password"


def test_login_rejects_deactivated_user(service, users):
    user = service.register("ana", "Secret123", "ana@example.com")
    users.deactivate(user["id"])
    with pytest.raises(UnauthorizedError):
        service.login("ana", "Secret123")


def test_login_without_signing_key(users, audit, context):
    service = AuthService(users, TokenService(None), audit, context)
    service.register("ana", "Secret123", "ana@example.com")
    with pytest.raises(InternalError):
        service.login("ana", "Secret123")


def test_logout_is_an_acknowledgement(service, tokens):
    service.register("ana", "Secret123", "ana@example.com")
    token = service.login("ana", "Secret123")["token"]
    identity = service.verify(token)

    assert service.logout(identity) == {"message": "Logged out successfully"}
    assert service.verify(token) == identity
