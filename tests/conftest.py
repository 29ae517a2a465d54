import uuid

import mongomock
import pytest
from fastapi.testclient import TestClient

from audit import AuditContext, AuditLog
from catalog import BookCatalog, BookData
from loans import LoanLedger
from security import TokenService
from users import UserDirectory

TEST_SIGNING_KEY = "test-signing-key-0123456789abcdef0123456789"
PASSWORD = "Secret123"


@pytest.fixture
def db():
    # Unique database per test so mongomock clients never share state
    return mongomock.MongoClient()[f"library_test_{uuid.uuid4().hex}"]


@pytest.fixture
def audit(db):
    return AuditLog(db)


@pytest.fixture
def context():
    return AuditContext(username="librarian1", controller="Tests", action="run")


@pytest.fixture
def users(db, audit, context):
    return UserDirectory(db, audit, context)


@pytest.fixture
def catalog(db, audit, context):
    return BookCatalog(db, audit, context)


@pytest.fixture
def ledger(db, catalog, users, audit, context):
    return LoanLedger(db, catalog, users, audit, context)


@pytest.fixture
def tokens():
    return TokenService(TEST_SIGNING_KEY)


@pytest.fixture
def make_user(users):
    def _make(username, role="RegisteredUser", email=None):
        return users.create(username, email or f"{username}@example.com", PASSWORD, role)

    return _make


@pytest.fixture
def make_book(catalog):
    counter = iter(range(1, 10_000))

    def _make(title="Clean Code", copies=1, isbn=None, **extra):
        data = BookData(
            title=title,
            author=extra.pop("author", "Robert C. Martin"),
            isbn=isbn if isbn is not None else f"978-{next(counter):010d}",
            total_copies=copies,
            **extra,
        )
        return catalog.create(data, "librarian1")

    return _make


@pytest.fixture
def client(db):
    import main

    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_token_service] = lambda: TokenService(TEST_SIGNING_KEY)
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


@pytest.fixture
def login_as(client, users):
    """Create a user and return bearer headers for them.

    Readers sign up through the API; privileged accounts can only be seeded.
    """

    def _login(username, role="RegisteredUser"):
        if role == "RegisteredUser":
            response = client.post(
                "/api/auth/register",
                json={"username": username, "password": PASSWORD, "email": f"{username}@example.com"},
            )
            assert response.status_code == 200, response.text
        else:
            users.create(username, f"{username}@example.com", PASSWORD, role)
        response = client.post("/api/auth/login", json={"username": username, "password": PASSWORD})
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['token']}"}

    return _login
