import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Use in-memory SQLite for tests by default, can be overridden via TEST_DATABASE_URL
TEST_DB_URL = os.getenv("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")

# Settings are read once at import time; set them before importing the app.
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DATABASE_URL", TEST_DB_URL)
os.environ.setdefault("JWT_SECRET_KEY", "test-only-signing-key-not-for-production")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("AUTH_RATE_LIMIT_ENABLED", "false")

from midnight_brew.main import create_app
from midnight_brew.db.base import Base
from midnight_brew.db.session import get_db_session

STRONG_PASSWORD = "Str0ng!Pass"


@pytest.fixture(scope="function")
def engine():
    # Important: in-memory SQLite needs StaticPool to keep the same DB across connections.
    kwargs = {"connect_args": {"check_same_thread": False}}
    if TEST_DB_URL.endswith(":memory:"):
        kwargs["poolclass"] = StaticPool
    eng = create_engine(TEST_DB_URL, **kwargs)
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def client(db_session):
    app = create_app()

    # Override the DB session dependency to use the test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db_session] = override_get_db
    return TestClient(app)


def register_user(
    client,
    email: str = "user@example.com",
    password: str = STRONG_PASSWORD,
    first_name: str = "Test",
    last_name: str = "User",
):
    resp = client.post(
        "/auth/register",
        json={
            "email": email,
            "password": password,
            "first_name": first_name,
            "last_name": last_name,
        },
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def login(client, email: str, password: str = STRONG_PASSWORD):
    return client.post("/auth/login", json={"email": email, "password": password})


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
