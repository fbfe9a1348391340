"""
Pytest configuration and fixtures.

Every test gets a fresh in-memory SQLite database with all tables created,
wired into the FastAPI app through a ``get_db`` dependency override.
"""

import os

# Tables are created per test below; the app must not bootstrap its own database.
os.environ.setdefault("SKIP_DB_INIT", "1")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from event_importer.core.security import User, create_access_token
from event_importer.db.models import Member, Organization, Site
from event_importer.db.session import Base, get_db
from event_importer.main import app


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seeded(db_session):
    """One organization with one site, an admin member and an outsider."""
    organization = Organization(id="org-1", name="Acme", monthly_event_limit=None)
    site = Site(site_id=1, organization_id="org-1", domain="acme.test", name="Acme")
    other_site = Site(site_id=2, organization_id="org-1", domain="blog.acme.test", name="Blog")
    admin = User(id=1, email="owner@acme.test", role="user")
    outsider = User(id=2, email="outsider@example.test", role="user")
    db_session.add_all([organization, site, other_site, admin, outsider])
    db_session.flush()
    db_session.add(Member(user_id=1, organization_id="org-1", role="owner"))
    db_session.commit()
    return {"organization": organization, "site": site, "admin": admin, "outsider": outsider}


@pytest.fixture
def auth_headers(seeded):
    token = create_access_token({"sub": seeded["admin"].email})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def outsider_headers(seeded):
    token = create_access_token({"sub": seeded["outsider"].email})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)
