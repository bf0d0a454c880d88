"""
Shared fixtures: an in-memory SQLite identity graph and a facade over it.
"""

import sys
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.service import AffiliationService
from database.connection import create_test_provider
from database.models import Country, UniqueIdentity
from database.monitoring import reset_metrics
from errors import clear_secrets


@pytest.fixture
def provider():
    """Initialized provider over a fresh in-memory database."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    db = create_test_provider(engine)
    db.create_tables()
    with db.session_scope() as session:
        session.add_all([
            Country(code="US", name="United States of America", alpha3="USA"),
            Country(code="PL", name="Poland", alpha3="POL"),
        ])
    yield db
    db.close()


@pytest.fixture
def session(provider):
    """A session whose transaction is committed at the end of the test."""
    with provider.session_scope() as session:
        yield session


@pytest.fixture
def service(provider):
    return AffiliationService(provider)


@pytest.fixture(autouse=True)
def clean_state():
    yield
    clear_secrets()
    reset_metrics()


def last_modified(session, uuid):
    """Read UniqueIdentity.last_modified straight from the table."""
    session.expire_all()
    return session.get(UniqueIdentity, uuid).last_modified


def set_last_modified(session, uuid, value=datetime(2000, 1, 1)):
    session.get(UniqueIdentity, uuid).last_modified = value
    session.flush()
