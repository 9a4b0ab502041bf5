from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from esglabel.auth import register_user
from esglabel.db import enable_sqlite_foreign_keys
from esglabel.models import ROLE_ADMIN, Base, User

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(eng)
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def admin(session: Session) -> User:
    return register_user(session, "root", "secret", ROLE_ADMIN)


@pytest.fixture()
def alice(session: Session) -> User:
    return register_user(session, "alice", "pw")


@pytest.fixture()
def bob(session: Session) -> User:
    return register_user(session, "bob", "pw")
