from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import groupmatch.models  # noqa: F401
import groupmatch.repo as repo
from groupmatch.database import Base


@pytest.fixture
def sqlite_repo(monkeypatch):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    monkeypatch.setattr(repo, "SessionLocal", session_factory)
    yield repo
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
