"""Shared fixtures.

Application modules read the environment at import time, so the flags are
set before anything from the project is imported. The database is an
in-memory SQLite shared by every thread (``StaticPool``), rebuilt per test.
"""
import os
from typing import Generator

os.environ.setdefault("DEBUG", "1")
os.environ.setdefault("TESTING", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient

import models.collab  # noqa: F401 - register tables
from database import Base, SessionLocal, engine
from fakes import FakeMonotonic, InMemoryPersistence, RecordingEmitter
from services.coordinator import Coordinator


@pytest.fixture()
def db() -> Generator:
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture()
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture()
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture()
def coordinator(persistence, emitter, monotonic) -> Coordinator:
    return Coordinator(persistence, emitter, monotonic=monotonic)


@pytest.fixture()
def client(db) -> TestClient:
    from main import app
    return TestClient(app)
