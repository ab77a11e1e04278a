import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from fastapi.testclient import TestClient

from database import SessionLocal, engine
from message_service import MessageService
from message_store import MessageStore
from models import Base, Message


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def service(db):
    return MessageService(MessageStore(db))


@pytest.fixture()
def client():
    from main import app

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def count_messages():
    def _count():
        session = SessionLocal()
        try:
            return session.query(Message).count()
        finally:
            session.close()
    return _count
