import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STORAGE_BACKEND", "local")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from branchchat import crud
from branchchat.database import Base, get_db, make_engine
from branchchat.deps import get_generation_registry, get_provider
from branchchat.main import app
from branchchat.services.generation import GenerationRegistry
from branchchat.services.llm import ProviderDelta


class ScriptedProvider:
    """Stands in for the model provider: plays back (part, text) pairs, then optionally raises."""

    def __init__(self, deltas=(), error=None):
        self.deltas = list(deltas)
        self.error = error
        self.calls = []

    def stream(self, messages, model=None, cancel_event=None):
        self.calls.append({"messages": messages, "model": model})
        for part, text in self.deltas:
            if cancel_event is not None and cancel_event.is_set():
                return
            yield ProviderDelta(part, text)
        if self.error is not None:
            raise self.error


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    path = tmp_path / "uploads"
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("UPLOAD_DIR", str(path))
    return path


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def conversation(db):
    return crud.create_conversation(db, title="Test conversation")


@pytest.fixture
def provider():
    return ScriptedProvider([("reasoning", "Thinking."), ("text", "Hello"), ("text", " there")])


@pytest.fixture
def registry():
    return GenerationRegistry()


@pytest.fixture
def client(session_factory, provider, registry):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider] = lambda: provider
    app.dependency_overrides[get_generation_registry] = lambda: registry
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
