import os
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import pytest
from fastapi.testclient import TestClient


# ---------------------------------------------------------------------------
# IMPORTANT: Set env vars at import time.
# pytest imports `conftest.py` before importing test modules, which ensures our
# env overrides take effect before `orgchat.core.config.settings` is instantiated.
# ---------------------------------------------------------------------------
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="orgchat_test_"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_ROOT / 'test.db'}")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.pop("OPENAI_API_KEY", None)


@pytest.fixture(scope="session")
def app():
    """Import the FastAPI app after env is configured."""
    from orgchat.core.config import settings
    from orgchat.db.session import Base
    from orgchat.models import chat as _chat
    from orgchat.main import app as fastapi_app

    import orgchat.db.session as session_mod

    # Create SQLite tables
    engine = session_mod.create_db_engine(settings.DATABASE_URL)
    Base.metadata.create_all(bind=engine)

    # Override get_engine() to return our SQLite engine
    session_mod._engine = engine

    return fastapi_app


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def db(app):
    from orgchat.db.session import SessionLocal, get_engine

    session = SessionLocal(bind=get_engine())
    try:
        yield session
    finally:
        session.close()


@dataclass
class Owner:
    """A user inside an organization; fresh ids keep tests isolated in the shared DB."""

    organization_id: uuid.UUID = field(default_factory=uuid.uuid4)
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)

    @property
    def headers(self):
        return {"X-User-Id": str(self.user_id), "X-Org-Id": str(self.organization_id)}

    @property
    def org(self) -> str:
        return str(self.organization_id)


@pytest.fixture()
def owner():
    return Owner()


@pytest.fixture()
def other_owner():
    return Owner()


class ScriptedGenerator:
    """Stands in for the inference backend: replays a fixed list of chunks."""

    def __init__(self):
        self.chunks: List = []
        self.fail_after = None
        self.calls = []

    def stream(self, history):
        self.calls.append(list(history))
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i >= self.fail_after:
                raise RuntimeError("inference backend went away")
            yield chunk
        if self.fail_after is not None and self.fail_after >= len(self.chunks):
            raise RuntimeError("inference backend went away")


@pytest.fixture()
def generator(app):
    from orgchat.services.generators import get_generator

    gen = ScriptedGenerator()
    app.dependency_overrides[get_generator] = lambda: gen
    yield gen
    app.dependency_overrides.pop(get_generator, None)
