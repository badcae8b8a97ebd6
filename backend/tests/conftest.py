from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest

# Engine and settings are bound at import time, so the environment goes first.
_DB_DIR = tempfile.mkdtemp(prefix="tocare-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_DB_DIR) / 'tocare-test.sqlite'}"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["SEED_PROTOCOLS"] = "false"
os.environ["OPENAI_API_KEY"] = ""
os.environ["LLM_RETRY_DELAY"] = "0"
os.environ["TWILIO_ACCOUNT_SID"] = ""
os.environ["TWILIO_AUTH_TOKEN"] = ""
os.environ["TWILIO_FROM_NUMBER"] = ""

from fastapi.testclient import TestClient  # noqa: E402

from tocare.agent.llm import LLMClient  # noqa: E402
from tocare.api.deps import get_llm  # noqa: E402
from tocare.db import models  # noqa: E402
from tocare.db.base import Base  # noqa: E402
from tocare.db.seed import seed_protocols  # noqa: E402
from tocare.db.session import SessionLocal, engine  # noqa: E402


class FakeCompletions:
    """Stands in for `AsyncOpenAI().chat.completions` and replays scripted replies."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls: list[dict] = []

    async def create(self, **params):
        self.calls.append(params)
        if not self.replies:
            raise RuntimeError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            reply = {"content": reply}
        tool_calls = [
            SimpleNamespace(type="function", function=SimpleNamespace(name=name, arguments=json.dumps(args)))
            for name, args in reply.get("tool_calls", [])
        ]
        message = SimpleNamespace(content=reply.get("content"), tool_calls=tool_calls or None)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeOpenAI:
    def __init__(self, replies):
        self.completions = FakeCompletions(replies)
        self.chat = SimpleNamespace(completions=self.completions)


@pytest.fixture
def make_llm():
    def _make(*replies) -> LLMClient:
        return LLMClient(api_key="test-key", model="test-model", client=FakeOpenAI(replies))

    return _make


@pytest.fixture
def offline_llm() -> LLMClient:
    return LLMClient(api_key="")


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seeded_db(db):
    seed_protocols(db)
    return db


@pytest.fixture
def make_episode(db):
    def _make(condition="HF", risk_level="HIGH", phone="+15555550100", first_name="Maria", **episode_fields):
        patient = models.Patient(first_name=first_name, last_name="Lopez", primary_phone=phone)
        db.add(patient)
        db.flush()
        episode = models.Episode(patient_id=patient.id, condition_code=condition, risk_level=risk_level,
                                 **episode_fields)
        db.add(episode)
        db.flush()
        db.add(models.ProtocolAssignment(episode_id=episode.id, condition_code=condition, risk_level=risk_level))
        db.commit()
        return episode

    return _make


@pytest.fixture
def make_user(db):
    def _make(email, role="NURSE", phone=None, active=True):
        user = models.User(name=email.split("@")[0], email=email, role=role, phone=phone, active=active)
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def client(db, offline_llm):
    from tocare.main import app

    app.dependency_overrides[get_llm] = lambda: offline_llm
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
