import json

import httpx
import pytest

from tripchat import db
from tripchat.api import chat
from tripchat.conversation.machine import ConversationStateMachine
from tripchat.conversation.ports import Classification
from tripchat.db import SqliteChatHistory
from tripchat.main import app
from tripchat.session_auth import SESSION_COOKIE_NAME, create_session_token


class FakeClassifier:
    def __init__(self, result: Classification):
        self.result = result

    async def classify(self, message, profile):
        return self.result


class FakeGenerator:
    async def generate(self, draft):
        return "## Day 1: Arrival\n- Check in"


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "tripchat.db")
    monkeypatch.setattr(db, "DB_PATH", path)
    monkeypatch.setattr(chat, "_machines", {})
    # sse-starlette binds its shutdown event to the first event loop that streams.
    monkeypatch.setattr("sse_starlette.sse.AppStatus.should_exit_event", None, raising=False)
    return path


def _client(user_id: str | None = None) -> httpx.AsyncClient:
    headers = {}
    if user_id:
        headers["cookie"] = f"{SESSION_COOKIE_NAME}={create_session_token(user_id)}"
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test", headers=headers)


@pytest.mark.asyncio
async def test_health(db_path):
    async with _client() as client:
        resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_unknown_session_is_not_found(db_path):
    await db.init_db(db_path)
    async with _client("guest:tester") as client:
        resp = await client.get("/api/chat/session/nope/state")
    assert resp.status_code == 404
    assert SESSION_COOKIE_NAME not in resp.cookies


@pytest.mark.asyncio
async def test_other_users_session_is_not_visible(db_path):
    await db.init_db(db_path)
    await chat._ensure_session_owner("s1", "guest:owner")
    assert await chat._ensure_session_owner("s1", "guest:intruder") != "s1"

    async with _client("guest:intruder") as client:
        resp = await client.get("/api/chat/session/s1/state")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_new_trip_cancel_and_delete(db_path):
    await db.init_db(db_path)
    await chat._ensure_session_owner("s1", "guest:tester")

    async with _client("guest:tester") as client:
        resp = await client.post("/api/chat/session/s1/new-trip", json={"fields": {"vacation_location": "Lisbon"}})
        assert resp.status_code == 200
        assert resp.json()["phase"] == "TripBuildingMode"
        assert resp.json()["draft"] == {"vacation_location": "Lisbon"}

        state = (await client.get("/api/chat/session/s1/state")).json()
        assert state["phase"] == "TripBuildingMode"
        assert state["completion"]["missing_fields"] == ["duration", "dates", "budget"]

        resp = await client.post("/api/chat/session/s1/cancel")
        assert resp.json() == {"phase": "Idle", "draft": None}

        trips = (await client.get("/api/chat/session/s1/trips")).json()
        assert trips["completed_trips"] == []
        assert trips["saved_itineraries"] == []

        resp = await client.delete("/api/chat/session/s1")
        assert resp.json()["status"] == "deleted"
        assert (await client.get("/api/chat/session/s1/state")).status_code == 404
    assert "s1" not in chat._machines


def _sse_events(body: str) -> list[tuple[str, dict]]:
    events = []
    for block in body.replace("\r\n", "\n").split("\n\n"):
        kind, data = None, None
        for line in block.splitlines():
            if line.startswith("event:"):
                kind = line[len("event:"):].strip()
            elif line.startswith("data:"):
                data = json.loads(line[len("data:"):].strip())
        if kind:
            events.append((kind, data))
    return events


def _install_machine(db_path: str, session_id: str, classification: Classification) -> ConversationStateMachine:
    machine = ConversationStateMachine(
        session_id,
        classifier=FakeClassifier(classification),
        generator=FakeGenerator(),
        chat_history=SqliteChatHistory(db_path),
        debounce_seconds=0,
    )
    chat._machines[session_id] = machine
    return machine


@pytest.mark.asyncio
async def test_message_streams_machine_events(db_path):
    await db.init_db(db_path)
    await chat._ensure_session_owner("s1", "guest:tester")
    _install_machine(db_path, "s1", Classification(
        intent="Trip-Building",
        extracted_fields={"vacation_location": "Lisbon"},
    ))

    async with _client("guest:tester") as client:
        resp = await client.post("/api/chat/message", json={"message": "Take me to Lisbon", "session_id": "s1"})

    assert resp.status_code == 200
    events = _sse_events(resp.text)
    kinds = [kind for kind, _ in events]
    assert "phase_changed" in kinds
    assert ("message", {"role": "model", "text": "How many days are you planning to travel?"}) in events
    assert kinds[-1] == "done"
    assert events[-1][1] == {"session_id": "s1", "phase": "AwaitingMissingInfo"}

    history = await SqliteChatHistory(db_path).history("s1")
    assert history == [
        {"role": "user", "content": "Take me to Lisbon"},
        {"role": "model", "content": "How many days are you planning to travel?"},
    ]


@pytest.mark.asyncio
async def test_message_turn_failure_streams_error_event(db_path, monkeypatch):
    await db.init_db(db_path)
    await chat._ensure_session_owner("s1", "guest:tester")
    machine = _install_machine(db_path, "s1", Classification())

    async def broken_turn(text):
        raise RuntimeError("router exploded")

    monkeypatch.setattr(machine, "handle_message", broken_turn)

    async with _client("guest:tester") as client:
        resp = await client.post("/api/chat/message", json={"message": "hello", "session_id": "s1"})

    events = _sse_events(resp.text)
    assert events[-1] == ("error", {"message": "router exploded"})
    assert "done" not in [kind for kind, _ in events]
