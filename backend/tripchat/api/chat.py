"""FastAPI chat endpoints: one conversation state machine per session, events over SSE."""
import asyncio
import json
import logging
import uuid

import aiosqlite
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from tripchat import db
from tripchat.agent.llm import GroqIntentClassifier, GroqItineraryGenerator
from tripchat.config import settings
from tripchat.conversation.events import MachineEvent
from tripchat.conversation.machine import ConversationStateMachine
from tripchat.db import SqliteChatHistory, SqliteItineraryStore
from tripchat.errors import PersistenceError
from tripchat.services.cache import ExternalDataCache
from tripchat.services.external_data import ExternalDataService, default_providers
from tripchat.session_auth import resolve_user, set_session_cookie

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

# Live machines are in-process only; a restart starts every session fresh.
_machines: dict[str, ConversationStateMachine] = {}
_external_data: ExternalDataService | None = None


def _get_external_data() -> ExternalDataService:
    global _external_data
    if _external_data is None:
        _external_data = ExternalDataService(
            default_providers(),
            cache=ExternalDataCache(ttl_seconds=settings.cache_ttl_seconds),
        )
    return _external_data


def get_machine(session_id: str) -> ConversationStateMachine:
    machine = _machines.get(session_id)
    if machine is None:
        machine = ConversationStateMachine(
            session_id,
            classifier=GroqIntentClassifier(),
            generator=GroqItineraryGenerator(),
            itinerary_store=SqliteItineraryStore(db.DB_PATH),
            chat_history=SqliteChatHistory(db.DB_PATH),
            external_data=_get_external_data(),
        )
        _machines[session_id] = machine
        logger.info("[Chat] Created state machine for session %s", session_id[:8])
    return machine


def drop_machine(session_id: str) -> None:
    machine = _machines.pop(session_id, None)
    if machine is not None:
        machine.close()


async def _ensure_session_owner(session_id: str, user_id: str) -> str:
    """Ensure thread ownership. If the session belongs to another user, return a new session id."""
    async with aiosqlite.connect(db.DB_PATH) as conn:
        conn.row_factory = aiosqlite.Row
        cursor = await conn.execute("SELECT user_id FROM chat_threads WHERE thread_id = ?", (session_id,))
        row = await cursor.fetchone()

        if row and row["user_id"] and row["user_id"] != user_id:
            return str(uuid.uuid4())

        await conn.execute(
            "INSERT OR IGNORE INTO chat_threads (thread_id, user_id, title) VALUES (?, ?, ?)",
            (session_id, user_id, "Untitled Trip"),
        )
        await conn.commit()
    return session_id


async def _user_owns_session(session_id: str, user_id: str) -> bool:
    async with aiosqlite.connect(db.DB_PATH) as conn:
        cursor = await conn.execute(
            "SELECT 1 FROM chat_threads WHERE thread_id = ? AND user_id = ? LIMIT 1",
            (session_id, user_id),
        )
        return await cursor.fetchone() is not None


async def _owned_machine(session_id: str, request: Request) -> tuple[ConversationStateMachine, str | None]:
    user_id, issued_cookie = resolve_user(request)
    if not await _user_owns_session(session_id, user_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return get_machine(session_id), issued_cookie


async def _record(machine: ConversationStateMachine, role: str, text: str) -> None:
    try:
        await machine.chat_history.append(machine.chat_id, role, text)
    except PersistenceError:
        logger.warning("[Chat] Could not record %s message for session %s", role, machine.chat_id, exc_info=True)


def _json_response(content: dict, issued_cookie: str | None) -> JSONResponse:
    response = JSONResponse(content=json.loads(json.dumps(content, default=str)))
    if issued_cookie:
        set_session_cookie(response, issued_cookie)
    return response


class ChatRequest(BaseModel):
    message: str
    session_id: str | None = None


class NewTripRequest(BaseModel):
    fields: dict | None = None


@router.post("/message")
async def chat_message(req: ChatRequest, request: Request):
    """Run one user message through the session's machine, streaming every event it emits."""
    user_id, issued_cookie = resolve_user(request)
    session_id = await _ensure_session_owner(req.session_id or str(uuid.uuid4()), user_id)
    machine = get_machine(session_id)

    queue: asyncio.Queue[MachineEvent] = asyncio.Queue()
    unsubscribe = machine.events.subscribe(queue.put_nowait)

    async def run_turn() -> None:
        await _record(machine, "user", req.message)
        await machine.handle_message(req.message)
        await machine.wait_for_validation()

    async def event_generator():
        turn = asyncio.create_task(run_turn())
        replies = []
        try:
            while not (turn.done() and queue.empty()):
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=0.1)
                except asyncio.TimeoutError:
                    continue
                if event.kind == "message":
                    replies.append(event.data.get("text") or "")
                yield {"event": event.kind, "data": json.dumps(event.data, default=str)}

            if turn.done() and not turn.cancelled() and turn.exception() is not None:
                raise turn.exception()
            for text in replies:
                await _record(machine, "model", text)
            yield {
                "event": "done",
                "data": json.dumps({"session_id": session_id, "phase": machine.phase.value}),
            }
        except Exception as e:
            logger.exception("[Chat] Stream error for session %s", session_id[:8])
            yield {"event": "error", "data": json.dumps({"message": str(e)})}
        finally:
            unsubscribe()
            if not turn.done():
                turn.cancel()

    response = EventSourceResponse(event_generator())
    if issued_cookie:
        set_session_cookie(response, issued_cookie)
    return response


@router.get("/session/{session_id}/state")
async def get_state(session_id: str, request: Request):
    machine, issued_cookie = await _owned_machine(session_id, request)
    return _json_response(machine.snapshot(), issued_cookie)


@router.post("/session/{session_id}/new-trip")
async def new_trip(session_id: str, request: Request, req: NewTripRequest | None = None):
    machine, issued_cookie = await _owned_machine(session_id, request)
    draft = await machine.start_new_trip((req.fields if req else None) or {})
    return _json_response({"phase": machine.phase.value, "draft": draft, "drafts": machine.drafts}, issued_cookie)


@router.post("/session/{session_id}/cancel")
async def cancel(session_id: str, request: Request):
    machine, issued_cookie = await _owned_machine(session_id, request)
    await machine.cancel_trip()
    return _json_response({"phase": machine.phase.value, "draft": machine.draft}, issued_cookie)


@router.get("/session/{session_id}/trips")
async def get_trips(session_id: str, request: Request):
    """Completed trips held in memory plus every itinerary saved for this session."""
    machine, issued_cookie = await _owned_machine(session_id, request)
    saved = await SqliteItineraryStore(db.DB_PATH).list_for_chat(session_id)
    return _json_response(
        {
            "session_id": session_id,
            "completed_trips": machine.completed_trips,
            "selected_trip_index": machine.selected_trip_index,
            "saved_itineraries": saved,
        },
        issued_cookie,
    )


@router.delete("/session/{session_id}")
async def delete_session(session_id: str, request: Request):
    """Delete a user-owned session, its transcript and its saved itineraries."""
    user_id, issued_cookie = resolve_user(request)
    if not await _user_owns_session(session_id, user_id):
        raise HTTPException(status_code=404, detail="Session not found")

    async with aiosqlite.connect(db.DB_PATH) as conn:
        await conn.execute("DELETE FROM chat_threads WHERE thread_id = ? AND user_id = ?", (session_id, user_id))
        await conn.execute("DELETE FROM chat_messages WHERE thread_id = ?", (session_id,))
        await conn.execute("DELETE FROM itineraries WHERE thread_id = ?", (session_id,))
        await conn.commit()

    drop_machine(session_id)
    return _json_response({"status": "deleted", "session_id": session_id}, issued_cookie)
