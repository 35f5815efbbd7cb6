"""Collaborator interfaces the state machine is constructed with.

Each port has a no-op default so a machine can run with nothing wired in.
"""
import uuid
from typing import Any, Protocol

from pydantic import BaseModel, Field


class Classification(BaseModel):
    intent: str = "General"
    extracted_fields: dict[str, Any] = Field(default_factory=dict)


class IntentClassifier(Protocol):
    async def classify(self, message: str, profile: dict[str, Any]) -> Classification: ...


class ItineraryGenerator(Protocol):
    async def generate(self, draft: dict[str, Any]) -> str: ...


class ItineraryStore(Protocol):
    async def save(self, chat_id: str | None, itinerary: dict[str, Any]) -> dict[str, Any]: ...


class ChatHistoryStore(Protocol):
    async def append(self, chat_id: str | None, role: str, text: str) -> None: ...


class NullClassifier:
    async def classify(self, message: str, profile: dict[str, Any]) -> Classification:
        return Classification()


class NullGenerator:
    async def generate(self, draft: dict[str, Any]) -> str:
        return ""


class NullItineraryStore:
    async def save(self, chat_id: str | None, itinerary: dict[str, Any]) -> dict[str, Any]:
        return {"itinerary_id": str(uuid.uuid4())}


class NullChatHistory:
    async def append(self, chat_id: str | None, role: str, text: str) -> None:
        return None
