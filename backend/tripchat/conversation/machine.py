"""Conversation / trip state machine.

One machine per chat session. It owns the phase, the active trip draft, the
archived and completed trips and the user profile; nothing else mutates them.
All phase changes go through ``transition``; everything the host must act on
(messages, fetched data, a finished itinerary) is published on ``events``.

The machine is single-threaded cooperative: it is driven from one event loop,
and every awaited collaborator result is checked against the trip token it was
started under before being applied.
"""
import asyncio
import copy
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from tripchat.config import settings
from tripchat.conversation.events import EventBus
from tripchat.conversation.itinerary import parse_itinerary
from tripchat.conversation.merge import merge_trip_draft, normalize_trip_draft
from tripchat.conversation.ports import (
    ChatHistoryStore,
    Classification,
    IntentClassifier,
    ItineraryGenerator,
    ItineraryStore,
    NullChatHistory,
    NullClassifier,
    NullGenerator,
    NullItineraryStore,
)
from tripchat.conversation.profile import CATEGORIES, UserProfile
from tripchat.conversation.state import (
    BYPASS_MISSING_FIELDS,
    DRAFTING_PHASES,
    FORCE_EXTERNAL_FETCH,
    FORCE_NEW_ITINERARY,
    NO_AUTO_CONFIRM_PHASES,
    REDIRECT_WHEN_ITINERARY_HELD,
    CompletedTrip,
    Phase,
    TripDraft,
)
from tripchat.conversation.validation import (
    follow_up_question,
    format_trip_summary,
    validate_trip_draft,
)
from tripchat.errors import GenerationError, UpstreamFetchError
from tripchat.services.external_data import ExternalDataService

logger = logging.getLogger(__name__)

INTENT_TOPICS = {
    "Weather-Request": "weather",
    "Find-Hotel": "hotels",
    "Find-Attractions": "attractions",
    "Find-Flights": "flights",
}

# Each inner tuple is a set of alternatives, one of which must be present.
TOPIC_REQUIRED_PARAMS = {
    "weather": (("location", "city"),),
    "hotels": (("location", "city"),),
    "attractions": (("location", "city"),),
    "flights": (("origin",), ("destination",), ("departure_date", "date")),
}

_FETCH_FLAGS = (BYPASS_MISSING_FIELDS, FORCE_EXTERNAL_FETCH)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConversationStateMachine:
    def __init__(
        self,
        chat_id: str | None = None,
        *,
        classifier: IntentClassifier | None = None,
        generator: ItineraryGenerator | None = None,
        itinerary_store: ItineraryStore | None = None,
        chat_history: ChatHistoryStore | None = None,
        external_data: ExternalDataService | None = None,
        events: EventBus | None = None,
        profile: UserProfile | None = None,
        debounce_seconds: float | None = None,
        generation_timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.chat_id = chat_id
        self.classifier = classifier or NullClassifier()
        self.generator = generator or NullGenerator()
        self.itinerary_store = itinerary_store or NullItineraryStore()
        self.chat_history = chat_history or NullChatHistory()
        self.external_data = external_data
        self.events = events or EventBus()
        self.profile = profile or UserProfile()
        self.debounce_seconds = (
            settings.draft_debounce_seconds if debounce_seconds is None else debounce_seconds
        )
        self.generation_timeout_seconds = (
            settings.generation_timeout_seconds
            if generation_timeout_seconds is None
            else generation_timeout_seconds
        )
        self._clock = clock

        self._phase = Phase.IDLE
        self.draft: TripDraft | None = None
        self.drafts: list[TripDraft] = []
        self.completed_trips: list[CompletedTrip] = []
        self.selected_trip_index: int | None = None
        self.current_itinerary: CompletedTrip | None = None
        self.trip_owner_chat_id: str | None = None

        self._cancel_requested = False
        self._generation_started_at: float | None = None
        self._trip_token = 0
        self._validation_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None

    # ── Read-only views ──────────────────────────────────────────────────────

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def generation_in_progress(self) -> bool:
        """True while a generation is running and its guard has not timed out."""
        started = self._generation_started_at
        if started is None:
            return False
        if self._clock() - started >= self.generation_timeout_seconds:
            logger.warning(
                "[StateMachine] Generation guard exceeded %.0fs, clearing it",
                self.generation_timeout_seconds,
            )
            self._generation_started_at = None
            return False
        return True

    def holds_completed_itinerary(self) -> bool:
        return (
            self._phase in (Phase.DISPLAYING_ITINERARY, Phase.ITINERARY_ADVICE_MODE)
            and self.current_itinerary is not None
        )

    # ── Transitions ──────────────────────────────────────────────────────────

    async def transition(self, target: Phase | str, context: dict[str, Any] | None = None) -> Phase:
        """Move to ``target`` (possibly redirected) and run its side effects.

        Returns the phase actually entered.
        """
        target = Phase(target)
        if target == self._phase and not context:
            return self._phase
        context = context or {}
        forced = bool(context.get(FORCE_NEW_ITINERARY))

        if target in REDIRECT_WHEN_ITINERARY_HELD and self.holds_completed_itinerary():
            if forced:
                self.current_itinerary = None
            else:
                logger.info(
                    "[StateMachine] %s requested while an itinerary is displayed, redirecting to %s",
                    target.value, Phase.ITINERARY_ADVICE_MODE.value,
                )
                target = Phase.ITINERARY_ADVICE_MODE

        if target == Phase.IDLE and self._phase == Phase.AWAITING_USER_TRIP_CONFIRMATION:
            self._cancel_requested = True

        if target == Phase.GENERATING_ITINERARY:
            if self.generation_in_progress:
                logger.warning("[StateMachine] Generation already in progress, ignoring re-entry")
                return self._phase
            self.trip_owner_chat_id = self.chat_id
            self._cancel_requested = False
            self._start_generation_guard()

        if target == Phase.AWAITING_MISSING_INFO and any(context.get(flag) for flag in _FETCH_FLAGS):
            target = Phase.FETCHING_EXTERNAL_DATA

        self._set_phase(target)

        if target == Phase.DISPLAYING_ITINERARY and context and not self._cancel_requested:
            await self._archive_completed_trip(context)
        elif target == Phase.IDLE:
            self._on_idle()
        elif target in DRAFTING_PHASES:
            self._schedule_validation()

        return self._phase

    def _set_phase(self, phase: Phase) -> None:
        previous = self._phase
        self._phase = phase
        if previous != phase:
            logger.info("[StateMachine] %s -> %s", previous.value, phase.value)
            self.events.emit("phase_changed", previous=previous.value, phase=phase.value)

    def _on_idle(self) -> None:
        if self._cancel_requested and (self.draft or self.current_itinerary):
            logger.info("[StateMachine] Trip cancelled, discarding draft without archiving")
            self._cancel_validation()
            self.draft = None
            self.current_itinerary = None
            self.selected_trip_index = None
            self._trip_token += 1
            self.events.emit("message", role="model", text="Okay, I've cancelled that trip.")
        self._cancel_requested = False

    # ── Draft handling ───────────────────────────────────────────────────────

    def update_trip_draft(self, fields: dict[str, Any] | None) -> TripDraft:
        """Merge ``fields`` into the active draft (creating it if needed)."""
        self.draft = normalize_trip_draft(merge_trip_draft(self.draft, fields))
        self._schedule_validation()
        return copy.deepcopy(self.draft)

    def _draft_has_content(self, draft: TripDraft | None) -> bool:
        return bool(draft) and any(key != "id" for key in draft)

    def _archive_active_draft(self) -> None:
        draft = self.draft
        if not self._draft_has_content(draft):
            return
        completed_ids = {trip.get("id") for trip in self.completed_trips}
        if draft.get("id") in completed_ids:
            return
        archived = {**draft, "id": draft.get("id") or str(uuid.uuid4())}
        self.drafts = [d for d in self.drafts if d.get("id") != archived["id"]] + [archived]
        logger.info("[StateMachine] Archived draft %s", archived["id"])

    async def start_new_trip(self, fields: dict[str, Any] | None = None) -> TripDraft:
        """Archive the active draft and begin an empty one."""
        self._archive_active_draft()
        self._trip_token += 1
        self._cancel_validation()
        self.draft = {}
        await self.transition(Phase.TRIP_BUILDING_MODE, {FORCE_NEW_ITINERARY: True})
        if fields:
            self.update_trip_draft(fields)
        return copy.deepcopy(self.draft)

    async def resume_draft(self, draft_id: str) -> TripDraft:
        match = next((d for d in self.drafts if d.get("id") == draft_id), None)
        if match is None:
            raise KeyError(f"No archived draft with id {draft_id}")
        self._archive_active_draft()
        self.drafts = [d for d in self.drafts if d.get("id") != draft_id]
        self._trip_token += 1
        self.draft = copy.deepcopy(match)
        await self.transition(Phase.TRIP_BUILDING_MODE, {FORCE_NEW_ITINERARY: True})
        return copy.deepcopy(self.draft)

    async def cancel_trip(self) -> None:
        """Discard the active draft; it is not archived."""
        self._cancel_requested = True
        if self._phase == Phase.IDLE:
            self._on_idle()
        else:
            await self.transition(Phase.IDLE)

    async def select_trip(self, index: int) -> CompletedTrip:
        if not 0 <= index < len(self.completed_trips):
            raise IndexError(f"No completed trip at index {index}")
        self.selected_trip_index = index
        self.current_itinerary = self.completed_trips[index]
        await self.transition(Phase.DISPLAYING_ITINERARY)
        return self.current_itinerary

    # ── Completion watcher ───────────────────────────────────────────────────

    def _schedule_validation(self) -> None:
        if self._phase not in DRAFTING_PHASES or self.draft is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # The watcher only runs under an event loop.
            return
        self._cancel_validation()
        self._validation_task = loop.create_task(self._debounced_validation())

    def _cancel_validation(self) -> None:
        task = self._validation_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._validation_task = None

    async def _debounced_validation(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        if self._phase not in DRAFTING_PHASES or self.draft is None:
            return
        completion = validate_trip_draft(self.draft)
        if not completion.is_complete or self._phase in NO_AUTO_CONFIRM_PHASES:
            return
        logger.info("[StateMachine] Draft complete, asking the user to confirm")
        await self.transition(Phase.AWAITING_USER_TRIP_CONFIRMATION)
        self.events.emit(
            "trip_confirmation_needed",
            summary=format_trip_summary(self.draft),
            draft=copy.deepcopy(self.draft),
        )

    async def wait_for_validation(self) -> None:
        """Wait for a pending debounced validation to finish, if any."""
        task = self._validation_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    # ── Itinerary generation ─────────────────────────────────────────────────

    def _start_generation_guard(self) -> None:
        started = self._clock()
        self._generation_started_at = started
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._watchdog_task is not None and not self._watchdog_task.done():
            self._watchdog_task.cancel()
        self._watchdog_task = loop.create_task(self._generation_watchdog(started))

    def _clear_generation_guard(self, started: float | None = None) -> None:
        if started is None or self._generation_started_at == started:
            self._generation_started_at = None
        if self._watchdog_task is not None and self._watchdog_task is not asyncio.current_task():
            self._watchdog_task.cancel()
            self._watchdog_task = None

    async def _generation_watchdog(self, started: float) -> None:
        await asyncio.sleep(self.generation_timeout_seconds)
        if self._generation_started_at != started:
            return
        logger.warning("[StateMachine] Itinerary generation timed out, releasing guard")
        self._generation_started_at = None
        if self._phase == Phase.GENERATING_ITINERARY:
            await self.transition(Phase.AWAITING_USER_TRIP_CONFIRMATION)
            self.events.emit(
                "message",
                role="model",
                text="Generating your itinerary is taking too long. Please try again.",
            )

    def _ask_for_missing(self, missing: list[str], topic: str | None = None) -> None:
        self.events.emit("missing_fields", topic=topic or "trip", fields=list(missing))
        question = follow_up_question(missing) if topic is None else (
            f"I need a bit more information for that: {', '.join(missing)}."
        )
        if question:
            self.events.emit("message", role="model", text=question)

    async def generate_itinerary(self) -> CompletedTrip | None:
        """Generate an itinerary for the active draft and display it.

        Returns the completed trip, or None when generation did not happen,
        failed, or finished after the trip had been replaced.
        """
        if self.generation_in_progress:
            self.events.emit("message", role="model", text="I'm still working on your itinerary.")
            return None

        completion = validate_trip_draft(self.draft)
        if not completion.is_complete:
            await self.transition(Phase.AWAITING_MISSING_INFO)
            self._ask_for_missing(completion.missing_fields)
            return None

        if not self.draft.get("id"):
            self.draft = {**self.draft, "id": str(uuid.uuid4())}

        entered = await self.transition(Phase.GENERATING_ITINERARY)
        if entered != Phase.GENERATING_ITINERARY:
            return None

        token = self._trip_token
        started = self._generation_started_at
        owner = self.trip_owner_chat_id
        draft = copy.deepcopy(self.draft)
        self.events.emit("generation_started", trip_id=draft["id"], chat_id=owner)

        try:
            text = await self.generator.generate(draft)
            if not text or not text.strip():
                raise GenerationError("Generator returned an empty itinerary")
        except Exception:
            if self._is_stale(token, owner, Phase.GENERATING_ITINERARY):
                logger.info("[Stale] Generation failure for superseded trip %s ignored", draft["id"])
                self._clear_generation_guard(started)
                return None
            logger.warning("[Generator] Itinerary generation failed", exc_info=True)
            self._clear_generation_guard(started)
            await self.transition(Phase.AWAITING_USER_TRIP_CONFIRMATION)
            self.events.emit(
                "message",
                role="model",
                text="Sorry, I couldn't generate your itinerary. Would you like me to try again?",
            )
            return None

        if self._is_stale(token, owner, Phase.GENERATING_ITINERARY):
            logger.info("[Stale] Discarding itinerary for superseded trip %s", draft["id"])
            self._clear_generation_guard(started)
            return None

        self._clear_generation_guard(started)
        trip: CompletedTrip = {
            "id": draft["id"],
            "chat_id": owner,
            "draft": draft,
            "itinerary": text,
            "metadata": {
                "destination": draft.get("vacation_location"),
                "duration": draft.get("duration"),
                "dates": draft.get("dates"),
                "generated_at": _now_iso(),
            },
        }
        await self.transition(Phase.DISPLAYING_ITINERARY, trip)
        return self.current_itinerary

    def _is_stale(self, token: int, owner: str | None, expected_phase: Phase) -> bool:
        return (
            token != self._trip_token
            or owner != self.chat_id
            or self._phase != expected_phase
        )

    async def _archive_completed_trip(self, data: dict[str, Any]) -> None:
        trip: CompletedTrip = copy.deepcopy(data)
        trip.setdefault("id", str(uuid.uuid4()))
        trip.setdefault("chat_id", self.trip_owner_chat_id)
        try:
            trip["structured_itinerary"] = parse_itinerary(trip.get("itinerary"))
        except Exception:
            logger.warning("[Itinerary] Could not structure itinerary %s", trip["id"], exc_info=True)
            trip["structured_itinerary"] = None

        self.completed_trips = [t for t in self.completed_trips if t.get("id") != trip["id"]] + [trip]
        self.drafts = [d for d in self.drafts if d.get("id") != trip["id"]]
        self.selected_trip_index = len(self.completed_trips) - 1
        self.current_itinerary = trip
        self._clear_generation_guard()
        self.events.emit("itinerary_ready", trip=copy.deepcopy(trip))

        await self._persist_itinerary(trip)

    async def _persist_itinerary(self, trip: CompletedTrip) -> None:
        chat_id = trip.get("chat_id")
        try:
            saved = await self.itinerary_store.save(chat_id, {
                "itinerary_text": trip.get("itinerary"),
                "structured_itinerary": trip.get("structured_itinerary"),
                "metadata": trip.get("metadata", {}),
            })
            trip["itinerary_id"] = (saved or {}).get("itinerary_id")
        except Exception:
            logger.warning("[Persistence] Saving itinerary for chat %s failed", chat_id, exc_info=True)
        try:
            await self.chat_history.append(chat_id, "model", trip.get("itinerary") or "")
        except Exception:
            logger.warning("[Persistence] Appending itinerary to chat %s failed", chat_id, exc_info=True)

    # ── External data ────────────────────────────────────────────────────────

    def _resting_phase(self) -> Phase:
        if self.current_itinerary is not None:
            return Phase.ITINERARY_ADVICE_MODE
        if self.draft is not None:
            return Phase.TRIP_BUILDING_MODE
        return Phase.ADVISORY_MODE

    def _fill_from_context(self, topic: str, params: dict[str, Any]) -> dict[str, Any]:
        query = {}
        if topic in CATEGORIES:
            remembered = self.profile.get(topic) or {}
            remembered.pop("last_updated", None)
            query.update(remembered)
        query.update({k: v for k, v in params.items() if k not in _FETCH_FLAGS})

        trip_source = self.current_itinerary.get("draft") if self.current_itinerary else self.draft
        if trip_source and topic != "flights" and not (query.get("location") or query.get("city")):
            if trip_source.get("vacation_location"):
                query["location"] = trip_source["vacation_location"]
            if trip_source.get("country") and not query.get("country"):
                query["country"] = trip_source["country"]
        return query

    @staticmethod
    def _missing_params(topic: str, query: dict[str, Any]) -> list[str]:
        return [
            alternatives[0]
            for alternatives in TOPIC_REQUIRED_PARAMS.get(topic, ())
            if not any(query.get(name) for name in alternatives)
        ]

    async def fetch_external_data(
        self,
        topic: str,
        params: dict[str, Any] | None = None,
        intent: str | None = None,
    ) -> dict[str, Any] | None:
        """Fetch ``topic`` data through the cache and publish it.

        Returns the payload, or None when information is missing, the fetch
        failed, or the result arrived after the conversation moved on.
        """
        params = params or {}
        query = self._fill_from_context(topic, params)
        missing = self._missing_params(topic, query)
        flags = {flag: True for flag in _FETCH_FLAGS if params.get(flag)}

        if missing:
            entered = await self.transition(Phase.AWAITING_MISSING_INFO, flags or None)
            if entered != Phase.FETCHING_EXTERNAL_DATA:
                self._ask_for_missing(missing, topic=topic)
                return None
        else:
            await self.transition(Phase.FETCHING_EXTERNAL_DATA)

        if self.external_data is None:
            logger.warning("[StateMachine] No external data service configured for %s", topic)
            self.events.emit("message", role="model", text=f"Sorry, I couldn't fetch {topic} data right now.")
            await self.transition(self._resting_phase())
            return None

        token = self._trip_token
        self.events.emit("fetch_started", topic=topic, params=copy.deepcopy(query))
        try:
            payload = await self.external_data.fetch(topic, query)
        except asyncio.CancelledError:
            if token == self._trip_token and self._phase == Phase.FETCHING_EXTERNAL_DATA:
                await self.transition(self._resting_phase())
            raise
        except UpstreamFetchError as e:
            return await self._fetch_failed(topic, token, e.message)
        except Exception:
            logger.warning("[ExternalData] %s fetch failed", topic, exc_info=True)
            return await self._fetch_failed(topic, token, None)

        if self._is_stale(token, self.chat_id, Phase.FETCHING_EXTERNAL_DATA):
            logger.info("[Stale] Discarding %s data fetched for a superseded context", topic)
            return None

        if topic in CATEGORIES:
            self.profile.update(topic, query, intent=intent)
        self.events.emit("external_data", topic=topic, params=copy.deepcopy(query), data=payload)
        await self.transition(self._resting_phase())
        return payload

    async def _fetch_failed(self, topic: str, token: int, reason: str | None) -> None:
        if self._is_stale(token, self.chat_id, Phase.FETCHING_EXTERNAL_DATA):
            logger.info("[Stale] Ignoring %s fetch failure for a superseded context", topic)
            return None
        logger.warning("[ExternalData] Could not fetch %s: %s", topic, reason)
        self.events.emit("message", role="model", text=f"Sorry, I couldn't fetch {topic} data right now.")
        await self.transition(self._resting_phase())
        return None

    # ── Message handling ─────────────────────────────────────────────────────

    async def handle_message(self, text: str) -> Classification | None:
        """Classify a user message and drive the conversation accordingly."""
        previous = self._phase
        await self.transition(Phase.ANALYZING_INPUT)
        try:
            result = await self.classifier.classify(text, self.profile.snapshot())
        except Exception:
            logger.warning("[Classifier] Could not classify message", exc_info=True)
            self.events.emit(
                "message",
                role="model",
                text="Sorry, I didn't quite get that. Could you rephrase?",
            )
            await self.transition(previous)
            return None

        self.profile.record_intent(result.intent)
        await self._route(result)
        return result

    async def _route(self, result: Classification) -> None:
        intent = result.intent
        fields = dict(result.extracted_fields or {})

        if intent in INTENT_TOPICS:
            await self.fetch_external_data(INTENT_TOPICS[intent], fields, intent=intent)
        elif intent == "Trip-Building":
            await self._build_trip(fields)
        elif intent == "Confirm-Trip":
            await self.generate_itinerary()
        elif intent == "Cancel-Trip":
            await self.cancel_trip()
        elif intent == "Start-New-Trip":
            await self.start_new_trip(fields)
        elif intent == "Edit-Itinerary" and self.current_itinerary is not None:
            await self.transition(Phase.EDITING_ITINERARY)
        elif intent in ("Itinerary-Advice", "Edit-Itinerary") and self.current_itinerary is not None:
            await self.transition(Phase.ITINERARY_ADVICE_MODE)
        else:
            await self.transition(Phase.ADVISORY_MODE)

    async def _build_trip(self, fields: dict[str, Any]) -> None:
        entered = await self.transition(Phase.TRIP_BUILDING_MODE)
        if entered != Phase.TRIP_BUILDING_MODE:
            self.events.emit(
                "message",
                role="model",
                text="You already have an itinerary. Say \"start a new trip\" to plan another one.",
            )
            return

        self.update_trip_draft(fields)
        completion = validate_trip_draft(self.draft)
        if not completion.is_complete:
            await self.transition(Phase.AWAITING_MISSING_INFO)
            self._ask_for_missing(completion.missing_fields)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def snapshot(self) -> dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "phase": self._phase.value,
            "draft": copy.deepcopy(self.draft),
            "completion": validate_trip_draft(self.draft).model_dump(),
            "drafts": copy.deepcopy(self.drafts),
            "completed_trips": copy.deepcopy(self.completed_trips),
            "selected_trip_index": self.selected_trip_index,
            "generation_in_progress": self.generation_in_progress,
            "profile": self.profile.snapshot(),
        }

    def close(self) -> None:
        """Cancel pending timers; call when the session is torn down."""
        self._cancel_validation()
        if self._watchdog_task is not None and not self._watchdog_task.done():
            self._watchdog_task.cancel()
        self._watchdog_task = None
