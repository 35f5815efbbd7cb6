"""Groq-backed intent classifier and itinerary generator."""
import json
import logging
from typing import Any, Callable

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_groq import ChatGroq

from tripchat.agent.prompts import (
    CLASSIFIER_SYSTEM_PROMPT,
    ITINERARY_SYSTEM_PROMPT,
    build_itinerary_prompt,
)
from tripchat.config import settings
from tripchat.conversation.ports import Classification
from tripchat.errors import ClassificationError, GenerationError

logger = logging.getLogger(__name__)

# ── LLM Setup ────────────────────────────────────────────────────────────────

def _make_llm(api_key: str, temperature: float) -> ChatGroq:
    return ChatGroq(
        model=settings.groq_model,
        api_key=api_key,
        temperature=temperature,
    )


def _is_retryable(error: Exception) -> bool:
    err_str = str(error).lower()
    return "rate_limit" in err_str or "429" in err_str or "failed to call a function" in err_str


async def invoke_with_fallback(
    build: Callable[[ChatGroq], Any],
    messages: list,
    temperature: float,
) -> Any:
    """Call the LLM; if key 1 hits a rate-limit or function-call error, retry with key 2."""
    if not settings.groq_api_key:
        raise RuntimeError("GROQ_API_KEY is not configured")
    try:
        return await build(_make_llm(settings.groq_api_key, temperature)).ainvoke(messages)
    except Exception as e:
        if _is_retryable(e) and settings.groq_api_key_2:
            logger.info("[LLM Fallback] Key 1 failed (%s), retrying with key 2", type(e).__name__)
            return await build(_make_llm(settings.groq_api_key_2, temperature)).ainvoke(messages)
        raise


# ── Itinerary generation ─────────────────────────────────────────────────────

class GroqItineraryGenerator:
    """Prompt in, Markdown itinerary out. No retries beyond the key fallback."""

    temperature = 0.7

    async def generate(self, draft: dict[str, Any]) -> str:
        messages = [
            SystemMessage(content=ITINERARY_SYSTEM_PROMPT),
            HumanMessage(content=build_itinerary_prompt(draft)),
        ]
        try:
            response = await invoke_with_fallback(lambda llm: llm, messages, self.temperature)
        except Exception as e:
            raise GenerationError(f"Itinerary generation failed: {e}") from e
        text = getattr(response, "content", "") or ""
        logger.info("[Generator] Generated %d characters for %s", len(text), draft.get("vacation_location"))
        return text


# ── Intent classification ────────────────────────────────────────────────────

class GroqIntentClassifier:
    temperature = 0.0

    async def classify(self, message: str, profile: dict[str, Any]) -> Classification:
        context = json.dumps(profile, default=str)
        messages = [
            SystemMessage(content=CLASSIFIER_SYSTEM_PROMPT + f"\n\n[Known user context: {context}]"),
            HumanMessage(content=message),
        ]
        try:
            result = await invoke_with_fallback(
                lambda llm: llm.with_structured_output(Classification),
                messages,
                self.temperature,
            )
        except Exception as e:
            raise ClassificationError(f"Intent classification failed: {e}") from e
        if not isinstance(result, Classification):
            raise ClassificationError(f"Unexpected classifier output: {result!r}")
        return result
