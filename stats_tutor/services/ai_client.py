"""Centralized AI client supporting OpenAI and Anthropic.

Usage:
    from stats_tutor.services.ai_client import ai_chat

    result = await ai_chat(
        messages=[
            {"role": "system", "content": "You are a statistics professor."},
            {"role": "user", "content": "Generate one question."},
        ],
        use_case="question",     # "question", "report", "teaching", or None for default
        temperature=0.2,
        json_mode=True,
    )

Provider is auto-detected per use case from the model name:
  - Models starting with "claude-" route to Anthropic
  - Everything else routes to OpenAI

Each call is bounded by ``settings.llm_timeout_seconds`` (retries included).
Failures surface as GenerationTimeout / GenerationFailed so callers never
see provider-specific exceptions.
"""

import asyncio
import logging
from enum import Enum

from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from stats_tutor.config import settings
from stats_tutor.errors import GenerationFailed, GenerationTimeout

logger = logging.getLogger(__name__)


class AIProvider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


_ANTHROPIC_PREFIXES = ("claude-",)


def _resolve_model(use_case: str | None) -> str:
    """Pick the model name based on the use case and config overrides."""
    if use_case == "question" and settings.question_model:
        return settings.question_model
    if use_case == "report" and settings.report_model:
        return settings.report_model
    if use_case == "teaching" and settings.teaching_model:
        return settings.teaching_model
    return settings.model_name


def _detect_provider(model: str) -> AIProvider:
    """Models starting with 'claude-' go to Anthropic; others follow ai_provider."""
    model_lower = model.lower()
    for prefix in _ANTHROPIC_PREFIXES:
        if model_lower.startswith(prefix):
            return AIProvider.ANTHROPIC
    try:
        return AIProvider(settings.ai_provider.lower())
    except ValueError:
        return AIProvider.OPENAI


async def ai_chat(
    messages: list[dict],
    *,
    use_case: str | None = None,
    temperature: float = 0.2,
    json_mode: bool = False,
    max_tokens: int = 2048,
    timeout: float | None = None,
) -> str:
    """Send a chat completion and return the assistant text."""
    model = _resolve_model(use_case)
    provider = _detect_provider(model)

    if provider == AIProvider.OPENAI:
        call = _openai_chat(messages, model, temperature, json_mode, max_tokens)
    else:
        call = _anthropic_chat(messages, model, temperature, json_mode, max_tokens)

    try:
        return await asyncio.wait_for(call, timeout=timeout or settings.llm_timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning("%s call for %s timed out", provider.value, use_case or "default")
        raise GenerationTimeout(f"{provider.value} {model} timed out")
    except Exception as exc:
        logger.warning("%s call for %s failed: %s", provider.value, use_case or "default", exc)
        raise GenerationFailed(str(exc)) from exc


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    retry=retry_if_exception_type(Exception),
    before_sleep=lambda retry_state: logger.warning(
        "OpenAI call failed (attempt %d), retrying: %s",
        retry_state.attempt_number,
        retry_state.outcome.exception(),
    ),
    reraise=True,
)
async def _openai_chat(
    messages: list[dict],
    model: str,
    temperature: float,
    json_mode: bool,
    max_tokens: int,
) -> str:
    from openai import AsyncOpenAI

    client = AsyncOpenAI(api_key=settings.api_key)
    kwargs: dict = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    response = await client.chat.completions.create(**kwargs)
    return response.choices[0].message.content or ""


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    retry=retry_if_exception_type(Exception),
    before_sleep=lambda retry_state: logger.warning(
        "Anthropic call failed (attempt %d), retrying: %s",
        retry_state.attempt_number,
        retry_state.outcome.exception(),
    ),
    reraise=True,
)
async def _anthropic_chat(
    messages: list[dict],
    model: str,
    temperature: float,
    json_mode: bool,
    max_tokens: int,
) -> str:
    import anthropic

    client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)

    # Anthropic uses a separate system parameter, not a system message
    system_text = ""
    chat_messages = []
    for msg in messages:
        if msg["role"] == "system":
            system_text += msg["content"] + "\n"
        else:
            chat_messages.append({"role": msg["role"], "content": msg["content"]})

    if json_mode:
        system_text += "\nYou MUST respond with valid JSON only. No other text.\n"

    # The Messages API needs at least one user turn
    if not chat_messages:
        chat_messages.append({"role": "user", "content": "Begin."})

    kwargs: dict = {
        "model": model,
        "messages": chat_messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if system_text.strip():
        kwargs["system"] = system_text.strip()

    response = await client.messages.create(**kwargs)
    return response.content[0].text
