"""
Draft generator: turns a natural-language game description into a structured
project draft (name, description, tags, runtime config bag).

Callers treat every failure as "use fallback defaults"; DraftRateLimitedError
lets them tell quota exhaustion apart in logs and metrics.
"""
import json
import logging
import re
from typing import Any, Optional

import httpx

from app.llm.config import DraftConfig, get_draft_config
from app.llm.prompts import STRICT_JSON_SUFFIX, SYSTEM_PROMPT, build_user_prompt
from app.llm.providers.ollama_client import call_ollama
from app.llm.providers.openai_client import call_openai
from app.llm.schemas import ProjectDraft, ProviderReply, draft_from_payload

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class DraftGenerationError(Exception):
    """Draft could not be produced."""
    pass


class DraftRateLimitedError(DraftGenerationError):
    """Provider rejected the call for quota/rate reasons (HTTP 429)."""
    pass


def extract_json_object(text: Optional[str]) -> Optional[dict[str, Any]]:
    """Parse a JSON object from model output, tolerating code fences and chatter."""
    if not text:
        return None
    cleaned = _CODE_FENCE.sub("", text.strip())
    candidates = [cleaned]
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        candidates.append(cleaned[start:end + 1])
    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None


class DraftGenerator:
    """Calls the configured text model provider for project drafts."""

    def __init__(
        self,
        config: Optional[DraftConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config or get_draft_config()
        self._transport = transport

    @property
    def config(self) -> DraftConfig:
        return self._config

    async def _call(self, system_prompt: str, user_prompt: str) -> ProviderReply:
        if self._config.provider == "ollama":
            return await call_ollama(self._config, system_prompt, user_prompt, self._transport)
        return await call_openai(self._config, system_prompt, user_prompt, self._transport)

    async def generate(self, description: str, notes: Optional[str] = None) -> ProjectDraft:
        """
        Produce a draft for description.

        Retries once with a strict JSON instruction when the reply does not parse.

        Raises:
            DraftRateLimitedError: provider answered 429
            DraftGenerationError: not configured, provider error, or unparseable output
        """
        if not self._config.enabled:
            raise DraftGenerationError(
                f"Draft generator not configured: {self._config.disabled_reason}"
            )

        user_prompt = build_user_prompt(description, notes)
        for attempt, suffix in enumerate(("", STRICT_JSON_SUFFIX), start=1):
            reply = await self._call(SYSTEM_PROMPT, user_prompt + suffix)
            if reply.status_code == 429:
                raise DraftRateLimitedError("Draft generation quota exceeded")
            if reply.error:
                raise DraftGenerationError(reply.error)

            payload = extract_json_object(reply.text)
            if payload is not None:
                draft = draft_from_payload(payload, description)
                logger.info(f"draft_generated attempt={attempt} tags={len(draft.tags)}")
                return draft
            logger.warning(f"draft_invalid_json attempt={attempt}")

        raise DraftGenerationError("Draft generator returned invalid JSON")


def get_draft_generator() -> DraftGenerator:
    """Draft generator for the current environment configuration."""
    return DraftGenerator(get_draft_config())
