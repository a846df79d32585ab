"""
OpenAI-compatible chat completions client using httpx.
Minimal implementation - no heavy dependencies.
"""
import json
import logging
from typing import Optional

import httpx

from app.llm.config import DraftConfig
from app.llm.schemas import ProviderReply

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"


async def call_openai(
    config: DraftConfig,
    system_prompt: str,
    user_prompt: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderReply:
    """
    Call an OpenAI-compatible chat completions endpoint in JSON mode.

    NEVER logs the API key, prompts or response bodies.
    """
    if not config.api_key:
        return ProviderReply(error="OpenAI API key not configured")

    model = config.model or DEFAULT_MODEL
    url = f"{(config.base_url or DEFAULT_BASE_URL).rstrip('/')}/chat/completions"

    headers = {
        "Authorization": f"Bearer {config.api_key}",
        "Content-Type": "application/json",
    }
    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "max_tokens": config.max_tokens,
        "temperature": 0.4,
        "response_format": {"type": "json_object"},
    }

    try:
        async with httpx.AsyncClient(timeout=config.timeout_s, transport=transport) as client:
            logger.info(f"llm_call provider=openai model={model}")
            response = await client.post(url, headers=headers, json=payload)

            if response.status_code != 200:
                logger.warning(f"llm_error provider=openai status={response.status_code}")
                return ProviderReply(
                    error=f"OpenAI API error: status {response.status_code}",
                    status_code=response.status_code,
                )

            data = response.json()
            content = data.get("choices", [{}])[0].get("message", {}).get("content", "")
            if not content:
                return ProviderReply(error="Empty response from OpenAI", status_code=200)

            logger.info("llm_success provider=openai")
            return ProviderReply(text=content, status_code=200)

    except httpx.TimeoutException:
        logger.warning("llm_timeout provider=openai")
        return ProviderReply(error="OpenAI API timeout")
    except httpx.RequestError as e:
        logger.warning(f"llm_network_error provider=openai error_type={type(e).__name__}")
        return ProviderReply(error=f"Network error: {type(e).__name__}")
    except (json.JSONDecodeError, IndexError, AttributeError):
        logger.warning("llm_json_error provider=openai")
        return ProviderReply(error="Invalid JSON response from OpenAI")
