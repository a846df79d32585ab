"""
Ollama API client for local model inference.
Connects to a self-hosted Ollama instance.
"""
import json
import logging
from typing import Optional

import httpx

from app.llm.config import DraftConfig
from app.llm.schemas import ProviderReply

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_BASE_URL = "http://127.0.0.1:11434"
DEFAULT_OLLAMA_MODEL = "llama3.1"


async def call_ollama(
    config: DraftConfig,
    system_prompt: str,
    user_prompt: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderReply:
    """
    Call Ollama's /api/chat endpoint with JSON output forced.

    NEVER logs prompts or full responses (privacy).
    """
    base_url = (config.base_url or DEFAULT_OLLAMA_BASE_URL).rstrip("/")
    model = config.model or DEFAULT_OLLAMA_MODEL

    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "stream": False,
        "format": "json",
        "options": {
            "temperature": 0.4,
            "num_predict": config.max_tokens,
        },
    }

    try:
        async with httpx.AsyncClient(timeout=config.timeout_s, transport=transport) as client:
            logger.info(f"llm_call provider=ollama model={model}")
            response = await client.post(f"{base_url}/api/chat", json=payload)

            if response.status_code != 200:
                logger.warning(f"llm_error provider=ollama status={response.status_code}")
                return ProviderReply(
                    error=f"Ollama API error: status {response.status_code}",
                    status_code=response.status_code,
                )

            data = response.json()
            content = data.get("message", {}).get("content", "")
            if not content:
                return ProviderReply(error="Empty response from Ollama", status_code=200)

            logger.info("llm_success provider=ollama")
            return ProviderReply(text=content, status_code=200)

    except httpx.TimeoutException:
        logger.warning(f"llm_timeout provider=ollama timeout={config.timeout_s}s")
        return ProviderReply(error=f"Ollama API timeout after {config.timeout_s}s")
    except httpx.ConnectError:
        logger.warning("llm_connect_error provider=ollama")
        return ProviderReply(error=f"Cannot connect to Ollama at {base_url}")
    except httpx.RequestError as e:
        logger.warning(f"llm_network_error provider=ollama error_type={type(e).__name__}")
        return ProviderReply(error=f"Network error connecting to Ollama: {type(e).__name__}")
    except (json.JSONDecodeError, AttributeError):
        logger.warning("llm_json_error provider=ollama")
        return ProviderReply(error="Invalid JSON response from Ollama")
