"""
Draft generator configuration from environment variables.
All settings are optional with safe defaults.
"""
import os
from dataclasses import dataclass
from typing import Literal, Optional


@dataclass(frozen=True)
class DraftConfig:
    """Text model configuration (immutable)."""
    provider: Optional[Literal["openai", "ollama"]] = None
    api_key: Optional[str] = None  # Never logged
    model: Optional[str] = None
    base_url: Optional[str] = None  # OpenAI-compatible or Ollama base URL
    max_tokens: int = 800
    timeout_s: int = 30

    @property
    def enabled(self) -> bool:
        """Check if draft generation is properly configured."""
        if not self.provider:
            return False
        if self.provider == "ollama":
            return True
        return bool(self.api_key)

    @property
    def disabled_reason(self) -> Optional[str]:
        """Get reason why draft generation is not enabled."""
        if not self.provider:
            return "DRAFT_PROVIDER not set"
        if self.provider != "ollama" and not self.api_key:
            return "DRAFT_API_KEY not set"
        return None


def get_draft_config() -> DraftConfig:
    """Load draft generator configuration from environment."""
    provider = os.getenv("DRAFT_PROVIDER", "").lower() or None
    if provider and provider not in ("openai", "ollama"):
        provider = None

    try:
        max_tokens = int(os.getenv("DRAFT_MAX_TOKENS", "800"))
    except ValueError:
        max_tokens = 800
    try:
        timeout_s = int(os.getenv("DRAFT_TIMEOUT_S", "30"))
    except ValueError:
        timeout_s = 30

    return DraftConfig(
        provider=provider,  # type: ignore
        api_key=os.getenv("DRAFT_API_KEY"),
        model=os.getenv("DRAFT_MODEL"),
        base_url=os.getenv("DRAFT_BASE_URL"),
        max_tokens=max_tokens,
        timeout_s=timeout_s,
    )
