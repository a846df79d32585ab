"""
Pydantic schemas for draft generator output.
Model output is untrusted: everything is trimmed and capped here, and the
config bag is validated again by the runtime config resolver.
"""
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

MAX_NAME_LENGTH = 60
MAX_DESCRIPTION_LENGTH = 400
MAX_TAGS = 8
MAX_TAG_LENGTH = 24


class MediaPrompts(BaseModel):
    cover: Optional[str] = Field(default=None, max_length=400)
    screenshots: list[str] = Field(default_factory=list, max_length=5)
    video: Optional[str] = Field(default=None, max_length=400)


class ProjectDraft(BaseModel):
    """Best-effort structured draft of a project."""
    name: str = Field(default="AI Game", max_length=MAX_NAME_LENGTH)
    description: str = Field(default="", max_length=MAX_DESCRIPTION_LENGTH)
    type: Optional[str] = Field(default=None, max_length=30)
    tags: list[str] = Field(default_factory=list)
    media_prompts: Optional[MediaPrompts] = None
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for tag in v:
            text = tag.strip().lower()[:MAX_TAG_LENGTH]
            if text and text not in seen:
                seen.append(text)
        return seen[:MAX_TAGS]

    def metadata(self) -> dict[str, Any]:
        """Fields stored with the job (everything except the config bag)."""
        return self.model_dump(exclude={"config"}, exclude_none=True)


def _clip(value: Any, limit: int) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    return text[:limit] if text else None


def draft_from_payload(payload: dict[str, Any], description: str) -> ProjectDraft:
    """Coerce a parsed model reply into a ProjectDraft, falling back per field."""
    tags_raw = payload.get("tags")
    tags = [tag for tag in tags_raw if isinstance(tag, str)] if isinstance(tags_raw, list) else []

    prompts_raw = payload.get("mediaPrompts") or payload.get("media_prompts")
    media_prompts = None
    if isinstance(prompts_raw, dict):
        shots = prompts_raw.get("screenshots")
        media_prompts = MediaPrompts(
            cover=_clip(prompts_raw.get("cover"), 400),
            screenshots=[s[:400] for s in shots if isinstance(s, str)][:5] if isinstance(shots, list) else [],
            video=_clip(prompts_raw.get("video"), 400),
        )

    config = payload.get("config")
    return ProjectDraft(
        name=_clip(payload.get("name"), MAX_NAME_LENGTH) or "AI Game",
        description=_clip(payload.get("description"), MAX_DESCRIPTION_LENGTH)
        or description.strip()[:MAX_DESCRIPTION_LENGTH],
        type=_clip(payload.get("type"), 30),
        tags=tags,
        media_prompts=media_prompts,
        config=config if isinstance(config, dict) else {},
    )


@dataclass
class ProviderReply:
    """Raw provider outcome: text on success, error (and HTTP status if any) otherwise."""
    text: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
