"""
Pydantic schemas for the build API.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class BuildStatus(str, Enum):
    """Build job lifecycle status."""
    QUEUED = "queued"
    RUNNING = "running"
    READY = "ready"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (BuildStatus.READY, BuildStatus.FAILED)


class BuildTarget(str, Enum):
    """Output platform of a build."""
    WEBGL = "webgl"
    ANDROID_APK = "android_apk"


TARGET_ALIASES = {
    "web": BuildTarget.WEBGL,
    "android": BuildTarget.ANDROID_APK,
    "apk": BuildTarget.ANDROID_APK,
}


def normalize_target(value: Any) -> Any:
    """Map accepted aliases ('android', 'web') to BuildTarget values."""
    if isinstance(value, str):
        text = value.strip().lower()
        return TARGET_ALIASES.get(text, text)
    return value


# =============================================================================
# Request Schemas
# =============================================================================

class TemplateBuildRequest(BaseModel):
    """Request body for POST /builds."""
    template_id: str = Field(..., min_length=1, max_length=64, description="Uploaded template ID")
    name: Optional[str] = Field(default=None, max_length=60, description="Display name")
    description: Optional[str] = Field(default=None, max_length=400)
    build_target: BuildTarget = Field(default=BuildTarget.WEBGL, description="webgl or android_apk")
    config: dict[str, Any] = Field(
        default_factory=dict,
        description="Runtime config overrides (camelCase or snake_case); clamped server-side",
    )

    @field_validator("build_target", mode="before")
    @classmethod
    def validate_build_target(cls, v: Any) -> Any:
        return normalize_target(v)


class DraftBuildRequest(BaseModel):
    """Request body for POST /builds/draft."""
    prompt: str = Field(..., min_length=1, max_length=2000, description="Natural-language game description")
    notes: Optional[str] = Field(default=None, max_length=500)
    template_id: Optional[str] = Field(
        default=None, max_length=64, description="Template to build; latest upload if omitted"
    )
    build_target: BuildTarget = Field(default=BuildTarget.WEBGL)
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("prompt must not be blank")
        return v

    @field_validator("build_target", mode="before")
    @classmethod
    def validate_build_target(cls, v: Any) -> Any:
        return normalize_target(v)


class RebuildRequest(BaseModel):
    """Request body for POST /builds/{job_id}/rebuild."""
    build_target: Optional[BuildTarget] = Field(
        default=None, description="Switch target; keeps the current one if omitted"
    )

    @field_validator("build_target", mode="before")
    @classmethod
    def validate_build_target(cls, v: Any) -> Any:
        return normalize_target(v)


class ConfigUpdateRequest(BaseModel):
    """Request body for PUT /builds/{job_id}/config."""
    config: dict[str, Any] = Field(default_factory=dict)


class BuildUpdateRequest(BaseModel):
    """Request body for PATCH /builds/{job_id}; omitted fields are left unchanged."""
    name: Optional[str] = Field(default=None, max_length=60)
    description: Optional[str] = Field(default=None, max_length=400, description="Empty string clears it")
    build_target: Optional[BuildTarget] = Field(
        default=None, description="Target of the next rebuild; only for ready or failed jobs"
    )

    @field_validator("build_target", mode="before")
    @classmethod
    def validate_build_target(cls, v: Any) -> Any:
        return normalize_target(v)


# =============================================================================
# Response Schemas
# =============================================================================

class TemplateResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    size_bytes: int
    sha256: str
    created_at: datetime


class TemplateListResponse(BaseModel):
    items: list[TemplateResponse]
    total: int


class BuildSubmitResponse(BaseModel):
    """Response for build, draft build and rebuild commands."""
    job_id: str
    status: BuildStatus
    build_target: BuildTarget
    created_at: datetime


class BuildStatusResponse(BaseModel):
    """Polling view of a build job."""
    job_id: str
    name: str
    description: Optional[str] = None
    template_id: str
    build_target: BuildTarget
    status: BuildStatus
    error: Optional[str] = None
    last_log_line: Optional[str] = None
    timings: Optional[dict[str, Any]] = None
    result_ref: Optional[str] = None
    web_zip_ref: Optional[str] = None
    web_index_ref: Optional[str] = None
    native_package_ref: Optional[str] = None
    cover_ref: Optional[str] = None
    screenshot_refs: list[str] = Field(default_factory=list)
    preview_video_ref: Optional[str] = None
    urls: dict[str, Any] = Field(default_factory=dict)
    config: dict[str, Any] = Field(default_factory=dict)
    draft: Optional[dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


class BuildListItem(BaseModel):
    job_id: str
    name: str
    template_id: str
    build_target: BuildTarget
    status: BuildStatus
    created_at: datetime


class BuildListResponse(BaseModel):
    items: list[BuildListItem]
    total: int
    limit: int
    offset: int


class CancelResponse(BaseModel):
    job_id: str
    status: BuildStatus
    cancelled: bool
    message: str


class DownloadUrlResponse(BaseModel):
    job_id: str
    build_target: BuildTarget
    key: str
    url: str
