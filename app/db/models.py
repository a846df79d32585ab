"""
SQLAlchemy models for templates and build jobs.
Timestamps are ISO-8601 strings; bags and lists are JSON text.
"""
from sqlalchemy import Column, Text, Integer, Index

from app.db.database import Base


class Template(Base):
    """Uploaded template archive (the bytes live in the artifact store)."""
    __tablename__ = "templates"

    id = Column(Text, primary_key=True, index=True)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    storage_key = Column(Text, nullable=False)
    size_bytes = Column(Integer, nullable=False)
    sha256 = Column(Text, nullable=False)
    created_at = Column(Text, nullable=False, index=True)


class BuildJob(Base):
    """One request to build a template with a runtime configuration."""
    __tablename__ = "build_jobs"

    id = Column(Text, primary_key=True, index=True)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    template_id = Column(Text, nullable=False, index=True)
    build_target = Column(Text, nullable=False, default="webgl")
    status = Column(Text, nullable=False, index=True)

    # Validated runtime config (JSON) and draft metadata (JSON)
    config_json = Column(Text, nullable=False, default="{}")
    draft_json = Column(Text, nullable=True)

    # Result references (artifact store keys)
    result_ref = Column(Text, nullable=True)
    web_zip_ref = Column(Text, nullable=True)
    web_index_ref = Column(Text, nullable=True)
    native_package_ref = Column(Text, nullable=True)

    # Media references
    cover_ref = Column(Text, nullable=True)
    screenshot_refs_json = Column(Text, nullable=True)
    preview_video_ref = Column(Text, nullable=True)

    error = Column(Text, nullable=True)
    last_log_line = Column(Text, nullable=True)
    timings_json = Column(Text, nullable=True)

    created_at = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=False)

    __table_args__ = (
        Index("ix_build_jobs_status_created", "status", "created_at"),
    )
