"""Draft generation: structured project drafts from a text model."""
from app.llm.draft_generator import DraftGenerator, get_draft_generator
from app.llm.schemas import ProjectDraft

__all__ = ["DraftGenerator", "get_draft_generator", "ProjectDraft"]
