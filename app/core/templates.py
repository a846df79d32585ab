"""
Template registry: uploaded project archives and their metadata.
Archive bytes live in the artifact store under templates/{id}.zip.
"""
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from app.core.artifact_store import ArtifactStore, artifact_store
from app.core.errors import TemplateNotFoundError
from app.core.sandbox import validate_archive
from app.db.database import SessionLocal
from app.db.models import Template as TemplateModel

logger = logging.getLogger(__name__)

MAX_TEMPLATE_BYTES = 2 * 1024 * 1024 * 1024  # 2GB


@dataclass
class Template:
    """An uploaded template archive."""
    id: str
    name: str
    storage_key: str
    size_bytes: int
    sha256: str
    created_at: datetime
    description: Optional[str] = None


def _model_to_template(model: TemplateModel) -> Template:
    return Template(
        id=model.id,
        name=model.name,
        description=model.description,
        storage_key=model.storage_key,
        size_bytes=model.size_bytes,
        sha256=model.sha256,
        created_at=datetime.fromisoformat(model.created_at),
    )


def template_storage_key(template_id: str) -> str:
    return f"templates/{template_id}.zip"


class TemplateStore:
    """Validated template uploads backed by the artifact store."""

    def __init__(self, store: ArtifactStore):
        self._store = store

    async def create(self, name: str, data: bytes, description: Optional[str] = None) -> Template:
        """
        Validate and store a template archive.

        Raises:
            InvalidArchiveError: if data is not a non-empty zip archive
        """
        validate_archive(data)
        template_id = str(uuid.uuid4())
        key = template_storage_key(template_id)
        await self._store.put(key, data)

        db = SessionLocal()
        try:
            model = TemplateModel(
                id=template_id,
                name=name,
                description=description,
                storage_key=key,
                size_bytes=len(data),
                sha256=hashlib.sha256(data).hexdigest(),
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            db.add(model)
            db.commit()
            db.refresh(model)
            logger.info(f"template_created template_id={template_id} size={len(data)}")
            return _model_to_template(model)
        finally:
            db.close()

    def get(self, template_id: str) -> Optional[Template]:
        db = SessionLocal()
        try:
            model = db.query(TemplateModel).filter(TemplateModel.id == template_id).first()
            return _model_to_template(model) if model else None
        finally:
            db.close()

    def latest(self) -> Optional[Template]:
        """Most recently uploaded template."""
        db = SessionLocal()
        try:
            model = db.query(TemplateModel).order_by(TemplateModel.created_at.desc()).first()
            return _model_to_template(model) if model else None
        finally:
            db.close()

    def list_templates(self, limit: int = 50, offset: int = 0) -> tuple[list[Template], int]:
        db = SessionLocal()
        try:
            query = db.query(TemplateModel)
            total = query.count()
            items = query.order_by(TemplateModel.created_at.desc()).offset(offset).limit(limit).all()
            return [_model_to_template(item) for item in items], total
        finally:
            db.close()

    async def load_archive(self, template_id: str) -> bytes:
        """
        Read a template's archive bytes.

        Raises:
            TemplateNotFoundError: unknown template id
            ArtifactNotFoundError: record exists but the archive is gone
        """
        template = self.get(template_id)
        if not template:
            raise TemplateNotFoundError(f"Template not found: {template_id}")
        return await self._store.get(template.storage_key)


# Global template store instance
template_store = TemplateStore(artifact_store)
