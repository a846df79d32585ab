"""
Template API routes: upload and list project archives.

Uploads are the raw zip bytes as the request body (application/zip or
application/octet-stream); name and description come from the query string.
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from app.core.errors import InvalidInputError
from app.core.templates import MAX_TEMPLATE_BYTES, Template, template_store
from app.schemas.build import TemplateListResponse, TemplateResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/templates", tags=["templates"])


def _to_response(template: Template) -> TemplateResponse:
    return TemplateResponse(
        id=template.id,
        name=template.name,
        description=template.description,
        size_bytes=template.size_bytes,
        sha256=template.sha256,
        created_at=template.created_at,
    )


@router.post("", status_code=201, response_model=TemplateResponse)
async def upload_template(
    request: Request,
    name: str = Query(..., min_length=1, max_length=100),
    description: Optional[str] = Query(default=None, max_length=400),
) -> TemplateResponse:
    """
    Upload a template archive.

    Rejects bodies that are not a non-empty zip with 400.
    """
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > MAX_TEMPLATE_BYTES:
        raise HTTPException(status_code=413, detail="Template archive too large")

    data = await request.body()
    if len(data) > MAX_TEMPLATE_BYTES:
        raise HTTPException(status_code=413, detail="Template archive too large")

    try:
        template = await template_store.create(name=name.strip(), data=data, description=description)
    except InvalidInputError as e:
        logger.info(f"template_rejected size={len(data)} error_type={type(e).__name__}")
        raise HTTPException(status_code=400, detail=str(e))
    return _to_response(template)


@router.get("", response_model=TemplateListResponse)
async def list_templates(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> TemplateListResponse:
    """List uploaded templates, most recent first."""
    templates, total = template_store.list_templates(limit=limit, offset=offset)
    return TemplateListResponse(items=[_to_response(t) for t in templates], total=total)


@router.get("/{template_id}", response_model=TemplateResponse)
async def get_template(template_id: str) -> TemplateResponse:
    template = template_store.get(template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    return _to_response(template)
