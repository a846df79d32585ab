"""
Artifact file serving: GET /files/{key}.

Content types follow the published web build layout, including precompressed
.gz/.br assets (served with Content-Encoding and the inner file's type).
"""
import logging
from pathlib import PurePosixPath

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from app.core.artifact_store import ArtifactError, ArtifactNotFoundError, artifact_store

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES = {
    ".html": "text/html; charset=utf-8",
    ".js": "application/javascript",
    ".wasm": "application/wasm",
    ".data": "application/octet-stream",
    ".json": "application/json",
    ".css": "text/css",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".txt": "text/plain; charset=utf-8",
    ".apk": "application/vnd.android.package-archive",
    ".mp4": "video/mp4",
    ".zip": "application/zip",
}

CONTENT_ENCODINGS = {
    ".gz": "gzip",
    ".br": "br",
}


def resolve_file_headers(key: str) -> dict[str, str]:
    """Content-Type (and Content-Encoding, for precompressed assets) for a key."""
    path = PurePosixPath(key)
    suffix = path.suffix.lower()

    if suffix in CONTENT_ENCODINGS:
        inner = PurePosixPath(path.stem).suffix.lower()
        return {
            "Content-Type": CONTENT_TYPES.get(inner, DEFAULT_CONTENT_TYPE),
            "Content-Encoding": CONTENT_ENCODINGS[suffix],
        }
    if suffix == ".unityweb":
        return {"Content-Type": DEFAULT_CONTENT_TYPE, "Content-Encoding": "gzip"}
    return {"Content-Type": CONTENT_TYPES.get(suffix, DEFAULT_CONTENT_TYPE)}


@router.get("/files/{key:path}")
async def get_file(key: str) -> FileResponse:
    """Stream a stored artifact by key."""
    try:
        path = await artifact_store.locate(key)
    except ArtifactNotFoundError:
        raise HTTPException(status_code=404, detail="File not found")
    except ArtifactError as e:
        raise HTTPException(status_code=400, detail=str(e))

    headers = resolve_file_headers(key)
    media_type = headers.pop("Content-Type")
    return FileResponse(path, media_type=media_type, headers=headers)
