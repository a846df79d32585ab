"""
Artifact storage: a key -> bytes store on the local filesystem.

Holds template archives, published build trees, zip downloads, native packages
and media. Keys are opaque '/'-separated strings constructed by the pipeline.

Security:
- Path traversal prevention on every key
- SHA256 recorded on write
- No shell execution
"""
import asyncio
import hashlib
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional
from urllib.parse import quote

from app.core.config import get_build_settings

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

MAX_KEY_LENGTH = 512
COPY_CHUNK_SIZE = 1024 * 1024


@dataclass
class ArtifactInfo:
    """Information about a stored object."""
    key: str
    size_bytes: int
    sha256: str


class ArtifactError(Exception):
    """Error during artifact operations."""
    pass


class ArtifactNotFoundError(ArtifactError):
    """No object stored under the requested key."""
    pass


def validate_key(key: str) -> str:
    """Validate an artifact key; returns it unchanged."""
    if not key or len(key) > MAX_KEY_LENGTH:
        raise ArtifactError("Invalid artifact key length")
    if "\\" in key or "\x00" in key:
        raise ArtifactError(f"Invalid character in artifact key: {key!r}")
    if key.startswith("/"):
        raise ArtifactError(f"Artifact key must be relative: {key}")
    parts = key.split("/")
    if any(part in ("", ".", "..") for part in parts):
        raise ArtifactError(f"Invalid path segment in artifact key: {key}")
    return key


def public_url(key: str, base_url: str = "") -> str:
    """URL under which GET /files serves a key; each segment is percent-encoded."""
    path = "/".join(quote(part, safe="") for part in key.split("/"))
    return f"{base_url.rstrip('/')}/files/{path}"


class ArtifactStore:
    """Filesystem-backed key -> bytes store."""

    def __init__(self, root_dir: Optional[Path] = None):
        self._root_dir = Path(root_dir) if root_dir else get_build_settings().artifacts_dir
        self._root_dir.mkdir(parents=True, exist_ok=True)

    @property
    def root_dir(self) -> Path:
        return self._root_dir

    def _path_for(self, key: str) -> Path:
        path = (self._root_dir / validate_key(key)).resolve()
        root = self._root_dir.resolve()
        if root not in path.parents:
            raise ArtifactError(f"Artifact key escapes store root: {key}")
        return path

    # -- sync implementations (run in worker threads) -------------------------

    def _write_bytes(self, key: str, data: bytes) -> ArtifactInfo:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)
        return ArtifactInfo(key=key, size_bytes=len(data), sha256=hashlib.sha256(data).hexdigest())

    def _write_file(self, key: str, source: Path) -> ArtifactInfo:
        with open(source, "rb") as src:
            return self._write_stream(key, src)

    def _write_stream(self, key: str, src: BinaryIO) -> ArtifactInfo:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        digest = hashlib.sha256()
        size = 0
        with open(tmp_path, "wb") as dst:
            while True:
                chunk = src.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                digest.update(chunk)
                size += len(chunk)
                dst.write(chunk)
        os.replace(tmp_path, path)
        return ArtifactInfo(key=key, size_bytes=size, sha256=digest.hexdigest())

    def _existing_path(self, key: str) -> Path:
        path = self._path_for(key)
        if not path.is_file():
            raise ArtifactNotFoundError(f"Artifact not found: {key}")
        return path

    def _read_bytes(self, key: str) -> bytes:
        return self._existing_path(key).read_bytes()

    def _delete(self, key: str) -> bool:
        path = self._path_for(key)
        if path.is_file():
            path.unlink()
            return True
        if path.is_dir():
            shutil.rmtree(path)
            return True
        return False

    # -- public async API -----------------------------------------------------

    async def put(self, key: str, data: bytes) -> ArtifactInfo:
        """Store bytes under key, replacing any previous object."""
        info = await asyncio.to_thread(self._write_bytes, key, data)
        logger.info(f"artifact_put key={key} size={info.size_bytes}")
        return info

    async def put_file(self, key: str, source: Path) -> ArtifactInfo:
        """Stream a local file into the store under key."""
        info = await asyncio.to_thread(self._write_file, key, Path(source))
        logger.info(f"artifact_put key={key} size={info.size_bytes}")
        return info

    async def put_stream(self, key: str, stream: BinaryIO) -> ArtifactInfo:
        """Copy an open binary file object into the store under key."""
        info = await asyncio.to_thread(self._write_stream, key, stream)
        logger.info(f"artifact_put key={key} size={info.size_bytes}")
        return info

    async def get(self, key: str) -> bytes:
        """Read the object stored under key. Raises ArtifactNotFoundError."""
        return await asyncio.to_thread(self._read_bytes, key)

    async def locate(self, key: str) -> Path:
        """
        Local path of the object stored under key, for streaming it out.

        Raises ArtifactNotFoundError; the path is only valid until the key is
        replaced or deleted.
        """
        return await asyncio.to_thread(self._existing_path, key)

    async def exists(self, key: str) -> bool:
        path = self._path_for(key)
        return await asyncio.to_thread(path.is_file)

    async def delete(self, key: str) -> bool:
        """Delete an object (or a whole key prefix). Returns True if deleted."""
        deleted = await asyncio.to_thread(self._delete, key)
        if deleted:
            logger.info(f"artifact_deleted key={key}")
        return deleted


# Global artifact store instance
artifact_store = ArtifactStore()
