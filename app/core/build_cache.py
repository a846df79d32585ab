"""
On-disk cache of the build tool's intermediate state (the project's Library
directory), keyed by template identity.

The cache is an optimization only: restore and save never raise into the build
pipeline. Concurrent builds of the same template race on the same entry and the
last writer wins. There is no eviction.
"""
import asyncio
import logging
import re
import shutil
from pathlib import Path
from typing import Optional

from app.core.config import get_build_settings
from app.core.errors import best_effort
from app.core.metrics import metrics

logger = logging.getLogger(__name__)

# Directory cached per template, relative to the project root
CACHED_DIR_NAME = "Library"

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def cache_key(template_id: str) -> str:
    """Sanitize a template identity into a directory name."""
    return _UNSAFE_KEY_CHARS.sub("_", template_id)


class BuildCache:
    """Per-template cache of the build tool's intermediate-state directory."""

    def __init__(self, base_dir: Optional[Path] = None):
        self._base_dir = Path(base_dir) if base_dir else get_build_settings().cache_dir

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def entry_path(self, key: str) -> Path:
        return self._base_dir / cache_key(key) / CACHED_DIR_NAME

    def _restore_sync(self, key: str, dest: Path) -> bool:
        entry = self.entry_path(key)
        if not entry.is_dir() or dest.exists():
            return False
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(entry, dest, symlinks=True)
        return True

    def _save_sync(self, key: str, src: Path) -> bool:
        if not src.is_dir():
            return False
        entry = self.entry_path(key)
        if entry.exists():
            shutil.rmtree(entry)
        entry.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(src, entry, symlinks=True)
        return True

    async def _restore(self, key: str, dest: Path) -> bool:
        restored = await asyncio.to_thread(self._restore_sync, key, dest)
        if restored:
            metrics.inc("cache_restored_total")
        logger.info(f"build_cache_restore key={cache_key(key)} restored={restored}")
        return restored

    async def _save(self, key: str, src: Path) -> bool:
        saved = await asyncio.to_thread(self._save_sync, key, src)
        if saved:
            metrics.inc("cache_saved_total")
        logger.info(f"build_cache_save key={cache_key(key)} saved={saved}")
        return saved

    async def restore(self, key: str, dest: Path) -> bool:
        """Copy the cached entry to dest if one exists and dest does not."""
        return bool(await best_effort("cache_restore", self._restore, key, Path(dest)))

    async def save(self, key: str, src: Path) -> bool:
        """Replace the cached entry with a copy of src."""
        return bool(await best_effort("cache_save", self._save, key, Path(src)))
