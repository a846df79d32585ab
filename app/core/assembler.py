"""
Artifact Assembler - publishes build output to the artifact store.

Directory targets are published twice: file by file under {job_id}/{target}/
for in-place serving, and as one {job_id}.zip for download. Single-binary
targets are published as {job_id}.{extension}.
"""
import asyncio
import logging
import os
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from app.core.artifact_store import ArtifactStore
from app.core.errors import OutputMissingError

logger = logging.getLogger(__name__)

ZIP_COMPRESS_LEVEL = 9


@dataclass
class PublishedTree:
    """Keys produced by publishing a directory target."""
    file_count: int
    prefix: str
    zip_ref: str
    index_ref: Optional[str] = None


def verify_output(path: Path, label: str = "build output") -> Path:
    """Raise OutputMissingError unless path exists on disk."""
    path = Path(path)
    if not path.exists():
        raise OutputMissingError(
            f"Build tool exited successfully but {label} is missing: {path.name}"
        )
    return path


def _list_files(root: Path) -> list[Path]:
    """Regular files under root, relative, in a stable order."""
    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if path.is_file() and not path.is_symlink():
                files.append(path.relative_to(root))
    return files


def _write_zip(root: Path, files: list[Path], zip_path: Path) -> None:
    with zipfile.ZipFile(
        zip_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=ZIP_COMPRESS_LEVEL
    ) as zf:
        for relative in files:
            zf.write(root / relative, arcname=relative.as_posix())


class ArtifactAssembler:
    """Turns build output on disk into published artifact keys."""

    def __init__(self, store: ArtifactStore):
        self._store = store

    async def publish_directory(
        self,
        job_id: str,
        target: str,
        out_dir: Path,
        index_name: str = "index.html",
        spool_dir: Optional[Path] = None,
    ) -> PublishedTree:
        """
        Publish every file of out_dir, then a zip of the whole tree.

        The zip is written to a temp file in spool_dir (system temp by default)
        and streamed into the store, never held in memory.
        """
        out_dir = Path(out_dir)
        files = await asyncio.to_thread(_list_files, out_dir)
        prefix = f"{job_id}/{target}"

        for relative in files:
            await self._store.put_file(f"{prefix}/{relative.as_posix()}", out_dir / relative)

        zip_ref = f"{job_id}.zip"
        fd, tmp_name = tempfile.mkstemp(suffix=".zip", dir=str(spool_dir) if spool_dir else None)
        os.close(fd)
        zip_path = Path(tmp_name)
        try:
            await asyncio.to_thread(_write_zip, out_dir, files, zip_path)
            info = await self._store.put_file(zip_ref, zip_path)
        finally:
            zip_path.unlink(missing_ok=True)

        index_ref = None
        if (out_dir / index_name).is_file():
            index_ref = f"{prefix}/{index_name}"

        logger.info(
            f"tree_published job_id={job_id} target={target} files={len(files)} "
            f"zip_size={info.size_bytes}"
        )
        return PublishedTree(
            file_count=len(files),
            prefix=prefix,
            zip_ref=zip_ref,
            index_ref=index_ref,
        )

    async def publish_binary(self, job_id: str, path: Path, extension: str) -> str:
        """Publish a single output file as {job_id}.{extension}."""
        key = f"{job_id}.{extension.lstrip('.')}"
        info = await self._store.put_file(key, Path(path))
        logger.info(f"binary_published job_id={job_id} size={info.size_bytes}")
        return key
