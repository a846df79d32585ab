"""
Sandbox Preparer - stages a template archive into a job's ephemeral directory.

Steps (each called by the orchestrator so it can time them):
1. validate_archive: magic bytes and entry count, before any job work
2. extract_archive: template.zip written to the sandbox and unpacked safely
3. find_project_root: BFS for the directory holding the project markers
4. inject_patches: build hooks, runtime config, config loader
5. pin_dependency: manifest pin, invalidating lock file and package cache on change

Security:
- Archive member paths validated (no absolute paths, no traversal)
- File count and extracted size limits
- Patch contents come only from bundled templates and validated config
"""
import asyncio
import io
import json
import logging
import os
import re
import shutil
import zipfile
from collections import deque
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from string import Template
from typing import Optional

from app.core.errors import InvalidArchiveError
from app.core.runtime_config import RuntimeConfig

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

ZIP_MAGIC = b"PK"
MAX_ARCHIVE_FILES = 100_000
MAX_EXTRACTED_SIZE = 8 * 1024 * 1024 * 1024  # 8GB

ARCHIVE_FILENAME = "template.zip"
EXTRACT_DIRNAME = "project"

# A project root holds all three of these directories
PROJECT_MARKERS = ("Assets", "Packages", "ProjectSettings")
ROOT_SEARCH_DEPTH = 3
IGNORED_DIRS = {"__MACOSX"}

# Patch locations, relative to the project root
EDITOR_SCRIPTS_DIR = Path("Assets/Editor/TemplateBuilder")
RUNTIME_SCRIPTS_DIR = Path("Assets/TemplateBuilder/Runtime")
GENERATED_CONFIG_PATH = Path("Assets/TemplateBuilder/Generated/RuntimeConfig.json")
RESOURCE_CONFIG_PATH = Path("Assets/Resources/TemplateBuilder/RuntimeConfig.json")
RESOURCE_CONFIG_NAME = "TemplateBuilder/RuntimeConfig"

EDITOR_SCRIPT_TEMPLATES = {
    "BuildWebGL.cs": "BuildWebGL.cs.tmpl",
    "BuildAndroid.cs": "BuildAndroid.cs.tmpl",
    "CaptureMedia.cs": "CaptureMedia.cs.tmpl",
}
RUNTIME_SCRIPT_TEMPLATES = {
    "RuntimeConfigLoader.cs": "RuntimeConfigLoader.cs.tmpl",
}

# Dependency pin
PINNED_PACKAGE = "com.unity.burst"
MANIFEST_PATH = Path("Packages/manifest.json")
LOCK_FILE_PATH = Path("Packages/packages-lock.json")
PACKAGE_CACHE_PATH = Path("Library/PackageCache")
PROJECT_VERSION_PATH = Path("ProjectSettings/ProjectVersion.txt")
EDITOR_VERSION_PATTERN = re.compile(r"m_EditorVersion\s*:\s*(\d+)\.")
EDITOR_MAJOR_RANGE = (2018, 10000)  # exclusive bounds of a plausible major


@dataclass
class CaptureSettings:
    """Values substituted into the media capture hook."""
    width: int = 1280
    height: int = 720
    fps: int = 15
    seconds: int = 6
    screenshot_count: int = 3


def _is_safe_path(path: str) -> bool:
    """Check if an archive member path is safe (no traversal, not absolute)."""
    if path.startswith("/") or path.startswith("\\"):
        return False
    normalized = os.path.normpath(path)
    if os.path.isabs(normalized):
        return False
    if ".." in normalized.replace("\\", "/").split("/"):
        return False
    return True


# =============================================================================
# Archive Validation and Extraction
# =============================================================================

def validate_archive(data: bytes) -> int:
    """
    Check that data looks like a usable zip archive.

    Returns:
        Number of entries in the archive

    Raises:
        InvalidArchiveError: bad magic bytes, unreadable archive, or zero entries
    """
    if len(data) < 4 or data[:2] != ZIP_MAGIC:
        raise InvalidArchiveError("Invalid zip file")
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            entries = len(zf.infolist())
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError):
        raise InvalidArchiveError("Invalid or unsupported zip format")
    if entries == 0:
        raise InvalidArchiveError("Invalid or unsupported zip format")
    return entries


def _extract_sync(data: bytes, sandbox: Path) -> Path:
    archive_path = sandbox / ARCHIVE_FILENAME
    archive_path.write_bytes(data)

    dest = sandbox / EXTRACT_DIRNAME
    dest.mkdir(parents=True, exist_ok=True)

    total_size = 0
    file_count = 0
    try:
        with zipfile.ZipFile(archive_path) as zf:
            members = zf.infolist()
            if len(members) > MAX_ARCHIVE_FILES:
                raise InvalidArchiveError(
                    f"Too many files: {len(members)} > {MAX_ARCHIVE_FILES}"
                )
            for member in members:
                if not _is_safe_path(member.filename):
                    raise InvalidArchiveError(f"Unsafe path in archive: {member.filename}")
                total_size += member.file_size
                if total_size > MAX_EXTRACTED_SIZE:
                    raise InvalidArchiveError(
                        f"Extracted size exceeds limit: {total_size} > {MAX_EXTRACTED_SIZE}"
                    )
                target = dest / member.filename
                if member.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(member) as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                file_count += 1
    except zipfile.BadZipFile:
        raise InvalidArchiveError("Invalid or unsupported zip format")

    logger.info(f"template_extracted files={file_count} size={total_size}")
    return dest


async def extract_archive(data: bytes, sandbox: Path) -> Path:
    """Write the archive into the sandbox and extract it. Returns the extraction dir."""
    return await asyncio.to_thread(_extract_sync, data, Path(sandbox))


# =============================================================================
# Project Root Discovery
# =============================================================================

def _has_markers(path: Path) -> bool:
    return all((path / marker).is_dir() for marker in PROJECT_MARKERS)


def find_project_root(base: Path, max_depth: int = ROOT_SEARCH_DEPTH) -> Path:
    """
    Breadth-first search for the shallowest directory containing all project markers.

    Siblings are visited in sorted name order, so ties at the same depth resolve
    to the first name. Archive metadata folders are skipped. Falls back to base.
    """
    base = Path(base)
    queue: deque[tuple[Path, int]] = deque([(base, 0)])
    visited: set[Path] = set()

    while queue:
        current, depth = queue.popleft()
        try:
            key = current.resolve()
        except OSError:
            continue
        if key in visited:
            continue
        visited.add(key)

        if _has_markers(current):
            return current
        if depth >= max_depth:
            continue

        try:
            children = sorted(
                (child for child in current.iterdir() if child.is_dir()),
                key=lambda child: child.name,
            )
        except OSError:
            continue
        for child in children:
            if child.name in IGNORED_DIRS:
                continue
            queue.append((child, depth + 1))

    logger.warning("project_root_not_found fallback=extraction_dir")
    return base


# =============================================================================
# Patch Injection
# =============================================================================

def load_patch_template(name: str) -> Template:
    """Load a bundled patch template by file name."""
    text = resources.files("app.resources").joinpath("unity", name).read_text(encoding="utf-8")
    return Template(text)


def _write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def inject_patches(
    root: Path,
    config: RuntimeConfig,
    capture: Optional[CaptureSettings] = None,
) -> list[Path]:
    """
    Write build hooks, the config loader and the runtime config into the project.

    Returns:
        Paths written, relative to root
    """
    capture = capture or CaptureSettings()
    values = {
        "capture_width": capture.width,
        "capture_height": capture.height,
        "capture_fps": capture.fps,
        "capture_seconds": capture.seconds,
        "screenshot_count": capture.screenshot_count,
        "resource_path": RESOURCE_CONFIG_NAME,
    }

    written: list[Path] = []
    for filename, template_name in EDITOR_SCRIPT_TEMPLATES.items():
        relative = EDITOR_SCRIPTS_DIR / filename
        _write_text(root / relative, load_patch_template(template_name).substitute(values))
        written.append(relative)
    for filename, template_name in RUNTIME_SCRIPT_TEMPLATES.items():
        relative = RUNTIME_SCRIPTS_DIR / filename
        _write_text(root / relative, load_patch_template(template_name).substitute(values))
        written.append(relative)

    config_json = json.dumps(config.to_patch_dict(), indent=2)
    for relative in (GENERATED_CONFIG_PATH, RESOURCE_CONFIG_PATH):
        _write_text(root / relative, config_json)
        written.append(relative)

    logger.info(f"patches_injected files={len(written)}")
    return written


# =============================================================================
# Dependency Pin
# =============================================================================

def read_editor_major(root: Path) -> Optional[int]:
    """Major editor version from ProjectVersion.txt, if readable."""
    path = root / PROJECT_VERSION_PATH
    if not path.is_file():
        return None
    match = EDITOR_VERSION_PATTERN.search(path.read_text(encoding="utf-8", errors="replace"))
    if not match:
        return None
    major = int(match.group(1))
    low, high = EDITOR_MAJOR_RANGE
    if not low < major < high:
        logger.warning(f"editor_version_ignored major={major}")
        return None
    return major


def burst_version_for(major: Optional[int]) -> str:
    """Pinned package version compatible with an editor major version."""
    if major is None:
        return "1.8.12"
    if major >= 6000:
        return "1.8.16"
    if major < 2022:
        return "1.6.6"
    if major == 2022:
        return "1.8.7"
    return "1.8.12"


def pin_dependency(root: Path, package: str, version: str) -> bool:
    """
    Ensure the manifest pins package at version.

    When the manifest changes, the lock file and the resolved package cache are
    removed so the next tool run resolves dependencies again. A manifest that
    is not a JSON object is left untouched for the tool to report.

    Returns:
        True if the manifest was changed
    """
    manifest_path = root / MANIFEST_PATH
    if not manifest_path.is_file():
        return False

    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8", errors="replace"))
    except json.JSONDecodeError:
        logger.warning("dependency_pin_skipped reason=invalid_json")
        return False
    if not isinstance(manifest, dict):
        logger.warning("dependency_pin_skipped reason=not_an_object")
        return False

    dependencies = manifest.get("dependencies")
    if not isinstance(dependencies, dict):
        dependencies = {}
        manifest["dependencies"] = dependencies

    if dependencies.get(package) == version:
        return False

    dependencies[package] = version
    manifest_path.write_text(json.dumps(manifest, indent=2) + "\n", encoding="utf-8")

    lock_path = root / LOCK_FILE_PATH
    if lock_path.exists():
        lock_path.unlink()
    package_cache = root / PACKAGE_CACHE_PATH
    if package_cache.exists():
        shutil.rmtree(package_cache, ignore_errors=True)

    logger.info(f"dependency_pinned package={package} version={version}")
    return True


def pin_build_dependencies(root: Path) -> bool:
    """Apply the editor-version-specific pin of PINNED_PACKAGE."""
    return pin_dependency(root, PINNED_PACKAGE, burst_version_for(read_editor_major(root)))
