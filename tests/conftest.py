"""
Pytest configuration and fixtures.
"""
import io
import os
import stat
import sys
import tempfile
import zipfile
from pathlib import Path
from typing import Optional

# Isolated data directory before importing app
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="builder-tests-")
os.environ["BUILDER_DATA_DIR"] = _TEST_DATA_DIR
os.environ["BUILDER_DATABASE_URL"] = f"sqlite:///{_TEST_DATA_DIR}/builder-test.db"
os.environ.pop("UNITY_EDITOR_PATH", None)
os.environ.pop("DRAFT_PROVIDER", None)
os.environ.pop("PUBLIC_BASE_URL", None)

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import app

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture
def client():
    """Create a test client (event loop kept alive for background builds)."""
    with TestClient(app) as test_client:
        yield test_client


def make_project_zip(
    prefix: str = "",
    mode: str = "",
    editor_version: str = "2022.3.10f1",
    manifest: str = '{"dependencies": {"com.unity.ugui": "1.0.0"}}',
    extra: Optional[dict[str, str]] = None,
) -> bytes:
    """
    Zip bytes of a minimal project (Assets, Packages, ProjectSettings).

    mode is written to FakeEditorMode.txt and read by the fake editor.
    """
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(f"{prefix}Assets/Scenes/Main.unity", "scene")
        zf.writestr(f"{prefix}Packages/manifest.json", manifest)
        zf.writestr(
            f"{prefix}ProjectSettings/ProjectVersion.txt",
            f"m_EditorVersion: {editor_version}\n",
        )
        if mode:
            zf.writestr(f"{prefix}FakeEditorMode.txt", mode)
        for name, content in (extra or {}).items():
            zf.writestr(f"{prefix}{name}", content)
    return buffer.getvalue()


@pytest.fixture
def project_zip():
    return make_project_zip


def _write_wrapper(path: Path, script: Path) -> str:
    path.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def fake_editor(tmp_path) -> str:
    """Executable standing in for the build tool (see fixtures/fake_editor.py)."""
    return _write_wrapper(tmp_path / "fake-editor", FIXTURES_DIR / "fake_editor.py")


@pytest.fixture
def fake_ffmpeg(tmp_path) -> str:
    """Executable standing in for the video encoder."""
    return _write_wrapper(tmp_path / "fake-ffmpeg", FIXTURES_DIR / "fake_ffmpeg.py")


@pytest.fixture
def fake_tool():
    """Factory: write an executable wrapper around arbitrary python source."""
    def _make(directory: Path, name: str, source: str) -> str:
        script = directory / f"{name}.py"
        script.write_text(source)
        return _write_wrapper(directory / name, script)
    return _make
