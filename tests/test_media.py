"""
Tests for media capture, encoding and publishing.
"""
import io

import pytest

from app.core.artifact_store import ArtifactStore
from app.core.config import BuildSettings
from app.core.media import MediaCapture, MediaUpload, sanitize_upload_name
from app.core.process_registry import ProcessRegistry
from app.core.process_runner import ProcessRunner, ToolInvocation


def _media_dir(tmp_path, frames=3, cover=True, shots=3):
    media = tmp_path / "media_out"
    (media / "frames").mkdir(parents=True)
    if cover:
        (media / "cover.png").write_bytes(b"cover")
    for index in range(1, shots + 1):
        (media / f"shot_{index}.png").write_bytes(b"shot")
    for index in range(1, frames + 1):
        (media / "frames" / f"frame_{index:04d}.png").write_bytes(b"frame")
    return media


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path / "artifacts")


def _capture(store, ffmpeg_path="ffmpeg"):
    settings = BuildSettings(ffmpeg_path=ffmpeg_path, capture_fps=12, ffmpeg_preset="fast", ffmpeg_crf=28)
    return MediaCapture(ProcessRunner(ProcessRegistry()), store, settings)


class TestEncoderInvocation:
    """Tests for the encoder command line."""

    def test_arguments(self, store, tmp_path):
        invocation = _capture(store).encoder_invocation(tmp_path, "job")
        assert invocation.executable == "ffmpeg"
        assert invocation.cwd == tmp_path
        assert invocation.args == [
            "-y",
            "-framerate", "12",
            "-i", "frames/frame_%04d.png",
            "-c:v", "libx264",
            "-preset", "fast",
            "-crf", "28",
            "-pix_fmt", "yuv420p",
            "-movflags", "+faststart",
            "preview.mp4",
        ]


class TestMediaCapture:
    """Tests for the best-effort media pipeline."""

    @pytest.mark.asyncio
    async def test_encode_and_publish_all(self, store, tmp_path, fake_ffmpeg):
        media = _media_dir(tmp_path)
        refs = await _capture(store, fake_ffmpeg).encode_and_publish("job1", media)

        assert refs.cover_ref.startswith("job1/media/cover_")
        assert refs.cover_ref.endswith(".png")
        assert len(refs.screenshot_refs) == 3
        assert refs.screenshot_refs[0].startswith("job1/media/shot_1_")
        assert refs.preview_video_ref.startswith("job1/media/video_")
        assert await store.get(refs.preview_video_ref) == b"mp4" * 3

    @pytest.mark.asyncio
    async def test_missing_encoder_keeps_images(self, store, tmp_path):
        media = _media_dir(tmp_path)
        refs = await _capture(store, str(tmp_path / "no-ffmpeg")).encode_and_publish("job2", media)
        assert refs.cover_ref is not None
        assert len(refs.screenshot_refs) == 3
        assert refs.preview_video_ref is None

    @pytest.mark.asyncio
    async def test_no_frames_skips_encoder(self, store, tmp_path, fake_ffmpeg):
        media = _media_dir(tmp_path, frames=0)
        capture = _capture(store, fake_ffmpeg)
        assert await capture.encode_video(media, "job3") is None

    @pytest.mark.asyncio
    async def test_partial_media(self, store, tmp_path):
        media = _media_dir(tmp_path, frames=0, cover=False, shots=2)
        refs = await _capture(store).publish("job4", media)
        assert refs.cover_ref is None
        assert len(refs.screenshot_refs) == 2
        assert not refs.empty

    @pytest.mark.asyncio
    async def test_missing_media_dir(self, store, tmp_path):
        refs = await _capture(store).encode_and_publish("job5", tmp_path / "nothing")
        assert refs.empty

    @pytest.mark.asyncio
    async def test_failed_capture_returns_false(self, store, tmp_path, fake_tool):
        tool = fake_tool(tmp_path, "capture", "import sys\nsys.exit(1)\n")
        assert await _capture(store).capture(ToolInvocation(tool, [], label="capture")) is False

    @pytest.mark.asyncio
    async def test_successful_capture_returns_true(self, store, tmp_path, fake_tool):
        tool = fake_tool(tmp_path, "capture", "print('ok')\n")
        assert await _capture(store).capture(ToolInvocation(tool, [], label="capture")) is True


# =============================================================================
# Uploaded Media
# =============================================================================

class TestUploadedMedia:
    """Tests for storing client-supplied media."""

    @pytest.mark.parametrize("filename,expected", [
        ("cover.png", "cover.png"),
        ("my cover (1).png", "my_cover__1_.png"),
        ("../../etc/passwd", ".._.._etc_passwd"),
        ("écran.jpg", "_cran.jpg"),
        ("", "image"),
        (None, "image"),
    ])
    def test_sanitize_upload_name(self, filename, expected):
        assert sanitize_upload_name(filename, "image") == expected

    def test_sanitize_upload_name_truncates(self):
        assert len(sanitize_upload_name("a" * 300 + ".png", "image")) == 100
        assert sanitize_upload_name("a" * 300 + ".png", "image").endswith(".png")

    @pytest.mark.asyncio
    async def test_store_uploads(self, store):
        refs = await _capture(store).store_uploads(
            "job",
            cover=MediaUpload("cover art.png", io.BytesIO(b"cover")),
            screenshots=[MediaUpload("a.png", io.BytesIO(b"a")), MediaUpload(None, io.BytesIO(b"b"))],
        )
        assert refs.cover_ref.startswith("job/media/upload_cover_")
        assert refs.cover_ref.endswith("_cover_art.png")
        assert refs.screenshot_refs[0].startswith("job/media/upload_shot_1_")
        assert refs.screenshot_refs[1].endswith("_screenshot")
        assert refs.preview_video_ref is None
        assert await store.get(refs.cover_ref) == b"cover"
        assert await store.get(refs.screenshot_refs[1]) == b"b"
