"""
Media Capture Pipeline - cover, screenshots and a preview video for a build.

Captured media is best-effort: a failed capture, a missing encoder or a failed
upload only means the corresponding media ref stays empty. Media supplied by a
client is stored as-is and its storage errors propagate.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Optional

from app.core.artifact_store import ArtifactStore
from app.core.config import BuildSettings
from app.core.errors import best_effort
from app.core.metrics import metrics
from app.core.process_runner import ProcessRunner, ToolInvocation

logger = logging.getLogger(__name__)

COVER_FILENAME = "cover.png"
SCREENSHOT_COUNT = 3
FRAMES_DIRNAME = "frames"
FRAME_PATTERN = "frame_%04d.png"
FIRST_FRAME = "frame_0001.png"
VIDEO_FILENAME = "preview.mp4"
ENCODER_TIMEOUT_S = 5 * 60

# User-supplied media
MAX_UPLOAD_SCREENSHOTS = 8
MAX_MEDIA_UPLOAD_BYTES = 500 * 1024 * 1024
MAX_UPLOAD_NAME_CHARS = 100
UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


@dataclass
class MediaRefs:
    """Published media keys; any of them may be absent."""
    cover_ref: Optional[str] = None
    screenshot_refs: list[str] = field(default_factory=list)
    preview_video_ref: Optional[str] = None

    @property
    def empty(self) -> bool:
        return not (self.cover_ref or self.screenshot_refs or self.preview_video_ref)


def screenshot_filename(index: int) -> str:
    return f"shot_{index}.png"


def sanitize_upload_name(filename: Optional[str], default: str) -> str:
    """Reduce a client file name to [a-zA-Z0-9._-] for use inside a key."""
    name = UNSAFE_NAME_CHARS.sub("_", filename or "")[-MAX_UPLOAD_NAME_CHARS:]
    return name or default


@dataclass
class MediaUpload:
    """A client-supplied media file; stream is an open binary file object."""
    filename: Optional[str]
    stream: BinaryIO


class MediaCapture:
    """Runs the capture hook, encodes the frame sequence, publishes the results."""

    def __init__(self, runner: ProcessRunner, store: ArtifactStore, settings: BuildSettings):
        self._runner = runner
        self._store = store
        self._settings = settings

    async def capture(self, invocation: ToolInvocation) -> bool:
        """Run the tool's capture hook. Returns True if it exited cleanly."""
        result = await best_effort("capture_media", self._runner.run_checked, invocation)
        return result is not None

    def encoder_invocation(self, media_dir: Path, job_id: Optional[str] = None) -> ToolInvocation:
        settings = self._settings
        return ToolInvocation(
            executable=settings.ffmpeg_path,
            args=[
                "-y",
                "-framerate", str(settings.capture_fps),
                "-i", f"{FRAMES_DIRNAME}/{FRAME_PATTERN}",
                "-c:v", "libx264",
                "-preset", settings.ffmpeg_preset,
                "-crf", str(settings.ffmpeg_crf),
                "-pix_fmt", "yuv420p",
                "-movflags", "+faststart",
                VIDEO_FILENAME,
            ],
            timeout_s=ENCODER_TIMEOUT_S,
            label="ffmpeg",
            job_id=job_id,
            cwd=media_dir,
        )

    async def encode_video(self, media_dir: Path, job_id: Optional[str] = None) -> Optional[Path]:
        """Encode frames/ into preview.mp4 if a first frame exists."""
        media_dir = Path(media_dir)
        if not (media_dir / FRAMES_DIRNAME / FIRST_FRAME).is_file():
            logger.info("video_encode_skipped reason=no_frames")
            return None
        result = await best_effort(
            "encode_video", self._runner.run_checked, self.encoder_invocation(media_dir, job_id)
        )
        video = media_dir / VIDEO_FILENAME
        if result is None or not video.is_file():
            return None
        return video

    async def _publish_one(self, key: str, path: Path) -> Optional[str]:
        if not path.is_file():
            return None
        stored = await best_effort(f"publish_media:{path.name}", self._store.put_file, key, path)
        if stored is None:
            return None
        metrics.inc("media_published_total")
        return key

    async def publish(self, job_id: str, media_dir: Path, video: Optional[Path] = None) -> MediaRefs:
        """Publish each media file independently."""
        media_dir = Path(media_dir)
        tag = uuid.uuid4().hex[:8]
        prefix = f"{job_id}/media"
        refs = MediaRefs()

        refs.cover_ref = await self._publish_one(
            f"{prefix}/cover_{tag}.png", media_dir / COVER_FILENAME
        )
        for index in range(1, SCREENSHOT_COUNT + 1):
            ref = await self._publish_one(
                f"{prefix}/shot_{index}_{tag}.png", media_dir / screenshot_filename(index)
            )
            if ref:
                refs.screenshot_refs.append(ref)
        if video is not None:
            refs.preview_video_ref = await self._publish_one(f"{prefix}/video_{tag}.mp4", video)

        logger.info(
            f"media_published job_id={job_id} cover={bool(refs.cover_ref)} "
            f"screenshots={len(refs.screenshot_refs)} video={bool(refs.preview_video_ref)}"
        )
        return refs

    async def encode_and_publish(self, job_id: str, media_dir: Path) -> MediaRefs:
        """Encode the preview video, then publish every media file that exists."""
        if not Path(media_dir).is_dir():
            return MediaRefs()
        video = await self.encode_video(media_dir, job_id)
        return await self.publish(job_id, media_dir, video)

    async def store_uploads(
        self,
        job_id: str,
        cover: Optional[MediaUpload] = None,
        screenshots: Optional[list[MediaUpload]] = None,
        video: Optional[MediaUpload] = None,
    ) -> MediaRefs:
        """Store client-supplied media under the job's media prefix."""
        tag = uuid.uuid4().hex[:8]
        prefix = f"{job_id}/media"
        refs = MediaRefs()

        if cover is not None:
            refs.cover_ref = f"{prefix}/upload_cover_{tag}_{sanitize_upload_name(cover.filename, 'image')}"
            await self._store.put_stream(refs.cover_ref, cover.stream)
        for index, shot in enumerate(screenshots or [], start=1):
            key = f"{prefix}/upload_shot_{index}_{tag}_{sanitize_upload_name(shot.filename, 'screenshot')}"
            await self._store.put_stream(key, shot.stream)
            refs.screenshot_refs.append(key)
        if video is not None:
            refs.preview_video_ref = f"{prefix}/upload_video_{tag}_{sanitize_upload_name(video.filename, 'video')}"
            await self._store.put_stream(refs.preview_video_ref, video.stream)

        metrics.inc("media_uploaded_total")
        logger.info(
            f"media_uploaded job_id={job_id} cover={bool(refs.cover_ref)} "
            f"screenshots={len(refs.screenshot_refs)} video={bool(refs.preview_video_ref)}"
        )
        return refs
