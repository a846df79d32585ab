"""
Build service configuration from environment variables.
All settings are optional with safe defaults; invalid numbers fall back to defaults.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

PROJECT_ROOT = Path(__file__).parent.parent.parent
DEFAULT_DATA_DIR = PROJECT_ROOT / "data"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class BuildSettings:
    """Build pipeline configuration (immutable)."""
    data_dir: Path = DEFAULT_DATA_DIR
    artifacts_dir: Path = DEFAULT_DATA_DIR / "artifacts"
    cache_dir: Path = DEFAULT_DATA_DIR / "build-cache"
    sandbox_root: Optional[Path] = None  # None: system temp dir
    editor_path: Optional[str] = None
    build_timeout_s: float = 20 * 60
    ffmpeg_path: str = "ffmpeg"
    ffmpeg_preset: str = "veryfast"
    ffmpeg_crf: int = 23
    capture_width: int = 1280
    capture_height: int = 720
    capture_fps: int = 15
    capture_seconds: int = 6
    log_line_throttle_s: float = 1.0
    public_base_url: str = ""

    @property
    def tool_configured(self) -> bool:
        """Check if the external build tool path is set."""
        return bool(self.editor_path)


def get_build_settings() -> BuildSettings:
    """Load build configuration from environment."""
    data_dir = Path(os.getenv("BUILDER_DATA_DIR") or DEFAULT_DATA_DIR)
    sandbox_root = os.getenv("SANDBOX_ROOT")

    return BuildSettings(
        data_dir=data_dir,
        artifacts_dir=Path(os.getenv("ARTIFACTS_DIR") or data_dir / "artifacts"),
        cache_dir=Path(os.getenv("BUILD_CACHE_DIR") or data_dir / "build-cache"),
        sandbox_root=Path(sandbox_root) if sandbox_root else None,
        editor_path=os.getenv("UNITY_EDITOR_PATH") or None,
        build_timeout_s=_env_float("UNITY_BUILD_TIMEOUT_S", 20 * 60),
        ffmpeg_path=os.getenv("FFMPEG_PATH") or "ffmpeg",
        ffmpeg_preset=os.getenv("FFMPEG_PRESET") or "veryfast",
        ffmpeg_crf=_env_int("FFMPEG_CRF", 23),
        capture_width=_env_int("CAPTURE_WIDTH", 1280),
        capture_height=_env_int("CAPTURE_HEIGHT", 720),
        capture_fps=_env_int("CAPTURE_FPS", 15),
        capture_seconds=_env_int("CAPTURE_SECONDS", 6),
        log_line_throttle_s=_env_float("LOG_LINE_THROTTLE_S", 1.0),
        public_base_url=(os.getenv("PUBLIC_BASE_URL") or "").rstrip("/"),
    )
