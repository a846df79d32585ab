"""
Database-backed store for build jobs.

Every state change checks the current status inside the same session, so a
job that was cancelled mid-build is never flipped back to ready by its pipeline.
Logs only job_id, status, target and durations - never config or outputs.
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from app.db.database import SessionLocal
from app.db.models import BuildJob as BuildJobModel
from app.schemas.build import BuildStatus, BuildTarget
from app.core.metrics import metrics

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "Cancelled by user"
INTERRUPTED_ERROR = "Build interrupted by service shutdown"

# Result ref columns owned by each target; result_ref is shared by all targets
TARGET_REF_FIELDS: dict[BuildTarget, tuple[str, ...]] = {
    BuildTarget.WEBGL: ("web_zip_ref", "web_index_ref"),
    BuildTarget.ANDROID_APK: ("native_package_ref",),
}
RESULT_REF_FIELDS = ("result_ref", "web_zip_ref", "web_index_ref", "native_package_ref")


@dataclass
class BuildJob:
    """A build job (in-memory representation)."""
    id: str
    name: str
    template_id: str
    build_target: BuildTarget
    status: BuildStatus
    config: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    draft: Optional[dict[str, Any]] = None
    result_ref: Optional[str] = None
    web_zip_ref: Optional[str] = None
    web_index_ref: Optional[str] = None
    native_package_ref: Optional[str] = None
    cover_ref: Optional[str] = None
    screenshot_refs: list[str] = field(default_factory=list)
    preview_video_ref: Optional[str] = None
    error: Optional[str] = None
    last_log_line: Optional[str] = None
    timings: Optional[dict[str, Any]] = None


def _loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _model_to_job(model: BuildJobModel) -> BuildJob:
    """Convert SQLAlchemy model to BuildJob dataclass."""
    return BuildJob(
        id=model.id,
        name=model.name,
        description=model.description,
        template_id=model.template_id,
        build_target=BuildTarget(model.build_target),
        status=BuildStatus(model.status),
        config=_loads(model.config_json, {}),
        draft=_loads(model.draft_json, None),
        result_ref=model.result_ref,
        web_zip_ref=model.web_zip_ref,
        web_index_ref=model.web_index_ref,
        native_package_ref=model.native_package_ref,
        cover_ref=model.cover_ref,
        screenshot_refs=_loads(model.screenshot_refs_json, []),
        preview_video_ref=model.preview_video_ref,
        error=model.error,
        last_log_line=model.last_log_line,
        timings=_loads(model.timings_json, None),
        created_at=datetime.fromisoformat(model.created_at),
        updated_at=datetime.fromisoformat(model.updated_at),
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _media_changes(
    cover_ref: Optional[str],
    screenshot_refs: list[str],
    preview_video_ref: Optional[str],
) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    if cover_ref:
        changes["cover_ref"] = cover_ref
    if screenshot_refs:
        changes["screenshot_refs_json"] = json.dumps(screenshot_refs)
    if preview_video_ref:
        changes["preview_video_ref"] = preview_video_ref
    return changes


class JobStore:
    """Build job persistence and status transitions."""

    def create(
        self,
        name: str,
        template_id: str,
        build_target: BuildTarget,
        config: dict[str, Any],
        description: Optional[str] = None,
        draft: Optional[dict[str, Any]] = None,
    ) -> BuildJob:
        """Create a new queued job and return it."""
        job_id = str(uuid.uuid4())
        now = _now()

        db = SessionLocal()
        try:
            job_model = BuildJobModel(
                id=job_id,
                name=name,
                description=description,
                template_id=template_id,
                build_target=build_target.value,
                status=BuildStatus.QUEUED.value,
                config_json=json.dumps(config),
                draft_json=json.dumps(draft) if draft is not None else None,
                created_at=now,
                updated_at=now,
            )
            db.add(job_model)
            db.commit()
            db.refresh(job_model)

            logger.info(
                f"job_created job_id={job_id} target={build_target.value} "
                f"status={BuildStatus.QUEUED.value}"
            )
            metrics.inc("build_submitted_total")
            return _model_to_job(job_model)
        finally:
            db.close()

    def get(self, job_id: str) -> Optional[BuildJob]:
        """Get a job by ID."""
        db = SessionLocal()
        try:
            job_model = db.query(BuildJobModel).filter(BuildJobModel.id == job_id).first()
            if not job_model:
                return None
            return _model_to_job(job_model)
        finally:
            db.close()

    def list_jobs(
        self,
        limit: int = 20,
        offset: int = 0,
        status: Optional[BuildStatus] = None,
    ) -> tuple[list[BuildJob], int]:
        """
        List jobs, most recent first.
        Returns (jobs, total count before pagination).
        """
        db = SessionLocal()
        try:
            query = db.query(BuildJobModel)
            if status is not None:
                query = query.filter(BuildJobModel.status == status.value)
            total = query.count()
            items = (
                query.order_by(BuildJobModel.created_at.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_model_to_job(item) for item in items], total
        finally:
            db.close()

    def _update(self, job_id: str, expected: tuple[BuildStatus, ...], changes: dict[str, Any]) -> Optional[BuildJob]:
        """
        Apply column changes only if the job is in one of the expected statuses.
        Returns the updated job, or None if missing or in another status.
        """
        db = SessionLocal()
        try:
            job_model = db.query(BuildJobModel).filter(BuildJobModel.id == job_id).first()
            if not job_model or BuildStatus(job_model.status) not in expected:
                return None
            for column, value in changes.items():
                setattr(job_model, column, value)
            job_model.updated_at = _now()
            db.commit()
            db.refresh(job_model)
            return _model_to_job(job_model)
        finally:
            db.close()

    def mark_running(self, job_id: str, timings: dict[str, Any]) -> Optional[BuildJob]:
        """queued -> running. Clears error and progress from previous runs."""
        job = self._update(job_id, (BuildStatus.QUEUED,), {
            "status": BuildStatus.RUNNING.value,
            "error": None,
            "last_log_line": None,
            "timings_json": json.dumps(timings),
        })
        if job:
            logger.info(f"job_updated job_id={job_id} status=running")
            metrics.inc("build_started_total")
        return job

    def update_last_log_line(self, job_id: str, line: str) -> None:
        """Persist progress while running; ignored once the job has left running."""
        self._update(job_id, (BuildStatus.RUNNING,), {"last_log_line": line[:500]})

    def update_timings(self, job_id: str, timings: dict[str, Any]) -> None:
        self._update(job_id, (BuildStatus.RUNNING,), {"timings_json": json.dumps(timings)})

    def set_media(
        self,
        job_id: str,
        cover_ref: Optional[str],
        screenshot_refs: list[str],
        preview_video_ref: Optional[str],
    ) -> Optional[BuildJob]:
        """Record captured media of a running build; only refs that exist replace stored ones."""
        changes = _media_changes(cover_ref, screenshot_refs, preview_video_ref)
        if not changes:
            return None
        return self._update(job_id, (BuildStatus.RUNNING,), changes)

    def attach_media(
        self,
        job_id: str,
        cover_ref: Optional[str],
        screenshot_refs: list[str],
        preview_video_ref: Optional[str],
    ) -> Optional[BuildJob]:
        """Record client-supplied media in any status; only given refs replace stored ones."""
        changes = _media_changes(cover_ref, screenshot_refs, preview_video_ref)
        job = self._update(job_id, tuple(BuildStatus), changes)
        if job:
            logger.info(f"job_media_attached job_id={job_id}")
        return job

    def update_details(
        self,
        job_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        build_target: Optional[BuildTarget] = None,
    ) -> Optional[BuildJob]:
        """
        Change display metadata and target; None leaves a field unchanged.

        An empty description clears it. A target change only applies to a
        ready or failed job; None is returned while the job is queued or running.
        """
        changes: dict[str, Any] = {}
        expected = tuple(BuildStatus)
        if name is not None:
            changes["name"] = name
        if description is not None:
            changes["description"] = description or None
        if build_target is not None:
            changes["build_target"] = build_target.value
            expected = (BuildStatus.READY, BuildStatus.FAILED)
        job = self._update(job_id, expected, changes)
        if job:
            logger.info(f"job_details_updated job_id={job_id} target={job.build_target.value}")
        return job

    def mark_ready(self, job_id: str, refs: dict[str, str], timings: dict[str, Any]) -> Optional[BuildJob]:
        """running -> ready with result refs. None if the job is no longer running."""
        changes: dict[str, Any] = {
            "status": BuildStatus.READY.value,
            "error": None,
            "timings_json": json.dumps(timings),
        }
        for column, value in refs.items():
            if column not in RESULT_REF_FIELDS:
                raise ValueError(f"Unknown result ref column: {column}")
            changes[column] = value
        job = self._update(job_id, (BuildStatus.RUNNING,), changes)
        if job:
            logger.info(
                f"job_updated job_id={job_id} status=ready "
                f"duration_ms={timings.get('duration_ms')}"
            )
            metrics.inc("build_ready_total")
        return job

    def mark_failed(self, job_id: str, error: str, timings: Optional[dict[str, Any]] = None) -> Optional[BuildJob]:
        """running -> failed. None if the job is no longer running (e.g. cancelled)."""
        changes: dict[str, Any] = {"status": BuildStatus.FAILED.value, "error": error}
        if timings is not None:
            changes["timings_json"] = json.dumps(timings)
        job = self._update(job_id, (BuildStatus.RUNNING,), changes)
        if job:
            logger.info(f"job_updated job_id={job_id} status=failed")
            metrics.inc("build_failed_total")
        return job

    def record_timings_if_failed(self, job_id: str, timings: dict[str, Any]) -> None:
        """Attach timings to a job that was failed by someone else (cancel)."""
        self._update(job_id, (BuildStatus.FAILED,), {"timings_json": json.dumps(timings)})

    def cancel(self, job_id: str) -> tuple[Optional[BuildJob], bool, str]:
        """
        Cancel a job if it's queued or running.
        Returns (job, cancelled, message); job is None if not found.
        """
        db = SessionLocal()
        try:
            job_model = db.query(BuildJobModel).filter(BuildJobModel.id == job_id).first()
            if not job_model:
                return None, False, "Job not found"

            current_status = BuildStatus(job_model.status)
            if current_status.terminal:
                return _model_to_job(job_model), False, (
                    f"Job already {current_status.value}; nothing to cancel"
                )

            job_model.status = BuildStatus.FAILED.value
            job_model.error = CANCELLED_ERROR
            job_model.updated_at = _now()
            db.commit()
            db.refresh(job_model)

            logger.info(f"job_cancelled job_id={job_id} previous_status={current_status.value}")
            metrics.inc("build_cancelled_total")
            return _model_to_job(job_model), True, "Job cancelled"
        finally:
            db.close()

    def reset_for_rebuild(self, job_id: str, build_target: Optional[BuildTarget] = None) -> Optional[BuildJob]:
        """
        ready/failed -> queued.

        Clears error, progress, timings, the shared result ref and the refs of the
        target being built. Refs of other targets are kept.
        Returns None if the job is missing or not terminal.
        """
        db = SessionLocal()
        try:
            job_model = db.query(BuildJobModel).filter(BuildJobModel.id == job_id).first()
            if not job_model or not BuildStatus(job_model.status).terminal:
                return None

            target = build_target or BuildTarget(job_model.build_target)
            job_model.build_target = target.value
            job_model.status = BuildStatus.QUEUED.value
            job_model.error = None
            job_model.last_log_line = None
            job_model.timings_json = None
            job_model.result_ref = None
            for column in TARGET_REF_FIELDS[target]:
                setattr(job_model, column, None)
            job_model.updated_at = _now()
            db.commit()
            db.refresh(job_model)

            logger.info(f"job_rebuild_queued job_id={job_id} target={target.value}")
            metrics.inc("build_rebuild_total")
            return _model_to_job(job_model)
        finally:
            db.close()

    def run_startup_cleanup(self) -> int:
        """
        Fail jobs left queued/running by a previous process; their pipelines are gone.
        Safe to call multiple times. Returns the number of jobs failed.
        """
        db = SessionLocal()
        try:
            stale = (
                db.query(BuildJobModel)
                .filter(BuildJobModel.status.in_([BuildStatus.QUEUED.value, BuildStatus.RUNNING.value]))
                .all()
            )
            now = _now()
            for job_model in stale:
                job_model.status = BuildStatus.FAILED.value
                job_model.error = INTERRUPTED_ERROR
                job_model.updated_at = now
            db.commit()
            if stale:
                logger.info(f"startup_cleanup failed_jobs={len(stale)}")
            return len(stale)
        finally:
            db.close()

    def update_config(self, job_id: str, config: dict[str, Any]) -> Optional[BuildJob]:
        """Replace the stored (already validated) runtime config."""
        db = SessionLocal()
        try:
            job_model = db.query(BuildJobModel).filter(BuildJobModel.id == job_id).first()
            if not job_model:
                return None
            job_model.config_json = json.dumps(config)
            job_model.updated_at = _now()
            db.commit()
            db.refresh(job_model)
            logger.info(f"job_config_updated job_id={job_id}")
            return _model_to_job(job_model)
        finally:
            db.close()


# Global job store instance
job_store = JobStore()
