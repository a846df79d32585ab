"""
Build Orchestrator - job lifecycle, state machine and the build pipeline.

States: queued -> running -> ready | failed. Cancel moves queued/running jobs
to failed and kills the live tool process; rebuild moves ready/failed jobs back
to queued. submit() and rebuild() return at once and run the pipeline in a
background task; callers observe progress by polling the job.

Pipeline steps run strictly in order, each timed:
workdir, load_template, extract_template, find_project_root, cache_restore,
inject_patches, pin_dependencies, tool_build, capture_media, publish_media,
cache_save, verify_output, publish_artifacts.

Any exception from a step fails the job with its message. Cache, media, the
dependency pin and draft generation go through best_effort() and never fail a
job. The sandbox directory is removed on every exit path.
"""
import asyncio
import logging
import os
import shutil
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from app.core.artifact_store import ArtifactNotFoundError, ArtifactStore, artifact_store
from app.core.assembler import ArtifactAssembler, verify_output
from app.core.build_cache import CACHED_DIR_NAME, BuildCache
from app.core.config import BuildSettings, get_build_settings
from app.core.errors import (
    BuildCancelledError,
    BuildError,
    InvalidInputError,
    InvalidStateError,
    JobNotFoundError,
    TemplateNotFoundError,
    ToolNotConfiguredError,
    best_effort,
)
from app.core.jobs import CANCELLED_ERROR, INTERRUPTED_ERROR, BuildJob, JobStore, job_store
from app.core.media import MAX_UPLOAD_SCREENSHOTS, SCREENSHOT_COUNT, MediaCapture, MediaUpload
from app.core.process_registry import ProcessRegistry, process_registry
from app.core.process_runner import ProcessRunner, ToolInvocation
from app.core.request_context import bind_job_id, job_id_var
from app.core.runtime_config import RuntimeConfig, resolve_runtime_config
from app.core.sandbox import (
    CaptureSettings,
    extract_archive,
    find_project_root,
    inject_patches,
    pin_build_dependencies,
    validate_archive,
)
from app.core.templates import Template, TemplateStore, template_store
from app.llm.draft_generator import DraftGenerator, get_draft_generator
from app.schemas.build import BuildStatus, BuildTarget

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

SANDBOX_PREFIX = "template-build-"
WEBGL_OUT_DIRNAME = "webgl_out"
ANDROID_OUT_DIRNAME = "android_out"
APK_FILENAME = "TemplateBuild.apk"
MEDIA_DIRNAME = "media_out"
CAPTURE_OUT_DIRNAME = "capture_out"
WEBGL_ENTRY_POINT = "index.html"

DRAFT_FALLBACK_NAME = "AI Game"

TOOL_TARGET_FLAGS = {
    BuildTarget.WEBGL: "WebGL",
    BuildTarget.ANDROID_APK: "Android",
}
BUILD_HOOKS = {
    BuildTarget.WEBGL: "TemplateBuilder.BuildWebGL.PerformBuild",
    BuildTarget.ANDROID_APK: "TemplateBuilder.BuildAndroid.PerformBuild",
}
CAPTURE_HOOK = "TemplateBuilder.CaptureMedia.PerformCapture"


def tool_args(
    project_root: Path,
    target: BuildTarget,
    method: str,
    output: Path,
    media_out: Optional[Path] = None,
) -> list[str]:
    """Batch-mode command line for one build tool invocation."""
    args = [
        "-batchmode",
        "-quit",
        "-projectPath", str(project_root),
        "-buildTarget", TOOL_TARGET_FLAGS[target],
        "-executeMethod", method,
    ]
    if media_out is not None:
        args += ["-builderMediaOut", str(media_out)]
    args += ["-builderOutput", str(output), "-logFile", "-"]
    return args


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StepTimer:
    """Per-step durations plus overall start/finish, reported after every step."""

    def __init__(self, on_change: Optional[Callable[[dict[str, Any]], None]] = None):
        self.started_at = _iso_now()
        self._start = time.perf_counter()
        self._steps: dict[str, int] = {}
        self._on_change = on_change

    @contextmanager
    def step(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self._steps[name] = int((time.perf_counter() - start) * 1000)
            logger.info(f"build_step name={name} duration_ms={self._steps[name]}", extra={"step": name})
            if self._on_change is not None:
                self._on_change(self.snapshot())

    @property
    def steps(self) -> dict[str, int]:
        return dict(self._steps)

    def snapshot(self, finished: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {"started_at": self.started_at, "steps": dict(self._steps)}
        if finished:
            data["finished_at"] = _iso_now()
            data["duration_ms"] = int((time.perf_counter() - self._start) * 1000)
        return data


class BuildOrchestrator:
    """Owns build jobs from submission to a terminal status."""

    def __init__(
        self,
        settings: Optional[BuildSettings] = None,
        jobs: Optional[JobStore] = None,
        templates: Optional[TemplateStore] = None,
        store: Optional[ArtifactStore] = None,
        cache: Optional[BuildCache] = None,
        registry: Optional[ProcessRegistry] = None,
        runner: Optional[ProcessRunner] = None,
        draft_generator: Optional[DraftGenerator] = None,
    ):
        self._settings = settings or get_build_settings()
        self._jobs = jobs or job_store
        self._store = store or artifact_store
        self._templates = templates or (template_store if store is None else TemplateStore(self._store))
        self._cache = cache or BuildCache(self._settings.cache_dir)
        self._registry = registry if registry is not None else process_registry
        self._runner = runner or ProcessRunner(self._registry, self._settings.log_line_throttle_s)
        self._media = MediaCapture(self._runner, self._store, self._settings)
        self._assembler = ArtifactAssembler(self._store)
        self._draft_generator = draft_generator
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def settings(self) -> BuildSettings:
        return self._settings

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    # =========================================================================
    # Commands
    # =========================================================================

    async def _load_valid_archive(self, template_id: str) -> bytes:
        try:
            archive = await self._templates.load_archive(template_id)
        except ArtifactNotFoundError:
            raise InvalidInputError(f"Template archive missing for template {template_id}")
        validate_archive(archive)
        return archive

    async def submit_from_template(
        self,
        template_id: str,
        build_target: BuildTarget = BuildTarget.WEBGL,
        name: Optional[str] = None,
        description: Optional[str] = None,
        config: Optional[dict[str, Any]] = None,
    ) -> BuildJob:
        """
        Queue a build of a template with caller config over fallbacks.

        Raises:
            TemplateNotFoundError: unknown template
            InvalidArchiveError: template archive is not a usable zip
        """
        template = self._templates.get(template_id)
        if not template:
            raise TemplateNotFoundError(f"Template not found: {template_id}")
        await self._load_valid_archive(template_id)

        runtime_config = resolve_runtime_config(config)
        job = self._jobs.create(
            name=(name or template.name).strip()[:60] or template.name,
            description=description,
            template_id=template.id,
            build_target=build_target,
            config=runtime_config.model_dump(exclude_none=True),
        )
        self._schedule(job.id)
        return job

    async def submit_from_draft(
        self,
        prompt: str,
        notes: Optional[str] = None,
        template_id: Optional[str] = None,
        build_target: BuildTarget = BuildTarget.WEBGL,
        config: Optional[dict[str, Any]] = None,
    ) -> BuildJob:
        """
        Queue a build whose name, description and defaults come from the draft generator.

        Config priority: caller config > drafted config > fallbacks. Any draft
        failure (including rate limiting) falls back to defaults.
        """
        template: Optional[Template]
        if template_id:
            template = self._templates.get(template_id)
        else:
            template = self._templates.latest()
        if not template:
            raise TemplateNotFoundError(
                f"Template not found: {template_id}" if template_id else "No templates uploaded"
            )
        await self._load_valid_archive(template.id)

        generator = self._draft_generator or get_draft_generator()
        draft = await best_effort("draft_generation", generator.generate, prompt, notes)

        runtime_config = resolve_runtime_config(config, draft.config if draft else None)
        if draft:
            name, description, metadata = draft.name, draft.description, draft.metadata()
        else:
            name, description = DRAFT_FALLBACK_NAME, prompt.strip()[:400]
            metadata = {"fallback": True}
        metadata["prompt"] = prompt.strip()[:2000]

        job = self._jobs.create(
            name=name,
            description=description,
            template_id=template.id,
            build_target=build_target,
            config=runtime_config.model_dump(exclude_none=True),
            draft=metadata,
        )
        self._schedule(job.id)
        return job

    def cancel(self, job_id: str) -> tuple[BuildJob, bool, str]:
        """
        Cancel a queued or running job; no-op for terminal jobs.

        Raises:
            JobNotFoundError: unknown job
        """
        job, cancelled, message = self._jobs.cancel(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if cancelled:
            killed = self._registry.kill(job_id)
            logger.info(f"build_cancel job_id={job_id} process_killed={killed}")
        return job, cancelled, message

    def _ensure_idle(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            raise InvalidStateError("Previous build of this job is still stopping; retry shortly")

    def rebuild(self, job_id: str, build_target: Optional[BuildTarget] = None) -> BuildJob:
        """
        Queue a terminal job again, optionally for another target.

        Raises:
            JobNotFoundError: unknown job
            InvalidStateError: job is queued/running or its last run is still winding down
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if not job.status.terminal:
            raise InvalidStateError(f"Cannot rebuild job with status '{job.status.value}'")
        self._ensure_idle(job_id)

        reset = self._jobs.reset_for_rebuild(job_id, build_target)
        if reset is None:
            raise InvalidStateError("Job changed status during rebuild request")
        self._schedule(job_id)
        return reset

    def update_config(self, job_id: str, config: dict[str, Any]) -> RuntimeConfig:
        """Merge new values over the stored config; used by the next (re)build."""
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        resolved = resolve_runtime_config(config, job.config)
        self._jobs.update_config(job_id, resolved.model_dump(exclude_none=True))
        return resolved

    def update_details(
        self,
        job_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        build_target: Optional[BuildTarget] = None,
    ) -> BuildJob:
        """
        Rename, redescribe or retarget a job; the target applies to the next rebuild.

        Raises:
            JobNotFoundError: unknown job
            InvalidInputError: blank name
            InvalidStateError: target change while the job is queued or running
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if name is not None:
            name = name.strip()
            if not name:
                raise InvalidInputError("name must not be blank")
        if description is not None:
            description = description.strip()
        if build_target == job.build_target:
            build_target = None
        if build_target is not None and not job.status.terminal:
            raise InvalidStateError(f"Cannot change build target of job with status '{job.status.value}'")

        updated = self._jobs.update_details(job_id, name, description, build_target)
        if updated is None:
            raise InvalidStateError("Job changed status during update")
        return updated

    async def attach_media(
        self,
        job_id: str,
        cover: Optional[MediaUpload] = None,
        screenshots: Optional[list[MediaUpload]] = None,
        video: Optional[MediaUpload] = None,
    ) -> BuildJob:
        """
        Store client-supplied media and point the job's media refs at it.

        Given screenshots replace the whole screenshot list. Allowed in any
        status; a build that is still running may later replace the refs again
        with captured media.

        Raises:
            JobNotFoundError: unknown job
            InvalidInputError: no media, or too many screenshots
        """
        if self._jobs.get(job_id) is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if cover is None and not screenshots and video is None:
            raise InvalidInputError("No media provided")
        if screenshots and len(screenshots) > MAX_UPLOAD_SCREENSHOTS:
            raise InvalidInputError(f"At most {MAX_UPLOAD_SCREENSHOTS} screenshots per request")

        refs = await self._media.store_uploads(job_id, cover, screenshots, video)
        job = self._jobs.attach_media(job_id, refs.cover_ref, refs.screenshot_refs, refs.preview_video_ref)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def runtime_config(self, job: BuildJob) -> RuntimeConfig:
        """Validated config of a job, as written into its project."""
        return resolve_runtime_config(job.config)

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _schedule(self, job_id: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self.run_build(job_id), name=f"build-{job_id}"
        )
        self._tasks[job_id] = task
        task.add_done_callback(lambda t, jid=job_id: self._task_done(jid, t))
        return task

    def _task_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"build_task_crashed job_id={job_id} error_type={type(task.exception()).__name__}"
            )

    def active_job_ids(self) -> list[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    async def shutdown(self) -> None:
        """Cancel all pipeline tasks (their jobs are marked failed)."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # Pipeline
    # =========================================================================

    def _check_cancelled(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.status != BuildStatus.RUNNING:
            raise BuildCancelledError(CANCELLED_ERROR)

    def _make_workdir(self) -> Path:
        root = self._settings.sandbox_root
        if root is not None:
            root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=SANDBOX_PREFIX, dir=str(root) if root else None))

    def _require_tool(self) -> str:
        if not self._settings.editor_path:
            raise ToolNotConfiguredError("UNITY_EDITOR_PATH is not configured")
        return self._settings.editor_path

    def _capture_settings(self) -> CaptureSettings:
        return CaptureSettings(
            width=self._settings.capture_width,
            height=self._settings.capture_height,
            fps=self._settings.capture_fps,
            seconds=self._settings.capture_seconds,
            screenshot_count=SCREENSHOT_COUNT,
        )

    def _warn_missing_android_env(self) -> None:
        if not (os.getenv("ANDROID_SDK_ROOT") or os.getenv("ANDROID_HOME")):
            logger.warning("android_env_missing variable=ANDROID_SDK_ROOT")
        if not os.getenv("JAVA_HOME"):
            logger.warning("android_env_missing variable=JAVA_HOME")

    async def run_build(self, job_id: str) -> None:
        """Run the pipeline for a queued job. Never raises (except task cancellation)."""
        timer = StepTimer(on_change=lambda timings: self._jobs.update_timings(job_id, timings))
        job = self._jobs.mark_running(job_id, timer.snapshot())
        if job is None:
            logger.info(f"build_skipped job_id={job_id} reason=not_queued")
            return

        token = bind_job_id(job_id)
        workdir: Optional[Path] = None
        try:
            with timer.step("workdir"):
                workdir = await asyncio.to_thread(self._make_workdir)
            refs = await self._execute(job, workdir, timer)
            if self._jobs.mark_ready(job_id, refs, timer.snapshot(finished=True)) is None:
                logger.info(f"build_result_discarded job_id={job_id} reason=no_longer_running")
        except asyncio.CancelledError:
            self._jobs.mark_failed(job_id, INTERRUPTED_ERROR, timer.snapshot(finished=True))
            raise
        except Exception as e:
            if isinstance(e, BuildError):
                logger.warning(f"build_failed job_id={job_id} error_type={type(e).__name__}")
            else:
                logger.exception(f"build_failed job_id={job_id} error_type={type(e).__name__}")
            timings = timer.snapshot(finished=True)
            if self._jobs.mark_failed(job_id, str(e) or type(e).__name__, timings) is None:
                self._jobs.record_timings_if_failed(job_id, timings)
        finally:
            if workdir is not None:
                await asyncio.to_thread(shutil.rmtree, workdir, True)
                logger.info(f"sandbox_removed job_id={job_id}")
            job_id_var.reset(token)

    async def _execute(self, job: BuildJob, workdir: Path, timer: StepTimer) -> dict[str, str]:
        """Pipeline body. Returns the result refs to store on success."""
        job_id = job.id
        target = job.build_target

        with timer.step("load_template"):
            archive = await self._load_valid_archive(job.template_id)
        self._check_cancelled(job_id)

        with timer.step("extract_template"):
            extracted = await extract_archive(archive, workdir)
        with timer.step("find_project_root"):
            root = await asyncio.to_thread(find_project_root, extracted)
        self._check_cancelled(job_id)

        with timer.step("cache_restore"):
            await self._cache.restore(job.template_id, root / CACHED_DIR_NAME)

        with timer.step("inject_patches"):
            config = resolve_runtime_config(job.config)
            await asyncio.to_thread(inject_patches, root, config, self._capture_settings())
        with timer.step("pin_dependencies"):
            await best_effort("pin_dependencies", asyncio.to_thread, pin_build_dependencies, root)
        self._check_cancelled(job_id)

        if target == BuildTarget.WEBGL:
            output = workdir / WEBGL_OUT_DIRNAME
            entry_point = output / WEBGL_ENTRY_POINT
        else:
            output = workdir / ANDROID_OUT_DIRNAME / APK_FILENAME
            entry_point = output

        with timer.step("tool_build"):
            executable = self._require_tool()
            if target == BuildTarget.ANDROID_APK:
                self._warn_missing_android_env()
            await self._runner.run_checked(
                ToolInvocation(
                    executable=executable,
                    args=tool_args(root, target, BUILD_HOOKS[target], output),
                    timeout_s=self._settings.build_timeout_s,
                    label="Unity build",
                    job_id=job_id,
                ),
                on_log_line=lambda line: self._jobs.update_last_log_line(job_id, line),
            )
        self._check_cancelled(job_id)

        media_dir = workdir / MEDIA_DIRNAME
        with timer.step("capture_media"):
            await self._media.capture(
                ToolInvocation(
                    executable=executable,
                    args=tool_args(
                        root, target, CAPTURE_HOOK, workdir / CAPTURE_OUT_DIRNAME, media_out=media_dir
                    ),
                    timeout_s=self._settings.build_timeout_s,
                    label="Unity media capture",
                    job_id=job_id,
                )
            )
        self._check_cancelled(job_id)

        with timer.step("publish_media"):
            media = await best_effort("publish_media", self._media.encode_and_publish, job_id, media_dir)
            if media is not None and not media.empty:
                self._jobs.set_media(
                    job_id, media.cover_ref, media.screenshot_refs, media.preview_video_ref
                )
        self._check_cancelled(job_id)

        with timer.step("cache_save"):
            await self._cache.save(job.template_id, root / CACHED_DIR_NAME)
        self._check_cancelled(job_id)

        with timer.step("verify_output"):
            verify_output(entry_point, WEBGL_ENTRY_POINT if target == BuildTarget.WEBGL else "APK")

        with timer.step("publish_artifacts"):
            if target == BuildTarget.WEBGL:
                tree = await self._assembler.publish_directory(
                    job_id, target.value, output, WEBGL_ENTRY_POINT, spool_dir=workdir
                )
                return {
                    "result_ref": tree.zip_ref,
                    "web_zip_ref": tree.zip_ref,
                    "web_index_ref": tree.index_ref,
                }
            key = await self._assembler.publish_binary(job_id, output, "apk")
            return {"result_ref": key, "native_package_ref": key}


# Global orchestrator instance
build_orchestrator = BuildOrchestrator()
