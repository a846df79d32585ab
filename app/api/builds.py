"""
Build API routes: submit, poll, cancel, rebuild, edit and reconfigure build jobs.
"""
import logging
from typing import Optional

from fastapi import APIRouter, File, HTTPException, Query, Request, UploadFile

from app.core.artifact_store import public_url
from app.core.errors import (
    BuildError,
    InvalidInputError,
    InvalidStateError,
    JobNotFoundError,
    TemplateNotFoundError,
)
from app.core.jobs import BuildJob, job_store
from app.core.media import MAX_MEDIA_UPLOAD_BYTES, MediaUpload
from app.core.orchestrator import build_orchestrator
from app.schemas.build import (
    BuildListItem,
    BuildListResponse,
    BuildStatus,
    BuildStatusResponse,
    BuildSubmitResponse,
    BuildTarget,
    BuildUpdateRequest,
    CancelResponse,
    ConfigUpdateRequest,
    DownloadUrlResponse,
    DraftBuildRequest,
    RebuildRequest,
    TemplateBuildRequest,
    normalize_target,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/builds", tags=["builds"])


def raise_http(error: BuildError) -> None:
    """Map a build error to its HTTP status."""
    if isinstance(error, (JobNotFoundError, TemplateNotFoundError)):
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, InvalidStateError):
        raise HTTPException(status_code=409, detail=str(error))
    if isinstance(error, InvalidInputError):
        raise HTTPException(status_code=400, detail=str(error))
    raise HTTPException(status_code=500, detail=str(error))


def get_base_url(request: Request) -> str:
    """PUBLIC_BASE_URL if set, otherwise the request's own origin."""
    configured = build_orchestrator.settings.public_base_url
    if configured:
        return configured
    scheme = request.headers.get("x-forwarded-proto", request.url.scheme)
    host = request.headers.get("x-forwarded-host", request.headers.get("host", ""))
    if host:
        return f"{scheme}://{host}"
    return str(request.base_url).rstrip("/")


def build_urls(job: BuildJob, base_url: str) -> dict:
    """Absolute URLs for every published artifact of a job."""
    urls: dict = {}
    for name in ("result_ref", "web_zip_ref", "web_index_ref", "native_package_ref",
                 "cover_ref", "preview_video_ref"):
        key = getattr(job, name)
        if key:
            urls[name.removesuffix("_ref")] = public_url(key, base_url)
    if job.screenshot_refs:
        urls["screenshots"] = [public_url(key, base_url) for key in job.screenshot_refs]
    return urls


def _submit_response(job: BuildJob) -> BuildSubmitResponse:
    return BuildSubmitResponse(
        job_id=job.id,
        status=job.status,
        build_target=job.build_target,
        created_at=job.created_at,
    )


def _status_response(job: BuildJob, http_request: Request) -> BuildStatusResponse:
    return BuildStatusResponse(
        job_id=job.id,
        name=job.name,
        description=job.description,
        template_id=job.template_id,
        build_target=job.build_target,
        status=job.status,
        error=job.error,
        last_log_line=job.last_log_line,
        timings=job.timings,
        result_ref=job.result_ref,
        web_zip_ref=job.web_zip_ref,
        web_index_ref=job.web_index_ref,
        native_package_ref=job.native_package_ref,
        cover_ref=job.cover_ref,
        screenshot_refs=job.screenshot_refs,
        preview_video_ref=job.preview_video_ref,
        urls=build_urls(job, get_base_url(http_request)),
        config=job.config,
        draft=job.draft,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


def _get_job_or_404(job_id: str) -> BuildJob:
    job = job_store.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("", status_code=202, response_model=BuildSubmitResponse)
async def submit_build(request: TemplateBuildRequest) -> BuildSubmitResponse:
    """
    Queue a build of an uploaded template.

    Returns immediately with job_id. Poll GET /builds/{job_id} for progress.
    """
    try:
        job = await build_orchestrator.submit_from_template(
            template_id=request.template_id,
            build_target=request.build_target,
            name=request.name,
            description=request.description,
            config=request.config,
        )
    except BuildError as e:
        raise_http(e)
    return _submit_response(job)


@router.post("/draft", status_code=202, response_model=BuildSubmitResponse)
async def submit_draft_build(request: DraftBuildRequest) -> BuildSubmitResponse:
    """
    Queue a build whose name, description and config are drafted from a prompt.

    Uses the most recent template when template_id is omitted. Draft generator
    failures fall back to defaults and never fail the request.
    """
    try:
        job = await build_orchestrator.submit_from_draft(
            prompt=request.prompt,
            notes=request.notes,
            template_id=request.template_id,
            build_target=request.build_target,
            config=request.config,
        )
    except BuildError as e:
        raise_http(e)
    return _submit_response(job)


@router.get("", response_model=BuildListResponse)
async def list_builds(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    status: Optional[BuildStatus] = Query(default=None),
) -> BuildListResponse:
    """List build jobs, most recent first."""
    jobs, total = job_store.list_jobs(limit=limit, offset=offset, status=status)
    return BuildListResponse(
        items=[
            BuildListItem(
                job_id=job.id,
                name=job.name,
                template_id=job.template_id,
                build_target=job.build_target,
                status=job.status,
                created_at=job.created_at,
            )
            for job in jobs
        ],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{job_id}", response_model=BuildStatusResponse)
async def get_build(job_id: str, http_request: Request) -> BuildStatusResponse:
    """Current status, progress line, timings and artifact refs of a job."""
    job = _get_job_or_404(job_id)
    return _status_response(job, http_request)


@router.patch("/{job_id}", response_model=BuildStatusResponse)
async def update_build(
    job_id: str, request: BuildUpdateRequest, http_request: Request
) -> BuildStatusResponse:
    """
    Update a job's name, description or build target.

    Names are trimmed and must not be blank. A new target applies to the next
    rebuild and is refused (409) while the job is queued or running.
    """
    try:
        job = build_orchestrator.update_details(
            job_id,
            name=request.name,
            description=request.description,
            build_target=request.build_target,
        )
    except BuildError as e:
        raise_http(e)
    return _status_response(job, http_request)


def _media_upload(upload: Optional[UploadFile]) -> Optional[MediaUpload]:
    """Empty parts count as absent; oversized ones are refused."""
    if upload is None or upload.size == 0:
        return None
    if upload.size is not None and upload.size > MAX_MEDIA_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail=f"Media file too large: {upload.filename}")
    return MediaUpload(filename=upload.filename, stream=upload.file)


@router.post("/{job_id}/media", response_model=BuildStatusResponse)
async def attach_media(
    job_id: str,
    http_request: Request,
    cover: Optional[UploadFile] = File(default=None),
    screenshots: Optional[list[UploadFile]] = File(default=None),
    video: Optional[UploadFile] = File(default=None),
) -> BuildStatusResponse:
    """
    Attach client-supplied media (multipart form fields cover, screenshots, video).

    Each given file replaces the corresponding media ref; screenshots replace
    the whole list.
    """
    shots = [shot for shot in (_media_upload(s) for s in screenshots or []) if shot is not None]
    try:
        job = await build_orchestrator.attach_media(
            job_id,
            cover=_media_upload(cover),
            screenshots=shots,
            video=_media_upload(video),
        )
    except BuildError as e:
        raise_http(e)
    return _status_response(job, http_request)


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_build(job_id: str) -> CancelResponse:
    """
    Cancel a queued or running job.

    Kills the live tool process, if any. Cancelling a finished job is a no-op
    that reports cancelled=false.
    """
    try:
        job, cancelled, message = build_orchestrator.cancel(job_id)
    except BuildError as e:
        raise_http(e)
    return CancelResponse(job_id=job.id, status=job.status, cancelled=cancelled, message=message)


@router.post("/{job_id}/rebuild", status_code=202, response_model=BuildSubmitResponse)
async def rebuild(job_id: str, request: Optional[RebuildRequest] = None) -> BuildSubmitResponse:
    """Queue a finished job again, optionally for another target."""
    build_target = request.build_target if request else None
    try:
        job = build_orchestrator.rebuild(job_id, build_target)
    except BuildError as e:
        raise_http(e)
    return _submit_response(job)


@router.put("/{job_id}/config")
async def update_config(job_id: str, request: ConfigUpdateRequest) -> dict:
    """Merge new runtime config values over the stored ones for the next build."""
    try:
        config = build_orchestrator.update_config(job_id, request.config)
    except BuildError as e:
        raise_http(e)
    return {"job_id": job_id, "config": config.to_patch_dict()}


@router.get("/{job_id}/runtime-config")
async def get_runtime_config(job_id: str) -> dict:
    """The config document injected into the job's project, camelCase keys."""
    job = _get_job_or_404(job_id)
    return build_orchestrator.runtime_config(job).to_patch_dict()


@router.get("/{job_id}/download-url", response_model=DownloadUrlResponse)
async def get_download_url(
    job_id: str,
    http_request: Request,
    target: Optional[str] = Query(default=None),
) -> DownloadUrlResponse:
    """
    Download URL for a finished target's primary artifact.

    target defaults to the job's current build target; 'android' is accepted
    for android_apk.
    """
    job = _get_job_or_404(job_id)
    if target:
        try:
            build_target = BuildTarget(normalize_target(target))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown build target: {target}")
    else:
        build_target = job.build_target

    key = job.web_zip_ref if build_target == BuildTarget.WEBGL else job.native_package_ref
    if not key:
        raise HTTPException(
            status_code=404,
            detail=f"No {build_target.value} artifact for this job",
        )
    return DownloadUrlResponse(
        job_id=job.id,
        build_target=build_target,
        key=key,
        url=public_url(key, get_base_url(http_request)),
    )
