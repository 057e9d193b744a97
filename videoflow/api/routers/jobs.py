from uuid import UUID

from fastapi import APIRouter, Response, status

from videoflow.api.dependencies import AdminOwner, CurrentOwner, Orchestrator, QueryService
from videoflow.api.schemas import (
    DownloadUrlRequest,
    DownloadUrlResponse,
    ErrorResponse,
    JobListResponse,
    JobResponse,
    RerunRequest,
    UploadCompleteRequest,
    UploadCompleteResponse,
    UploadUrlRequest,
    UploadUrlResponse,
)
from videoflow.core.config import settings

router = APIRouter(
    prefix="/jobs",
    tags=["Jobs"],
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)


@router.post(
    "/upload-url",
    response_model=UploadUrlResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request an upload slot",
    description=f"""
Creates a job in `uploading` state and returns a signed URL for a direct `PUT` to the object store.

**Supported formats:** `.mp4`, `.avi`, `.mov`, `.mkv`, `.webm`

**Profiles:** `480p`, `720p` (default), `1080p`

The URL is valid for {settings.upload_url_expiry_seconds // 60} minutes and only accepts the declared content type.
    """,
)
async def request_upload_url(body: UploadUrlRequest, owner_id: CurrentOwner, orchestrator: Orchestrator):
    slot = await orchestrator.request_upload_slot(owner_id, body.filename, body.content_type, body.target_profile)
    return UploadUrlResponse(**slot)


@router.post(
    "/{job_id}/upload-complete",
    response_model=UploadCompleteResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Confirm a finished upload",
    description="""
Verifies the object exists, probes its metadata and starts the transcode in the background.

- `404` if the object is not in the store yet; the job stays `uploading` and the call can be retried.
- `409` if the job is no longer `uploading`.
    """,
)
async def upload_complete(
    job_id: UUID,
    body: UploadCompleteRequest,
    owner_id: CurrentOwner,
    orchestrator: Orchestrator,
):
    result = await orchestrator.confirm_upload(owner_id, job_id, body.storage_key)
    return UploadCompleteResponse(job_id=result["job_id"], video_info=result["video_info"])


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="Lists the caller's jobs, newest first. Safe to poll.",
)
async def list_jobs(owner_id: CurrentOwner, queries: QueryService):
    views = await queries.list_jobs(owner_id)
    return JobListResponse(jobs=[JobResponse.model_validate(v) for v in views], total=len(views))


# Registered before /{job_id} so "all" is not parsed as a job id
@router.get(
    "/all",
    response_model=JobListResponse,
    summary="List all jobs (admin)",
    description="Lists every owner's jobs, newest first. Requires the admin group in `X-Owner-Groups`; `403` otherwise.",
    responses={403: {"model": ErrorResponse}},
)
async def list_all_jobs(admin_id: AdminOwner, queries: QueryService):
    views = await queries.list_all_jobs()
    return JobListResponse(jobs=[JobResponse.model_validate(v) for v in views], total=len(views))


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Job details",
    description="""
Returns the job with its progress and signed download URLs.

**Status values:** `uploading`, `processing`, `pending`, `completed`, `failed`
    """,
)
async def get_job(job_id: UUID, owner_id: CurrentOwner, queries: QueryService):
    return JobResponse.model_validate(await queries.get_job(owner_id, job_id))


@router.post(
    "/{job_id}/download-url",
    response_model=DownloadUrlResponse,
    summary="Sign a download URL",
    description=f"Signs a GET URL for the `source` or the `output` video, valid for {settings.download_url_expiry_seconds // 60} minutes.",
)
async def download_url(
    job_id: UUID,
    owner_id: CurrentOwner,
    queries: QueryService,
    body: DownloadUrlRequest | None = None,
):
    which = body.which if body else "output"
    return DownloadUrlResponse(**await queries.request_download_url(owner_id, job_id, which))


@router.put(
    "/{job_id}",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Re-run a job",
    description="Re-transcodes a `completed` or `failed` job, optionally with a new profile. Refused with `409` otherwise.",
)
async def rerun_job(
    job_id: UUID,
    owner_id: CurrentOwner,
    orchestrator: Orchestrator,
    body: RerunRequest | None = None,
):
    job = await orchestrator.rerun(owner_id, job_id, body.target_profile if body else None)
    return JobResponse.from_job(job)


@router.delete(
    "/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a job",
    description="Deletes the job and, best effort, its source and output videos.",
)
async def delete_job(job_id: UUID, owner_id: CurrentOwner, orchestrator: Orchestrator):
    await orchestrator.delete_job(owner_id, job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
