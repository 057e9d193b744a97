from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from videoflow.models.job import JobStatus, TargetProfile


class UploadUrlRequest(BaseModel):
    filename: str = Field(..., max_length=255, description="Original file name, e.g. clip.mp4")
    content_type: str = Field(..., max_length=100, description="MIME type the PUT will carry")
    # Plain string so an unknown profile surfaces as a validation_error, not a 422
    target_profile: str | None = Field(None, description="480p, 720p or 1080p (default 720p)")


class UploadUrlResponse(BaseModel):
    job_id: UUID
    upload_url: str
    storage_key: str
    expires_in: int


class UploadCompleteRequest(BaseModel):
    storage_key: str = Field(..., min_length=1, max_length=512)


class VideoInfoResponse(BaseModel):
    duration: float | None = None
    width: int | None = None
    height: int | None = None
    format: str | None = None
    size_bytes: int | None = None
    content_type: str | None = None


class UploadCompleteResponse(BaseModel):
    job_id: UUID
    status: JobStatus = JobStatus.PROCESSING
    video_info: VideoInfoResponse


class RerunRequest(BaseModel):
    target_profile: str | None = None


class DownloadUrlRequest(BaseModel):
    which: str = Field("output", description="source or output")


class DownloadUrlResponse(BaseModel):
    url: str
    expires_in: int
    which: str


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: JobStatus
    original_filename: str
    content_type: str
    target_profile: TargetProfile
    progress: int
    source_key: str
    output_key: str | None = None
    size_bytes: int | None = None
    duration_seconds: float | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime
    source_url: str | None = None
    output_url: str | None = None
    download_available: bool = False

    @classmethod
    def from_job(cls, job) -> "JobResponse":
        return cls(
            id=job.id,
            status=job.status,
            original_filename=job.original_filename,
            content_type=job.content_type,
            target_profile=job.target_profile,
            progress=job.progress,
            source_key=job.source_key,
            output_key=job.output_key,
            size_bytes=job.size_bytes,
            duration_seconds=job.duration_seconds,
            error_message=job.error_message,
            created_at=job.created_at,
            updated_at=job.updated_at,
            download_available=job.status == JobStatus.COMPLETED and job.output_key is not None,
        )


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
    total: int


class ErrorResponse(BaseModel):
    error: str
    detail: str
