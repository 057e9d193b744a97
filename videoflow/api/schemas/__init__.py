from .job import (
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
    VideoInfoResponse,
)

__all__ = [
    "UploadUrlRequest", "UploadUrlResponse", "UploadCompleteRequest", "UploadCompleteResponse",
    "VideoInfoResponse", "RerunRequest", "DownloadUrlRequest", "DownloadUrlResponse",
    "JobResponse", "JobListResponse", "ErrorResponse",
]
