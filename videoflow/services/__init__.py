from .storage import ObjectMetadata, StorageService
from .job_store import JobStore
from .transcoder import FFmpegEngine, FFmpegError, VideoInfo
from .orchestrator import JobOrchestrator
from .queries import JobQueryService

__all__ = [
    "ObjectMetadata", "StorageService", "JobStore",
    "FFmpegEngine", "FFmpegError", "VideoInfo",
    "JobOrchestrator", "JobQueryService",
]
