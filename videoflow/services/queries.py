import asyncio
import uuid
from pathlib import Path

import structlog

from videoflow.core.cache import Cache, job_item_key, job_list_key
from videoflow.core.errors import ConflictError, InvalidRequestError, JobError, JobNotFoundError
from videoflow.models import Job, JobStatus
from videoflow.services.job_store import JobStore
from videoflow.services.storage import StorageService

logger = structlog.get_logger()

DOWNLOAD_TARGETS = ("source", "output")


def output_filename(job: Job) -> str:
    return f"{Path(job.original_filename).stem}_{job.target_profile.value}.mp4"


def job_view(job: Job, source_url: str | None = None, output_url: str | None = None) -> dict:
    """JSON-safe representation of a job, as cached and returned to clients."""
    return {
        "id": str(job.id),
        "status": job.status.value,
        "original_filename": job.original_filename,
        "content_type": job.content_type,
        "target_profile": job.target_profile.value,
        "progress": job.progress,
        "source_key": job.source_key,
        "output_key": job.output_key,
        "size_bytes": job.size_bytes,
        "duration_seconds": job.duration_seconds,
        "error_message": job.error_message,
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
        "source_url": source_url,
        "output_url": output_url,
        "download_available": job.status == JobStatus.COMPLETED and job.output_key is not None,
    }


class JobQueryService:
    """Read side: job views served through the cache.

    Views carry freshly signed download URLs, so a cache hit also saves the
    signing round-trips. A signing failure degrades the view to one without
    URLs instead of failing the read.
    """

    def __init__(
        self,
        store: JobStore,
        storage: StorageService,
        cache: Cache,
        list_ttl: int = 45,
        item_ttl: int = 30,
    ) -> None:
        self.store = store
        self.storage = storage
        self.cache = cache
        self.list_ttl = list_ttl
        self.item_ttl = item_ttl

    async def list_jobs(self, owner_id: str) -> list[dict]:
        # The generation is read before the store so a racing mutation retires this entry
        generation = await self.cache.generation(owner_id)
        key = None if generation is None else job_list_key(owner_id, generation)
        if key is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return cached

        jobs = await self.store.list_by_owner(owner_id)
        views = list(await asyncio.gather(*(self._view(job) for job in jobs)))
        if key is not None:
            await self.cache.set(key, views, self.list_ttl)
        return views

    async def list_all_jobs(self) -> list[dict]:
        """Every owner's jobs, newest first. Admin views are never cached."""
        jobs = await self.store.list_all()
        return list(await asyncio.gather(*(self._view(job) for job in jobs)))

    async def get_job(self, owner_id: str, job_id: uuid.UUID) -> dict:
        generation = await self.cache.generation(owner_id)
        key = None if generation is None else job_item_key(owner_id, job_id, generation)
        if key is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return cached

        job = await self._get_owned(owner_id, job_id)
        view = await self._view(job)
        if key is not None:
            await self.cache.set(key, view, self.item_ttl)
        return view

    async def request_download_url(self, owner_id: str, job_id: uuid.UUID, which: str = "output") -> dict:
        if which not in DOWNLOAD_TARGETS:
            raise InvalidRequestError(f"Unknown download target '{which}'. Allowed: source, output")

        # Straight from the store: a URL must never be signed for a stale key
        job = await self._get_owned(owner_id, job_id)
        if which == "output":
            if not job.output_key:
                raise ConflictError(job.id, job.status.value, "download the output of")
            key, filename = job.output_key, output_filename(job)
        else:
            key, filename = job.source_key, job.original_filename

        expires_in = self.storage.download_expiry
        url = await self.storage.get_signed_url(key, expires_in, filename)
        logger.info("download_url_generated", job_id=str(job.id), owner_id=owner_id, which=which)
        return {"url": url, "expires_in": expires_in, "which": which}

    async def _get_owned(self, owner_id: str, job_id: uuid.UUID) -> Job:
        job = await self.store.get(job_id)
        if job is None or job.owner_id != owner_id:
            raise JobNotFoundError(job_id)
        return job

    async def _view(self, job: Job) -> dict:
        source_url = output_url = None
        try:
            # Nothing to sign until the upload has been confirmed
            if job.status != JobStatus.UPLOADING:
                source_url = await self.storage.get_signed_url(job.source_key, filename=job.original_filename)
            if job.output_key:
                output_url = await self.storage.get_signed_url(job.output_key, filename=output_filename(job))
        except JobError as e:
            logger.warning("signed_url_failed", job_id=str(job.id), error=e.message)
            source_url = output_url = None
        return job_view(job, source_url, output_url)
