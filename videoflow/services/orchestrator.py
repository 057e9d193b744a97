import asyncio
import uuid
from functools import partial
from pathlib import Path

import structlog

from videoflow.core.cache import Cache
from videoflow.core.errors import (
    ConflictError,
    InvalidRequestError,
    JobError,
    JobNotFoundError,
    ObjectNotFoundError,
)
from videoflow.models import DEFAULT_PROFILE, TERMINAL_STATUSES, Job, JobStatus, TargetProfile
from videoflow.services.job_store import JobStore
from videoflow.services.storage import StorageService
from videoflow.services.transcoder import output_key_for

logger = structlog.get_logger()

SUPPORTED_FORMATS = {".mp4", ".avi", ".mov", ".mkv", ".webm"}
SUPPORTED_CONTENT_TYPES = {
    "video/mp4",
    "video/x-msvideo",
    "video/avi",
    "video/msvideo",
    "video/quicktime",
    "video/x-matroska",
    "video/webm",
}

INTERRUPTED_MESSAGE = "Interrupted by a service restart; re-run the job"
MAX_ERROR_LENGTH = 500


def parse_profile(value: str | TargetProfile | None) -> TargetProfile:
    if value is None:
        return DEFAULT_PROFILE
    if isinstance(value, TargetProfile):
        return value
    try:
        return TargetProfile(value)
    except ValueError:
        allowed = ", ".join(p.value for p in TargetProfile)
        raise InvalidRequestError(f"Unknown target profile '{value}'. Allowed: {allowed}")


def validate_upload_request(filename: str, content_type: str) -> str:
    """Check the container format and return the lowercased extension."""
    if not filename or not filename.strip():
        raise InvalidRequestError("No filename provided")

    ext = Path(filename).suffix.lower()
    if ext not in SUPPORTED_FORMATS:
        allowed = ", ".join(sorted(SUPPORTED_FORMATS))
        raise InvalidRequestError(f"Unsupported format '{ext or filename}'. Allowed: {allowed}")

    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    if not media_type.startswith("video/") or media_type not in SUPPORTED_CONTENT_TYPES:
        raise InvalidRequestError(f"Unsupported content type '{content_type}'")
    return ext


def source_key_for(owner_id: str, job_id: uuid.UUID, ext: str) -> str:
    return f"videos/{owner_id}/{job_id}/input{ext}"


class JobOrchestrator:
    """Drives jobs through ``uploading -> processing -> completed|failed``.

    Every transition is a conditional update guarded by the statuses it may
    leave, so two racing requests for the same job cannot both win. Each
    transcode runs as a detached task; the engine reports back through
    ``_on_progress`` and ``_on_done``. Every mutation retires the owner's
    cached views.
    """

    def __init__(
        self,
        store: JobStore,
        storage: StorageService,
        cache: Cache,
        engine,
        stall_timeout: float | None = None,
    ) -> None:
        self.store = store
        self.storage = storage
        self.cache = cache
        self.engine = engine
        self.stall_timeout = stall_timeout
        self._tasks: set[asyncio.Task] = set()
        self._heartbeats: dict[uuid.UUID, float] = {}

    @property
    def active_transcodes(self) -> int:
        return len(self._tasks)

    async def request_upload_slot(
        self,
        owner_id: str,
        filename: str,
        content_type: str,
        profile: str | TargetProfile | None = None,
    ) -> dict:
        ext = validate_upload_request(filename, content_type)
        target = parse_profile(profile)
        self.storage.ensure_configured()

        job_id = uuid.uuid4()
        source_key = source_key_for(owner_id, job_id, ext)
        # Sign before persisting so a store outage leaves no orphan row
        upload_url = await self.storage.put_signed_url(source_key, content_type)

        job = Job(
            id=job_id,
            owner_id=owner_id,
            status=JobStatus.UPLOADING,
            original_filename=filename,
            content_type=content_type,
            source_key=source_key,
            target_profile=target,
            progress=0,
        )
        await self.store.create(job)
        await self.cache.invalidate_job(owner_id, job_id)

        logger.info("upload_slot_issued", job_id=str(job_id), owner_id=owner_id, profile=target.value)
        return {
            "job_id": job_id,
            "upload_url": upload_url,
            "storage_key": source_key,
            "expires_in": self.storage.upload_expiry,
        }

    async def confirm_upload(self, owner_id: str, job_id: uuid.UUID, storage_key: str) -> dict:
        job = await self._get_owned(owner_id, job_id)
        if job.status != JobStatus.UPLOADING:
            raise ConflictError(job.id, job.status.value, "confirm upload for")

        self.engine.ensure_available()
        if storage_key != job.source_key or not await self.storage.exists(job.source_key):
            logger.warning("upload_object_missing", job_id=str(job.id), key=storage_key)
            raise ObjectNotFoundError(storage_key)

        # Either probe failing leaves the job uploading so the confirm can be retried
        meta = await self.storage.metadata(job.source_key)
        info = await self.engine.probe(job.source_key)

        updated = await self.store.update(
            job.id,
            expected=[JobStatus.UPLOADING],
            status=JobStatus.PROCESSING,
            progress=0,
            size_bytes=meta.size,
            duration_seconds=info.duration,
            error_message=None,
        )
        if updated is None:
            await self._raise_lost_race(job.id, "confirm upload for")
        await self.cache.invalidate_job(owner_id, job.id)

        logger.info("upload_confirmed", job_id=str(job.id), size_bytes=meta.size, duration=info.duration)
        self._start_transcode(updated)

        video_info = info.to_dict()
        video_info["size_bytes"] = meta.size
        video_info["content_type"] = meta.content_type
        return {"job_id": job.id, "video_info": video_info}

    async def rerun(self, owner_id: str, job_id: uuid.UUID, profile: str | TargetProfile | None = None) -> Job:
        job = await self._get_owned(owner_id, job_id)
        target = parse_profile(profile) if profile is not None else job.target_profile
        if job.status not in TERMINAL_STATUSES:
            raise ConflictError(job.id, job.status.value, "re-run")

        self.storage.ensure_configured()
        self.engine.ensure_available()

        updated = await self.store.update(
            job.id,
            expected=TERMINAL_STATUSES,
            status=JobStatus.PENDING,
            target_profile=target,
            progress=0,
            output_key=None,
            error_message=None,
        )
        if updated is None:
            await self._raise_lost_race(job.id, "re-run")
        await self.cache.invalidate_job(owner_id, job.id)

        # The previous output is superseded whatever the new profile
        if job.output_key:
            await self._delete_blob(job.id, job.output_key)

        logger.info("job_rerun_requested", job_id=str(job.id), profile=target.value)
        self._start_transcode(updated)
        return updated

    async def delete_job(self, owner_id: str, job_id: uuid.UUID) -> None:
        job = await self._get_owned(owner_id, job_id)

        # Blob cleanup never blocks removing the record. Without a recorded output the
        # derived key is tried too, in case a run uploaded before it was cut short.
        output_key = job.output_key or output_key_for(job.source_key, job.target_profile)
        for key in (job.source_key, output_key):
            await self._delete_blob(job.id, key)

        deleted = await self.store.delete(job.id)
        await self.cache.invalidate_job(owner_id, job.id)
        if not deleted:
            raise JobNotFoundError(job.id)
        logger.info("job_deleted", job_id=str(job.id), owner_id=owner_id)

    async def recover_interrupted(self) -> int:
        """Fail jobs a previous process left mid-flight so their owners can re-run them."""
        interrupted = [JobStatus.PROCESSING, JobStatus.PENDING]
        recovered = 0
        for job in await self.store.list_by_status(interrupted):
            updated = await self.store.update(
                job.id,
                expected=interrupted,
                status=JobStatus.FAILED,
                output_key=None,
                error_message=INTERRUPTED_MESSAGE,
            )
            if updated is not None:
                recovered += 1
                await self.cache.invalidate_job(job.owner_id, job.id)
        if recovered:
            logger.warning("interrupted_jobs_failed", count=recovered)
        return recovered

    async def drain(self) -> None:
        """Wait for every in-flight transcode to finish."""
        while self._tasks:
            await asyncio.wait(list(self._tasks))

    async def shutdown(self, grace_seconds: float = 5.0) -> None:
        if not self._tasks:
            return
        _, pending = await asyncio.wait(list(self._tasks), timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            # Rows stay processing and are failed by recover_interrupted on the next start
            logger.warning("transcodes_cancelled", count=len(pending))
            await asyncio.wait(pending)

    async def _get_owned(self, owner_id: str, job_id: uuid.UUID) -> Job:
        job = await self.store.get(job_id)
        # Foreign jobs look exactly like missing ones
        if job is None or job.owner_id != owner_id:
            raise JobNotFoundError(job_id)
        return job

    async def _raise_lost_race(self, job_id: uuid.UUID, operation: str) -> None:
        current = await self.store.get(job_id)
        if current is None:
            raise JobNotFoundError(job_id)
        raise ConflictError(job_id, current.status.value, operation)

    async def _delete_blob(self, job_id: uuid.UUID, key: str) -> None:
        try:
            await self.storage.delete(key)
        except JobError as e:
            logger.warning("blob_delete_failed", job_id=str(job_id), key=key, error=e.message)

    def _start_transcode(self, job: Job) -> None:
        task = asyncio.create_task(
            self._drive_transcode(
                job.id, job.owner_id, job.source_key, job.target_profile, job.status, job.duration_seconds
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("transcode_task_crashed", error=str(task.exception()))

    async def _drive_transcode(
        self,
        job_id: uuid.UUID,
        owner_id: str,
        source_key: str,
        profile: TargetProfile,
        status: JobStatus,
        duration: float | None = None,
    ) -> None:
        try:
            if status == JobStatus.PENDING:
                started = await self.store.update(job_id, expected=[JobStatus.PENDING], status=JobStatus.PROCESSING)
                if started is None:
                    logger.info("transcode_skipped", job_id=str(job_id))
                    return
                await self.cache.invalidate_job(owner_id, job_id)

            output_key = output_key_for(source_key, profile)
            logger.info("transcode_started", job_id=str(job_id), profile=profile.value, output_key=output_key)

            run = self.engine.run(
                source_key,
                output_key,
                profile,
                partial(self._on_progress, job_id, owner_id),
                partial(self._on_done, job_id, owner_id),
                duration=duration,
            )
            if self.stall_timeout is None:
                await run
            else:
                await self._run_with_watchdog(job_id, owner_id, run)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("transcode_orchestration_failed", job_id=str(job_id), error=str(e))
            await self._fail(job_id, owner_id, str(e) or type(e).__name__)

    async def _run_with_watchdog(self, job_id: uuid.UUID, owner_id: str, run) -> None:
        loop = asyncio.get_running_loop()
        engine_task = asyncio.ensure_future(run)
        self._heartbeats[job_id] = loop.time()
        try:
            while True:
                remaining = self._heartbeats[job_id] + self.stall_timeout - loop.time()
                if remaining <= 0:
                    engine_task.cancel()
                    await asyncio.wait({engine_task})
                    logger.error("transcode_stalled", job_id=str(job_id), timeout=self.stall_timeout)
                    await self._fail(job_id, owner_id, f"No progress reported for {self.stall_timeout:g}s")
                    return
                done, _ = await asyncio.wait({engine_task}, timeout=remaining)
                if done:
                    engine_task.result()
                    return
        finally:
            self._heartbeats.pop(job_id, None)
            if not engine_task.done():
                engine_task.cancel()

    async def _on_progress(self, job_id: uuid.UUID, owner_id: str, percent: int) -> None:
        if job_id in self._heartbeats:
            self._heartbeats[job_id] = asyncio.get_running_loop().time()

        percent = max(0, min(100, int(percent)))
        updated = await self.store.update(job_id, expected=[JobStatus.PROCESSING], progress=percent)
        if updated is None:
            logger.warning("progress_ignored", job_id=str(job_id), percent=percent)
            return
        await self.cache.invalidate_job(owner_id, job_id)

    async def _on_done(self, job_id: uuid.UUID, owner_id: str, output_key: str | None, error: str | None) -> None:
        if error is not None or not output_key:
            await self._fail(job_id, owner_id, error or "Transcoding engine reported no output")
            return

        updated = await self.store.update(
            job_id,
            expected=[JobStatus.PROCESSING],
            status=JobStatus.COMPLETED,
            progress=100,
            output_key=output_key,
            error_message=None,
        )
        if updated is None:
            logger.warning("completion_ignored", job_id=str(job_id), output_key=output_key)
            current = await self.store.get(job_id)
            # Deleted or already failed: nothing will ever point at this upload
            if current is None or current.output_key != output_key:
                await self._delete_blob(job_id, output_key)
            return
        await self.cache.invalidate_job(owner_id, job_id)
        logger.info("transcode_completed", job_id=str(job_id), output_key=output_key)

    async def _fail(self, job_id: uuid.UUID, owner_id: str, message: str) -> None:
        updated = await self.store.update(
            job_id,
            expected=[JobStatus.PROCESSING, JobStatus.PENDING],
            status=JobStatus.FAILED,
            output_key=None,
            error_message=message[:MAX_ERROR_LENGTH],
        )
        if updated is None:
            logger.warning("failure_ignored", job_id=str(job_id), error=message)
            return
        await self.cache.invalidate_job(owner_id, job_id)
        logger.error("transcode_failed", job_id=str(job_id), error=message)
