"""
Shared fixtures for videoflow tests.
"""

import asyncio
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

# ============================================================================
# Set test environment BEFORE any videoflow imports
# ============================================================================
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["REDIS_URL"] = ""
os.environ["S3_BUCKET"] = "test-bucket"
os.environ["S3_ENDPOINT"] = "http://localhost:9000"
os.environ["S3_ACCESS_KEY"] = "minioadmin"
os.environ["S3_SECRET_KEY"] = "minioadmin"

# Clear cached settings before any import
import videoflow.core.config
videoflow.core.config.get_settings.cache_clear()

import pytest
from faker import Faker

from videoflow.core.cache import Cache
from videoflow.core.errors import NotConfiguredError, ObjectNotFoundError
from videoflow.models import Base, Job, JobStatus, TargetProfile, create_db_engine, create_session_factory
from videoflow.services import JobOrchestrator, JobQueryService, JobStore, ObjectMetadata, VideoInfo

fake = Faker()


# ============================================================================
# Fakes for external collaborators
# ============================================================================


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the cache."""

    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}
        self.expiries: dict[str, int] = {}
        self._expires_at: dict[str, float] = {}
        self.closed = False

    async def get(self, key):
        expires_at = self._expires_at.get(key)
        if expires_at is not None and time.monotonic() >= expires_at:
            self.data.pop(key, None)
            self._expires_at.pop(key, None)
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value.encode() if isinstance(value, str) else value
        self.expiries[key] = ex
        if ex:
            self._expires_at[key] = time.monotonic() + ex
        return True

    async def incr(self, key):
        value = int(self.data.get(key, b"0")) + 1
        self.data[key] = str(value).encode()
        return value

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.expiries.pop(key, None)
            self._expires_at.pop(key, None)
        return removed

    async def aclose(self):
        self.closed = True


class FakeStorage:
    """In-memory object store with the StorageService interface."""

    def __init__(self, configured: bool = True) -> None:
        self.bucket = "test-bucket" if configured else ""
        self.upload_expiry = 3600
        self.download_expiry = 3600
        self.objects: dict[str, ObjectMetadata] = {}
        self.deleted: list[str] = []
        self.sign_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.metadata_error: Exception | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.bucket)

    def ensure_configured(self) -> None:
        if not self.is_configured:
            raise NotConfiguredError("Object store")

    def put_object(self, key: str, size: int = 1_048_576, content_type: str = "video/mp4") -> None:
        """Simulate the client's direct PUT."""
        self.objects[key] = ObjectMetadata(size=size, content_type=content_type)

    async def put_signed_url(self, key, content_type, expires_in=None):
        self.ensure_configured()
        if self.sign_error:
            raise self.sign_error
        return f"https://storage.test/{self.bucket}/{key}?X-Amz-Signature=put"

    async def get_signed_url(self, key, expires_in=None, filename=None):
        self.ensure_configured()
        if self.sign_error:
            raise self.sign_error
        return f"https://storage.test/{self.bucket}/{key}?X-Amz-Signature=get"

    async def upload_file(self, local_path, key, content_type=None):
        self.put_object(key, content_type=content_type)
        return key

    async def exists(self, key):
        self.ensure_configured()
        return key in self.objects

    async def metadata(self, key):
        self.ensure_configured()
        if self.metadata_error:
            raise self.metadata_error
        if key not in self.objects:
            raise ObjectNotFoundError(key)
        return self.objects[key]

    async def delete(self, key):
        self.ensure_configured()
        if self.delete_error:
            raise self.delete_error
        self.objects.pop(key, None)
        self.deleted.append(key)

    async def ensure_bucket_exists(self):
        return None

    async def ping(self):
        return self.is_configured


@dataclass
class EngineCall:
    source_key: str
    output_key: str
    profile: TargetProfile
    on_progress: object
    on_done: object
    duration: float | None = None
    finished: asyncio.Event = field(default_factory=asyncio.Event)


class FakeEngine:
    """Transcoding engine driven by the test.

    In manual mode ``run`` blocks until the test sets ``call.finished``; the
    test reports progress and completion through the recorded callbacks. In
    auto mode it reports ``auto_progress`` and then completes on its own.
    """

    def __init__(self, auto: bool = False) -> None:
        self.auto = auto
        self.auto_progress = [50]
        self.auto_error: str | None = None
        self.available = True
        self.probe_result = VideoInfo(duration=12.5, width=1280, height=720, format="mov,mp4,m4a,3gp,3g2,mj2")
        self.probe_error: Exception | None = None
        self.run_error: Exception | None = None
        self.calls: list[EngineCall] = []

    @property
    def is_available(self) -> bool:
        return self.available

    def ensure_available(self) -> None:
        if not self.available:
            raise NotConfiguredError("Transcoding engine")

    async def probe(self, source_key):
        if self.probe_error:
            raise self.probe_error
        return self.probe_result

    async def run(self, source_key, output_key, profile, on_progress, on_done, duration=None):
        call = EngineCall(source_key, output_key, profile, on_progress, on_done, duration)
        self.calls.append(call)
        if self.run_error:
            raise self.run_error
        if self.auto:
            for percent in self.auto_progress:
                await on_progress(percent)
            if self.auto_error:
                await on_done(None, self.auto_error)
            else:
                await on_done(output_key, None)
            return
        await call.finished.wait()


async def wait_for_calls(engine: FakeEngine, count: int = 1, timeout: float = 2.0) -> EngineCall:
    """Wait until the detached transcode task has reached the engine."""

    async def _poll():
        while len(engine.calls) < count:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)
    return engine.calls[count - 1]


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """Create a per-test SQLite engine.

    A file database rather than :memory: so detached transcode tasks and the
    test body each get their own connection.
    """
    engine = create_db_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def job_store(session_factory) -> JobStore:
    return JobStore(session_factory)


# ============================================================================
# Collaborator Fixtures
# ============================================================================


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis: FakeRedis) -> Cache:
    return Cache(fake_redis)


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def wait_for_engine():
    return wait_for_calls


@pytest.fixture
def orchestrator(job_store, storage, cache, engine) -> JobOrchestrator:
    return JobOrchestrator(job_store, storage, cache, engine)


@pytest.fixture
def queries(job_store, storage, cache) -> JobQueryService:
    return JobQueryService(job_store, storage, cache, list_ttl=45, item_ttl=30)


# ============================================================================
# Job Fixtures
# ============================================================================


@pytest.fixture
def owner_id() -> str:
    return str(fake.uuid4())


@pytest.fixture
def make_job(session_factory, owner_id):
    """Insert a job row directly in the given state."""

    def _make_job(status: JobStatus = JobStatus.UPLOADING, owner: str | None = None, **overrides) -> Job:
        owner = owner or owner_id
        job_id = overrides.pop("id", uuid.uuid4())
        values = dict(
            id=job_id,
            owner_id=owner,
            status=status,
            original_filename="test_video.mp4",
            content_type="video/mp4",
            source_key=f"videos/{owner}/{job_id}/input.mp4",
            target_profile=TargetProfile.P720,
            progress=0,
            created_at=datetime.now(timezone.utc),
            updated_at=datetime.now(timezone.utc),
        )
        if status == JobStatus.COMPLETED:
            values.update(progress=100, output_key=f"transcoded/{owner}/{job_id}/720p.mp4")
        if status == JobStatus.FAILED:
            values.update(error_message="FFmpeg failed: Unsupported codec")
        values.update(overrides)

        job = Job(**values)
        with session_factory() as db:
            db.add(job)
            db.commit()
            db.refresh(job)
        return job

    return _make_job
