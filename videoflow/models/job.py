import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Enum, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base
from .types import GUID, UTCDateTime


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, enum.Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class TargetProfile(str, enum.Enum):
    P480 = "480p"
    P720 = "720p"
    P1080 = "1080p"

    @property
    def size(self) -> str:
        return _PROFILE_PRESETS[self][0]

    @property
    def video_bitrate(self) -> str:
        return _PROFILE_PRESETS[self][1]


_PROFILE_PRESETS = {
    TargetProfile.P480: ("854x480", "1000k"),
    TargetProfile.P720: ("1280x720", "2500k"),
    TargetProfile.P1080: ("1920x1080", "5000k"),
}

DEFAULT_PROFILE = TargetProfile.P720


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, values_callable=lambda e: [m.value for m in e]),
        default=JobStatus.UPLOADING,
        nullable=False,
        index=True,
    )

    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(100), nullable=False)
    source_key: Mapped[str] = mapped_column(String(512), nullable=False)
    target_profile: Mapped[TargetProfile] = mapped_column(
        Enum(TargetProfile, values_callable=lambda e: [m.value for m in e]),
        default=DEFAULT_PROFILE,
        nullable=False,
    )

    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    output_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Job {self.id} {self.status.value}>"
