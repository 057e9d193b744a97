from .base import Base, create_db_engine, create_session_factory
from .job import DEFAULT_PROFILE, TERMINAL_STATUSES, Job, JobStatus, TargetProfile

__all__ = [
    "Base",
    "create_db_engine",
    "create_session_factory",
    "Job",
    "JobStatus",
    "TargetProfile",
    "DEFAULT_PROFILE",
    "TERMINAL_STATUSES",
]
