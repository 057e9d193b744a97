import asyncio
import uuid
from collections.abc import Iterable
from typing import Any

import structlog
from sqlalchemy import delete, select, text, update
from sqlalchemy.orm import sessionmaker

from videoflow.models import Job, JobStatus
from videoflow.models.job import utcnow

logger = structlog.get_logger()


class JobStore:
    """Durable Job rows on SQLAlchemy.

    Sessions are short-lived and opened per call. Blocking work runs in a
    worker thread so callers on the event loop are never blocked.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def create(self, job: Job) -> Job:
        return await asyncio.to_thread(self._create, job)

    async def get(self, job_id: uuid.UUID) -> Job | None:
        return await asyncio.to_thread(self._get, job_id)

    async def list_by_owner(self, owner_id: str) -> list[Job]:
        return await asyncio.to_thread(self._list_by_owner, owner_id)

    async def list_all(self) -> list[Job]:
        return await asyncio.to_thread(self._list_all)

    async def list_by_status(self, statuses: Iterable[JobStatus]) -> list[Job]:
        return await asyncio.to_thread(self._list_by_status, list(statuses))

    async def update(
        self,
        job_id: uuid.UUID,
        expected: Iterable[JobStatus] | None = None,
        **fields: Any,
    ) -> Job | None:
        """Set fields on one row and bump ``updated_at``.

        With ``expected`` the write is conditional on the current status
        (``... WHERE id = :id AND status IN (:expected)``). Returns the fresh
        row, or None when no row matched.
        """
        expected_list = list(expected) if expected is not None else None
        return await asyncio.to_thread(self._update, job_id, expected_list, fields)

    async def delete(self, job_id: uuid.UUID) -> bool:
        return await asyncio.to_thread(self._delete, job_id)

    async def ping(self) -> bool:
        return await asyncio.to_thread(self._ping)

    def _create(self, job: Job) -> Job:
        with self.session_factory() as db:
            db.add(job)
            db.commit()
            db.refresh(job)
        logger.info("job_created", job_id=str(job.id), owner_id=job.owner_id)
        return job

    def _get(self, job_id: uuid.UUID) -> Job | None:
        with self.session_factory() as db:
            return db.get(Job, job_id)

    def _list_by_owner(self, owner_id: str) -> list[Job]:
        stmt = select(Job).where(Job.owner_id == owner_id).order_by(Job.created_at.desc())
        with self.session_factory() as db:
            return list(db.scalars(stmt).all())

    def _list_all(self) -> list[Job]:
        stmt = select(Job).order_by(Job.created_at.desc())
        with self.session_factory() as db:
            return list(db.scalars(stmt).all())

    def _list_by_status(self, statuses: list[JobStatus]) -> list[Job]:
        stmt = select(Job).where(Job.status.in_(statuses))
        with self.session_factory() as db:
            return list(db.scalars(stmt).all())

    def _update(self, job_id: uuid.UUID, expected: list[JobStatus] | None, fields: dict) -> Job | None:
        values = dict(fields)
        values.setdefault("updated_at", utcnow())

        stmt = update(Job).where(Job.id == job_id)
        if expected is not None:
            stmt = stmt.where(Job.status.in_(expected))
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        with self.session_factory() as db:
            result = db.execute(stmt)
            db.commit()
            if result.rowcount == 0:
                return None
            return db.get(Job, job_id)

    def _delete(self, job_id: uuid.UUID) -> bool:
        with self.session_factory() as db:
            result = db.execute(delete(Job).where(Job.id == job_id))
            db.commit()
            return result.rowcount > 0

    def _ping(self) -> bool:
        with self.session_factory() as db:
            db.execute(text("SELECT 1"))
        return True
