"""Persistence port for the job aggregate."""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from repairhub.errors import ConcurrentModification, JobNotFound
from repairhub.models.job import Job


async def load_job(db: AsyncSession, job_id: uuid.UUID, for_update: bool = False) -> Job:
    """Load a job with its bids, change orders, escrow attempts and timeline.

    ``for_update`` takes a row lock on dialects that support it (SQLite ignores it).
    """
    stmt = select(Job).where(Job.job_id == job_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    job = result.scalar_one_or_none()
    if job is None:
        raise JobNotFound(f"Job {job_id} not found", job_id=job_id)
    return job


async def save(db: AsyncSession) -> None:
    """Commit the unit of work. A version mismatch becomes ConcurrentModification."""
    try:
        await db.commit()
    except StaleDataError as exc:
        await db.rollback()
        raise ConcurrentModification("Job was modified by another operation") from exc
