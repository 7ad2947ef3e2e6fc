from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import JobTransitionError
from ..models import BatchPrepStatus, GenerationJob, GenerationJobHistory, JobStatus, JobType, MealPlan

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_uuid(value: uuid.UUID | str) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _record_history(session: AsyncSession, job: GenerationJob) -> None:
    session.add(
        GenerationJobHistory(
            job_id=job.id,
            user_id=job.user_id,
            status=job.status,
            progress_message=job.progress_message,
            meal_plan_id=job.meal_plan_id,
            error_message=job.error_message,
        )
    )


async def _commit(session: AsyncSession) -> None:
    try:
        await session.commit()
    except Exception:  # pragma: no cover
        await session.rollback()
        raise


async def create_job(
    session: AsyncSession,
    *,
    user_id: str,
    job_type: str = JobType.MEAL_PLAN,
    options: Optional[Dict[str, Any]] = None,
    meal_plan_id: uuid.UUID | None = None,
    commit: bool = True,
) -> GenerationJob:
    job = GenerationJob(
        id=uuid.uuid4(),
        user_id=user_id,
        job_type=job_type,
        status=JobStatus.PENDING,
        progress_message="Queued",
        options=options or {},
        meal_plan_id=meal_plan_id,
    )
    session.add(job)
    await session.flush()
    _record_history(session, job)
    if commit:
        await _commit(session)
        await session.refresh(job)
    logger.info("Generation job created job=%s user=%s type=%s", job.id, user_id, job_type)
    return job


async def get_job(
    session: AsyncSession,
    job_id: uuid.UUID | str,
    *,
    expected_user_id: Optional[str] = None,
) -> Optional[GenerationJob]:
    """Load a job; raises PermissionError when it belongs to someone else."""
    try:
        key = _as_uuid(job_id)
    except ValueError:
        return None
    job = await session.get(GenerationJob, key)
    if job is None:
        return None
    if expected_user_id is not None and job.user_id != expected_user_id:
        raise PermissionError("Job does not belong to user")
    return job


async def find_in_flight_job(
    session: AsyncSession,
    user_id: str,
    *,
    job_type: str = JobType.MEAL_PLAN,
    meal_plan_id: uuid.UUID | None = None,
) -> Optional[GenerationJob]:
    stmt = (
        select(GenerationJob)
        .where(
            GenerationJob.user_id == user_id,
            GenerationJob.job_type == job_type,
            GenerationJob.status.in_(sorted(JobStatus.IN_FLIGHT)),
        )
        .order_by(GenerationJob.created_at.desc())
        .limit(1)
    )
    if meal_plan_id is not None:
        stmt = stmt.where(GenerationJob.meal_plan_id == meal_plan_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


STALE_JOB_MESSAGE = "Generation stopped responding. Please try again."


async def list_in_flight_jobs(session: AsyncSession) -> List[GenerationJob]:
    result = await session.execute(
        select(GenerationJob)
        .where(GenerationJob.status.in_(sorted(JobStatus.IN_FLIGHT)))
        .order_by(GenerationJob.created_at)
    )
    return list(result.scalars().all())


async def expire_stale_jobs(
    session: AsyncSession,
    *,
    max_age: timedelta,
    user_id: Optional[str] = None,
) -> List[uuid.UUID]:
    """Fail unfinished jobs that made no progress within ``max_age``.

    Every status change touches ``updated_at``, so the age is measured from
    the last transition rather than from submission.
    """
    cutoff = _utcnow() - max_age
    stmt = select(GenerationJob.id, GenerationJob.job_type, GenerationJob.meal_plan_id).where(
        GenerationJob.status.in_(sorted(JobStatus.IN_FLIGHT)),
        GenerationJob.updated_at < cutoff,
    )
    if user_id is not None:
        stmt = stmt.where(GenerationJob.user_id == user_id)
    rows = (await session.execute(stmt)).all()
    stale: List[uuid.UUID] = []
    for job_id, job_type, meal_plan_id in rows:
        failed = await fail_job(
            session,
            job_id,
            STALE_JOB_MESSAGE,
            debug_data={"reason": "stale", "cutoff": cutoff.isoformat()},
        )
        if failed is None:
            continue
        stale.append(job_id)
        if job_type == JobType.BATCH_PREP and meal_plan_id is not None:
            plan = await session.get(MealPlan, meal_plan_id)
            if plan is not None and plan.batch_prep_status != BatchPrepStatus.COMPLETED:
                plan.batch_prep_status = BatchPrepStatus.FAILED
                await _commit(session)
    if stale:
        logger.warning("Expired stale jobs count=%s user=%s", len(stale), user_id)
    return stale


def can_transition(current: str, requested: str) -> bool:
    if current in JobStatus.TERMINAL:
        return False
    if requested == JobStatus.FAILED:
        return True
    return JobStatus.ORDER.index(requested) >= JobStatus.ORDER.index(current)


async def transition_job(
    session: AsyncSession,
    job_id: uuid.UUID | str,
    status: str,
    *,
    progress_message: Optional[str] = None,
    error_message: Optional[str] = None,
    debug_data: Optional[Dict[str, Any]] = None,
    meal_plan_id: uuid.UUID | None = None,
    commit: bool = True,
) -> GenerationJob:
    """Move a job forward through its state machine.

    Re-applying the current status is an idempotent no-op (apart from a
    changed progress message). Terminal jobs accept no writes: repeating the
    terminal status returns the job untouched, anything else raises
    ``JobTransitionError``, as does any move back to an earlier status.
    """
    if status not in JobStatus.ORDER and status != JobStatus.FAILED:
        raise ValueError(f"Unknown job status '{status}'")
    job = await session.get(GenerationJob, _as_uuid(job_id), with_for_update=True)
    if job is None:
        raise LookupError(f"Generation job {job_id} not found")

    if job.status in JobStatus.TERMINAL:
        if job.status == status:
            return job
        raise JobTransitionError(str(job.id), job.status, status)
    if not can_transition(job.status, status):
        raise JobTransitionError(str(job.id), job.status, status)

    changed = job.status != status
    job.status = status
    if progress_message is not None and progress_message != job.progress_message:
        job.progress_message = progress_message
        changed = True
    if meal_plan_id is not None:
        job.meal_plan_id = meal_plan_id
    if status == JobStatus.FAILED:
        job.error_message = error_message or "Generation failed"
        job.debug_data = debug_data
    if status in JobStatus.TERMINAL:
        job.completed_at = _utcnow()
    if changed:
        _record_history(session, job)
        logger.info("Generation job status job=%s status=%s message=%s", job.id, status, job.progress_message)
    if commit:
        await _commit(session)
    return job


async def fail_job(
    session: AsyncSession,
    job_id: uuid.UUID | str,
    message: str,
    *,
    debug_data: Optional[Dict[str, Any]] = None,
) -> GenerationJob | None:
    """Mark a job failed; a job that already finished is left as it is."""
    try:
        return await transition_job(
            session,
            job_id,
            JobStatus.FAILED,
            progress_message="Generation failed",
            error_message=message,
            debug_data=debug_data,
        )
    except JobTransitionError as exc:
        logger.warning("Ignoring failure for finished job job=%s current=%s", exc.job_id, exc.current)
        await session.rollback()
        return None


async def list_job_history(session: AsyncSession, job_id: uuid.UUID | str) -> List[GenerationJobHistory]:
    result = await session.execute(
        select(GenerationJobHistory)
        .where(GenerationJobHistory.job_id == _as_uuid(job_id))
        .order_by(GenerationJobHistory.id)
    )
    return list(result.scalars().all())
