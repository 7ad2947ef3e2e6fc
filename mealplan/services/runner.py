from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional, Set

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ..config import get_settings
from ..db import get_session
from ..models import FanOutStatus, FanOutTask, JobType
from .batch_prep import run_batch_prep_pipeline
from .fanout import run_pending_fanout
from .jobs import expire_stale_jobs, list_in_flight_jobs
from .pipeline import run_meal_plan_pipeline

logger = logging.getLogger(__name__)

_tasks: Set[asyncio.Task] = set()
_batch_semaphore: Optional[asyncio.Semaphore] = None


def _semaphore() -> asyncio.Semaphore:
    global _batch_semaphore
    if _batch_semaphore is None:
        _batch_semaphore = asyncio.Semaphore(max(1, get_settings().batch_prep_max_concurrency))
    return _batch_semaphore


def reset_runner() -> None:
    """Forget the concurrency limiter so a new event loop builds its own."""
    global _batch_semaphore
    _batch_semaphore = None
    _tasks.clear()


def _spawn(coro, description: str) -> bool:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning("Cannot schedule %s; no running loop", description)
        coro.close()
        return False
    task = loop.create_task(coro)
    _tasks.add(task)
    task.add_done_callback(_tasks.discard)
    return True


def schedule_meal_plan_run(job_id: uuid.UUID, user_id: str, options: Optional[Dict[str, Any]] = None) -> bool:
    logger.info("Scheduling meal plan run job=%s user=%s", job_id, user_id)
    return _spawn(
        _run_meal_plan_with_guard(job_id=job_id, user_id=user_id, options=options or {}),
        f"meal plan run job={job_id}",
    )


def schedule_batch_prep(job_id: uuid.UUID, meal_plan_id: uuid.UUID, user_id: str) -> bool:
    logger.info("Scheduling batch prep job=%s plan=%s", job_id, meal_plan_id)
    return _spawn(
        _run_batch_prep_with_guard(job_id=job_id, meal_plan_id=meal_plan_id, user_id=user_id),
        f"batch prep job={job_id}",
    )


async def _run_meal_plan_with_guard(*, job_id: uuid.UUID, user_id: str, options: Dict[str, Any]) -> None:
    try:
        plan_id = await run_meal_plan_pipeline(job_id, user_id, options)
        if plan_id is None:
            return
        outcome = await run_pending_fanout(plan_id, schedule_batch_prep=schedule_batch_prep)
        logger.info("Fan-out finished job=%s plan=%s outcome=%s", job_id, plan_id, outcome)
    except Exception:
        logger.exception("Meal plan run failed (job=%s user=%s)", job_id, user_id)


async def _run_batch_prep_with_guard(*, job_id: uuid.UUID, meal_plan_id: uuid.UUID, user_id: str) -> None:
    try:
        async with _semaphore():
            await run_batch_prep_pipeline(job_id, meal_plan_id, user_id)
    except Exception:
        logger.exception("Batch prep run failed (job=%s plan=%s)", job_id, meal_plan_id)


async def drain() -> None:
    """Wait for every scheduled run, including runs scheduled while waiting."""
    while _tasks:
        await asyncio.gather(*list(_tasks), return_exceptions=True)


def schedule_fanout(meal_plan_id: uuid.UUID) -> bool:
    return _spawn(_run_fanout_with_guard(meal_plan_id), f"fan-out plan={meal_plan_id}")


async def _run_fanout_with_guard(meal_plan_id: uuid.UUID) -> None:
    try:
        outcome = await run_pending_fanout(meal_plan_id, schedule_batch_prep=schedule_batch_prep)
        logger.info("Fan-out finished plan=%s outcome=%s", meal_plan_id, outcome)
    except Exception:
        logger.exception("Fan-out run failed (plan=%s)", meal_plan_id)


async def resume_in_flight_jobs() -> Dict[str, int]:
    """Pick up work a previous process left unfinished.

    Jobs idle past ``job_stale_after_minutes`` are failed. The rest are
    scheduled again; their step ledger skips whatever already ran. Plans with
    pending fan-out tasks and no running job get their side effects retried.
    """
    max_age = timedelta(minutes=get_settings().job_stale_after_minutes)
    try:
        async with get_session() as session:
            expired = await expire_stale_jobs(session, max_age=max_age)
            jobs = await list_in_flight_jobs(session)
            pending = (
                await session.execute(
                    select(FanOutTask.meal_plan_id, FanOutTask.job_id)
                    .where(FanOutTask.status == FanOutStatus.PENDING)
                    .distinct()
                )
            ).all()
    except SQLAlchemyError:
        logger.exception("Could not load unfinished jobs for resumption")
        return {"expired": 0, "resumed": 0, "fanout": 0}

    resumed = 0
    running_job_ids = {job.id for job in jobs}
    for job in jobs:
        if job.job_type == JobType.BATCH_PREP:
            if job.meal_plan_id is None:
                continue
            scheduled = schedule_batch_prep(job.id, job.meal_plan_id, job.user_id)
        else:
            scheduled = schedule_meal_plan_run(job.id, job.user_id, job.options or {})
        resumed += int(scheduled)

    # A resumed meal plan run drains its own fan-out when it finishes.
    plan_ids = {plan_id for plan_id, job_id in pending if job_id not in running_job_ids}
    fanout = 0
    for plan_id in sorted(plan_ids, key=str):
        fanout += int(schedule_fanout(plan_id))

    logger.info("Resumed unfinished work expired=%s resumed=%s fanout=%s", len(expired), resumed, fanout)
    return {"expired": len(expired), "resumed": resumed, "fanout": fanout}
