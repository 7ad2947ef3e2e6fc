from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..db import get_session
from ..models import FanOutStatus, FanOutTask, PlanHistory, UserUsageCounter
from .batch_prep import request_batch_prep
from .notifications import send_plan_ready_email

logger = logging.getLogger(__name__)


class FanOutKind:
    BATCH_PREP = "batch_prep"
    EMAIL = "email"
    USAGE_COUNTERS = "usage_counters"
    PLAN_HISTORY = "plan_history"


# Called with (job_id, meal_plan_id, user_id) once a batch prep job exists.
BatchPrepScheduler = Callable[[uuid.UUID, uuid.UUID, str], None]
Handler = Callable[[AsyncSession, FanOutTask], Awaitable[Optional[Dict[str, Any]]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def enqueue_fanout_tasks(
    session: AsyncSession,
    *,
    meal_plan_id: uuid.UUID,
    job_id: uuid.UUID,
    user_id: str,
    email: Optional[str],
    display_name: Optional[str],
    theme_id: Optional[str],
    theme_name: Optional[str],
    protein_focus: Optional[Dict[str, Any]],
    batch_prep: bool,
    commit: bool = True,
) -> List[str]:
    """Record the side effects owed for a finished plan; existing kinds are kept.

    With ``commit=False`` the rows are only flushed so they land in the
    caller's transaction.
    """
    wanted: Dict[str, Dict[str, Any]] = {
        FanOutKind.USAGE_COUNTERS: {"themed": theme_id is not None},
        FanOutKind.PLAN_HISTORY: {"theme_id": theme_id, "protein_focus": protein_focus},
    }
    if email:
        wanted[FanOutKind.EMAIL] = {"email": email, "display_name": display_name, "theme_name": theme_name}
    if batch_prep:
        wanted[FanOutKind.BATCH_PREP] = {}

    existing = set(
        (
            await session.execute(select(FanOutTask.kind).where(FanOutTask.meal_plan_id == meal_plan_id))
        ).scalars().all()
    )
    for kind, payload in wanted.items():
        if kind in existing:
            continue
        session.add(
            FanOutTask(
                meal_plan_id=meal_plan_id,
                job_id=job_id,
                user_id=user_id,
                kind=kind,
                status=FanOutStatus.PENDING,
                payload=payload,
            )
        )
    if commit:
        await session.commit()
    else:
        await session.flush()
    kinds = sorted(wanted)
    logger.info("Fan-out tasks enqueued plan=%s kinds=%s", meal_plan_id, kinds)
    return kinds


async def _increment_usage_counters(session: AsyncSession, task: FanOutTask) -> Dict[str, Any]:
    counter = await session.get(UserUsageCounter, task.user_id)
    if counter is None:
        counter = UserUsageCounter(user_id=task.user_id, plans_generated=0, themed_plans_generated=0)
        session.add(counter)
    counter.plans_generated = (counter.plans_generated or 0) + 1
    if (task.payload or {}).get("themed"):
        counter.themed_plans_generated = (counter.themed_plans_generated or 0) + 1
    counter.last_generated_at = _utcnow()
    return {"plans_generated": counter.plans_generated}


async def _record_plan_history(session: AsyncSession, task: FanOutTask) -> Dict[str, Any]:
    if await session.get(PlanHistory, task.meal_plan_id) is None:
        payload = task.payload or {}
        theme_id = payload.get("theme_id")
        session.add(
            PlanHistory(
                meal_plan_id=task.meal_plan_id,
                user_id=task.user_id,
                theme_id=uuid.UUID(theme_id) if theme_id else None,
                protein_focus=payload.get("protein_focus"),
            )
        )
    return {"recorded": True}


def _email_handler(client: httpx.AsyncClient | None) -> Handler:
    async def handler(session: AsyncSession, task: FanOutTask) -> Dict[str, Any]:
        payload = task.payload or {}
        message_id = await send_plan_ready_email(
            to_email=payload["email"],
            meal_plan_id=str(task.meal_plan_id),
            display_name=payload.get("display_name"),
            theme_name=payload.get("theme_name"),
            client=client,
        )
        return {"message_id": message_id, "sent": message_id is not None}

    return handler


def _batch_prep_handler(schedule: BatchPrepScheduler | None) -> Handler:
    async def handler(session: AsyncSession, task: FanOutTask) -> Dict[str, Any]:
        job, created = await request_batch_prep(session, meal_plan_id=task.meal_plan_id, user_id=task.user_id)
        if created and schedule is not None:
            schedule(job.id, task.meal_plan_id, task.user_id)
        return {"batch_job_id": str(job.id)}

    return handler


def build_handlers(
    *,
    schedule_batch_prep: BatchPrepScheduler | None = None,
    email_client: httpx.AsyncClient | None = None,
) -> Dict[str, Handler]:
    return {
        FanOutKind.USAGE_COUNTERS: _increment_usage_counters,
        FanOutKind.PLAN_HISTORY: _record_plan_history,
        FanOutKind.EMAIL: _email_handler(email_client),
        FanOutKind.BATCH_PREP: _batch_prep_handler(schedule_batch_prep),
    }


async def run_fanout_task(task_id: uuid.UUID, handlers: Dict[str, Handler]) -> str:
    """Execute one side effect; failures are recorded on the task, never raised."""
    max_attempts = get_settings().fanout_max_attempts
    async with get_session() as session:
        task = await session.get(FanOutTask, task_id)
        if task is None or task.status != FanOutStatus.PENDING:
            return task.status if task is not None else FanOutStatus.FAILED
        handler = handlers.get(task.kind)
        task.attempts = (task.attempts or 0) + 1
        attempts = task.attempts
        try:
            if handler is None:
                raise LookupError(f"No fan-out handler for kind '{task.kind}'")
            result = await handler(session, task)
            task.status = FanOutStatus.COMPLETED
            task.last_error = None
            task.payload = {**(task.payload or {}), "result": result}
            await session.commit()
            logger.info("Fan-out task completed plan=%s kind=%s", task.meal_plan_id, task.kind)
            return FanOutStatus.COMPLETED
        except Exception as exc:
            logger.exception("Fan-out task failed task=%s attempt=%s", task_id, attempts)
            error = f"{type(exc).__name__}: {exc}"[:2000]
            await session.rollback()

        task = await session.get(FanOutTask, task_id)
        task.attempts = attempts
        task.last_error = error
        task.status = FanOutStatus.FAILED if attempts >= max_attempts else FanOutStatus.PENDING
        await session.commit()
        return task.status


async def run_pending_fanout(
    meal_plan_id: uuid.UUID,
    *,
    schedule_batch_prep: BatchPrepScheduler | None = None,
    email_client: httpx.AsyncClient | None = None,
) -> Dict[str, str]:
    """Run every pending side effect of a plan, each in isolation."""
    async with get_session() as session:
        tasks = (
            await session.execute(
                select(FanOutTask.id, FanOutTask.kind)
                .where(FanOutTask.meal_plan_id == meal_plan_id, FanOutTask.status == FanOutStatus.PENDING)
                .order_by(FanOutTask.kind)
            )
        ).all()
    handlers = build_handlers(schedule_batch_prep=schedule_batch_prep, email_client=email_client)
    outcome: Dict[str, str] = {}
    for task_id, kind in tasks:
        outcome[kind] = await run_fanout_task(task_id, handlers)
    return outcome


async def list_fanout_tasks(session: AsyncSession, meal_plan_id: uuid.UUID) -> List[FanOutTask]:
    result = await session.execute(
        select(FanOutTask).where(FanOutTask.meal_plan_id == meal_plan_id).order_by(FanOutTask.kind)
    )
    return list(result.scalars().all())
