from __future__ import annotations

import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import get_session
from ..errors import PersistenceError
from ..models import JobStep

logger = logging.getLogger(__name__)

StepResult = Optional[Dict[str, Any]]


async def load_completed_steps(session: AsyncSession, job_id: uuid.UUID) -> Dict[str, StepResult]:
    result = await session.execute(
        select(JobStep.step_name, JobStep.result).where(JobStep.job_id == job_id)
    )
    return {name: payload for name, payload in result.all()}


async def get_step(session: AsyncSession, job_id: uuid.UUID, step_name: str) -> Optional[JobStep]:
    result = await session.execute(
        select(JobStep).where(JobStep.job_id == job_id, JobStep.step_name == step_name)
    )
    return result.scalar_one_or_none()


class StepLedger:
    """Per-job memo of completed steps, backed by ``generation_job_steps``.

    A step recorded here never runs again for the same job. Results must be
    JSON-serialisable because they are replayed on re-invocation in place of
    re-running the step.
    """

    def __init__(self, job_id: uuid.UUID) -> None:
        self.job_id = job_id
        self._results: Dict[str, StepResult] = {}
        self.executed: list[str] = []

    async def load(self) -> "StepLedger":
        async with get_session() as session:
            self._results = await load_completed_steps(session, self.job_id)
        return self

    def is_done(self, step_name: str) -> bool:
        return step_name in self._results

    def result(self, step_name: str) -> StepResult:
        return self._results.get(step_name)

    async def run(
        self,
        step_name: str,
        action: Callable[[], Awaitable[StepResult]],
        *,
        on_first_run: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> StepResult:
        """Run ``action`` once for this job and record its result."""
        if step_name in self._results:
            logger.debug("Step memoized job=%s step=%s", self.job_id, step_name)
            return self._results[step_name]
        if on_first_run is not None:
            await on_first_run()
        result = await action()
        self.executed.append(step_name)
        async with get_session() as session:
            session.add(JobStep(job_id=self.job_id, step_name=step_name, result=result))
            try:
                await session.commit()
            except IntegrityError:
                # Another runner of this job recorded the step first; its result wins.
                await session.rollback()
                existing = await get_step(session, self.job_id, step_name)
                if existing is None:
                    raise
                result = existing.result
        self._results[step_name] = result
        return result

    async def run_atomic(
        self,
        step_name: str,
        action: Callable[[AsyncSession], Awaitable[StepResult]],
        *,
        on_first_run: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> StepResult:
        """Like ``run`` but ``action`` writes through the given session and
        its writes commit in the same transaction as the ledger row."""
        if step_name in self._results:
            logger.debug("Step memoized job=%s step=%s", self.job_id, step_name)
            return self._results[step_name]
        if on_first_run is not None:
            await on_first_run()
        async with get_session() as session:
            try:
                result = await action(session)
                session.add(JobStep(job_id=self.job_id, step_name=step_name, result=result))
                await session.commit()
                self.executed.append(step_name)
            except IntegrityError as exc:
                await session.rollback()
                existing = await get_step(session, self.job_id, step_name)
                if existing is None:
                    raise PersistenceError(f"Could not save {step_name.replace('_', ' ')}") from exc
                result = existing.result
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.exception("Step write failed job=%s step=%s", self.job_id, step_name)
                raise PersistenceError(f"Could not save {step_name.replace('_', ' ')}") from exc
        self._results[step_name] = result
        return result
