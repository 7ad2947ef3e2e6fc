from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from unittest import mock

from sqlalchemy import update

from mealplan.main import app
from mealplan.models import FanOutStatus, GenerationJob, JobStatus
from mealplan.services import runner
from mealplan.services.fanout import list_fanout_tasks
from mealplan.services.jobs import STALE_JOB_MESSAGE, create_job, get_job
from mealplan.services.pipeline import MealPlanRun, run_meal_plan_pipeline
from tests.db_case import DatabaseTestCase


class ResumeInFlightJobsTest(DatabaseTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        runner.reset_runner()
        await self.seed_profile(meal_types=["dinner"])

    async def asyncTearDown(self):
        await runner.drain()
        await super().asyncTearDown()

    async def _job(self, user_id: str = "user-1"):
        async with self.Session() as session:
            return await create_job(session, user_id=user_id, options={"test_mode": True})

    async def _fanout_statuses(self, plan_id):
        async with self.Session() as session:
            return {task.kind: task.status for task in await list_fanout_tasks(session, plan_id)}

    async def test_pending_job_resumes_and_stale_job_expires(self):
        pending = await self._job()
        stuck = await self._job("user-2")
        async with self.Session() as session:
            await session.execute(
                update(GenerationJob)
                .where(GenerationJob.id == stuck.id)
                .values(updated_at=datetime(2020, 1, 1, tzinfo=timezone.utc))
            )
            await session.commit()

        summary = await runner.resume_in_flight_jobs()
        await runner.drain()

        self.assertEqual(summary, {"expired": 1, "resumed": 1, "fanout": 0})
        async with self.Session() as session:
            pending = await get_job(session, pending.id)
            stuck = await get_job(session, stuck.id)
        self.assertEqual(pending.status, JobStatus.COMPLETED)
        self.assertEqual(stuck.status, JobStatus.FAILED)
        self.assertEqual(stuck.error_message, STALE_JOB_MESSAGE)
        self.assertEqual(set((await self._fanout_statuses(pending.meal_plan_id)).values()), {FanOutStatus.COMPLETED})

    async def test_pending_fanout_of_finished_plan_is_retried(self):
        job = await self._job()
        plan_id = await run_meal_plan_pipeline(job.id, "user-1", {"test_mode": True}, today=date(2026, 1, 14))
        self.assertEqual(set((await self._fanout_statuses(plan_id)).values()), {FanOutStatus.PENDING})

        summary = await runner.resume_in_flight_jobs()
        await runner.drain()

        self.assertEqual(summary, {"expired": 0, "resumed": 0, "fanout": 1})
        self.assertEqual(set((await self._fanout_statuses(plan_id)).values()), {FanOutStatus.COMPLETED})

    async def test_run_stopped_while_saving_finishes_once(self):
        job = await self._job()
        with mock.patch.object(MealPlanRun, "_mark_completed", side_effect=asyncio.CancelledError):
            with self.assertRaises(asyncio.CancelledError):
                await run_meal_plan_pipeline(job.id, "user-1", {"test_mode": True}, today=date(2026, 1, 14))

        # The fan-out belongs to a job that is about to run again.
        summary = await runner.resume_in_flight_jobs()
        await runner.drain()

        self.assertEqual(summary, {"expired": 0, "resumed": 1, "fanout": 0})
        async with self.Session() as session:
            job = await get_job(session, job.id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        statuses = await self._fanout_statuses(job.meal_plan_id)
        self.assertEqual(len(statuses), 3)
        self.assertEqual(set(statuses.values()), {FanOutStatus.COMPLETED})

    async def test_app_startup_resumes_unfinished_jobs(self):
        job = await self._job()

        async with app.router.lifespan_context(app):
            await runner.drain()

        async with self.Session() as session:
            job = await get_job(session, job.id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertIsNotNone(job.meal_plan_id)
