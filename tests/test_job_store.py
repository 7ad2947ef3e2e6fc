from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from mealplan.errors import JobTransitionError
from mealplan.models import BatchPrepStatus, GenerationJob, JobStatus, JobType, MealPlan
from mealplan.services.jobs import (
    STALE_JOB_MESSAGE,
    can_transition,
    create_job,
    expire_stale_jobs,
    fail_job,
    find_in_flight_job,
    get_job,
    list_job_history,
    transition_job,
)
from tests.db_case import DatabaseTestCase


class JobStoreTest(DatabaseTestCase):
    async def test_forward_transitions_are_recorded(self):
        async with self.Session() as session:
            job = await create_job(session, user_id="user-1")
            await transition_job(session, job.id, JobStatus.FETCHING_INPUTS, progress_message="Loading")
            await transition_job(session, job.id, JobStatus.GENERATING_MEALS, progress_message="Meals")
            plan_id = uuid.uuid4()
            job = await transition_job(session, job.id, JobStatus.COMPLETED, meal_plan_id=plan_id)
            history = await list_job_history(session, job.id)

        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.meal_plan_id, plan_id)
        self.assertIsNotNone(job.completed_at)
        self.assertEqual(
            [row.status for row in history],
            [JobStatus.PENDING, JobStatus.FETCHING_INPUTS, JobStatus.GENERATING_MEALS, JobStatus.COMPLETED],
        )

    async def test_backwards_transition_rejected(self):
        async with self.Session() as session:
            job = await create_job(session, user_id="user-1")
            await transition_job(session, job.id, JobStatus.GENERATING_MEALS)
            with self.assertRaises(JobTransitionError):
                await transition_job(session, job.id, JobStatus.FETCHING_INPUTS)
            refreshed = await get_job(session, job.id)
        self.assertEqual(refreshed.status, JobStatus.GENERATING_MEALS)

    async def test_same_status_is_idempotent(self):
        async with self.Session() as session:
            job = await create_job(session, user_id="user-1")
            await transition_job(session, job.id, JobStatus.SAVING, progress_message="Saving")
            await transition_job(session, job.id, JobStatus.SAVING, progress_message="Saving")
            history = await list_job_history(session, job.id)
        self.assertEqual(len(history), 2)

    async def test_terminal_jobs_accept_no_further_writes(self):
        async with self.Session() as session:
            job = await create_job(session, user_id="user-1")
            await transition_job(session, job.id, JobStatus.COMPLETED)
            again = await transition_job(session, job.id, JobStatus.COMPLETED)
            self.assertEqual(again.status, JobStatus.COMPLETED)
            with self.assertRaises(JobTransitionError):
                await transition_job(session, job.id, JobStatus.FAILED)
            self.assertIsNone(await fail_job(session, job.id, "late failure"))
            refreshed = await get_job(session, job.id)
        self.assertEqual(refreshed.status, JobStatus.COMPLETED)
        self.assertIsNone(refreshed.error_message)

    async def test_fail_job_records_message_and_debug_data(self):
        async with self.Session() as session:
            job = await create_job(session, user_id="user-1")
            await transition_job(session, job.id, JobStatus.GENERATING_PREP)
            failed = await fail_job(session, job.id, "Prep failed", debug_data={"stage": "prep_sessions"})
        self.assertEqual(failed.status, JobStatus.FAILED)
        self.assertEqual(failed.error_message, "Prep failed")
        self.assertEqual(failed.debug_data, {"stage": "prep_sessions"})

    async def test_get_job_checks_owner(self):
        async with self.Session() as session:
            job = await create_job(session, user_id="user-1")
            self.assertIsNotNone(await get_job(session, job.id, expected_user_id="user-1"))
            with self.assertRaises(PermissionError):
                await get_job(session, job.id, expected_user_id="user-2")
            self.assertIsNone(await get_job(session, "not-a-uuid"))

    async def test_find_in_flight_job_per_type(self):
        async with self.Session() as session:
            done = await create_job(session, user_id="user-1")
            await transition_job(session, done.id, JobStatus.COMPLETED)
            self.assertIsNone(await find_in_flight_job(session, "user-1"))

            running = await create_job(session, user_id="user-1")
            found = await find_in_flight_job(session, "user-1")
            self.assertEqual(found.id, running.id)
            self.assertIsNone(await find_in_flight_job(session, "user-1", job_type=JobType.BATCH_PREP))
            self.assertIsNone(await find_in_flight_job(session, "user-2"))

    async def test_can_transition(self):
        self.assertTrue(can_transition(JobStatus.PENDING, JobStatus.SAVING))
        self.assertTrue(can_transition(JobStatus.SAVING, JobStatus.FAILED))
        self.assertFalse(can_transition(JobStatus.SAVING, JobStatus.PENDING))
        self.assertFalse(can_transition(JobStatus.FAILED, JobStatus.COMPLETED))

    async def test_one_unfinished_meal_plan_job_per_user(self):
        async with self.Session() as session:
            await create_job(session, user_id="user-1")
            with self.assertRaises(IntegrityError):
                await create_job(session, user_id="user-1")

        async with self.Session() as session:
            # Other users and batch prep jobs are not limited.
            await create_job(session, user_id="user-2")
            first = await create_job(session, user_id="user-1", job_type=JobType.BATCH_PREP)
            second = await create_job(session, user_id="user-1", job_type=JobType.BATCH_PREP)
            self.assertNotEqual(first.id, second.id)

    async def _age(self, session, job_id):
        await session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)
            .values(updated_at=datetime(2020, 1, 1, tzinfo=timezone.utc))
        )
        await session.commit()

    async def test_expire_stale_jobs(self):
        async with self.Session() as session:
            plan = MealPlan(
                user_id="user-2",
                week_start_date=date(2026, 1, 19),
                batch_prep_status=BatchPrepStatus.GENERATING,
            )
            session.add(plan)
            await session.commit()
            stuck = await create_job(session, user_id="user-1")
            await transition_job(session, stuck.id, JobStatus.GENERATING_MEALS)
            fresh = await create_job(session, user_id="user-2")
            stuck_batch = await create_job(
                session, user_id="user-2", job_type=JobType.BATCH_PREP, meal_plan_id=plan.id
            )
            await self._age(session, stuck.id)
            await self._age(session, stuck_batch.id)

            expired = await expire_stale_jobs(session, max_age=timedelta(minutes=30))
            self.assertEqual(set(expired), {stuck.id, stuck_batch.id})
            self.assertEqual(await expire_stale_jobs(session, max_age=timedelta(minutes=30)), [])

        async with self.Session() as session:
            stuck = await get_job(session, stuck.id)
            fresh = await get_job(session, fresh.id)
            plan = await session.get(MealPlan, plan.id)
        self.assertEqual(stuck.status, JobStatus.FAILED)
        self.assertEqual(stuck.error_message, STALE_JOB_MESSAGE)
        self.assertEqual(stuck.debug_data["reason"], "stale")
        self.assertEqual(fresh.status, JobStatus.PENDING)
        self.assertEqual(plan.batch_prep_status, BatchPrepStatus.FAILED)

    async def test_expire_stale_jobs_for_one_user(self):
        async with self.Session() as session:
            mine = await create_job(session, user_id="user-1")
            theirs = await create_job(session, user_id="user-2")
            await self._age(session, mine.id)
            await self._age(session, theirs.id)

            expired = await expire_stale_jobs(session, max_age=timedelta(minutes=30), user_id="user-1")
            self.assertEqual(expired, [mine.id])
            self.assertEqual((await get_job(session, theirs.id)).status, JobStatus.PENDING)
