from __future__ import annotations

import uuid
from datetime import date
from unittest import TestCase

from sqlalchemy import select

from mealplan.errors import BatchPrepConflictError, BatchPrepUnavailableError
from mealplan.models import (
    BatchPrepStatus,
    GenerationJob,
    JobStatus,
    JobType,
    MealPlan,
    PrepArtifact,
    PrepVariant,
)
from mealplan.services.batch_prep import (
    get_batch_prep_state,
    request_batch_prep,
    run_batch_prep_pipeline,
    validate_batch_schedule,
)
from mealplan.services.generation import STAGE_BATCH, ContentGenerationGateway
from mealplan.services.jobs import create_job
from mealplan.services.pipeline import run_meal_plan_pipeline
from tests.db_case import DatabaseTestCase
from tests.fakes import ScriptedCompletion, default_replies, unavailable


class ValidateBatchScheduleTest(TestCase):
    def test_day_of_schedule_has_no_warnings(self):
        schedule = {"prep_sessions": [{"session_type": "day_of_dinner", "prep_tasks": []}]}
        self.assertEqual(validate_batch_schedule(schedule), [])

    def test_flags_assembly_only_and_missing_assembly(self):
        schedule = {
            "prep_sessions": [
                {
                    "session_type": "weekly_batch",
                    "prep_tasks": [
                        {"description": "Scrambled eggs with spinach", "meal_ids": ["meal_monday_breakfast_0"]},
                        {"description": "Roast chicken thighs", "meal_ids": ["meal_monday_dinner_0", "legacy"]},
                    ],
                }
            ],
            "daily_assembly": {"monday": {"breakfast": {"time": "2 min", "instructions": "Reheat."}}},
        }
        warnings = validate_batch_schedule(schedule)
        self.assertEqual(len(warnings), 2)
        self.assertIn("Scrambled eggs with spinach", warnings[0])
        self.assertIn("meal_monday_dinner_0", warnings[1])


class BatchPrepTest(DatabaseTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.seed_profile(meal_types=["lunch", "dinner"])
        self.plan_id = await self._generate_plan()

    async def _generate_plan(self, options=None):
        async with self.Session() as session:
            job = await create_job(session, user_id="user-1", options=options or {})
        return await run_meal_plan_pipeline(
            job.id,
            "user-1",
            options or {},
            gateway=ContentGenerationGateway(ScriptedCompletion(**default_replies(("lunch", "dinner")))),
            today=date(2026, 1, 14),
        )

    async def _request(self, user_id: str = "user-1", plan_id=None):
        async with self.Session() as session:
            return await request_batch_prep(session, meal_plan_id=plan_id or self.plan_id, user_id=user_id)

    async def _plan(self) -> MealPlan:
        async with self.Session() as session:
            return await session.get(MealPlan, self.plan_id)

    async def _artifacts(self):
        async with self.Session() as session:
            rows = (
                await session.execute(select(PrepArtifact).where(PrepArtifact.meal_plan_id == self.plan_id))
            ).scalars().all()
        return {row.variant: row for row in rows}

    async def test_request_creates_pending_job_once(self):
        job, created = await self._request()
        self.assertTrue(created)
        self.assertEqual(job.job_type, JobType.BATCH_PREP)
        self.assertEqual(job.meal_plan_id, self.plan_id)
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertEqual((await self._plan()).batch_prep_status, BatchPrepStatus.PENDING)

        again, created_again = await self._request()
        self.assertFalse(created_again)
        self.assertEqual(again.id, job.id)

    async def test_request_rejects_unknown_and_foreign_plans(self):
        with self.assertRaises(LookupError):
            await self._request(plan_id=uuid.uuid4())
        with self.assertRaises(PermissionError):
            await self._request(user_id="user-2")

    async def test_request_conflicts_while_generating(self):
        async with self.Session() as session:
            plan = await session.get(MealPlan, self.plan_id)
            plan.batch_prep_status = BatchPrepStatus.GENERATING
            await session.commit()
        with self.assertRaises(BatchPrepConflictError):
            await self._request()

    async def test_request_needs_day_of_schedule(self):
        async with self.Session() as session:
            bare = MealPlan(user_id="user-1", week_start_date=date(2026, 1, 26), prep_style="day_of")
            session.add(bare)
            await session.commit()
        with self.assertRaises(BatchPrepUnavailableError):
            await self._request(plan_id=bare.id)

    async def test_run_saves_batch_schedule(self):
        job, _ = await self._request()
        completion = ScriptedCompletion()

        ok = await run_batch_prep_pipeline(
            job.id, self.plan_id, "user-1", gateway=ContentGenerationGateway(completion)
        )

        self.assertTrue(ok)
        self.assertEqual(completion.stages, [STAGE_BATCH])
        self.assertIn("2026-01-19", completion.calls[0]["user_prompt"])
        artifacts = await self._artifacts()
        self.assertEqual(set(artifacts), {PrepVariant.DAY_OF, PrepVariant.BATCH})
        self.assertEqual(artifacts[PrepVariant.BATCH].payload["prep_sessions"][0]["session_type"], "weekly_batch")
        async with self.Session() as session:
            stored = await session.get(GenerationJob, job.id)
            state = await get_batch_prep_state(session, meal_plan_id=self.plan_id, user_id="user-1")
        self.assertEqual(stored.status, JobStatus.COMPLETED)
        self.assertEqual(stored.progress_message, "Batch prep ready!")
        self.assertEqual(state["status"], BatchPrepStatus.COMPLETED)
        self.assertTrue(state["has_batch_prep"])

        # A finished job is reported without another generation call.
        self.assertTrue(
            await run_batch_prep_pipeline(job.id, self.plan_id, "user-1", gateway=ContentGenerationGateway(completion))
        )
        self.assertEqual(len(completion.calls), 1)

    async def test_failed_transform_leaves_plan_usable(self):
        job, _ = await self._request()
        gateway = ContentGenerationGateway(ScriptedCompletion(**{STAGE_BATCH: unavailable(STAGE_BATCH)}))

        self.assertFalse(await run_batch_prep_pipeline(job.id, self.plan_id, "user-1", gateway=gateway))

        async with self.Session() as session:
            stored = await session.get(GenerationJob, job.id)
            state = await get_batch_prep_state(session, meal_plan_id=self.plan_id, user_id="user-1")
        self.assertEqual(stored.status, JobStatus.FAILED)
        self.assertEqual(stored.debug_data["stage"], STAGE_BATCH)
        self.assertIn("timestamp", stored.debug_data)
        self.assertEqual(state["status"], BatchPrepStatus.FAILED)
        self.assertFalse(state["has_batch_prep"])
        self.assertEqual(set(await self._artifacts()), {PrepVariant.DAY_OF})

        retry, created = await self._request()
        self.assertTrue(created)
        self.assertNotEqual(retry.id, job.id)

    async def test_meal_plan_job_is_not_a_batch_job(self):
        async with self.Session() as session:
            plan_job = await create_job(session, user_id="user-1")
        self.assertFalse(await run_batch_prep_pipeline(plan_job.id, self.plan_id, "user-1"))

    async def test_fixture_plan_gets_fixture_batch_prep(self):
        ordinary, _ = await self._request()
        self.assertEqual(ordinary.options, {"test_mode": False})

        fixture_plan_id = await self._generate_plan({"test_mode": True})
        job, created = await self._request(plan_id=fixture_plan_id)
        self.assertTrue(created)
        self.assertEqual(job.options, {"test_mode": True})

        # No gateway is given and no OpenAI key is configured.
        self.assertTrue(await run_batch_prep_pipeline(job.id, fixture_plan_id, "user-1"))

        async with self.Session() as session:
            state = await get_batch_prep_state(session, meal_plan_id=fixture_plan_id, user_id="user-1")
            batch = await session.scalar(
                select(PrepArtifact).where(
                    PrepArtifact.meal_plan_id == fixture_plan_id, PrepArtifact.variant == PrepVariant.BATCH
                )
            )
        self.assertEqual(state["status"], BatchPrepStatus.COMPLETED)
        self.assertTrue(state["has_batch_prep"])
        self.assertEqual(batch.payload["prep_sessions"][0]["session_type"], "weekly_batch")
