from __future__ import annotations

import uuid
from datetime import datetime, timezone
from unittest import mock

import httpx
from jose import jwt
from sqlalchemy import update

from mealplan.config import get_settings
from mealplan.main import app
from mealplan.models import BatchPrepStatus, GenerationJob, JobStatus, MealPlan
from mealplan.services import runner
from mealplan.services.jobs import STALE_JOB_MESSAGE, create_job, find_in_flight_job
from tests.db_case import DatabaseTestCase


def _token(sub: str) -> str:
    return jwt.encode({"sub": sub, "email": f"{sub}@example.com"}, "local-secret", algorithm="HS256")


class MealPlanRoutesTest(DatabaseTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        runner.reset_runner()
        patcher = mock.patch.object(get_settings(), "auth_disable_verification", True)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")

    async def asyncTearDown(self):
        await runner.drain()
        await self.client.aclose()
        await super().asyncTearDown()

    def _auth(self, sub: str = "user-1"):
        return {"Authorization": f"Bearer {_token(sub)}"}

    async def _generate_plan(self, sub: str = "user-1") -> str:
        resp = await self.client.post("/v1/meal-plans/jobs", json={"testMode": True}, headers=self._auth(sub))
        self.assertEqual(resp.status_code, 202)
        await runner.drain()
        status = await self.client.get(f"/v1/meal-plans/jobs/{resp.json()['jobId']}", headers=self._auth(sub))
        return status.json()["mealPlanId"]

    async def test_requires_bearer_token(self):
        resp = await self.client.post("/v1/meal-plans/jobs", json={})
        self.assertEqual(resp.status_code, 401)

    async def test_health_reports_database(self):
        resp = await self.client.get("/v1/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["database"], "configured")
        self.assertEqual(resp.headers["x-content-type-options"], "nosniff")

    async def test_submit_and_poll_until_completed(self):
        await self.seed_profile(meal_types=["lunch", "dinner"])

        resp = await self.client.post(
            "/v1/meal-plans/jobs",
            json={"testMode": True, "proteinFocus": {"protein": "salmon", "mealType": "dinner"}},
            headers=self._auth(),
        )
        self.assertEqual(resp.status_code, 202)
        body = resp.json()
        self.assertEqual(body["status"], JobStatus.PENDING)

        await runner.drain()
        status = await self.client.get(f"/v1/meal-plans/jobs/{body['jobId']}", headers=self._auth())
        self.assertEqual(status.status_code, 200)
        payload = status.json()
        self.assertEqual(payload["status"], JobStatus.COMPLETED)
        self.assertEqual(payload["jobType"], "meal_plan")
        self.assertEqual(payload["progressMessage"], "Meal plan ready!")
        self.assertIsNotNone(payload["mealPlanId"])

    async def test_second_submission_returns_in_flight_job(self):
        await self.seed_profile()
        first = await self.client.post("/v1/meal-plans/jobs", json={"testMode": True}, headers=self._auth())
        second = await self.client.post("/v1/meal-plans/jobs", json={"testMode": True}, headers=self._auth())
        self.assertEqual(first.json()["jobId"], second.json()["jobId"])

    async def test_missing_profile_fails_job(self):
        resp = await self.client.post("/v1/meal-plans/jobs", json={"testMode": True}, headers=self._auth())
        await runner.drain()
        status = await self.client.get(f"/v1/meal-plans/jobs/{resp.json()['jobId']}", headers=self._auth())
        self.assertEqual(status.json()["status"], JobStatus.FAILED)
        self.assertEqual(status.json()["errorMessage"], "User profile not found. Please complete onboarding first.")

    async def test_jobs_are_private(self):
        await self.seed_profile()
        resp = await self.client.post("/v1/meal-plans/jobs", json={"testMode": True}, headers=self._auth())
        job_id = resp.json()["jobId"]

        other = await self.client.get(f"/v1/meal-plans/jobs/{job_id}", headers=self._auth("user-2"))
        self.assertEqual(other.status_code, 404)
        unknown = await self.client.get(f"/v1/meal-plans/jobs/{uuid.uuid4()}", headers=self._auth())
        self.assertEqual(unknown.status_code, 404)
        malformed = await self.client.get("/v1/meal-plans/jobs/not-a-uuid", headers=self._auth())
        self.assertEqual(malformed.status_code, 404)

    async def test_batch_prep_request_and_status(self):
        await self.seed_profile()
        plan_id = await self._generate_plan()

        before = await self.client.get(f"/v1/meal-plans/{plan_id}/batch-prep", headers=self._auth())
        self.assertEqual(before.json(), {"mealPlanId": plan_id, "status": None, "hasBatchPrep": False})

        resp = await self.client.post(f"/v1/meal-plans/{plan_id}/batch-prep", headers=self._auth())
        self.assertEqual(resp.status_code, 202)
        await runner.drain()

        after = await self.client.get(f"/v1/meal-plans/{plan_id}/batch-prep", headers=self._auth())
        self.assertEqual(after.json()["status"], BatchPrepStatus.COMPLETED)
        self.assertTrue(after.json()["hasBatchPrep"])
        job = await self.client.get(f"/v1/meal-plans/jobs/{resp.json()['jobId']}", headers=self._auth())
        self.assertEqual(job.json()["jobType"], "batch_prep")
        self.assertEqual(job.json()["status"], JobStatus.COMPLETED)

    async def test_batch_prep_for_unknown_or_foreign_plan(self):
        await self.seed_profile()
        plan_id = await self._generate_plan()

        foreign = await self.client.post(f"/v1/meal-plans/{plan_id}/batch-prep", headers=self._auth("user-2"))
        self.assertEqual(foreign.status_code, 404)
        missing = await self.client.get(f"/v1/meal-plans/{uuid.uuid4()}/batch-prep", headers=self._auth())
        self.assertEqual(missing.status_code, 404)
        malformed = await self.client.post("/v1/meal-plans/nope/batch-prep", headers=self._auth())
        self.assertEqual(malformed.status_code, 404)

    async def test_batch_prep_conflicts_while_generating(self):
        await self.seed_profile()
        plan_id = await self._generate_plan()

        async with self.Session() as session:
            plan = await session.get(MealPlan, uuid.UUID(plan_id))
            plan.batch_prep_status = BatchPrepStatus.GENERATING
            await session.commit()

        resp = await self.client.post(f"/v1/meal-plans/{plan_id}/batch-prep", headers=self._auth())
        self.assertEqual(resp.status_code, 409)

    async def test_batch_profile_gets_batch_prep_without_model_access(self):
        await self.seed_profile(prep_style="traditional_batch", meal_types=["lunch", "dinner"])
        plan_id = await self._generate_plan()

        resp = await self.client.get(f"/v1/meal-plans/{plan_id}/batch-prep", headers=self._auth())
        self.assertEqual(resp.json()["status"], BatchPrepStatus.COMPLETED)
        self.assertTrue(resp.json()["hasBatchPrep"])

    async def test_concurrent_submission_returns_the_winning_job(self):
        await self.seed_profile()
        async with self.Session() as session:
            winner = await create_job(session, user_id="user-1", options={"test_mode": True})

        lookups = [None]

        async def racing_lookup(session, user_id, **kwargs):
            if lookups:
                return lookups.pop()
            return await find_in_flight_job(session, user_id, **kwargs)

        with mock.patch("mealplan.routes.meal_plans.find_in_flight_job", side_effect=racing_lookup):
            resp = await self.client.post("/v1/meal-plans/jobs", json={"testMode": True}, headers=self._auth())

        self.assertEqual(resp.status_code, 202)
        self.assertEqual(resp.json()["jobId"], str(winner.id))

    async def test_stale_job_is_replaced_on_submit(self):
        await self.seed_profile()
        async with self.Session() as session:
            stuck = await create_job(session, user_id="user-1", options={"test_mode": True})
            await session.execute(
                update(GenerationJob)
                .where(GenerationJob.id == stuck.id)
                .values(updated_at=datetime(2020, 1, 1, tzinfo=timezone.utc))
            )
            await session.commit()

        resp = await self.client.post("/v1/meal-plans/jobs", json={"testMode": True}, headers=self._auth())
        self.assertNotEqual(resp.json()["jobId"], str(stuck.id))

        old = await self.client.get(f"/v1/meal-plans/jobs/{stuck.id}", headers=self._auth())
        self.assertEqual(old.json()["status"], JobStatus.FAILED)
        self.assertEqual(old.json()["errorMessage"], STALE_JOB_MESSAGE)
