from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError

from ..auth import get_current_principal
from ..config import get_settings
from ..db import get_session
from ..errors import BatchPrepConflictError, BatchPrepUnavailableError
from ..models import GenerationJob, JobType
from ..schemas import (
    BatchPrepStatusResponse,
    CreateMealPlanJobRequest,
    JobStatusResponse,
    JobSubmissionResponse,
)
from ..services import runner
from ..services.batch_prep import get_batch_prep_state, request_batch_prep
from ..services.jobs import create_job, expire_stale_jobs, find_in_flight_job, get_job

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/meal-plans", tags=["meal-plans"])


def _parse_plan_id(plan_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(plan_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="meal_plan_not_found")


def _job_response(job: GenerationJob) -> JobStatusResponse:
    return JobStatusResponse(
        jobId=str(job.id),
        jobType=job.job_type,
        status=job.status,
        progressMessage=job.progress_message,
        errorMessage=job.error_message,
        mealPlanId=str(job.meal_plan_id) if job.meal_plan_id else None,
    )


@router.post("/jobs", response_model=JobSubmissionResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_meal_plan_job(
    payload: CreateMealPlanJobRequest,
    principal=Depends(get_current_principal),
) -> JobSubmissionResponse:
    user_id = principal.get("sub")
    max_age = timedelta(minutes=get_settings().job_stale_after_minutes)
    async with get_session() as session:
        await expire_stale_jobs(session, max_age=max_age, user_id=user_id)
        existing = await find_in_flight_job(session, user_id, job_type=JobType.MEAL_PLAN)
        if existing is not None:
            logger.info("Returning in-flight meal plan job job=%s user=%s", existing.id, user_id)
            return JobSubmissionResponse(jobId=str(existing.id), status=existing.status)
        options = {
            "theme_selection": payload.themeSelection,
            "protein_focus": payload.proteinFocus.model_dump() if payload.proteinFocus else None,
            "test_mode": payload.testMode,
        }
        try:
            job = await create_job(session, user_id=user_id, job_type=JobType.MEAL_PLAN, options=options)
        except IntegrityError:
            # A concurrent request created the job between the lookup and the insert.
            await session.rollback()
            existing = await find_in_flight_job(session, user_id, job_type=JobType.MEAL_PLAN)
            if existing is None:
                raise
            logger.info("Returning concurrently created job job=%s user=%s", existing.id, user_id)
            return JobSubmissionResponse(jobId=str(existing.id), status=existing.status)

    runner.schedule_meal_plan_run(job.id, user_id, options)
    return JobSubmissionResponse(jobId=str(job.id), status=job.status)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_meal_plan_job(
    job_id: str,
    principal=Depends(get_current_principal),
) -> JobStatusResponse:
    user_id = principal.get("sub")
    async with get_session() as session:
        try:
            job = await get_job(session, job_id, expected_user_id=user_id)
        except PermissionError:
            job = None
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job_not_found")
    return _job_response(job)


@router.post(
    "/{plan_id}/batch-prep",
    response_model=JobSubmissionResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_batch_prep(
    plan_id: str,
    principal=Depends(get_current_principal),
) -> JobSubmissionResponse:
    user_id = principal.get("sub")
    plan_uuid = _parse_plan_id(plan_id)
    async with get_session() as session:
        try:
            job, created = await request_batch_prep(session, meal_plan_id=plan_uuid, user_id=user_id)
        except (LookupError, PermissionError):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="meal_plan_not_found")
        except BatchPrepConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
        except BatchPrepUnavailableError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    if created:
        runner.schedule_batch_prep(job.id, plan_uuid, user_id)
    return JobSubmissionResponse(jobId=str(job.id), status=job.status)


@router.get("/{plan_id}/batch-prep", response_model=BatchPrepStatusResponse)
async def get_batch_prep(
    plan_id: str,
    principal=Depends(get_current_principal),
) -> BatchPrepStatusResponse:
    user_id = principal.get("sub")
    plan_uuid = _parse_plan_id(plan_id)
    async with get_session() as session:
        try:
            state = await get_batch_prep_state(session, meal_plan_id=plan_uuid, user_id=user_id)
        except (LookupError, PermissionError):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="meal_plan_not_found")
    return BatchPrepStatusResponse(
        mealPlanId=state["meal_plan_id"],
        status=state["status"],
        hasBatchPrep=state["has_batch_prep"],
    )
