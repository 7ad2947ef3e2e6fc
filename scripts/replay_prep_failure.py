#!/usr/bin/env python3
"""Re-validate the raw prep schedule captured for a failed meal plan job.

Reads the raw response from the job's debug data (or, failing that, the
latest prep-stage generation log) and runs it through the same parser the
pipeline uses, so a prompt or schema fix can be checked offline.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy import select

from mealplan import db
from mealplan.errors import GenerationError
from mealplan.models import GenerationJob, GenerationLog
from mealplan.schemas import PrepSchedule
from mealplan.services.generation import STAGE_PREP, parse_stage_payload


async def load_raw_response(job_id: uuid.UUID) -> Optional[str]:
    async with db.get_session() as session:
        job = await session.get(GenerationJob, job_id)
        if job is None:
            raise SystemExit(f"Job {job_id} not found")
        raw = (job.debug_data or {}).get("raw_response")
        if raw:
            return raw
        result = await session.execute(
            select(GenerationLog.output)
            .where(GenerationLog.job_id == job_id, GenerationLog.stage == STAGE_PREP)
            .order_by(GenerationLog.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


def replay(raw: str) -> Dict[str, Any]:
    try:
        schedule = parse_stage_payload(STAGE_PREP, raw, PrepSchedule)
    except GenerationError as exc:
        return {"valid": False, "error": exc.message, "raw_length": len(raw)}
    return {
        "valid": True,
        "sessions": len(schedule.prep_sessions),
        "assembly_days": sorted(schedule.daily_assembly),
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replay a failed prep-stage response through validation.")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--job-id", help="Failed generation job id (reads DATABASE_URL).")
    source.add_argument("--file", type=Path, help="File holding a raw prep response.")
    parser.add_argument("--dump", action="store_true", help="Print the raw response as well.")
    return parser


async def _run(args: argparse.Namespace) -> int:
    if args.file:
        raw = args.file.read_text(encoding="utf-8")
    else:
        db.init_engine()
        try:
            raw = await load_raw_response(uuid.UUID(args.job_id))
        finally:
            if db.engine is not None:
                await db.engine.dispose()
    if not raw:
        print("No raw prep response captured for this job", file=sys.stderr)
        return 2
    outcome = replay(raw)
    if args.dump:
        outcome["raw_response"] = raw
    print(json.dumps(outcome, indent=2))
    return 0 if outcome["valid"] else 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
