from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from . import db
from .config import get_settings
from .db import init_engine
from .observability import configure_logging, init_sentry
from .startup import validate_settings
from .routes import health, meal_plans
from .services import runner


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Frame-Options", "DENY")
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Runs left unfinished by a previous process resume from their step ledger.
    if db.SessionLocal is not None:
        await runner.resume_in_flight_jobs()
    yield


def create_app() -> FastAPI:
    s = get_settings()
    configure_logging(json_logs=s.log_json, level=s.log_level)
    init_sentry(s)
    validate_settings(s)
    app = FastAPI(title=s.app_name, lifespan=lifespan)

    # Initialize DB engine if configured
    init_engine()

    origins: List[str] = s.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=1024)

    prefix = "/v1"
    app.include_router(health.router, prefix=prefix)
    app.include_router(meal_plans.router, prefix=prefix)

    # Metrics
    Instrumentator().instrument(app).expose(app, include_in_schema=False)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run("mealplan.main:app", host="0.0.0.0", port=port, reload=False)
