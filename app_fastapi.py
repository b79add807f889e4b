# app_fastapi.py
# -*- coding: utf-8 -*-
"""
HTTP surface of the civic issue pipeline.

    uvicorn app_fastapi:app --reload

- POST  /issues                       report an issue
- POST  /issues/uploads               upload an image, returns its reference
- GET   /issues                       filtered list (status, category, department, flags)
- GET   /issues/stats                 dashboard statistics
- GET   /issues/{issue_id}            snapshot + audit trail
- PATCH /issues/{issue_id}/status     lifecycle transition
- POST  /issues/{issue_id}/reassign   manual routing
- POST  /issues/{issue_id}/feedback   citizen rating (resolved/closed only)
- POST  /sla/sweep                    escalate overdue issues
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from brain.llm_client import SlidingWindowRateLimiter, build_oracle_client
from core.logging import logger
from db.init_db import init_db
from routers import health, issues, sla
from services.image_store import ImageStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    # one rate limiter for the whole process: the provider quota is per key
    app.state.rate_limiter = SlidingWindowRateLimiter()
    app.state.oracle_client = build_oracle_client(app.state.rate_limiter)
    app.state.image_store = ImageStore()
    logger.info("civic pipeline API started")
    yield


app = FastAPI(
    title="Civic Issue Pipeline API",
    description="""
Backend for citizen-reported civic issues (potholes, garbage, leaks, ...).

- classifies reports from description keywords and (optionally) photos
- flags nearby duplicates
- routes issues to the responsible department with an SLA deadline
- tracks the issue lifecycle, escalates overdue issues, estimates resolution time
""",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS: open during development, restrict to the front-end domain in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(issues.router)
app.include_router(sla.router)
