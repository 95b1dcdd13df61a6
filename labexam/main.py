"""
FastAPI application entrypoint.

Run locally:  uvicorn labexam.main:app --reload
"""

import logging

from fastapi import FastAPI

from labexam.api.routes import router
from labexam.config import settings
from labexam.models.database import Base, engine

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(levelname)s | %(name)s | %(message)s",
)

app = FastAPI(
    title="Lab Exam Engine API",
    description=(
        "Exam definitions, composite panels, versioned result fields, "
        "reference-range validation and completion tracking for a "
        "clinical laboratory."
    ),
    version="1.0.0",
)

app.include_router(router, prefix="/api/v1")


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
