"""FastAPI application for the Origin bridge.

Run with:
    uvicorn origin_bridge.main:app --app-dir backend
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from origin_bridge.api import deps
from origin_bridge.api.routes import router
from origin_bridge.core.config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if deps.origin_mount is not None:
        logger.info("Shutting down telescope connection")
        await deps.origin_mount.close()


app = FastAPI(title="Origin Bridge", lifespan=lifespan)
app.include_router(router, prefix="/api/telescope", tags=["telescope"])


@app.get("/health")
async def health():
    return {"status": "ok"}
