from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from irisvision import __version__
from irisvision.config import Settings
from irisvision.controllers import v1
from irisvision.db import init_db, init_local_state
from irisvision.dependencies import ErrorResponse
from irisvision.errors import StoreUnavailable, StoreWriteFailure
from irisvision.logger import setup_logging
from irisvision.models import ErrorCode
from irisvision.services import build_engine
from irisvision.services.storage import close_client, init_storage

settings = Settings()
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_storage(settings)
    await asyncio.to_thread(init_db, settings)
    await asyncio.to_thread(init_local_state, settings)
    app.state.engine = build_engine(settings)
    logger.info("Scan engine ready (env=%s)", settings.app_env)
    yield
    # let in-flight scans commit their history and usage
    await app.state.engine.orchestrator.drain()
    await close_client()


app = FastAPI(
    title="IrisVision Scan API",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    logger.warning("Remote store unavailable on %s: %s", request.url.path, exc)
    err = ErrorResponse(code=ErrorCode.SERVICE_UNAVAILABLE, message="remote store unavailable")
    return JSONResponse(status_code=503, content=err.model_dump())


@app.exception_handler(StoreWriteFailure)
async def store_write_failure_handler(request: Request, exc: StoreWriteFailure):
    logger.error("Device state write failed on %s: %s", request.url.path, exc)
    err = ErrorResponse(code=ErrorCode.STORE_WRITE_FAILURE, message="state could not be saved")
    return JSONResponse(status_code=503, content=err.model_dump())


app.include_router(v1.router)

Instrumentator().instrument(app).expose(app)
