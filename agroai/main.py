"""Main FastAPI application for the AgroAI auth service."""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request

from agroai import db
from agroai.config import APP_VERSION, ENVIRONMENT
from agroai.errors import install_error_handlers
from agroai.log import configure_logging
from agroai.rate_limit import general_rate_limit
from agroai.routers import auth, health
from agroai.services.background import otp_sweeper
from agroai.services.sms import sms_sender

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await db.init_db()
    await otp_sweeper.start()
    logger.info("AgroAI auth service started (%s)", ENVIRONMENT)
    try:
        yield
    finally:
        await otp_sweeper.stop()
        await sms_sender.close()
        await db.close_db()
        logger.info("AgroAI auth service stopped")


app = FastAPI(
    title="AgroAI Auth API",
    description="Phone OTP registration and login for the AgroAI farming assistant",
    version=APP_VERSION,
    lifespan=lifespan,
    dependencies=[Depends(general_rate_limit)],
)

install_error_handlers(app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "%s %s -> %d (%.1f ms)",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(health.router)
app.include_router(auth.router)
