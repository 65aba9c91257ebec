import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

# Load env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from quota_ledger.core.config import settings, validate_config
from quota_ledger.core.database import create_all_tables
from quota_ledger.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from quota_ledger.core.logging import configure_logging
from quota_ledger.core.middleware.request_id import RequestIdMiddleware
from quota_ledger.api import health, quota

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("quota_ledger")
    logger.info("Starting quota ledger...")
    app.state.startup_time = time.time()
    if settings.ENV.lower() != "production":
        # Production schemas are managed out of band
        create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping quota ledger...")


app = FastAPI(title="Quota Ledger", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(quota.router)
app.include_router(health.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("quota_ledger.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
