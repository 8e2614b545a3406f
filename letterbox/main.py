import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from dotenv import load_dotenv

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from letterbox.core.config import settings, validate_config
from letterbox.core.database import create_all_tables
from letterbox.core.logging import configure_logging
from letterbox.core.middleware.request_id import RequestIdMiddleware
from letterbox.core.middleware.metrics import MetricsMiddleware
from letterbox.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from letterbox.api import ai, billing, entitlements, health, newsletters

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("letterbox")
    logger.info("Starting letterbox...")
    if settings.ENV != "production":
        # Production schemas are managed by migrations
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("letterbox").info("Stopping letterbox...")


app = FastAPI(title="letterbox", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.router)
app.include_router(newsletters.router)
app.include_router(entitlements.router)
app.include_router(ai.router)
app.include_router(billing.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("letterbox.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
