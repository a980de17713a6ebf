import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from tiergate.api import cron, health, subscription, webhooks
from tiergate.core.config import is_subscription_enabled, settings, validate_config
from tiergate.core.database import create_all_tables
from tiergate.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from tiergate.core.logging import configure_logging
from tiergate.core.middleware.request_id import RequestIdMiddleware

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("tiergate")
    logger.info(
        "Starting tiergate...",
        extra={"subscription_enabled": is_subscription_enabled(settings), "env": settings.ENV},
    )
    if settings.ENV.lower() != "production":
        # Production schema is owned by migrations
        create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping tiergate...")


app = FastAPI(title="tiergate", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(subscription.router)
app.include_router(webhooks.router)
app.include_router(cron.router)
app.include_router(health.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
