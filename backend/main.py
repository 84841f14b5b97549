"""
FastAPI application entry point for the CitaClick billing core.

Access is enforced by the gate chain (correlation, JWT authentication,
subscription state). Run with:

    uvicorn main:app --app-dir backend
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from citaclick.api.app import create_app
from citaclick.config.billing_settings import get_billing_settings
from citaclick.database.session import dispose_engine

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting CitaClick billing API")

    settings = get_billing_settings()
    missing = [
        name for name, value in (
            ("DATABASE_URL", settings.database_url),
            ("JWT_SECRET", os.getenv("JWT_SECRET")),
            ("BILLING_PROVIDER_API_KEY", settings.provider_api_key),
            ("BILLING_WEBHOOK_SECRET", settings.webhook_secret),
        )
        if not value
    ]
    if missing:
        logger.warning("Missing configuration, affected features disabled", extra={
            "missing": missing,
        })

    yield

    provider = app.state.billing_provider
    if provider is not None and hasattr(provider, "close"):
        provider.close()
    dispose_engine()
    logger.info("Shutting down CitaClick billing API")


app = create_app(lifespan=lifespan)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
    )
