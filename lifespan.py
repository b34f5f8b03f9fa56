"""Application lifespan management (startup and shutdown)."""
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from background_tasks import get_task_manager
from config import (
    API_BASE,
    APP_ENV,
    DB_NAME,
    MONGO_MAX_POOL_SIZE,
    MONGO_MIN_POOL_SIZE,
    MONGO_URI,
    PAYMENT_CURRENCY,
)
from index_management import ensure_core_indexes
from mailer import Mailer
from mongo_connection import MongoConnection
from payments import PaymentClient

logger = logging.getLogger(__name__)

PAYMENT_HTTP_TIMEOUT = httpx.Timeout(15.0, connect=5.0)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI application lifespan (startup and shutdown)."""
    logger.info("🚀 Application startup sequence initiated...")
    logger.info(f"APP_ENV set to: '{APP_ENV}'")
    app.state.environment_mode = APP_ENV

    # MongoDB Connection
    connection = MongoConnection(
        MONGO_URI,
        DB_NAME,
        max_pool_size=MONGO_MAX_POOL_SIZE,
        min_pool_size=MONGO_MIN_POOL_SIZE,
    )
    try:
        db = await connection.connect()
    except Exception as e:
        logger.critical(f"❌ CRITICAL ERROR: Failed to connect to MongoDB: {e}", exc_info=True)
        raise RuntimeError(f"MongoDB connection failed: {e}") from e
    app.state.mongo = connection

    # Indexes are best-effort; the write path re-ensures them lazily
    try:
        await ensure_core_indexes(db)
    except Exception as e:
        logger.error(f"⚠️ Error during initial index setup: {e}", exc_info=True)

    # Outbound collaborators
    http_client = httpx.AsyncClient(timeout=PAYMENT_HTTP_TIMEOUT)
    app.state.http_client = http_client
    app.state.payments = PaymentClient(http_client, api_base=API_BASE, currency=PAYMENT_CURRENCY)
    app.state.mailer = Mailer(db=db)
    app.state.task_manager = get_task_manager()
    if app.state.mailer.log_only:
        logger.warning("⚠️ Mailer running with the log-only transport.")
    else:
        logger.info(f"✔️ Mailer configured for SMTP host '{app.state.mailer.smtp_host}'.")

    logger.info("✔️ Application startup sequence complete. Ready to serve requests.")

    try:
        yield  # The application runs here
    finally:
        logger.info("🛑 Application shutdown sequence initiated...")
        await app.state.task_manager.drain()
        await http_client.aclose()
        connection.close()
        logger.info("✔️ Application shutdown complete.")
