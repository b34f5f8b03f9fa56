# core_deps.py
# ================================================================================
# Shared FastAPI dependencies. Everything is read from app.state, which the
# lifespan populates; route modules never import globals for I/O handles.
# ================================================================================

import logging
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from background_tasks import BackgroundTaskManager, get_task_manager
from config import ADMIN_API_KEY
from mailer import Mailer
from mongo_connection import acquire_database
from payments import PaymentClient

logger = logging.getLogger(__name__)

__all__ = [
    "acquire_database",
    "get_mailer",
    "get_payment_client",
    "get_background_tasks",
    "require_admin",
]


async def get_mailer(request: Request) -> Mailer:
    """FastAPI Dependency: the shared mail collaborator."""
    mailer = getattr(request.app.state, "mailer", None)
    if mailer is None:
        logger.critical("❌ get_mailer: Mailer not found on app.state!")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Mail service not available",
        )
    return mailer


async def get_payment_client(request: Request) -> PaymentClient:
    """FastAPI Dependency: the payment-order client."""
    payments = getattr(request.app.state, "payments", None)
    if payments is None:
        logger.critical("❌ get_payment_client: PaymentClient not found on app.state!")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment service not available",
        )
    return payments


async def get_background_tasks(request: Request) -> BackgroundTaskManager:
    return getattr(request.app.state, "task_manager", None) or get_task_manager()


async def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> str:
    """
    FastAPI Dependency: guards admin actions (list, confirm, approve, cancel).

    With ADMIN_API_KEY unset the guard is open, which is only meant for
    local development. Returns the actor name recorded on status changes.
    """
    if not ADMIN_API_KEY:
        return "web-admin"
    if not x_admin_key or not secrets.compare_digest(x_admin_key, ADMIN_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin key required",
        )
    return "web-admin"
