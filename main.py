#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Expo Registration API
================================================================================

FastAPI application: registration forms for visitors, exhibitors, partners,
speakers and awardees; ticket validation, entry passes and upgrades.

Run:
   uvicorn main:app --host 0.0.0.0 --port 8000 --workers 4
"""

import os
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.gzip import GZipMiddleware

from config import CORS_ORIGINS
from errors import ApiException
from lifespan import lifespan
from middleware import RequestIDMiddleware
from rate_limit import limiter, rate_limit_exceeded_handler
from registration_routes import registration_router
from reminder_routes import reminder_router
from ticket_routes import ticket_router

logger = logging.getLogger("expo_registration.main")


app = FastAPI(
    title="Expo Registration API",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

# Initialize rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


# ============================================================================
# Exception Handlers
# ============================================================================
# Every error body is {"success": false, "error": "..."}.

@app.exception_handler(ApiException)
async def api_exception_handler(request: Request, exc: ApiException):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} in {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "; ".join(messages) or "Invalid request"},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Catch all unhandled exceptions; the traceback stays in the logs."""
    logger.error(f"Unhandled exception in {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"success": False, "error": "Server error"})


# ============================================================================
# Middleware Setup
# ============================================================================
# Request ID middleware runs first so every log line of a request carries the id.
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_ORIGINS != ["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Content-Disposition"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)  # Compress responses > 1KB


# ============================================================================
# Routes
# ============================================================================

@app.get("/api/health", tags=["System"])
async def health(request: Request):
    connection = getattr(request.app.state, "mongo", None)
    db_ok = bool(connection is not None and await connection.verify())
    task_manager = getattr(request.app.state, "task_manager", None)
    return JSONResponse(
        status_code=200 if db_ok else 503,
        content={
            "success": db_ok,
            "status": "ok" if db_ok else "degraded",
            "database": db_ok,
            "background_tasks": task_manager.get_active_task_count() if task_manager else 0,
        },
    )


# Ticket routes are registered before the catch-all /api/{role_plural} routes
app.include_router(ticket_router)
app.include_router(reminder_router)
app.include_router(registration_router)


if __name__ == "__main__":
    import uvicorn
    logger.warning("Starting application in DEVELOPMENT mode with Uvicorn auto-reload.")
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        log_level="info",
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
