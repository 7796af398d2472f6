#!/usr/bin/env python3
"""
Notifier Admin API - FastAPI Application

Read/admin-only operational surface: health, rate limit inspection and reset,
circuit breaker inspection and reset. It does not trigger notifications.

Usage:
    python main.py

Then open:
    - http://localhost:8090/health - Liveness
    - http://localhost:8090/docs - API Documentation (Swagger UI)
"""

import logging

from fastapi import FastAPI, HTTPException

from core.app_context import AppContext
from notifier.exceptions import NotifierError
from .exceptions import (
    ServiceException,
    service_exception_handler,
    notifier_exception_handler,
    http_exception_handler,
    general_exception_handler
)
from .routers import (
    health_router,
    rate_limits_router,
    circuits_router
)

logger = logging.getLogger(__name__)


def create_app(context: AppContext) -> FastAPI:
    """
    Create the admin API bound to a wired AppContext.

    Args:
        context: Application context holding the dispatcher, limiter and breakers

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Notifier Admin API",
        description="Operational API for the notification pipeline",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.context = context

    # Register exception handlers
    app.add_exception_handler(ServiceException, service_exception_handler)
    app.add_exception_handler(NotifierError, notifier_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers
    app.include_router(health_router)
    app.include_router(rate_limits_router)
    app.include_router(circuits_router)

    return app


def run(context: AppContext) -> None:
    """Run the admin server in the foreground."""
    import uvicorn

    api_config = context.config.admin_api
    logger.info(f"Starting Notifier Admin API on {api_config.host}:{api_config.port}")
    logger.info(f"API Docs: http://{api_config.host}:{api_config.port}/docs")

    uvicorn.run(
        create_app(context),
        host=api_config.host,
        port=api_config.port,
        log_level="info"
    )
