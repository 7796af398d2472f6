#!/usr/bin/env python3
"""
Custom exceptions and error handlers for the admin API.

Pipeline errors keep their internal detail in the logs; clients only get the
exception type and a short message.
"""

import logging
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse

from notifier.exceptions import (
    NotifierError,
    NotificationValidationError,
    QuotaStoreUnavailable,
    UnknownOperationError,
)

logger = logging.getLogger(__name__)


class ServiceException(Exception):
    """Base exception for service layer errors."""
    pass


class CircuitNotFoundException(ServiceException):
    """Raised when no breaker exists for the requested sink."""
    pass


async def service_exception_handler(
    request: Request,
    exc: ServiceException
) -> JSONResponse:
    """
    Handle service layer exceptions.

    Args:
        request: The FastAPI request.
        exc: The service exception.

    Returns:
        JSONResponse with error details.
    """
    status_code = 500
    if isinstance(exc, CircuitNotFoundException):
        status_code = 404
    else:
        logger.error(f"Service error in {request.url.path}: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": str(exc),
            "type": exc.__class__.__name__
        }
    )


async def notifier_exception_handler(
    request: Request,
    exc: NotifierError
) -> JSONResponse:
    """
    Map pipeline errors to HTTP status codes.

    Args:
        request: The FastAPI request.
        exc: The pipeline exception.

    Returns:
        JSONResponse with error details.
    """
    if isinstance(exc, UnknownOperationError):
        status_code = 404
        error = str(exc)
    elif isinstance(exc, NotificationValidationError):
        status_code = 400
        error = str(exc)
    elif isinstance(exc, QuotaStoreUnavailable):
        logger.error(f"Quota store unavailable in {request.url.path}: {exc}")
        status_code = 503
        error = "Rate limit store unavailable"
    else:
        logger.error(f"Notifier error in {request.url.path}: {exc}", exc_info=True)
        status_code = 500
        error = "Notification pipeline error"

    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "type": exc.__class__.__name__
        }
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException
) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with consistent format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
            "type": "HTTPException"
        }
    )


async def general_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error in {request.url.path}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "type": "InternalError"
        }
    )
