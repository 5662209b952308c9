"""
Global exception handlers
"""
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
import logging

from core.responses import error_response, BusinessException

logger = logging.getLogger(__name__)


def render_error(status_code: int, message: str, error_code: str = None, event: str = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_response(error=message, error_code=error_code, event=event).model_dump(exclude_none=True),
    )


async def business_exception_handler(request: Request, exc: BusinessException):
    if exc.status_code >= 500:
        logger.error(f"Business exception ({exc.error_code}): {exc.message}")
    else:
        logger.warning(f"Business exception ({exc.error_code}): {exc.message}")
    return render_error(exc.status_code, exc.message, exc.error_code)


async def http_exception_handler_custom(request: Request, exc: HTTPException):
    logger.warning(f"HTTP exception: {exc.detail}")
    return render_error(exc.status_code, str(exc.detail), "HTTP_ERROR")


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return render_error(500, "internal server error", "INTERNAL_SERVER_ERROR")


def setup_exception_handlers(app):
    app.add_exception_handler(BusinessException, business_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler_custom)
    app.add_exception_handler(Exception, general_exception_handler)
