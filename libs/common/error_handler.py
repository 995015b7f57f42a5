"""Translate domain exceptions into JSON error responses.

Services register their exception hierarchy with an HTTP status per class;
the most specific registered class wins. Response bodies look like
``{"detail": "...", "code": "..."}``.
"""

from typing import Mapping

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from libs.common.logging import get_logger

logger = get_logger(__name__)


def add_exception_handlers(app: FastAPI, status_by_exception: Mapping[type, int]) -> None:
    ordered = sorted(status_by_exception.items(), key=lambda item: len(item[0].__mro__), reverse=True)

    def status_for(exc: Exception) -> int:
        for exc_type, status_code in ordered:
            if isinstance(exc, exc_type):
                return status_code
        return 500

    async def handle(request: Request, exc: Exception) -> JSONResponse:
        status_code = status_for(exc)
        detail = getattr(exc, "message", None) or str(exc)
        code = getattr(exc, "code", None)
        if status_code >= 500:
            logger.error(
                "%s on %s %s: %s",
                type(exc).__name__,
                request.method,
                request.url.path,
                detail,
            )
        else:
            logger.info("%s: %s", type(exc).__name__, detail)
        return JSONResponse(status_code=status_code, content={"detail": detail, "code": code})

    for exc_type in status_by_exception:
        app.add_exception_handler(exc_type, handle)
