"""Translate service errors into HTTP responses."""

import logging

from fastapi import HTTPException

from services.errors import ServiceError

logger = logging.getLogger(__name__)


def to_http_exception(exc: ServiceError) -> HTTPException:
    """Only the user-facing message leaves the API; internal detail goes to the log."""
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.code, exc)
    else:
        logger.info("%s: %s", exc.code, exc)
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())
