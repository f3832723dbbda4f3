
import logging

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class CoTravelError(Exception):
    """Base for failures surfaced to API callers as "<Category> failed: <reason>"."""

    category = "Request"
    status_code = 400

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    @property
    def message(self) -> str:
        return f"{self.category} failed: {self.reason}"

    def __str__(self) -> str:
        return self.message


class AuthError(CoTravelError):
    category = "Authentication"
    status_code = 401


class ValidationError(CoTravelError):
    category = "Validation"
    status_code = 400


class FundingError(CoTravelError):
    category = "Funding"
    status_code = 400


class AuthorizationError(CoTravelError):
    category = "Authorization"
    status_code = 403


class NotFoundError(CoTravelError):
    category = "Lookup"
    status_code = 404


class ConflictError(CoTravelError):
    category = "Request"
    status_code = 409


class ChainError(CoTravelError):
    category = "Transaction"
    status_code = 502


class ChainTimeoutError(ChainError):
    status_code = 504


async def cotravel_error_handler(request: Request, exc: CoTravelError):
    extra = {"method": request.method, "path": request.url.path, "status": exc.status_code}
    if isinstance(exc, ChainError):
        logger.error("%s", exc.message, extra=extra)
    else:
        logger.warning("%s", exc.message, extra=extra)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "category": exc.category},
    )
