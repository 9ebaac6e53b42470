from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class CanteenError(Exception):
    status_code = 400

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra


class ValidationError(CanteenError):
    status_code = 400


class ForbiddenError(CanteenError):
    status_code = 403


class NotFoundError(CanteenError):
    status_code = 404


class ConflictError(CanteenError):
    status_code = 409


class UpstreamError(CanteenError):
    """The payment gateway failed or timed out. Safe to retry."""

    status_code = 502


async def canteen_error_handler(request: Request, exc: CanteenError):
    return JSONResponse(
        status_code=exc.status_code, content={"detail": exc.message, **exc.extra}
    )


def install(app: FastAPI):
    app.add_exception_handler(CanteenError, canteen_error_handler)
