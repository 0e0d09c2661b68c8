from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

logger = logging.getLogger(__name__)


class LendingError(Exception):
    """Base exception for expected lending domain failures.

    The message is shown to the user as-is, so it should read like a toast.
    """

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(LendingError):
    status_code = 404

    def __init__(self, entity: str):
        super().__init__(f"{entity} not found")


class ForbiddenError(LendingError):
    status_code = 403


class InvalidStateError(LendingError):
    """Raised when an operation does not apply to the entity's current status."""


class BookNotAvailableError(LendingError):
    def __init__(self, message: str = "Book is not available"):
        super().__init__(message)


class BorrowLimitReachedError(LendingError):
    def __init__(self, active: int, limit: int, name: str = None):
        self.active = active
        self.limit = limit
        if name:
            message = f"{name} has reached their borrow limit ({active}/{limit})"
        else:
            message = f"You've reached your borrow limit ({active}/{limit} books)"
        super().__init__(message)


class DuplicateError(LendingError):
    pass


class ValidationFailedError(LendingError):
    pass


class ConcurrentModificationError(LendingError):
    def __init__(self, entity: str):
        super().__init__(f"{entity} was modified concurrently, please retry")


class DatabaseError(Exception):
    def __init__(self, operation: str, details: str):
        super().__init__(f"Database error during {operation}: {details}")


# Exception handlers
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Request validation error: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": "Invalid request parameters. Please check your input."},
    )


async def response_validation_exception_handler(
    request: Request, exc: ResponseValidationError
):
    logger.error(f"Response validation error: {exc.errors()}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "The server encountered an unexpected error. Please contact support."
        },
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Please contact support."},
    )


async def lending_exception_handler(request: Request, exc: LendingError):
    logger.info(f"Lending error: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message},
    )


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(
        ResponseValidationError, response_validation_exception_handler
    )
    app.add_exception_handler(Exception, general_exception_handler)
    app.add_exception_handler(LendingError, lending_exception_handler)
