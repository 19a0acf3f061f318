"""Fesoni API application: routers, request ids and the JSON error surface.

Every error leaves the app as an ErrorResponse body carrying the request's
X-Request-ID header, including validation failures and upstream errors that
escape a route.
"""

import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from fesoni.api.routes import health, sessions
from fesoni.logging import configure_logging
from fesoni.models.contracts import ErrorResponse
from fesoni.utils.document_service import DocumentServiceError

configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    logger.info("api_startup")
    yield
    await sessions.shutdown()
    logger.info("api_shutdown")


app = FastAPI(
    title="Fesoni API",
    version=health.VERSION,
    docs_url="/docs",
    redoc_url=None,
    lifespan=lifespan,
)


def _error_response(
    request: Request,
    status: int,
    error: ErrorResponse,
) -> JSONResponse:
    response = JSONResponse(status_code=status, content=error.model_dump(exclude_none=True))
    response.headers["X-Request-ID"] = getattr(
        request.state, "request_id", request.headers.get("X-Request-ID", "")
    )
    return response


def _describe_validation(exc: RequestValidationError) -> str:
    # body.message: Field required; query.target: ...
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Bind a request id into the structlog context and echo it back."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    return _error_response(
        request,
        422,
        ErrorResponse(
            error="validation_error", message=_describe_validation(exc), retryable=False
        ),
    )


@app.exception_handler(DocumentServiceError)
async def document_service_exception_handler(
    request: Request,
    exc: DocumentServiceError,
) -> JSONResponse:
    """A document-service failure no route handled: a retryable 502."""
    logger.warning(
        "document_service_unhandled",
        path=request.url.path,
        operation=exc.operation,
        status=exc.status_code,
        error=str(exc),
    )
    return _error_response(
        request,
        502,
        ErrorResponse(
            error="document_service_error",
            message="The document service is unavailable. Please try again.",
            retryable=True,
            detail=exc.operation,
        ),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return _error_response(
        request,
        500,
        ErrorResponse(
            error="internal_error", message="An unexpected error occurred", retryable=True
        ),
    )


app.include_router(health.router)
app.include_router(sessions.router, prefix="/api/v1")
