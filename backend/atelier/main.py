import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from atelier.api.routes import designs, health, images
from atelier.bootstrap import Services, build_services
from atelier.config import settings
from atelier.errors import AtelierError
from atelier.logging import configure_logging

configure_logging()

logger = structlog.get_logger()


def _with_request_id(request: Request, response: JSONResponse) -> JSONResponse:
    response.headers["X-Request-ID"] = getattr(
        request.state, "request_id", request.headers.get("X-Request-ID", "")
    )
    return response


def _error_json(status: int, code: str, message: str, retryable: bool) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"error": code, "message": message, "retryable": retryable},
    )


def create_app(services: Services | None = None) -> FastAPI:
    """Build the API. Pass `services` to run against pre-built (test) clients."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "services", None) is None
        if owned:
            app.state.services = build_services(settings)
        logger.info("api_started", environment=settings.environment)
        try:
            yield
        finally:
            if owned:
                await app.state.services.close()

    app = FastAPI(
        title="Atelier API",
        version="0.1.0",
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Attach a unique request ID to every request for log correlation.

        Sets the ID in structlog context vars (appears in all log entries for
        the request) and returns it in the X-Request-ID response header.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(AtelierError)
    async def domain_exception_handler(request: Request, exc: AtelierError) -> JSONResponse:
        log = logger.error if exc.status >= 500 else logger.info
        log("domain_error", path=request.url.path, error=exc.code, message=exc.message)
        return _with_request_id(
            request, _error_json(exc.status, exc.code, exc.message, exc.retryable)
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Routing errors (unknown path, wrong method) in the ErrorResponse shape."""
        code = "not_found" if exc.status_code == 404 else f"http_{exc.status_code}"
        return _with_request_id(
            request, _error_json(exc.status_code, code, str(exc.detail), exc.status_code >= 500)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        """Return ErrorResponse JSON for Pydantic validation errors.

        FastAPI's default 422 returns {"detail": [...]}, which doesn't match
        our ErrorResponse contract. Clients need a single error shape.
        """
        messages = []
        for err in exc.errors():
            loc = " -> ".join(str(part) for part in err["loc"])
            messages.append(f"{loc}: {err['msg']}")
        return _with_request_id(
            request, _error_json(422, "validation_error", "; ".join(messages), False)
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Return consistent ErrorResponse JSON for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            exc_info=exc,
        )
        return _with_request_id(
            request, _error_json(500, "internal_error", "An unexpected error occurred", True)
        )

    app.include_router(health.router)
    app.include_router(designs.router, prefix="/api/v1")
    app.include_router(images.router, prefix="/api/v1")
    return app


app = create_app()
