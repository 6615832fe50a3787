from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from .db.dynamodb.errors import (
    DdbConflict,
    DdbError,
    DdbNotFound,
    DdbThrottled,
    DdbUnavailable,
    DdbValidation,
)
from .middleware import (
    AccessLogMiddleware,
    AdminRateLimitMiddleware,
    AuthMiddleware,
    RequestContextMiddleware,
)
from .middleware.cors import build_allowed_origin_regex, build_allowed_origins
from .observability.logging import configure_logging, get_logger
from .observability.otel import configure_otel, instrument_app
from .problem_details import from_http_exception, from_validation_error, problem_response
from .routers.admin import router as admin_router
from .routers.cron import router as cron_router
from .routers.final_jeopardy import router as final_jeopardy_router
from .routers.games import router as games_router
from .routers.health import VERSION
from .routers.health import router as health_router
from .routers.question_banks import router as question_banks_router
from .routers.subscription import router as subscription_router
from .settings import settings


def create_app() -> FastAPI:
    configure_logging(level="INFO")
    log = get_logger("startup")

    # No-op unless OTEL_ENABLED=true
    configure_otel(settings)

    app = FastAPI(
        title="Review Game Backend",
        version=VERSION,
        default_response_class=ORJSONResponse,
        # /path and /path/ are distinct; no redirects through the frontend proxy.
        redirect_slashes=False,
    )

    allowed_origins = build_allowed_origins(
        frontend_base_url=settings.frontend_base_url,
        frontend_url=settings.frontend_url,
        frontend_urls=settings.frontend_urls,
    )

    log.info("app_starting", settings=settings.to_log_safe_dict())

    # Middlewares (last added is outermost)
    # Auth runs inside CORS so auth failures still get CORS headers.
    app.add_middleware(AuthMiddleware)
    app.add_middleware(AdminRateLimitMiddleware)
    app.add_middleware(AccessLogMiddleware, exclude_paths={"/"})
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_origin_regex=build_allowed_origin_regex(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Request-Id"],
        expose_headers=["X-Request-Id"],
        max_age=3000,
    )
    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(StarletteHTTPException, from_http_exception)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, from_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(DdbError, _ddb_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(games_router, prefix="/api")
    app.include_router(final_jeopardy_router, prefix="/api")
    app.include_router(question_banks_router, prefix="/api")
    app.include_router(subscription_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")
    app.include_router(cron_router, prefix="/api")

    instrument_app(app, settings)

    return app


def _ddb_error_handler(request: Request, exc: DdbError) -> Response:
    status_code = 500
    title = "Storage Error"

    if isinstance(exc, DdbValidation):
        status_code = 400
        title = "Bad Request"
    elif isinstance(exc, DdbNotFound):
        status_code = 404
        title = "Not Found"
    elif isinstance(exc, DdbConflict):
        status_code = 409
        title = "Conflict"
    elif isinstance(exc, (DdbThrottled, DdbUnavailable)):
        status_code = 503
        title = "Service Unavailable"

    extensions = {
        "operation": exc.operation,
        "table": exc.table_name,
        "retryable": bool(exc.retryable),
    }
    extensions = {k: v for k, v in extensions.items() if v is not None}

    get_logger("ddb").warning(
        "ddb_error_response",
        status_code=status_code,
        operation=exc.operation,
        error_type=type(exc).__name__,
    )
    return problem_response(
        request=request,
        status_code=status_code,
        title=title,
        detail=exc.message,
        extensions=extensions,
    )


def _unhandled_exception_handler(request: Request, exc: Exception) -> Response:
    rid = getattr(request.state, "request_id", None)
    user = getattr(request.state, "user", None)
    get_logger("unhandled").exception(
        "unhandled_exception",
        request_id=str(rid) if rid else None,
        http_method=request.method.upper(),
        path=request.url.path,
        user_sub=str(getattr(user, "sub", "") or "") or None,
        error_type=type(exc).__name__,
    )
    return problem_response(
        request=request,
        status_code=500,
        title="Internal Server Error",
        detail=str(exc) if exc else None,
    )


app = create_app()
