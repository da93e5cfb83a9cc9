"""FastAPI application for the sync service."""

from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError as FastAPIValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from expense_sync import __version__
from expense_sync.audit import configure_logging
from expense_sync.config import Settings, get_settings
from expense_sync.models.validation import ValidationIssue
from expense_sync.orchestrator import SyncService, create_app_components
from expense_sync.storage import NotFoundError, StorageError
from expense_sync.validation import RequestValidationError, issues_from_pydantic
from expense_sync.api.live import ws_router
from expense_sync.api.routes import router


logger = structlog.get_logger(__name__)


def _errors_response(issues: list[ValidationIssue]) -> JSONResponse:
    return JSONResponse(status_code=400, content=RequestValidationError(issues).to_response())


def _issues_from_fastapi(error: FastAPIValidationError) -> list[ValidationIssue]:
    issues = []
    for err in error.errors():
        # Drop the "query"/"body" prefix FastAPI puts on locations
        loc = [str(part) for part in err.get("loc", ())]
        if loc and loc[0] in ("query", "body", "path", "header"):
            loc = loc[1:]
        issues.append(ValidationIssue(
            field=".".join(loc) or "request",
            issue_type=err.get("type", "invalid_value"),
            message=err.get("msg", "Invalid value"),
        ))
    return issues


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain exceptions to HTTP responses."""

    @app.exception_handler(RequestValidationError)
    async def handle_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content=exc.to_response())

    @app.exception_handler(FastAPIValidationError)
    async def handle_request_validation(request: Request, exc: FastAPIValidationError) -> JSONResponse:
        return _errors_response(_issues_from_fastapi(exc))

    @app.exception_handler(ValidationError)
    async def handle_pydantic(request: Request, exc: ValidationError) -> JSONResponse:
        return _errors_response(issues_from_pydantic(exc))

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"message": str(exc)})

    @app.exception_handler(StorageError)
    async def handle_storage(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("storage_error", path=request.url.path, error=str(exc))
        await request.app.state.service.audit_logger.log_storage_error(
            operation=f"{request.method} {request.url.path}",
            error_message=str(exc),
            user_id=request.headers.get("x-user-id"),
        )
        return JSONResponse(status_code=500, content={"message": str(exc)})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": exc.detail},
            headers=getattr(exc, "headers", None),
        )


def create_app(
    service: Optional[SyncService] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        service: Pre-built SyncService (tests pass one with a ManualClock).
                 Built from settings when omitted.
        settings: Defaults to get_settings()
    """
    settings = settings or get_settings()
    configure_logging(settings.app.log_level)

    app = FastAPI(
        title="Expense Sync",
        version=__version__,
        debug=settings.app.debug_mode,
    )
    app.state.service = service or create_app_components(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.app.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return await app.state.service.health()

    app.include_router(router)
    app.include_router(ws_router)

    logger.info("app_created", environment=settings.app.app_environment)
    return app
