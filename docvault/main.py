"""
DocVault API.

Routes live under /api/v1 and every one of them needs a Bearer token; the
token's subject is the owner id the store layer filters rows by. Nothing
slow happens in a request: uploads are handed to the Celery worker, which
runs OCR, reformatting and embedding and moves the document through its
ocr_status values.

Errors of every kind leave as an ErrorResponse body with X-Request-ID set.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from docvault.api.v1.documents import router as documents_router
from docvault.api.v1.search import router as search_router
from docvault.core.config import settings
from docvault.core.exceptions import ConfigurationError, DocumentNotFoundError, EmptyInputError
from docvault.db.session import check_db_health, engine
from docvault.schemas.documents import DocumentErrors, ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

# Fallback error codes for HTTPExceptions raised with a plain string detail
_CODE_BY_STATUS: dict[int, str] = {
    400: "INVALID_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "FILE_TOO_LARGE",
    503: "SERVICE_UNAVAILABLE",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("DocVault API starting | env=%s issuer=%s bucket=%s",
                settings.app_env, settings.auth_issuer, settings.s3_bucket)

    db = await check_db_health()
    if db["status"] != "ok":
        logger.critical("Refusing to start, database unreachable: %s", db)
        raise RuntimeError(f"Database unreachable: {db.get('detail')}")

    if settings.db_init_schema:
        from docvault.db.schema import init_schema
        await init_schema(engine)

    try:
        yield
    finally:
        await engine.dispose()
        logger.info("DocVault API stopped")


# ---------------------------------------------------------------------------
# Operations endpoints (unauthenticated)
# ---------------------------------------------------------------------------

ops_router = APIRouter(tags=["Operations"])


@ops_router.get("/health", summary="Liveness probe")
async def health() -> dict:
    return {"status": "ok", "service": "docvault-api"}


@ops_router.get("/ready", summary="Readiness probe (database ping)")
async def readiness() -> JSONResponse:
    db = await check_db_health()
    ready = db["status"] == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "not_ready", "database": db},
    )


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")


def _respond(status_code: int, body: ErrorResponse, request: Request,
             request_id: str | None = None) -> JSONResponse:
    request_id = request_id or _request_id(request)
    if request_id and not body.request_id:
        body = body.model_copy(update={"request_id": request_id})
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers={"X-Request-ID": request_id} if request_id else None,
    )


async def _on_http_exception(request: Request, exc: StarletteHTTPException):
    # Routes may raise with a ready-made ErrorResponse dict as the detail
    if isinstance(exc.detail, dict) and "error_code" in exc.detail:
        body = ErrorResponse.model_validate(exc.detail)
    else:
        body = ErrorResponse(
            error_code=_CODE_BY_STATUS.get(exc.status_code, "HTTP_ERROR"),
            message=str(exc.detail),
        )
    response = _respond(exc.status_code, body, request)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def _on_not_found(request: Request, exc: DocumentNotFoundError):
    return _respond(status.HTTP_404_NOT_FOUND, DocumentErrors.document_not_found(exc.document_id), request)


async def _on_empty_input(request: Request, exc: EmptyInputError):
    return _respond(status.HTTP_400_BAD_REQUEST, DocumentErrors.empty_query(), request)


async def _on_configuration(request: Request, exc: ConfigurationError):
    logger.error("Provider not configured | path=%s error=%s", request.url.path, exc)
    return _respond(status.HTTP_503_SERVICE_UNAVAILABLE, DocumentErrors.search_unavailable(), request)


async def _on_validation(request: Request, exc: RequestValidationError):
    body = ErrorResponse(
        error_code="VALIDATION_ERROR",
        message="Request validation failed.",
        details=[
            ErrorDetail(
                field=".".join(str(part) for part in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ],
    )
    return _respond(status.HTTP_422_UNPROCESSABLE_ENTITY, body, request)


async def _on_unhandled(request: Request, exc: Exception):
    """Log the traceback, return an opaque 500."""
    request_id = _request_id(request) or str(uuid.uuid4())
    logger.exception("Unhandled error | path=%s request_id=%s", request.url.path, request_id)
    return _respond(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        DocumentErrors.internal_error(request_id),
        request,
        request_id=request_id,
    )


def _install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _on_http_exception)
    app.add_exception_handler(DocumentNotFoundError, _on_not_found)
    app.add_exception_handler(EmptyInputError, _on_empty_input)
    app.add_exception_handler(ConfigurationError, _on_configuration)
    app.add_exception_handler(RequestValidationError, _on_validation)
    app.add_exception_handler(Exception, _on_unhandled)


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

def _install_middleware(app: FastAPI) -> None:
    # Starlette wraps in reverse: the request logger added last runs outermost
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def tag_and_log(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "%s %s -> %d in %.1fms | owner=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
            getattr(request.state, "user_id", "-"),
        )
        return response


def create_app() -> FastAPI:
    docs = not settings.is_production
    app = FastAPI(
        title="DocVault",
        description=(
            "Document upload, OCR extraction and importance-ranked semantic search. "
            "Processing is asynchronous; poll the document for ocr_status."
        ),
        version="1.0.0",
        docs_url="/api/docs" if docs else None,
        redoc_url="/api/redoc" if docs else None,
        openapi_url="/api/openapi.json" if docs else None,
        lifespan=lifespan,
    )

    _install_middleware(app)
    _install_error_handlers(app)

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(search_router,    prefix="/api/v1")
    app.include_router(ops_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docvault.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
