import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.routes import api_router
from app.core.config import settings
from app.core.logging_config import configure_logging
from app.core.sentry import init_sentry
from app.middleware import RequestLoggingMiddleware
from app.schemas.common import ErrorResponse
from app.services.assets import AssetError, AssetErrorKind, AssetManager
from app.services.object_store import S3ObjectStore

logger = logging.getLogger(__name__)

_ASSET_ERROR_RESPONSES = {
    AssetErrorKind.validation: (400, "invalid_asset"),
    AssetErrorKind.source_missing: (409, "upload_missing"),
    AssetErrorKind.store_transient: (503, "store_unavailable"),
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = S3ObjectStore.from_settings(settings)
    app.state.object_store = store
    app.state.asset_manager = AssetManager(
        store,
        upload_ttl_seconds=settings.upload_url_ttl_seconds,
        view_ttl_seconds=settings.view_url_ttl_seconds,
    )
    logger.info("object_store_ready", extra={"bucket": store.bucket, "region": store.region})
    yield


def _error(status_code: int, detail, code: str | None = None) -> JSONResponse:
    payload = ErrorResponse(detail=detail, code=code)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload.model_dump()))


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    init_sentry()
    tags_metadata = [
        {"name": "uploads", "description": "Direct-to-storage upload capabilities"},
        {"name": "posts", "description": "Posts, likes, saves and comments"},
        {"name": "collections", "description": "Curated collections of posts"},
        {"name": "users", "description": "Profiles and follows"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
        swagger_ui_parameters={"displayRequestDuration": True},
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _error(422, jsonable_encoder(exc.errors()), "validation_error")

    @app.exception_handler(AssetError)
    async def asset_exception_handler(request: Request, exc: AssetError):
        status_code, code = _ASSET_ERROR_RESPONSES[exc.kind]
        log = logger.warning if status_code < 500 else logger.error
        log("asset_request_failed", extra={"key": exc.key, "kind": exc.kind.value, "path": request.url.path})
        return _error(status_code, str(exc), code)

    @app.exception_handler(IntegrityError)
    async def integrity_exception_handler(request: Request, exc: IntegrityError):
        logger.warning("db_conflict", extra={"path": request.url.path})
        return _error(409, "Conflicting change, please retry", "conflict")

    @app.exception_handler(OperationalError)
    async def operational_exception_handler(request: Request, exc: OperationalError):
        logger.error("db_unavailable", extra={"path": request.url.path})
        return _error(503, "Service temporarily unavailable", "store_unavailable")

    return app


app = get_application()
