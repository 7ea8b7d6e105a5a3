import logging

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from objectgate import __version__
from objectgate.api.v1.deps import require_api_key
from objectgate.api.v1.routers.objects import router as objects_router
from objectgate.common.config import Settings, get_settings
from objectgate.common.logging import setup_logging
from objectgate.common.remote_config import RemoteConfigSource, RemoteConfigWatcher
from objectgate.infra.observability.metrics import metrics_app
from objectgate.infra.observability.middleware import MetricsMiddleware
from objectgate.infra.storage.client import StorageClient

ERROR_CODE_BY_STATUS = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    413: "payload_too_large",
    415: "unsupported_media_type",
    429: "too_many_requests",
    500: "internal_error",
    502: "bad_gateway",
    503: "service_unavailable",
}


def _normalize_detail(detail):
    if isinstance(detail, dict):
        maybe_code = detail.get("error_code")
        cleaned = {k: v for k, v in detail.items() if k != "error_code"}
        if len(cleaned) == 1 and "message" in cleaned:
            cleaned = cleaned["message"]
        if not cleaned:
            cleaned = None
        return cleaned, maybe_code if isinstance(maybe_code, str) else None
    return detail, None


def _resolve_error_code(status_code: int, override: str | None = None) -> str:
    if override:
        return override
    if status_code == 422:
        return "validation_error"
    return ERROR_CODE_BY_STATUS.get(status_code, "unknown_error")


def _missing_storage_settings(settings: Settings) -> list[str]:
    required = ("S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
    return [name for name in required if not getattr(settings, name)]


def _format_storage_context(settings: Settings) -> str:
    parts = [
        f"backend={settings.STORAGE_BACKEND}",
        f"endpoint={settings.S3_ENDPOINT_URL or '<aws default>'}",
        f"region={settings.S3_REGION or '-'}",
        f"bucket={settings.S3_BUCKET or '<missing>'}",
        f"part_size_bytes={settings.STORAGE_PART_SIZE_BYTES}",
        f"retry_budget={settings.STORAGE_RETRY_BUDGET}",
    ]
    return ", ".join(parts)


def create_app(
    settings: Settings | None = None,
    *,
    storage_client: StorageClient | None = None,
    config_source: RemoteConfigSource | None = None,
    config_format: str = "yaml",
) -> FastAPI:
    settings = settings or get_settings()
    watcher: RemoteConfigWatcher | None = None
    if config_source is not None:
        watcher = RemoteConfigWatcher(config_source, settings, fmt=config_format)
        settings = watcher.load()

    setup_logging(settings.LOG_LEVEL)
    app = FastAPI(
        title="Objectgate",
        version=__version__,
        description="Object upload gateway with multipart retry and rollback",
    )
    app.state.settings = settings
    app.state.storage_client = storage_client
    app.state.config_watcher = watcher

    if watcher is not None:

        def on_settings_changed(new_settings: Settings) -> None:
            app.state.settings = new_settings
            # 仅在客户端由配置构建时才重建
            if storage_client is None:
                app.state.storage_client = None

        watcher.subscribe(on_settings_changed)

    # Optional CORS
    if settings.CORS_ENABLED:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ORIGINS or ["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(
        objects_router,
        prefix="/api/v1",
        tags=["objects"],
        dependencies=[Depends(require_api_key)],
    )

    # Metrics
    if settings.ENABLE_METRICS:
        app.add_middleware(MetricsMiddleware)
        app.mount("/metrics", metrics_app)

    @app.on_event("startup")
    def on_startup() -> None:
        startup_logger = logging.getLogger("objectgate.startup")
        current: Settings = app.state.settings
        startup_logger.info(
            "对象存储配置已加载。[event=storage_configured] (%s)",
            _format_storage_context(current),
        )
        missing = _missing_storage_settings(current)
        if missing and app.state.storage_client is None:
            startup_logger.warning(
                "对象存储配置不完整，上传接口将返回 503。"
                " [event=storage_incomplete] (missing=%s)",
                ",".join(missing),
            )
        if watcher is not None:
            watcher.start()
            startup_logger.info("远程配置监听已启动。[event=remote_config_watch_started]")

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        if watcher is not None:
            watcher.stop()

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger = logging.getLogger("http")
        normalized_detail, code_override = _normalize_detail(exc.detail)
        logger.log(
            logging.WARNING if exc.status_code < 500 else logging.ERROR,
            "http_exception status=%s detail=%s method=%s path=%s request_id=%s",
            exc.status_code,
            normalized_detail,
            request.method,
            request.url.path,
            request.headers.get("X-Request-Id"),
            extra={
                "extra": {
                    "status": exc.status_code,
                    "detail": normalized_detail,
                    "method": request.method,
                    "route": request.url.path,
                    "request_id": request.headers.get("X-Request-Id"),
                }
            },
        )
        return JSONResponse(
            status_code=exc.status_code,
            media_type="application/problem+json",
            content={
                "type": "about:blank",
                "title": "HTTP Error",
                "status": exc.status_code,
                "detail": normalized_detail,
                "error_code": _resolve_error_code(exc.status_code, code_override),
                "instance": str(request.url),
                "request_id": request.headers.get("X-Request-Id"),
            },
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        return JSONResponse(
            status_code=422,
            media_type="application/problem+json",
            content={
                "type": "about:blank",
                "title": "Validation Error",
                "status": 422,
                # 确保可序列化
                "detail": jsonable_encoder(exc.errors()),
                "error_code": _resolve_error_code(422),
                "instance": str(request.url),
                "request_id": request.headers.get("X-Request-Id"),
            },
        )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/ready")
    async def ready():
        current: Settings = app.state.settings
        if app.state.storage_client is not None:
            return {"status": "ready"}
        missing = _missing_storage_settings(current)
        if missing:
            return {"status": "not_ready", "detail": {"missing_settings": missing}}
        return {"status": "ready"}

    return app


if __name__ == "__main__":
    uvicorn.run(
        "objectgate.main:create_app", factory=True, host="0.0.0.0", port=8000
    )
