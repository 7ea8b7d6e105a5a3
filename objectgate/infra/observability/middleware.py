import json
import logging
import re
import time
import uuid
from typing import Any

from fastapi import Request
from starlette.concurrency import iterate_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from objectgate.infra.observability.metrics import LATENCY, REQUESTS

MAX_TRACED_BODY_CHARS = 2048

_SECRET_PATTERNS = (
    re.compile(
        r"(?i)(token|secret|api_key|x-api-key|password|authorization|access_key_id|secret_access_key)\s*[:=]\s*[^\s]+"
    ),
)


def _is_textual(content_type: str | None) -> bool:
    if not content_type:
        return False
    content_type = content_type.lower()
    return content_type.startswith("text/") or "json" in content_type


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request metrics and writes one structured log line per request.

    With ``TRACE_HTTP`` enabled, textual request/response bodies are logged
    after masking secrets. Object payloads (binary) are never traced.
    """

    SENSITIVE_KEYS = {
        "password",
        "secret",
        "token",
        "api_key",
        "x-api-key",
        "authorization",
        "s3_access_key_id",
        "s3_secret_access_key",
    }

    def _mask_mapping(self, obj: Any) -> Any:
        if isinstance(obj, dict):
            masked: dict[str, Any] = {}
            for k, v in obj.items():
                if isinstance(k, str) and k.lower() in self.SENSITIVE_KEYS:
                    masked[k] = "***"
                else:
                    masked[k] = self._mask_mapping(v)
            return masked
        if isinstance(obj, list):
            return [self._mask_mapping(x) for x in obj]
        return obj

    def _mask_text(self, text: str) -> str:
        masked = text
        for pattern in _SECRET_PATTERNS:
            masked = pattern.sub(
                lambda m: m.group(0).split(":")[0].split("=")[0] + ": ***", masked
            )
        return masked

    def _render_body(self, raw: bytes, content_type: str | None) -> str | None:
        if not raw:
            return None
        if not _is_textual(content_type):
            return f"<{len(raw)} bytes>"
        decoded = raw.decode("utf-8", errors="replace")
        # JSON 尝试脱敏，否则进行基于文本的简易脱敏
        try:
            parsed = json.loads(decoded)
        except ValueError:
            text = self._mask_text(decoded)
        else:
            text = json.dumps(self._mask_mapping(parsed), ensure_ascii=False)
        if len(text) > MAX_TRACED_BODY_CHARS:
            text = text[:MAX_TRACED_BODY_CHARS] + "...<truncated>"
        return text

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        client_ip = request.headers.get("X-Forwarded-For")
        if client_ip:
            client_ip = client_ip.split(",")[0].strip()
        elif request.client:
            client_ip = request.client.host

        settings = getattr(request.app.state, "settings", None)
        trace_http = bool(settings and settings.TRACE_HTTP)
        request_body: str | None = None
        if trace_http:
            request_content_type = request.headers.get("Content-Type")
            if _is_textual(request_content_type):
                raw_body = await request.body()
                request_body = self._render_body(raw_body, request_content_type)

                async def receive():
                    return {"type": "http.request", "body": raw_body, "more_body": False}

                request._receive = receive
            else:
                length = request.headers.get("Content-Length")
                request_body = f"<{length} bytes>" if length else None

        logger = logging.getLogger("http")
        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed = time.perf_counter() - start
            logger.exception(
                "request_error method=%s route=%s status=%s duration_ms=%.3f request_id=%s client_ip=%s",
                request.method,
                request.url.path,
                500,
                round(elapsed * 1000, 3),
                request_id,
                client_ip or "-",
                extra={
                    "extra": {
                        "method": request.method,
                        "route": request.url.path,
                        "status": 500,
                        "duration_ms": round(elapsed * 1000, 3),
                        "request_id": request_id,
                        "client_ip": client_ip,
                        "exception": repr(exc),
                    }
                },
            )
            raise

        elapsed = time.perf_counter() - start
        status_code = response.status_code

        route_template = request.scope.get("route", None)
        if route_template and hasattr(route_template, "path"):
            route = route_template.path
        else:
            route = request.url.path

        REQUESTS.labels(request.method, route, str(status_code)).inc()
        LATENCY.labels(request.method, route).observe(elapsed)

        # ensure request-id propagation
        if "X-Request-Id" not in response.headers:
            response.headers["X-Request-Id"] = request_id

        level = logging.INFO
        if status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING

        duration_ms = round(elapsed * 1000, 3)
        extra_payload: dict[str, Any] = {
            "method": request.method,
            "route": route,
            "path": request.url.path,
            "status": status_code,
            "duration_ms": duration_ms,
            "request_id": request_id,
            "client_ip": client_ip,
            "user_agent": request.headers.get("User-Agent"),
        }
        if trace_http:
            response_body_bytes = b""
            async for chunk in response.body_iterator:
                response_body_bytes += chunk
            response.body_iterator = iterate_in_threadpool(iter([response_body_bytes]))
            extra_payload["request_body"] = request_body
            extra_payload["response_body"] = self._render_body(
                response_body_bytes, response.headers.get("Content-Type")
            )

        logger.log(
            level,
            "request method=%s route=%s status=%s duration_ms=%.3f request_id=%s client_ip=%s",
            request.method,
            route,
            status_code,
            duration_ms,
            request_id,
            client_ip or "-",
            extra={"extra": extra_payload},
        )
        return response
