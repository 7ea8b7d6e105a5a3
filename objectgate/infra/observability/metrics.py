from prometheus_client import Counter, Histogram, make_asgi_app

# 低基数标签：使用路由模板（如 /api/v1/objects/{key:path}），避免对象 key 导致高基数
REQUESTS = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "route", "status"],
)

LATENCY = Histogram(
    "http_request_duration_seconds",
    "Request latency in seconds",
    ["method", "route"],
)

UPLOAD_PARTS = Counter(
    "objectgate_upload_parts_total",
    "Multipart parts by final status",
    ["status"],
)

UPLOAD_PART_RETRIES = Counter(
    "objectgate_upload_part_retries_total",
    "Upload-part attempts that failed and were retried",
)

MULTIPART_SESSIONS = Counter(
    "objectgate_multipart_sessions_total",
    "Multipart sessions by terminal outcome",
    ["outcome"],
)

UPLOADED_BYTES = Counter(
    "objectgate_uploaded_bytes_total",
    "Bytes stored, by upload mode",
    ["mode"],
)

# /metrics 端点 ASGI 应用
metrics_app = make_asgi_app()
