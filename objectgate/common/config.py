from __future__ import annotations

import os
from dataclasses import MISSING, dataclass, field, fields, replace
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

ENV_FILE = Path(".env")

MIB = 1024 * 1024
DEFAULT_PART_SIZE_BYTES = 5 * MIB
DEFAULT_RETRY_BUDGET = 2

SUPPORTED_STORAGE_BACKENDS: tuple[str, ...] = ("s3",)
SUPPORTED_ADDRESSING_STYLES: tuple[str, ...] = ("auto", "path", "virtual")


def _load_env_file() -> None:
    if not ENV_FILE.exists():
        return
    for raw_line in ENV_FILE.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y", "on"}


def _as_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _coerce(type_name: str, value: Any, default: Any) -> Any:
    """Convert a raw env/remote value to the declared field type."""
    optional = "None" in type_name
    if value is None:
        return None if optional else default
    if type_name.startswith("list"):
        if isinstance(value, (list, tuple)):
            return [str(item).strip() for item in value if str(item).strip()]
        return _as_list(str(value))
    if isinstance(value, str) and optional and not value.strip():
        return None
    if type_name.startswith("bool"):
        if isinstance(value, bool):
            return value
        return _as_bool(str(value), default)
    if type_name.startswith("int"):
        return int(value)
    if type_name.startswith("float"):
        return float(value)
    return str(value)


@dataclass
class Settings:
    STORAGE_BACKEND: str = "s3"
    S3_ENDPOINT_URL: str | None = None
    S3_REGION: str | None = None
    S3_BUCKET: str | None = None
    S3_ACCESS_KEY_ID: str | None = None
    S3_SECRET_ACCESS_KEY: str | None = None
    S3_USE_SSL: bool = True
    S3_ADDRESSING_STYLE: str = "path"
    S3_CONNECT_TIMEOUT: int = 10
    S3_READ_TIMEOUT: int = 60

    STORAGE_PART_SIZE_BYTES: int = DEFAULT_PART_SIZE_BYTES
    STORAGE_RETRY_BUDGET: int = DEFAULT_RETRY_BUDGET
    STORAGE_RETRY_DELAY_SECONDS: float = 0.0
    STORAGE_UPLOAD_EXPIRY_SECONDS: int = 24 * 60 * 60
    STORAGE_OBJECT_ACL: str | None = "public-read"
    STORAGE_MAX_UPLOAD_BYTES: int = 5 * 1024 * MIB
    STORAGE_PRESIGN_EXPIRES_SECONDS: int = 900
    OBJECT_PUBLIC_BASE_URL: str | None = None

    ENABLE_METRICS: bool = True
    API_KEY_ENABLED: bool = False
    API_KEY: str | None = None
    CORS_ENABLED: bool = False
    CORS_ORIGINS: list[str] = field(default_factory=list)
    TRACE_HTTP: bool = False
    LOG_LEVEL: str = "INFO"

    def __post_init__(self) -> None:
        backend = (self.STORAGE_BACKEND or "").strip().lower()
        if backend not in SUPPORTED_STORAGE_BACKENDS:
            raise ValueError(
                f"Unsupported STORAGE_BACKEND: {self.STORAGE_BACKEND!r}. "
                f"Supported: {', '.join(SUPPORTED_STORAGE_BACKENDS)}."
            )
        style = (self.S3_ADDRESSING_STYLE or "").strip().lower()
        if style not in SUPPORTED_ADDRESSING_STYLES:
            raise ValueError(
                f"S3_ADDRESSING_STYLE must be one of {SUPPORTED_ADDRESSING_STYLES}."
            )
        if self.STORAGE_PART_SIZE_BYTES <= 0:
            raise ValueError("STORAGE_PART_SIZE_BYTES must be positive.")
        if self.STORAGE_RETRY_BUDGET < 0:
            raise ValueError("STORAGE_RETRY_BUDGET must not be negative.")
        if self.STORAGE_RETRY_DELAY_SECONDS < 0:
            raise ValueError("STORAGE_RETRY_DELAY_SECONDS must not be negative.")

    @property
    def storage_configured(self) -> bool:
        return bool(
            self.S3_BUCKET and self.S3_ACCESS_KEY_ID and self.S3_SECRET_ACCESS_KEY
        )

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "Settings":
        """Build settings from a name -> raw value mapping, ignoring unknown keys."""
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in values:
                continue
            if f.default is not MISSING:
                default = f.default
            else:
                default = f.default_factory()  # type: ignore[misc]
            kwargs[f.name] = _coerce(str(f.type), values[f.name], default)
        return cls(**kwargs)

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_env_file()
        names = {f.name for f in fields(cls)}
        return cls.from_mapping(
            {name: os.environ[name] for name in names if name in os.environ}
        )

    def merged_with(self, overrides: Mapping[str, Any]) -> "Settings":
        """Return a copy with known keys from overrides applied on top."""
        known = {f.name: f for f in fields(self)}
        changes: dict[str, Any] = {}
        for name, raw in overrides.items():
            f = known.get(name)
            if f is None:
                continue
            changes[name] = _coerce(str(f.type), raw, getattr(self, name))
        return replace(self, **changes)


def known_setting_names() -> frozenset[str]:
    return frozenset(f.name for f in fields(Settings))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()
