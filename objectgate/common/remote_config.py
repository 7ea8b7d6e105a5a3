"""Overlay of settings pushed by a remote configuration source.

The source (a config center client, a file watcher, ...) only hands over the
raw document bytes, once on startup and again whenever it changes. The
document is parsed and its keys are applied on top of the environment-based
settings::

    s3:
      bucket: uploads
      access_key_id: ...
    storage:
      part_size_bytes: 8388608

Nested sections are flattened with ``_`` and upper-cased, so the document
above sets ``S3_BUCKET``, ``S3_ACCESS_KEY_ID`` and ``STORAGE_PART_SIZE_BYTES``.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Mapping, Protocol

import yaml

from objectgate.common.config import Settings, known_setting_names

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS: tuple[str, ...] = ("yaml", "json")


class RemoteConfigError(ValueError):
    """Raised when a remote configuration document cannot be applied."""


class RemoteConfigSource(Protocol):
    def fetch(self) -> bytes:
        """Return the current configuration document."""
        ...

    def watch(self, on_change: Callable[[bytes], None]) -> Callable[[], None]:
        """Call ``on_change`` with the new document on every change.

        Returns a function that stops watching.
        """
        ...


def _flatten(values: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in values.items():
        name = f"{prefix}_{key}" if prefix else str(key)
        name = name.replace(".", "_").replace("-", "_").upper()
        if isinstance(value, Mapping):
            flat.update(_flatten(value, name))
        else:
            flat[name] = value
    return flat


def parse_remote_config(raw: bytes, fmt: str = "yaml") -> dict[str, Any]:
    """Parse a raw document into a flat mapping of setting names."""
    fmt = (fmt or "yaml").lower()
    if fmt not in SUPPORTED_FORMATS:
        raise RemoteConfigError(f"Unsupported remote config format: {fmt}")
    try:
        text = raw.decode("utf-8")
        document = json.loads(text) if fmt == "json" else yaml.safe_load(text)
    except (UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise RemoteConfigError(f"Invalid {fmt} document: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, Mapping):
        raise RemoteConfigError("Remote config document must be a mapping")
    return _flatten(document)


class RemoteConfigWatcher:
    """Keeps a Settings object in sync with a remote configuration source."""

    def __init__(
        self,
        source: RemoteConfigSource,
        base_settings: Settings,
        *,
        fmt: str = "yaml",
    ) -> None:
        self._source = source
        self._base = base_settings
        self._fmt = fmt
        self._settings = base_settings
        self._lock = threading.Lock()
        self._listeners: list[Callable[[Settings], None]] = []
        self._cancel: Callable[[], None] | None = None

    @property
    def settings(self) -> Settings:
        with self._lock:
            return self._settings

    def subscribe(self, listener: Callable[[Settings], None]) -> None:
        self._listeners.append(listener)

    def load(self) -> Settings:
        """Fetch and apply the current document; errors propagate."""
        return self.apply(self._source.fetch())

    def apply(self, raw: bytes) -> Settings:
        overrides = parse_remote_config(raw, self._fmt)
        unknown = sorted(set(overrides) - known_setting_names())
        if unknown:
            logger.warning("remote_config_unknown_keys keys=%s", ",".join(unknown))
        try:
            settings = self._base.merged_with(overrides)
        except (TypeError, ValueError) as exc:
            raise RemoteConfigError(f"Invalid remote config values: {exc}") from exc
        with self._lock:
            self._settings = settings
        for listener in list(self._listeners):
            try:
                listener(settings)
            except Exception:
                # 单个订阅者失败不影响其他订阅者
                logger.exception("remote_config_listener_failed listener=%r", listener)
        return settings

    def _on_change(self, raw: bytes) -> None:
        try:
            self.apply(raw)
        except RemoteConfigError as exc:
            # 保留上一份有效配置
            logger.error("remote_config_rejected error=%s", exc)
            return
        logger.info("remote_config_applied bytes=%s", len(raw))

    def start(self) -> None:
        if self._cancel is None:
            self._cancel = self._source.watch(self._on_change)

    def stop(self) -> None:
        if self._cancel is not None:
            self._cancel()
            self._cancel = None
