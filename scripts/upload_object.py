#!/usr/bin/env python3
"""Upload a local file to the configured bucket.

Usage:
  .venv/bin/python scripts/upload_object.py ./backup.tar.gz backups/2024/backup.tar.gz
  .venv/bin/python scripts/upload_object.py --part-size-mb 8 --retries 4 big.bin big.bin

Storage settings are read from the environment (or .env), see
objectgate/common/config.py.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

from objectgate.app.services.multipart import PartUploadFailed, UploadError
from objectgate.app.services.object_service import ObjectService
from objectgate.common.config import MIB, get_settings
from objectgate.common.logging import setup_logging

logger = logging.getLogger("objectgate.scripts.upload")


def upload_file(
    path: Path,
    key: str,
    *,
    part_size_mb: int | None = None,
    retries: int | None = None,
    content_type: str | None = None,
) -> int:
    settings = get_settings()
    if part_size_mb is not None:
        settings = replace(settings, STORAGE_PART_SIZE_BYTES=part_size_mb * MIB)
    if retries is not None:
        settings = replace(settings, STORAGE_RETRY_BUDGET=retries)

    service = ObjectService(settings=settings)
    outcome = service.upload_object(key, path.read_bytes(), content_type=content_type)
    logger.info(
        "upload_finished object_key=%s size=%s multipart=%s parts=%s",
        outcome.object_key,
        outcome.size_bytes,
        outcome.multipart,
        outcome.part_count,
    )
    return outcome.size_bytes


def main() -> None:
    parser = argparse.ArgumentParser(description="Upload a file to object storage")
    parser.add_argument("path", type=Path, help="Local file to upload")
    parser.add_argument("key", help="Destination object key")
    parser.add_argument(
        "--part-size-mb",
        type=int,
        default=None,
        help="Override STORAGE_PART_SIZE_BYTES (in MiB)",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=None,
        help="Override STORAGE_RETRY_BUDGET (retries per part)",
    )
    parser.add_argument("--content-type", default=None)
    args = parser.parse_args()

    setup_logging(get_settings().LOG_LEVEL)
    try:
        size = upload_file(
            args.path,
            args.key,
            part_size_mb=args.part_size_mb,
            retries=args.retries,
            content_type=args.content_type,
        )
    except PartUploadFailed as exc:
        print(f"Upload failed at part {exc.part_number}: {exc}", file=sys.stderr)
        sys.exit(1)
    except UploadError as exc:
        print(f"Upload failed: {exc}", file=sys.stderr)
        sys.exit(1)
    print(f"Uploaded {size} bytes to {args.key}")


if __name__ == "__main__":
    main()
