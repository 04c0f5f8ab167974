"""Retention: delete local copies of uploaded VODs that fall outside the policy.

Only ``uploaded`` VODs lose their file. Everything earlier in the pipeline
still needs it, and leased rows are skipped. In dry-run mode nothing is
deleted or written; the pass only logs what it would do.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..config import RetentionSettings
from ..store.vods import VodStore

logger = logging.getLogger(__name__)


@dataclass
class RetentionResult:
    deleted: int = 0
    missing: int = 0
    errors: int = 0
    bytes_freed: int = 0
    dry_run: bool = False


def apply_retention(store: VodStore, settings: RetentionSettings, *, now: Optional[datetime] = None) -> RetentionResult:
    result = RetentionResult(dry_run=settings.dry_run)
    if not settings.enabled:
        return result

    candidates = store.retention_candidates(keep_days=settings.keep_days, keep_count=settings.keep_count, now=now)
    for vod, progress in candidates:
        raw_path = progress.downloaded_path or ""
        path = Path(raw_path)
        if not path.exists():
            if not settings.dry_run:
                store.clear_downloaded_path(vod.id, raw_path)
            logger.debug("File for vod %d already gone: %s", vod.id, path)
            result.missing += 1
            continue

        size = path.stat().st_size
        if settings.dry_run:
            logger.info("dry-run: would delete %s (vod %d, %r, %d bytes)", path, vod.id, vod.title, size)
            result.deleted += 1
            result.bytes_freed += size
            continue

        try:
            path.unlink()
        except OSError as exc:
            logger.warning("Could not delete %s for vod %d: %s", path, vod.id, exc)
            result.errors += 1
            continue
        if not store.clear_downloaded_path(vod.id, raw_path):
            logger.warning("vod %d changed while its file was being deleted", vod.id)
            result.errors += 1
            continue
        logger.info("Deleted %s (vod %d, %r, %d bytes)", path, vod.id, vod.title, size)
        result.deleted += 1
        result.bytes_freed += size

    logger.info(
        "Retention %s: %d deleted, %d already missing, %d error(s), %d bytes freed",
        "dry-run" if settings.dry_run else "pass",
        result.deleted,
        result.missing,
        result.errors,
        result.bytes_freed,
    )
    return result
