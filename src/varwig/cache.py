from __future__ import annotations

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any, Optional

from .utils import ensure_outdir, read_json, write_json

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60


class ResultCache:
    """Expiring JSON memo of per-peak results, one file per key.

    Ingested genomic data does not change, so entries live for months.
    """

    def __init__(self, cache_dir: str | Path, *, ttl_seconds: float = 180 * DAY_SECONDS) -> None:
        self.cache_dir = Path(cache_dir)
        self.ttl_seconds = float(ttl_seconds)

    def _path(self, key: str) -> Path:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        return self.cache_dir / f"{digest}.json"

    def get(self, key: str, *, now: Optional[float] = None) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            entry = read_json(path)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable cache entry %s: %s", path, e)
            return None
        if not isinstance(entry, dict):
            logger.warning("Ignoring malformed cache entry %s", path)
            return None
        now = time.time() if now is None else now
        if entry.get("key") != key or float(entry.get("expires_at", 0)) <= now:
            return None
        return entry.get("value")

    def set(self, key: str, value: Any, *, now: Optional[float] = None) -> None:
        ensure_outdir(self.cache_dir)
        now = time.time() if now is None else now
        write_json(
            self._path(key),
            {"key": key, "created_at": now, "expires_at": now + self.ttl_seconds, "value": value},
        )
