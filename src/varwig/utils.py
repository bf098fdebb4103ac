from __future__ import annotations

import gzip
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, TextIO

logger = logging.getLogger(__name__)


def clamp(x: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, x))


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def open_textmaybe_gzip(path: str | Path, mode: str = "rt") -> TextIO:
    p = str(path)
    if p.endswith(".gz"):
        return gzip.open(p, mode)  # type: ignore[return-value]
    return open(p, mode)


def temp_sibling(path: str | Path) -> Path:
    """Unique hidden path next to ``path``, keeping its extension."""
    p = Path(path)
    return p.with_name(f".{p.stem}.{uuid.uuid4().hex}.tmp{p.suffix}")


def write_json(path: str | Path, obj: Any) -> None:
    """Write JSON so readers never observe a partial file."""
    path = Path(path)
    tmp = temp_sibling(path)
    try:
        with open(tmp, "wt", encoding="utf-8") as f:
            json.dump(obj, f, indent=2, sort_keys=True)
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


def read_json(path: str | Path) -> Any:
    with open(path, "rt", encoding="utf-8") as f:
        return json.load(f)
