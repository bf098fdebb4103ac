"""Content-addressed cache of merged (per genotype group) tracks.

A merged file's presence in ``cache_dir`` is the whole cache index. Files are
written under a temporary name and renamed into place, so a reader never sees
a partial merge and two requests racing on the same key cannot corrupt each
other's output. Failed merges leave nothing behind and are retried by the next
request.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .external import ToolSlots
from .models import Condition, Feature, GenotypeClass, MergedTrack, Window
from .tools import Merger
from .utils import clamp, ensure_outdir, temp_sibling

logger = logging.getLogger(__name__)

DEFAULT_PADDING = 100_000
DEVIATION_MARKER = "-dev"


def canonical_paths(paths: Iterable[str | Path]) -> List[str]:
    """Sorted by code point, independent of locale and enumeration order."""
    return sorted(str(p) for p in paths)


def cache_key(paths: Iterable[str | Path], chrom: str, start: int, end: int) -> str:
    payload = json.dumps(
        {"paths": canonical_paths(paths), "chrom": str(chrom), "start": int(start), "end": int(end)},
        separators=(",", ":"),
    )
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def deviation_name(name: str) -> str:
    """``<hash>.bw`` -> ``<hash>-dev.bw``."""
    p = Path(name)
    return f"{p.stem}{DEVIATION_MARKER}{p.suffix}"


def merge_window(feature: Feature, chrom_length: int, *, chrom: Optional[str] = None, padding: int = DEFAULT_PADDING) -> Window:
    """Feature interval padded on both sides, clamped to the chromosome."""
    return Window(
        chrom=chrom or feature.chrom,
        start=clamp(feature.start - int(padding), 0, int(chrom_length)),
        end=clamp(feature.end + int(padding), 0, int(chrom_length)),
    )


class MergeCache:
    """Merges track groups through ``merger``, reusing earlier results."""

    def __init__(
        self,
        cache_dir: str | Path,
        merger: Merger,
        slots: ToolSlots,
        *,
        extension: str = ".bw",
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.merger = merger
        self.slots = slots
        self.extension = extension if extension.startswith(".") else "." + extension

    def path_for(self, key: str) -> Path:
        return self.cache_dir / f"{key}{self.extension}"

    def deviation_for(self, target: Path) -> Path:
        return target.with_name(deviation_name(target.name))

    def _handle(self, key: str, target: Path, n_inputs: int, *, cache_hit: bool) -> MergedTrack:
        dev = self.deviation_for(target) if n_inputs > 1 else None
        if dev is not None and not dev.exists():
            logger.warning("No deviation track for %s; reporting the merge without one", target.name)
            dev = None
        return MergedTrack(key=key, path=target, deviation_path=dev, n_inputs=n_inputs, cache_hit=cache_hit)

    def merge_group(
        self,
        condition: Condition,
        genotype: GenotypeClass,
        track_paths: Sequence[str | Path],
        window: Window,
    ) -> MergedTrack:
        """Merged track for one (condition, genotype class) group.

        Raises ``MergeToolError`` when the merger fails and ``OSError`` on
        filesystem faults; neither leaves a cache entry. The returned
        ``deviation_path`` is set only when that file exists.
        """
        paths = canonical_paths(track_paths)
        if not paths:
            raise ValueError(f"No tracks to merge for {condition.value}/{genotype.value}")
        key = cache_key(paths, window.chrom, window.start, window.end)
        target = self.path_for(key)

        if target.exists():
            logger.debug("Merge cache hit %s (%s/%s)", target.name, condition.value, genotype.value)
            return self._handle(key, target, len(paths), cache_hit=True)

        ensure_outdir(self.cache_dir)
        with self.slots.slot():
            # Another request may have finished this key while we waited.
            if target.exists():
                return self._handle(key, target, len(paths), cache_hit=True)

            dev = self.deviation_for(target) if len(paths) > 1 else None
            tmp = temp_sibling(target)
            tmp_dev = temp_sibling(dev) if dev is not None else None
            logger.info(
                "Merging %d track(s) for %s/%s over %s:%d-%d -> %s",
                len(paths),
                condition.value,
                genotype.value,
                window.chrom,
                window.start,
                window.end,
                target.name,
            )
            try:
                self.merger.merge(paths, window, tmp, tmp_dev)
                if tmp_dev is not None and dev is not None and tmp_dev.exists():
                    os.replace(tmp_dev, dev)
                # the primary file goes last: its presence marks the entry complete
                os.replace(tmp, target)
            finally:
                for leftover in (tmp, tmp_dev):
                    if leftover is not None and leftover.exists():
                        leftover.unlink()
        return self._handle(key, target, len(paths), cache_hit=False)
