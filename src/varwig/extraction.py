from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional, Sequence, Tuple

from .external import ExternalCommandError, ToolSlots
from .models import STRAND_TO_VIEW, ExtractedValue, Feature, TrackFailure, TrackReference
from .tools import Summarizer
from .tracks import normalize_assay

logger = logging.getLogger(__name__)

DEFAULT_STRAND_AWARE_ASSAYS = ("RNA-Seq",)


def select_strand_tracks(
    tracks: Sequence[TrackReference],
    feature: Feature,
    *,
    strand_aware_assays: Iterable[str] = DEFAULT_STRAND_AWARE_ASSAYS,
) -> List[TrackReference]:
    """Drop directional-assay tracks whose view does not match the feature strand.

    Features without a strand, and non-directional assays, keep every track.
    """
    if feature.strand is None:
        return list(tracks)
    aware = {normalize_assay(a) for a in strand_aware_assays}
    wanted = STRAND_TO_VIEW[feature.strand]
    return [
        t for t in tracks
        if normalize_assay(t.assay) not in aware or t.view == wanted
    ]


def extract_values(
    tracks: Sequence[TrackReference],
    feature: Feature,
    summarizer: Summarizer,
    slots: ToolSlots,
    *,
    chrom: Optional[str] = None,
    strand_aware_assays: Iterable[str] = DEFAULT_STRAND_AWARE_ASSAYS,
    workers: int = 4,
) -> Tuple[List[ExtractedValue], List[TrackFailure]]:
    """Summarize each track over the feature interval.

    Parameters
    ----------
    chrom:
        Contig name as spelled in the track files (defaults to ``feature.chrom``).
    workers:
        Threads used for the fan-out; tool calls are further bounded by ``slots``.

    Returns
    -------
    values:
        One entry per track with data, in no particular order. Tracks whose
        interval holds no data are dropped, not counted as 0.
    failures:
        Tracks whose summary failed; the remaining tracks are unaffected.
    """
    selected = select_strand_tracks(tracks, feature, strand_aware_assays=strand_aware_assays)
    if len(selected) != len(tracks):
        logger.debug(
            "Strand %s: kept %d of %d tracks",
            feature.strand,
            len(selected),
            len(tracks),
        )
    contig = chrom or feature.chrom

    def _one(track: TrackReference) -> Optional[float]:
        with slots.slot():
            return summarizer.summarize(track.path, contig, feature.start, feature.end)

    values: List[ExtractedValue] = []
    failures: List[TrackFailure] = []
    no_data = 0

    if not selected:
        return values, failures

    with ThreadPoolExecutor(max_workers=max(1, int(workers))) as pool:
        futures = [(t, pool.submit(_one, t)) for t in selected]
        for track, fut in futures:
            try:
                value = fut.result()
            except (ExternalCommandError, OSError) as e:
                logger.warning("Signal extraction failed for %s: %s", track.path, e)
                failures.append(TrackFailure(path=str(track.path), error=f"{e.__class__.__name__}: {e}"))
                continue
            if value is None:
                no_data += 1
                continue
            values.append(ExtractedValue(track=track, value=float(value)))

    if no_data:
        logger.debug("%d track(s) had no data over %s:%d-%d", no_data, contig, feature.start, feature.end)
    return values, failures
