"""Track metadata and track location.

The metadata file is JSON::

    {"samples": [
        {"donor": "EU01", "ancestry": "EU",
         "tracks": [{"assay": "RNA-Seq", "condition": "NI",
                     "view": "signal_forward", "path": "EU01.NI.RNA.fwd.bw"}]}
    ]}

Relative track paths are resolved against ``tracks_dir`` (default: the metadata
file's directory).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from .errors import MalformedData
from .models import Condition, GenotypeRecord, Peak, Sample, TrackFile, TrackReference
from .utils import read_json

logger = logging.getLogger(__name__)


def normalize_assay(assay: str) -> str:
    return str(assay).strip().lower()


class TrackMetadataStore(Protocol):
    def ancestry_of(self, sample_id: str) -> Optional[str]: ...

    def tracks_for(self, sample_id: str, assay: str) -> Sequence[TrackFile]: ...


class MetadataTrackStore:
    """In-memory sample/track metadata. Read-only once built."""

    def __init__(self, samples: Iterable[Sample]) -> None:
        self._samples: Dict[str, Sample] = {}
        for s in samples:
            if s.donor in self._samples:
                raise MalformedData(f"Duplicate sample in metadata: {s.donor}")
            self._samples[s.donor] = s

    @classmethod
    def from_json(
        cls,
        path: str | Path,
        *,
        tracks_dir: Optional[str | Path] = None,
    ) -> "MetadataTrackStore":
        path = Path(path)
        base = Path(tracks_dir) if tracks_dir is not None else path.parent
        data = read_json(path)
        entries = data.get("samples") if isinstance(data, Mapping) else data
        if not isinstance(entries, list):
            raise MalformedData(f"Track metadata {path} must hold a 'samples' list")

        samples: List[Sample] = []
        skipped = 0
        for entry in entries:
            donor = str(entry["donor"])
            tracks: List[TrackFile] = []
            for t in entry.get("tracks", []):
                try:
                    condition = Condition.parse(t["condition"])
                except ValueError as e:
                    skipped += 1
                    logger.debug("Skipping track for %s: %s", donor, e)
                    continue
                p = Path(t["path"])
                tracks.append(
                    TrackFile(
                        assay=str(t["assay"]),
                        condition=condition,
                        path=p if p.is_absolute() else (base / p),
                        view=t.get("view"),
                    )
                )
            samples.append(
                Sample(
                    donor=donor,
                    ancestry=str(entry.get("ancestry") or "unknown"),
                    tracks=tuple(tracks),
                )
            )
        if skipped:
            logger.warning("Skipped %d track(s) with unknown conditions in %s", skipped, path)
        logger.info("Loaded metadata for %d samples from %s", len(samples), path)
        return cls(samples)

    def __len__(self) -> int:
        return len(self._samples)

    def ancestry_of(self, sample_id: str) -> Optional[str]:
        s = self._samples.get(sample_id)
        return s.ancestry if s is not None else None

    def tracks_for(self, sample_id: str, assay: str) -> List[TrackFile]:
        s = self._samples.get(sample_id)
        if s is None:
            return []
        key = normalize_assay(assay)
        return [t for t in s.tracks if normalize_assay(t.assay) == key]


def locate_tracks(
    genotypes: Mapping[str, GenotypeRecord],
    peak: Peak,
    store: TrackMetadataStore,
) -> List[TrackReference]:
    """Tracks of ``peak.assay`` for every genotyped sample.

    Both strand views of a directional assay are returned; choosing one is left
    to signal extraction.
    """
    out: List[TrackReference] = []
    missing = 0
    for sample_id in sorted(genotypes):
        rec = genotypes[sample_id]
        tracks = store.tracks_for(sample_id, peak.assay)
        if not tracks:
            missing += 1
            continue
        ancestry = store.ancestry_of(sample_id) or "unknown"
        for t in tracks:
            out.append(
                TrackReference(
                    donor=sample_id,
                    assay=t.assay,
                    condition=t.condition,
                    ancestry=ancestry,
                    genotype=rec.genotype,
                    path=t.path,
                    view=t.view,
                )
            )
    if missing:
        logger.debug("%d genotyped sample(s) have no %s tracks", missing, peak.assay)
    return out
