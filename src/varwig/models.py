from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple


class GenotypeClass(str, Enum):
    """Number of alternate allele copies carried at a variant."""

    REF = "REF"
    HET = "HET"
    HOM = "HOM"


class Condition(str, Enum):
    """Experimental treatment groups known to the cohort."""

    NI = "NI"
    FLU = "Flu"

    @classmethod
    def parse(cls, value: str) -> "Condition":
        key = str(value).strip().lower()
        for c in cls:
            if c.value.lower() == key:
                return c
        raise ValueError(f"Unknown condition: {value!r} (expected one of {[c.value for c in cls]})")


# Strand of a feature -> track view carrying that strand for directional assays.
STRAND_TO_VIEW = {
    "+": "signal_forward",
    "-": "signal_reverse",
}


@dataclass(frozen=True)
class Variant:
    """A variant site.

    ``position`` is 1-based (VCF convention).
    """

    chrom: str
    position: int
    ref: str
    alts: Tuple[str, ...]
    record_id: Optional[str] = None

    @property
    def is_snv(self) -> bool:
        return len(self.ref) == 1 and len(self.alts) > 0 and all(len(a) == 1 for a in self.alts)


@dataclass(frozen=True)
class Feature:
    """A genomic region of interest.

    Coordinates are 0-based half-open ``[start, end)`` (BED/bigWig convention).
    """

    chrom: str
    start: int
    end: int
    strand: Optional[str] = None
    gene: Optional[str] = None
    feature_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.start < 0 or self.end <= self.start:
            raise ValueError(f"Invalid feature interval {self.chrom}:{self.start}-{self.end}")
        if self.strand not in (None, "+", "-"):
            raise ValueError(f"Invalid strand {self.strand!r}; expected '+', '-' or None")


@dataclass(frozen=True)
class Peak:
    """A (variant, feature, assay) association selected by the user."""

    peak_id: str
    chrom: str
    position: int
    assay: str
    feature: Feature
    snp: Optional[str] = None
    value_ni: Optional[float] = None
    value_flu: Optional[float] = None


@dataclass(frozen=True)
class TrackFile:
    """One raw signal track file registered for a sample."""

    assay: str
    condition: Condition
    path: Path
    view: Optional[str] = None


@dataclass(frozen=True)
class Sample:
    donor: str
    ancestry: str
    tracks: Tuple[TrackFile, ...] = ()


@dataclass(frozen=True)
class GenotypeRecord:
    """Classification of one sample's call at one variant."""

    sample: str
    chrom: str
    position: int
    call: str
    genotype: GenotypeClass


@dataclass(frozen=True)
class TrackReference:
    """A located per-sample track, annotated with everything grouping needs."""

    donor: str
    assay: str
    condition: Condition
    ancestry: str
    genotype: GenotypeClass
    path: Path
    view: Optional[str] = None


@dataclass(frozen=True)
class ExtractedValue:
    track: TrackReference
    value: float


@dataclass(frozen=True)
class TrackFailure:
    """A track or merge group that could not be processed."""

    path: str
    error: str


@dataclass(frozen=True)
class Window:
    """Genomic window, 0-based half-open."""

    chrom: str
    start: int
    end: int


@dataclass(frozen=True)
class MergedTrack:
    key: str
    path: Path
    deviation_path: Optional[Path]
    n_inputs: int
    cache_hit: bool
