from __future__ import annotations

import csv
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import MalformedData, NotFound
from .models import Feature, Peak
from .utils import open_textmaybe_gzip

logger = logging.getLogger(__name__)

_FEATURE_RE = re.compile(r"^(?P<chrom>[^:\s]+):(?P<start>\d+)-(?P<end>\d+)(?::(?P<strand>[+-]))?$")

PEAK_COLUMNS = ("id", "snp", "chrom", "position", "assay", "feature", "strand", "gene", "valueNI", "valueFlu")

DEFAULT_BIN_SIZE = 25_000
DEFAULT_MIN_P_VALUE = 0.10


def parse_feature(
    text: str,
    *,
    strand: Optional[str] = None,
    gene: Optional[str] = None,
    feature_id: Optional[str] = None,
) -> Feature:
    """Parse ``chrom:start-end[:strand]`` (0-based half-open)."""
    m = _FEATURE_RE.match(str(text).strip().replace(",", ""))
    if m is None:
        raise MalformedData(f"Invalid feature {text!r}; expected chrom:start-end[:strand]")
    try:
        return Feature(
            chrom=m.group("chrom"),
            start=int(m.group("start")),
            end=int(m.group("end")),
            strand=_strand(strand) or m.group("strand"),
            gene=gene or None,
            feature_id=feature_id or None,
        )
    except ValueError as e:
        raise MalformedData(str(e)) from e


def _strand(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    v = str(value).strip()
    if v in ("", ".", "NA"):
        return None
    return v


def _float(value: Optional[str]) -> Optional[float]:
    if value is None or str(value).strip() in ("", "NA", "."):
        return None
    return float(value)


def peak_from_row(row: Mapping[str, str]) -> Peak:
    try:
        feature = parse_feature(row["feature"], strand=row.get("strand"), gene=row.get("gene"))
        return Peak(
            peak_id=str(row["id"]),
            chrom=str(row["chrom"]),
            position=int(row["position"]),
            assay=str(row["assay"]),
            feature=feature,
            snp=row.get("snp") or None,
            value_ni=_float(row.get("valueNI")),
            value_flu=_float(row.get("valueFlu")),
        )
    except (KeyError, ValueError) as e:
        raise MalformedData(f"Invalid peak row {dict(row)}: {e}") from e


def load_peaks(path: str | Path) -> List[Peak]:
    """Read a tab-separated peak table (optionally gzipped)."""
    peaks: List[Peak] = []
    with open_textmaybe_gzip(path, "rt") as f:
        reader = csv.DictReader(f, delimiter="\t")
        missing = [c for c in ("id", "chrom", "position", "assay", "feature") if c not in (reader.fieldnames or [])]
        if missing:
            raise MalformedData(f"Peak table {path} is missing columns: {missing}")
        for row in reader:
            peaks.append(peak_from_row(row))
    logger.info("Loaded %d peaks from %s", len(peaks), path)
    return peaks


def find_peak(peaks: List[Peak], peak_id: str) -> Peak:
    by_id: Dict[str, Peak] = {p.peak_id: p for p in peaks}
    if peak_id not in by_id:
        raise NotFound(f"Peak {peak_id!r} not found")
    return by_id[peak_id]


def list_assays(peaks: Iterable[Peak]) -> List[str]:
    """Distinct assay names in the peak table, sorted."""
    return sorted({p.assay for p in peaks})


def peak_p_value(peak: Peak) -> Optional[float]:
    """Smaller of the two per-condition scores; ``None`` when both are missing."""
    scores = [v for v in (peak.value_ni, peak.value_flu) if v is not None]
    return min(scores) if scores else None


@dataclass(frozen=True)
class BinnedPeak:
    """Most significant peak of one assay within one chromosome bin."""

    chrom: str
    pos_bin: int
    assay: str
    peak_id: str
    p_value: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "chrom": self.chrom,
            "pos_bin": self.pos_bin,
            "assay": self.assay,
            "peak": self.peak_id,
            "p_value": self.p_value,
        }


def top_peaks(
    peaks: Iterable[Peak],
    *,
    bin_size: int = DEFAULT_BIN_SIZE,
    min_p_value: float = DEFAULT_MIN_P_VALUE,
    chrom_sizes: Optional[Mapping[str, int]] = None,
) -> List[BinnedPeak]:
    """Per chromosome bin and assay, the peak with the smallest score.

    A variant at ``position`` falls in the bin starting at
    ``(position // bin_size) * bin_size``. Peaks scoring above ``min_p_value``
    are ignored, so bins without a qualifying peak are absent. With
    ``chrom_sizes``, only the listed chromosomes and the bins covering
    ``[0, size)`` are considered. Ties keep the first peak of the table.
    """
    if int(bin_size) < 1:
        raise ValueError("bin_size must be >= 1")
    sizes = dict(chrom_sizes or {})

    best: Dict[Tuple[str, int, str], BinnedPeak] = {}
    for peak in peaks:
        p = peak_p_value(peak)
        if p is None or p > min_p_value:
            continue
        if sizes:
            if peak.chrom not in sizes:
                continue
            n_bins = -(-int(sizes[peak.chrom]) // int(bin_size))
            if peak.position // bin_size >= n_bins:
                continue
        pos_bin = (peak.position // bin_size) * bin_size
        key = (peak.chrom, pos_bin, peak.assay)
        if key not in best or p < best[key].p_value:
            best[key] = BinnedPeak(chrom=peak.chrom, pos_bin=pos_bin, assay=peak.assay, peak_id=peak.peak_id, p_value=p)

    chrom_order = {c: i for i, c in enumerate(sizes)}
    return sorted(
        best.values(),
        key=lambda b: (chrom_order.get(b.chrom, len(chrom_order)), b.chrom, b.pos_bin, b.assay),
    )
