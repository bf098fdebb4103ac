"""Genotype-stratified summary statistics.

Output carries counts and rank statistics only. Per-sample values are never
part of it: exact values could be matched against public track files to
re-identify donor genotypes.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .models import Condition, ExtractedValue, GenotypeClass

logger = logging.getLogger(__name__)


def rank_quantile(points: Sequence[float], q: float) -> float:
    """Element at index ``floor(n * q)`` of sorted ``points`` (no interpolation)."""
    n = len(points)
    if n == 0:
        raise ValueError("rank_quantile of an empty sequence")
    idx = min(int(math.floor(n * q)), n - 1)
    return float(points[idx])


@dataclass(frozen=True)
class RankStats:
    min: float
    quartile_1: float
    median: float
    quartile_3: float
    max: float

    @classmethod
    def from_values(cls, values: Iterable[float]) -> Optional["RankStats"]:
        points = np.sort(np.asarray(list(values), dtype=float))
        if points.size == 0:
            return None
        return cls(
            min=float(points[0]),
            quartile_1=rank_quantile(points, 0.25),
            median=rank_quantile(points, 0.50),
            quartile_3=rank_quantile(points, 0.75),
            max=float(points[-1]),
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "min": self.min,
            "quartile_1": self.quartile_1,
            "median": self.median,
            "quartile_3": self.quartile_3,
            "max": self.max,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "RankStats":
        return cls(**{k: float(d[k]) for k in ("min", "quartile_1", "median", "quartile_3", "max")})


@dataclass(frozen=True)
class GroupSummary:
    """Statistics of one (condition, genotype class) bucket.

    ``stats`` is None when the bucket is empty.
    """

    n: int = 0
    stats: Optional[RankStats] = None
    stats_by_ancestry: Dict[str, RankStats] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n": self.n,
            "stats": self.stats.to_dict() if self.stats is not None else None,
            "statsByAncestry": {k: v.to_dict() for k, v in sorted(self.stats_by_ancestry.items())},
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "GroupSummary":
        stats = d.get("stats")
        return cls(
            n=int(d.get("n", 0)),
            stats=RankStats.from_dict(stats) if stats else None,
            stats_by_ancestry={k: RankStats.from_dict(v) for k, v in (d.get("statsByAncestry") or {}).items()},
        )


@dataclass(frozen=True)
class ConditionStatistics:
    ref: GroupSummary = field(default_factory=GroupSummary)
    het: GroupSummary = field(default_factory=GroupSummary)
    hom: GroupSummary = field(default_factory=GroupSummary)

    def get(self, genotype: GenotypeClass) -> GroupSummary:
        if genotype is GenotypeClass.REF:
            return self.ref
        if genotype is GenotypeClass.HET:
            return self.het
        return self.hom

    @property
    def n(self) -> int:
        return self.ref.n + self.het.n + self.hom.n

    def to_dict(self) -> Dict[str, Any]:
        return {g.value: self.get(g).to_dict() for g in GenotypeClass}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ConditionStatistics":
        return cls(
            ref=GroupSummary.from_dict(d.get(GenotypeClass.REF.value, {})),
            het=GroupSummary.from_dict(d.get(GenotypeClass.HET.value, {})),
            hom=GroupSummary.from_dict(d.get(GenotypeClass.HOM.value, {})),
        )


@dataclass(frozen=True)
class GroupStatistics:
    """Per condition, per genotype class statistics for one peak."""

    ni: ConditionStatistics = field(default_factory=ConditionStatistics)
    flu: ConditionStatistics = field(default_factory=ConditionStatistics)

    def get(self, condition: Condition) -> ConditionStatistics:
        return self.ni if condition is Condition.NI else self.flu

    @property
    def n(self) -> int:
        return self.ni.n + self.flu.n

    def to_dict(self) -> Dict[str, Any]:
        return {c.value: self.get(c).to_dict() for c in Condition}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "GroupStatistics":
        return cls(
            ni=ConditionStatistics.from_dict(d.get(Condition.NI.value, {})),
            flu=ConditionStatistics.from_dict(d.get(Condition.FLU.value, {})),
        )


def summarize_group(members: Sequence[Tuple[str, float]]) -> GroupSummary:
    """Summary of ``(ancestry, value)`` pairs."""
    if not members:
        return GroupSummary()
    by_ancestry: Dict[str, List[float]] = {}
    for ancestry, value in members:
        by_ancestry.setdefault(ancestry, []).append(value)
    stats = RankStats.from_values(v for _, v in members)
    by_ancestry_stats: Dict[str, RankStats] = {}
    for ancestry, vals in by_ancestry.items():
        s = RankStats.from_values(vals)
        if s is not None:
            by_ancestry_stats[ancestry] = s
    return GroupSummary(n=len(members), stats=stats, stats_by_ancestry=by_ancestry_stats)


def aggregate(values: Iterable[ExtractedValue]) -> GroupStatistics:
    """Group extracted values by condition, then genotype class, then ancestry."""
    buckets: Dict[Tuple[Condition, GenotypeClass], List[Tuple[str, float]]] = {
        (c, g): [] for c in Condition for g in GenotypeClass
    }
    for ev in values:
        buckets[(ev.track.condition, ev.track.genotype)].append((ev.track.ancestry, float(ev.value)))

    def _condition(c: Condition) -> ConditionStatistics:
        return ConditionStatistics(
            ref=summarize_group(buckets[(c, GenotypeClass.REF)]),
            het=summarize_group(buckets[(c, GenotypeClass.HET)]),
            hom=summarize_group(buckets[(c, GenotypeClass.HOM)]),
        )

    return GroupStatistics(ni=_condition(Condition.NI), flu=_condition(Condition.FLU))


def value_domain(stats: ConditionStatistics) -> Optional[Tuple[float, float]]:
    """(min, max) over the non-empty groups of a condition, for plot axes."""
    lo = math.inf
    hi = -math.inf
    for g in GenotypeClass:
        s = stats.get(g).stats
        if s is None:
            continue
        lo = min(lo, s.min)
        hi = max(hi, s.max)
    if lo == math.inf:
        return None
    return lo, hi
