"""Request-level pipeline.

values:  resolve genotypes -> locate tracks -> extract signal -> aggregate
tracks:  resolve genotypes -> locate tracks -> merge per genotype group

All long-lived handles (variant store, tool slots, caches) belong to an
:class:`AppContext` that is opened once and shared by every request.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .cache import DAY_SECONDS, ResultCache
from .config import Settings
from .errors import ConsistencyError, NotFound
from .external import CommandRunner, ExternalCommandError, ToolSlots
from .extraction import extract_values
from .genotypes import VARIANT_FILTERS, VariantPredicate, VariantStore, VcfVariantStore, resolve_genotypes
from .merge import MergeCache, merge_window
from .models import (
    Condition,
    ExtractedValue,
    GenotypeClass,
    MergedTrack,
    Peak,
    TrackFailure,
    TrackReference,
)
from .stats import GroupStatistics, aggregate
from .tools import (
    BigWigChromLengths,
    BigWigSummaryTool,
    ExternalMergeTool,
    Merger,
    PyBigWigMerger,
    PyBigWigSummarizer,
    Summarizer,
)
from .tracks import MetadataTrackStore, TrackMetadataStore, locate_tracks
from .validation import remap_contig

logger = logging.getLogger(__name__)

VALUES_CACHE_PREFIX = "varwig:values:"


class AppContext:
    """Shared collaborators with an explicit open/close lifecycle."""

    def __init__(
        self,
        settings: Settings,
        *,
        variants: VariantStore,
        tracks: TrackMetadataStore,
        summarizer: Summarizer,
        merger: Merger,
        slots: Optional[ToolSlots] = None,
        chrom_lengths: Optional[BigWigChromLengths] = None,
        results: Optional[ResultCache] = None,
    ) -> None:
        self.settings = settings
        self.variants = variants
        self.tracks = tracks
        self.summarizer = summarizer
        self.slots = slots or ToolSlots(settings.merge.semaphore_limit)
        self.chrom_lengths = chrom_lengths or BigWigChromLengths()
        self.merges = MergeCache(
            settings.paths.merged_tracks,
            merger,
            self.slots,
            extension=settings.merge.extension,
        )
        self.results = results or ResultCache(
            settings.paths.results_cache,
            ttl_seconds=settings.cache_ttl_days * DAY_SECONDS,
        )
        self.variant_filter = self.variant_filter_for(settings)

    @staticmethod
    def variant_filter_for(settings: Settings) -> VariantPredicate:
        return VARIANT_FILTERS[settings.samples.variant_filter]

    @classmethod
    def from_settings(cls, settings: Settings, *, runner: Optional[CommandRunner] = None) -> "AppContext":
        if settings.paths.vcf is None:
            raise ValueError("No variant store configured (paths.vcf)")
        if settings.paths.metadata is None:
            raise ValueError("No track metadata configured (paths.metadata)")

        runner = runner or CommandRunner()
        summarizer: Summarizer
        if settings.summary.backend == "pybigwig":
            summarizer = PyBigWigSummarizer()
        else:
            summarizer = BigWigSummaryTool(executable=settings.summary.executable, runner=runner)
        merger: Merger
        if settings.merge.backend == "pybigwig":
            merger = PyBigWigMerger()
        else:
            merger = ExternalMergeTool(executable=settings.merge.executable, runner=runner)

        return cls(
            settings,
            variants=VcfVariantStore(settings.paths.vcf, contig_style=settings.samples.vcf_contig_style),
            tracks=MetadataTrackStore.from_json(settings.paths.metadata, tracks_dir=settings.paths.tracks_dir),
            summarizer=summarizer,
            merger=merger,
        )

    def open(self) -> "AppContext":
        opener = getattr(self.variants, "open", None)
        if opener is not None:
            opener()
        return self

    def close(self) -> None:
        closer = getattr(self.variants, "close", None)
        if closer is not None:
            closer()

    def __enter__(self) -> "AppContext":
        return self.open()

    def __exit__(self, *exc: object) -> None:
        self.close()

    def track_chrom(self, chrom: str) -> str:
        return remap_contig(chrom, self.settings.samples.track_contig_style)


@dataclass
class PeakStatistics:
    peak_id: str
    statistics: GroupStatistics
    failures: List[TrackFailure] = field(default_factory=list)
    from_cache: bool = False
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "peak": self.peak_id,
            "statistics": self.statistics.to_dict(),
            "failures": [f.path for f in self.failures],
            "cached": self.from_cache,
            "note": self.note,
        }


@dataclass
class ConditionMerge:
    assay: str
    condition: Condition
    outputs: Dict[GenotypeClass, Optional[MergedTrack]]
    failures: Dict[GenotypeClass, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        def _out(m: Optional[MergedTrack]) -> Optional[Dict[str, Any]]:
            if m is None:
                return None
            return {
                "path": str(m.path),
                "deviation": str(m.deviation_path) if m.deviation_path is not None else None,
                "n": m.n_inputs,
            }

        return {
            "assay": self.assay,
            "condition": self.condition.value,
            "output": {g.value: _out(self.outputs.get(g)) for g in GenotypeClass},
            "failures": {g.value: msg for g, msg in self.failures.items()},
        }


def get_tracks(ctx: AppContext, peak: Peak) -> List[TrackReference]:
    """Resolve genotypes at the peak's variant and locate the assay tracks.

    Raises ``NotFound`` when there is no variant and ``ConsistencyError`` when
    no sample could be genotyped.
    """
    genotypes = resolve_genotypes(ctx.variants, peak.chrom, peak.position, predicate=ctx.variant_filter)
    if not genotypes:
        raise ConsistencyError(f"No sample genotyped at {peak.chrom}:{peak.position}")
    return locate_tracks(genotypes, peak, ctx.tracks)


def peak_values(ctx: AppContext, peak: Peak) -> Tuple[List[ExtractedValue], List[TrackFailure]]:
    tracks = get_tracks(ctx, peak)
    return extract_values(
        tracks,
        peak.feature,
        ctx.summarizer,
        ctx.slots,
        chrom=ctx.track_chrom(peak.feature.chrom),
        strand_aware_assays=ctx.settings.strand_aware_assays,
        workers=ctx.settings.workers,
    )


def peak_statistics(ctx: AppContext, peak: Peak, *, use_cache: bool = True) -> PeakStatistics:
    """Genotype-stratified statistics for a peak, memoized in the result cache.

    Results with failed tracks are returned but never memoized.
    """
    key = VALUES_CACHE_PREFIX + peak.peak_id
    if use_cache:
        cached = ctx.results.get(key)
        if cached is not None:
            logger.debug("Result cache hit for peak %s", peak.peak_id)
            return PeakStatistics(
                peak_id=peak.peak_id,
                statistics=GroupStatistics.from_dict(cached),
                from_cache=True,
            )

    try:
        values, failures = peak_values(ctx, peak)
    except (NotFound, ConsistencyError) as e:
        logger.info("Peak %s: %s", peak.peak_id, e)
        return PeakStatistics(peak_id=peak.peak_id, statistics=GroupStatistics(), note=str(e))

    stats = aggregate(values)
    if failures:
        logger.warning("Peak %s: %d track(s) failed; result not cached", peak.peak_id, len(failures))
    elif use_cache:
        ctx.results.set(key, stats.to_dict())
    return PeakStatistics(peak_id=peak.peak_id, statistics=stats, failures=failures)


def _group_tracks(tracks: Sequence[TrackReference]) -> Dict[Condition, Dict[GenotypeClass, List[str]]]:
    grouped: Dict[Condition, Dict[GenotypeClass, List[str]]] = {}
    for t in tracks:
        by_class = grouped.setdefault(t.condition, {g: [] for g in GenotypeClass})
        by_class[t.genotype].append(str(t.path))
    return grouped


def peak_merges(ctx: AppContext, peak: Peak) -> List[ConditionMerge]:
    """Merged tracks for every (condition, genotype class) group of a peak."""
    try:
        tracks = get_tracks(ctx, peak)
    except (NotFound, ConsistencyError) as e:
        logger.info("Peak %s: %s", peak.peak_id, e)
        return []
    grouped = _group_tracks(tracks)
    chrom = ctx.track_chrom(peak.feature.chrom)

    def _merge(condition: Condition, genotype: GenotypeClass, paths: List[str]) -> MergedTrack:
        # the window must fit every input, so clamp to the shortest chromosome
        length = min(ctx.chrom_lengths.length_of(p, chrom) for p in paths)
        window = merge_window(peak.feature, length, chrom=chrom, padding=ctx.settings.merge.padding)
        return ctx.merges.merge_group(condition, genotype, paths, window)

    jobs = [
        (c, g, grouped[c][g])
        for c in Condition
        if c in grouped
        for g in GenotypeClass
        if grouped[c][g]
    ]
    results: Dict[Tuple[Condition, GenotypeClass], Optional[MergedTrack]] = {}
    errors: Dict[Tuple[Condition, GenotypeClass], str] = {}
    with ThreadPoolExecutor(max_workers=max(1, int(ctx.settings.workers))) as pool:
        futures = [((c, g), pool.submit(_merge, c, g, paths)) for c, g, paths in jobs]
        for key, fut in futures:
            try:
                results[key] = fut.result()
            except (ExternalCommandError, OSError, NotFound) as e:
                logger.warning("Merge failed for %s/%s: %s", key[0].value, key[1].value, e)
                errors[key] = f"{e.__class__.__name__}: {e}"

    out: List[ConditionMerge] = []
    for c in Condition:
        if c not in grouped:
            continue
        out.append(
            ConditionMerge(
                assay=peak.assay,
                condition=c,
                outputs={g: results.get((c, g)) for g in GenotypeClass},
                failures={g: errors[(c, g)] for g in GenotypeClass if (c, g) in errors},
            )
        )
    return out
