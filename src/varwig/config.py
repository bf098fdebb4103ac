"""
Configuration loader for varwig

Loads settings from a YAML file with support for environment variable overrides.
Relative paths in the file are resolved against the file's own directory.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "varwig.yaml"


@dataclass
class PathSettings:
    vcf: Optional[Path] = None
    metadata: Optional[Path] = None
    tracks_dir: Optional[Path] = None
    merged_tracks: Path = Path("data/mergedTracks")
    results_cache: Path = Path("data/cache")


@dataclass
class MergeSettings:
    backend: str = "external"  # external | pybigwig
    executable: str = "bigwig-merge"
    semaphore_limit: int = 2
    padding: int = 100_000
    extension: str = ".bw"


@dataclass
class SummarySettings:
    backend: str = "external"  # external | pybigwig
    executable: str = "bigWigSummary"


@dataclass
class SampleSettings:
    variant_filter: str = "snv"  # snv | any
    vcf_contig_style: str = "auto"
    track_contig_style: str = "ucsc"


@dataclass
class TopPeakSettings:
    bin_size: int = 25_000
    min_p_value: float = 0.10
    # bins are laid out only over listed chromosomes; empty means every chromosome with peaks
    chrom_sizes: Dict[str, int] = field(default_factory=dict)


@dataclass
class Settings:
    paths: PathSettings = field(default_factory=PathSettings)
    merge: MergeSettings = field(default_factory=MergeSettings)
    summary: SummarySettings = field(default_factory=SummarySettings)
    samples: SampleSettings = field(default_factory=SampleSettings)
    top_peaks: TopPeakSettings = field(default_factory=TopPeakSettings)
    strand_aware_assays: List[str] = field(default_factory=lambda: ["RNA-Seq"])
    workers: int = 4
    cache_ttl_days: float = 180.0

    def validate(self) -> "Settings":
        if self.merge.backend not in ("external", "pybigwig"):
            raise ValueError(f"merge.backend must be 'external' or 'pybigwig', got {self.merge.backend!r}")
        if self.summary.backend not in ("external", "pybigwig"):
            raise ValueError(f"summary.backend must be 'external' or 'pybigwig', got {self.summary.backend!r}")
        if self.samples.variant_filter not in ("snv", "any"):
            raise ValueError(f"samples.variant_filter must be 'snv' or 'any', got {self.samples.variant_filter!r}")
        if int(self.merge.semaphore_limit) < 1:
            raise ValueError("merge.semaphore_limit must be >= 1")
        if int(self.workers) < 1:
            raise ValueError("workers must be >= 1")
        if int(self.merge.padding) < 0:
            raise ValueError("merge.padding must be >= 0")
        if int(self.top_peaks.bin_size) < 1:
            raise ValueError("top_peaks.bin_size must be >= 1")
        return self


def resolve_path(path: Optional[str | Path], base_dir: Path) -> Optional[Path]:
    """Make ``path`` absolute relative to ``base_dir``."""
    if path is None or path == "":
        return None
    p = Path(str(path)).expanduser()
    if p.is_absolute():
        return p
    return (base_dir / p).resolve()


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, Mapping):
        raise ValueError(f"Config section '{name}' must be a mapping")
    return value


def settings_from_dict(raw: Mapping[str, Any], *, base_dir: Path) -> Settings:
    s = Settings()

    paths = _section(raw, "paths")
    s.paths.vcf = resolve_path(paths.get("vcf"), base_dir)
    s.paths.metadata = resolve_path(paths.get("metadata"), base_dir)
    s.paths.tracks_dir = resolve_path(paths.get("tracks_dir"), base_dir)
    s.paths.merged_tracks = resolve_path(paths.get("merged_tracks", s.paths.merged_tracks), base_dir)  # type: ignore[assignment]
    s.paths.results_cache = resolve_path(paths.get("results_cache", s.paths.results_cache), base_dir)  # type: ignore[assignment]

    merge = _section(raw, "merge")
    s.merge.backend = str(merge.get("backend", s.merge.backend))
    s.merge.executable = str(merge.get("executable", s.merge.executable))
    s.merge.semaphore_limit = int(merge.get("semaphore_limit", s.merge.semaphore_limit))
    s.merge.padding = int(merge.get("padding", s.merge.padding))
    s.merge.extension = str(merge.get("extension", s.merge.extension))

    summary = _section(raw, "summary")
    s.summary.backend = str(summary.get("backend", s.summary.backend))
    s.summary.executable = str(summary.get("executable", s.summary.executable))

    samples = _section(raw, "samples")
    s.samples.variant_filter = str(samples.get("variant_filter", s.samples.variant_filter))
    s.samples.vcf_contig_style = str(samples.get("vcf_contig_style", s.samples.vcf_contig_style))
    s.samples.track_contig_style = str(samples.get("track_contig_style", s.samples.track_contig_style))

    top = _section(raw, "top_peaks")
    s.top_peaks.bin_size = int(top.get("bin_size", s.top_peaks.bin_size))
    s.top_peaks.min_p_value = float(top.get("min_p_value", s.top_peaks.min_p_value))
    s.top_peaks.chrom_sizes = {str(k): int(v) for k, v in _section(top, "chrom_sizes").items()}

    if "strand_aware_assays" in raw:
        s.strand_aware_assays = [str(a) for a in raw.get("strand_aware_assays") or []]
    s.workers = int(raw.get("workers", s.workers))
    s.cache_ttl_days = float(raw.get("cache_ttl_days", s.cache_ttl_days))
    return s


def apply_env_overrides(settings: Settings, env: Optional[Mapping[str, str]] = None) -> None:
    """Apply ``VARWIG_*`` environment variable overrides."""
    env = os.environ if env is None else env
    cwd = Path.cwd()

    if env.get("VARWIG_VCF"):
        settings.paths.vcf = resolve_path(env["VARWIG_VCF"], cwd)
    if env.get("VARWIG_METADATA"):
        settings.paths.metadata = resolve_path(env["VARWIG_METADATA"], cwd)
    if env.get("VARWIG_TRACKS_DIR"):
        settings.paths.tracks_dir = resolve_path(env["VARWIG_TRACKS_DIR"], cwd)
    if env.get("VARWIG_MERGED_TRACKS"):
        settings.paths.merged_tracks = resolve_path(env["VARWIG_MERGED_TRACKS"], cwd)  # type: ignore[assignment]
    if env.get("VARWIG_RESULTS_CACHE"):
        settings.paths.results_cache = resolve_path(env["VARWIG_RESULTS_CACHE"], cwd)  # type: ignore[assignment]
    if env.get("VARWIG_MERGE_SEMAPHORE_LIMIT"):
        settings.merge.semaphore_limit = int(env["VARWIG_MERGE_SEMAPHORE_LIMIT"])
    if env.get("VARWIG_WORKERS"):
        settings.workers = int(env["VARWIG_WORKERS"])


def load_settings(
    config_path: Optional[str | Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    workers: Optional[int] = None,
) -> Settings:
    """
    Load settings from YAML.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for varwig.yaml in the working directory.
        env: Environment mapping for overrides (defaults to os.environ).
        workers: Command-line override of the fan-out width; wins over
                 the file and the environment.

    Returns:
        Validated Settings.
    """
    if config_path is None:
        path = Path.cwd() / DEFAULT_CONFIG_NAME
    else:
        path = Path(config_path).expanduser()

    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            raw: Dict[str, Any] = yaml.safe_load(f) or {}
        if not isinstance(raw, Mapping):
            raise ValueError(f"Config file {path} must contain a mapping")
        settings = settings_from_dict(raw, base_dir=path.resolve().parent)
    else:
        if config_path is not None:
            raise FileNotFoundError(f"Config file not found: {path}")
        logger.warning("Config file not found at %s, using defaults", path)
        settings = settings_from_dict({}, base_dir=Path.cwd())

    apply_env_overrides(settings, env)
    if workers is not None:
        settings.workers = int(workers)
    return settings.validate()


def settings_to_dict(settings: Settings) -> Dict[str, Any]:
    """Plain YAML-friendly representation."""

    def _p(p: Optional[Path]) -> Optional[str]:
        return str(p) if p is not None else None

    return {
        "paths": {
            "vcf": _p(settings.paths.vcf),
            "metadata": _p(settings.paths.metadata),
            "tracks_dir": _p(settings.paths.tracks_dir),
            "merged_tracks": _p(settings.paths.merged_tracks),
            "results_cache": _p(settings.paths.results_cache),
        },
        "merge": {
            "backend": settings.merge.backend,
            "executable": settings.merge.executable,
            "semaphore_limit": settings.merge.semaphore_limit,
            "padding": settings.merge.padding,
            "extension": settings.merge.extension,
        },
        "summary": {
            "backend": settings.summary.backend,
            "executable": settings.summary.executable,
        },
        "samples": {
            "variant_filter": settings.samples.variant_filter,
            "vcf_contig_style": settings.samples.vcf_contig_style,
            "track_contig_style": settings.samples.track_contig_style,
        },
        "top_peaks": {
            "bin_size": settings.top_peaks.bin_size,
            "min_p_value": settings.top_peaks.min_p_value,
            "chrom_sizes": dict(settings.top_peaks.chrom_sizes),
        },
        "strand_aware_assays": list(settings.strand_aware_assays),
        "workers": settings.workers,
        "cache_ttl_days": settings.cache_ttl_days,
    }
