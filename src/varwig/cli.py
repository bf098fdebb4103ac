from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from . import __version__
from .config import Settings, load_settings, settings_to_dict
from .doctor import collect_checks
from .engine import AppContext, peak_merges, peak_statistics
from .errors import VarwigError
from .external import ExternalCommandError
from .genotypes import VcfVariantStore, genotype_counts, resolve_genotypes
from .models import Peak
from .peaks import find_peak, list_assays, load_peaks, parse_feature, top_peaks
from .plotting import plot_error, plot_group_statistics
from .report import render_report
from .toy_data import make_toy_data
from .utils import ensure_outdir, write_json

logger = logging.getLogger("varwig")


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    if isinstance(err, (ExternalCommandError, VarwigError)):
        msg = str(err)
    else:
        msg = f"{err.__class__.__name__}: {err}"

    sys.stderr.write(msg + "\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=False))


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default=None, help="Config YAML (default: ./varwig.yaml).")
    p.add_argument("--log-file", default=None, help="Also write log messages to this file.")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")
    p.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Threads per request for track extraction and merging (overrides the config file).",
    )


def _add_peak_args(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("peak selection", "Either --peaks/--peak-id or the inline flags.")
    g.add_argument("--peaks", type=_path_exists, default=None, help="Peak table (TSV).")
    g.add_argument("--peak-id", default=None, help="Peak id within --peaks.")
    g.add_argument("--chrom", default=None, help="Variant chromosome.")
    g.add_argument("--position", type=int, default=None, help="Variant position (1-based).")
    g.add_argument("--assay", default=None, help="Assay name, e.g. ATAC-Seq or RNA-Seq.")
    g.add_argument("--feature", default=None, help="Feature interval chrom:start-end (0-based half-open).")
    g.add_argument("--strand", choices=["+", "-"], default=None, help="Feature strand.")


def _select_peak(args: argparse.Namespace) -> Peak:
    if args.peaks is not None:
        if not args.peak_id:
            raise ValueError("--peak-id is required with --peaks")
        return find_peak(load_peaks(args.peaks), args.peak_id)

    missing = [
        flag
        for flag, value in (
            ("--chrom", args.chrom),
            ("--position", args.position),
            ("--assay", args.assay),
            ("--feature", args.feature),
        )
        if value is None
    ]
    if missing:
        raise ValueError(f"Missing peak flags: {', '.join(missing)} (or use --peaks/--peak-id)")
    feature = parse_feature(args.feature, strand=args.strand)
    strand = feature.strand or "."
    peak_id = f"{args.chrom}:{args.position}:{args.assay}:{feature.chrom}:{feature.start}-{feature.end}:{strand}"
    return Peak(peak_id=peak_id, chrom=args.chrom, position=int(args.position), assay=args.assay, feature=feature)


def _load_settings(args: argparse.Namespace) -> Settings:
    return load_settings(args.config, workers=getattr(args, "workers", None))


def _log_file(args: argparse.Namespace) -> Optional[Path]:
    return Path(args.log_file).expanduser().resolve() if getattr(args, "log_file", None) else None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="varwig",
        description=(
            "varwig: compare functional-genomics signal (bigWig tracks) across the genotype "
            "classes of a variant, per experimental condition."
        ),
    )
    p.add_argument("--version", action="version", version=f"varwig {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # quickstart
    # -----------------
    sub.add_parser(
        "quickstart",
        help="Print ready-to-run recipes for common tasks.",
    )

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny VCF, bigWig tracks, metadata and config for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # doctor
    # -----------------
    d = sub.add_parser(
        "doctor",
        help="Check external tools, pyBigWig and configured inputs.",
    )
    d.add_argument("--dry-run", action="store_true", help="Print checks without exiting nonzero.")
    _add_common(d)

    # -----------------
    # genotypes
    # -----------------
    g = sub.add_parser(
        "genotypes",
        help="Genotype class counts at a variant position.",
    )
    g.add_argument("--chrom", default=None, help="Chromosome.")
    g.add_argument("--position", type=int, default=None, help="Position (1-based).")
    g.add_argument("--list-chroms", action="store_true", help="List chromosomes carrying variants.")
    g.add_argument(
        "--complete",
        default=None,
        metavar="PREFIX",
        help="List variant positions on --chrom starting with PREFIX.",
    )
    g.add_argument("--limit", type=int, default=15, help="Maximum positions listed by --complete.")
    _add_common(g)

    # -----------------
    # values
    # -----------------
    v = sub.add_parser(
        "values",
        help="Genotype-stratified signal statistics for a peak (JSON).",
    )
    _add_peak_args(v)
    v.add_argument("--no-cache", action="store_true", help="Bypass the result cache.")
    v.add_argument("--out", default=None, help="Write JSON here instead of stdout.")
    _add_common(v)

    # -----------------
    # plot
    # -----------------
    pl = sub.add_parser(
        "plot",
        help="Render the genotype box plot of a peak as PNG.",
    )
    _add_peak_args(pl)
    pl.add_argument("--out", required=True, help="Output PNG path.")
    pl.add_argument("--no-cache", action="store_true", help="Bypass the result cache.")
    _add_common(pl)

    # -----------------
    # tracks
    # -----------------
    tr = sub.add_parser(
        "tracks",
        help="Merged tracks per condition and genotype class around a peak (JSON).",
    )
    _add_peak_args(tr)
    _add_common(tr)

    # -----------------
    # report
    # -----------------
    r = sub.add_parser(
        "report",
        help="HTML report for a peak: statistics, plot and merged tracks.",
    )
    _add_peak_args(r)
    r.add_argument("--outdir", required=True, help="Output directory.")
    r.add_argument("--no-merge", action="store_true", help="Skip merged track generation.")
    _add_common(r)

    # -----------------
    # precompute
    # -----------------
    pc = sub.add_parser(
        "precompute",
        help="Warm the result cache for every peak of a peak table.",
    )
    pc.add_argument("--peaks", required=True, type=_path_exists, help="Peak table (TSV).")
    pc.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    _add_common(pc)

    # -----------------
    # assays
    # -----------------
    a = sub.add_parser(
        "assays",
        help="List the assays present in a peak table.",
    )
    a.add_argument("--peaks", required=True, type=_path_exists, help="Peak table (TSV).")

    # -----------------
    # top-peaks
    # -----------------
    tp = sub.add_parser(
        "top-peaks",
        help="Most significant peak per assay in fixed-size chromosome bins (JSON).",
    )
    tp.add_argument("--peaks", required=True, type=_path_exists, help="Peak table (TSV).")
    tp.add_argument("--bin-size", type=int, default=None, help="Bin width in bp (default: top_peaks.bin_size).")
    tp.add_argument(
        "--min-p-value",
        type=float,
        default=None,
        help="Ignore peaks whose smaller condition score exceeds this (default: top_peaks.min_p_value).",
    )
    _add_common(tp)

    return p


# -----------------
# Command handlers
# -----------------

def cmd_quickstart() -> int:
    lines = [
        "varwig quickstart (copy/paste):",
        "",
        "1) Toy data end-to-end:",
        "   varwig make-toy-data --outdir toy/",
        "   cd toy/",
        "   varwig values --peaks peaks.tsv --peak-id toy_atac",
        "",
        "2) Inline peak (no peak table):",
        "   varwig values \\",
        "     --chrom chr1 --position 5000 \\",
        "     --assay RNA-Seq --feature chr1:4900-5100 --strand +",
        "",
        "3) Report with plot and merged tracks:",
        "   varwig report --peaks peaks.tsv --peak-id toy_rna_plus --outdir report/",
        "   Outputs: report/report.html, report/plot.png, report/statistics.json",
        "",
        "4) Warm the cache for a whole peak table:",
        "   varwig precompute --peaks peaks.tsv",
        "",
        "5) Peak table overview (assays, most significant peak per bin):",
        "   varwig assays --peaks peaks.tsv",
        "   varwig top-peaks --peaks peaks.tsv --bin-size 25000",
        "",
        "Tip: run 'varwig doctor' first to check external tools and inputs.",
    ]
    print("\n".join(lines))
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir)
    _print_json(summary)
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=_log_file(args))

    try:
        settings = _load_settings(args)
    except (OSError, ValueError) as e:
        return _handle_error(e)
    logger.debug("Effective config: %s", settings_to_dict(settings))
    checks = collect_checks(settings)

    lines = []
    ok_all = True
    for name, r in checks.items():
        status = "OK" if r.ok else "MISSING"
        lines.append(f"{name:9s} : {status:7s}  {r.detail}")
        if not r.ok:
            ok_all = False

    print("\n".join(lines))

    for name, r in checks.items():
        if not r.ok and r.howto:
            print("\n---")
            print(f"How to install/fix '{name}':")
            print(r.howto)

    if args.dry_run:
        return 0
    return 0 if ok_all else 1


def cmd_genotypes(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=_log_file(args))
    try:
        settings = _load_settings(args)
        if settings.paths.vcf is None:
            raise ValueError("No variant store configured (paths.vcf)")
        variant_filter = AppContext.variant_filter_for(settings)
        with VcfVariantStore(settings.paths.vcf, contig_style=settings.samples.vcf_contig_style) as store:
            if args.list_chroms:
                _print_json(store.chroms())
                return 0
            if args.chrom is None:
                raise ValueError("--chrom is required")
            if args.complete is not None:
                _print_json(store.positions(args.chrom, args.complete, limit=int(args.limit)))
                return 0
            if args.position is None:
                raise ValueError("--position is required")
            records = resolve_genotypes(store, args.chrom, int(args.position), predicate=variant_filter)
        _print_json(
            {
                "chrom": args.chrom,
                "position": int(args.position),
                "n": len(records),
                "counts": genotype_counts(records),
            }
        )
        return 0
    except Exception as e:
        return _handle_error(e, log_path=_log_file(args))


def cmd_values(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=_log_file(args))
    try:
        peak = _select_peak(args)
        with AppContext.from_settings(_load_settings(args)) as ctx:
            result = peak_statistics(ctx, peak, use_cache=not args.no_cache)
        if args.out:
            write_json(Path(args.out), result.to_dict())
            print(args.out)
        else:
            _print_json(result.to_dict())
        return 0
    except Exception as e:
        return _handle_error(e, log_path=_log_file(args))


def cmd_plot(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=_log_file(args))
    out_png = Path(args.out).expanduser().resolve()
    try:
        peak = _select_peak(args)
        with AppContext.from_settings(_load_settings(args)) as ctx:
            result = peak_statistics(ctx, peak, use_cache=not args.no_cache)
        plot_group_statistics(stats=result.statistics, out_png=out_png, title=f"{peak.peak_id} ({peak.assay})")
        print(str(out_png))
        return 0
    except Exception as e:
        logger.exception("Plot failed")
        plot_error(out_png=out_png, message=f"Could not plot: {e}")
        return _handle_error(e, log_path=_log_file(args))


def cmd_tracks(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=_log_file(args))
    try:
        peak = _select_peak(args)
        with AppContext.from_settings(_load_settings(args)) as ctx:
            merges = peak_merges(ctx, peak)
        _print_json([m.to_dict() for m in merges])
        return 0 if not any(m.failures for m in merges) else 1
    except Exception as e:
        return _handle_error(e, log_path=_log_file(args))


def cmd_report(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_file(args) or outdir / "logs" / "report.log"
    _setup_logging(args.verbose, logfile=log_path)

    try:
        peak = _select_peak(args)
        outdir = ensure_outdir(outdir)
        with AppContext.from_settings(_load_settings(args)) as ctx:
            result = peak_statistics(ctx, peak)
            merges = [] if args.no_merge else peak_merges(ctx, peak)

        write_json(outdir / "statistics.json", result.to_dict())
        plot_png = outdir / "plot.png"
        plot_group_statistics(stats=result.statistics, out_png=plot_png, title=f"{peak.peak_id} ({peak.assay})")

        report_path = render_report(
            outdir=outdir,
            version=__version__,
            peak=peak,
            statistics=result,
            merges=merges,
            plot=plot_png.name,
        )
        logger.info("Report written: %s", report_path)
        print(str(report_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_precompute(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=_log_file(args))
    try:
        peaks = load_peaks(args.peaks)
        counts: Dict[str, int] = {"peaks": len(peaks), "cached": 0, "computed": 0, "partial": 0, "empty": 0}
        failed: List[str] = []
        with AppContext.from_settings(_load_settings(args)) as ctx:
            for peak in tqdm(peaks, desc="peaks", unit="peak", disable=bool(args.no_progress)):
                result = peak_statistics(ctx, peak)
                if result.from_cache:
                    counts["cached"] += 1
                elif result.failures:
                    counts["partial"] += 1
                    failed.append(peak.peak_id)
                elif result.note is not None:
                    counts["empty"] += 1
                else:
                    counts["computed"] += 1
        _print_json({"counts": counts, "partial": failed})
        return 0 if not failed else 1
    except Exception as e:
        return _handle_error(e, log_path=_log_file(args))


def cmd_assays(args: argparse.Namespace) -> int:
    try:
        _print_json(list_assays(load_peaks(args.peaks)))
        return 0
    except Exception as e:
        return _handle_error(e)


def cmd_top_peaks(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=_log_file(args))
    try:
        settings = _load_settings(args)
        bin_size = args.bin_size if args.bin_size is not None else settings.top_peaks.bin_size
        min_p_value = args.min_p_value if args.min_p_value is not None else settings.top_peaks.min_p_value
        binned = top_peaks(
            load_peaks(args.peaks),
            bin_size=bin_size,
            min_p_value=min_p_value,
            chrom_sizes=settings.top_peaks.chrom_sizes,
        )
        _print_json([b.to_dict() for b in binned])
        return 0
    except Exception as e:
        return _handle_error(e, log_path=_log_file(args))


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "doctor":
        return cmd_doctor(args)
    if args.cmd == "genotypes":
        return cmd_genotypes(args)
    if args.cmd == "values":
        return cmd_values(args)
    if args.cmd == "plot":
        return cmd_plot(args)
    if args.cmd == "tracks":
        return cmd_tracks(args)
    if args.cmd == "report":
        return cmd_report(args)
    if args.cmd == "precompute":
        return cmd_precompute(args)
    if args.cmd == "assays":
        return cmd_assays(args)
    if args.cmd == "top-peaks":
        return cmd_top_peaks(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2
