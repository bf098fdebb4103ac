from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pysam
import pyBigWig
import yaml

from .utils import ensure_outdir, write_json

CONTIG = "chr1"
CONTIG_LENGTH = 20_000

# (donor, ancestry, GT, phased); D05 carries a haploid call and is excluded
_DONORS: List[Tuple[str, str, Tuple[Optional[int], ...], bool]] = [
    ("D01", "EU", (0, 0), False),
    ("D02", "EU", (0, 1), False),
    ("D03", "EU", (1, 1), False),
    ("D04", "AF", (0, 1), True),
    ("D05", "AF", (1,), False),
    ("D06", "AF", (0, 0), False),
]

SNV_POS = 5_000  # 1-based
INDEL_POS = 9_000  # 1-based
FEATURE = (4_900, 5_100)  # 0-based half-open


def _write_vcf(path: Path) -> Path:
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.contigs.add(CONTIG, length=CONTIG_LENGTH)
    header.formats.add("GT", number=1, type="String", description="Genotype")
    for donor, _, _, _ in _DONORS:
        header.add_sample(donor)

    records = [
        (SNV_POS, ("A", "G"), "rs_toy_snv"),
        (INDEL_POS, ("AT", "A"), "rs_toy_indel"),
    ]
    with pysam.VariantFile(str(path), "w", header=header) as vcf:
        for pos1, alleles, rid in records:
            rec = vcf.new_record(
                contig=CONTIG,
                start=pos1 - 1,
                stop=pos1 - 1 + len(alleles[0]),
                alleles=alleles,
                id=rid,
                qual=60,
                filter="PASS",
            )
            for donor, _, gt, phased in _DONORS:
                rec.samples[donor]["GT"] = gt
                rec.samples[donor].phased = phased
            vcf.write(rec)

    gz = path.with_suffix(path.suffix + ".gz")
    pysam.tabix_compress(str(path), str(gz), force=True)
    pysam.tabix_index(str(gz), preset="vcf", force=True)
    return gz


def _write_track(path: Path, level: float, *, in_feature: bool = True) -> None:
    """Flat background with a plateau of ``level`` over the toy feature.

    With ``in_feature`` False the feature interval carries no data at all.
    """
    bw = pyBigWig.open(str(path), "w")
    try:
        bw.addHeader([(CONTIG, CONTIG_LENGTH)], maxZooms=0)
        lo, hi = FEATURE
        if in_feature:
            bw.addEntries([CONTIG] * 3, [0, lo, hi], ends=[lo, hi, CONTIG_LENGTH], values=[0.5, level, 0.5])
        else:
            bw.addEntries([CONTIG] * 2, [0, hi], ends=[lo, CONTIG_LENGTH], values=[0.5, 0.5])
    finally:
        bw.close()


def make_toy_data(*, outdir: str | Path) -> Dict[str, str]:
    """Create a tiny cohort suitable for quick demos/tests.

    The outputs include:
    - cohort.vcf.gz (+ .tbi): one SNV and one indel across six donors
    - tracks/*.bw: ATAC-Seq and stranded RNA-Seq tracks in NI and Flu
    - metadata.json, peaks.tsv, varwig.yaml (in-process pyBigWig backends)

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)
    tracks_dir = ensure_outdir(outdir_p / "tracks")
    rng = random.Random(7)

    vcf_gz = _write_vcf(outdir_p / "cohort.vcf")

    samples = []
    for donor, ancestry, gt, _ in _DONORS:
        dosage = sum(1 for a in gt if a)
        tracks = []
        for condition, shift in (("NI", 0.0), ("Flu", 1.5)):
            for assay, view, suffix, scale in (
                ("ATAC-Seq", None, "atac", 2.0),
                ("RNA-Seq", "signal_forward", "rna.fwd", 3.0),
                ("RNA-Seq", "signal_reverse", "rna.rev", 0.5),
            ):
                name = f"{donor}.{condition}.{suffix}.bw"
                level = 1.0 + scale * dosage + shift + rng.uniform(0.0, 0.3)
                # one track without signal over the feature
                empty = donor == "D06" and condition == "Flu" and assay == "ATAC-Seq"
                _write_track(tracks_dir / name, level, in_feature=not empty)
                entry = {"assay": assay, "condition": condition, "path": name}
                if view is not None:
                    entry["view"] = view
                tracks.append(entry)
        samples.append({"donor": donor, "ancestry": ancestry, "tracks": tracks})

    metadata = outdir_p / "metadata.json"
    write_json(metadata, {"samples": samples})

    feature = f"{CONTIG}:{FEATURE[0]}-{FEATURE[1]}"
    peaks = outdir_p / "peaks.tsv"
    rows = [
        ("toy_atac", "rs_toy_snv", CONTIG, SNV_POS, "ATAC-Seq", feature, ".", "TOY1", "0.01", "0.04"),
        ("toy_rna_plus", "rs_toy_snv", CONTIG, SNV_POS, "RNA-Seq", feature, "+", "TOY1", "0.03", "NA"),
        ("toy_rna_minus", "rs_toy_snv", CONTIG, SNV_POS, "RNA-Seq", feature, "-", "TOY1", "0.2", "0.5"),
        ("toy_indel", "rs_toy_indel", CONTIG, INDEL_POS, "ATAC-Seq", f"{CONTIG}:8900-9100", ".", "TOY2", "0.002", "0.05"),
    ]
    lines = ["\t".join(["id", "snp", "chrom", "position", "assay", "feature", "strand", "gene", "valueNI", "valueFlu"])]
    for pid, snp, chrom, pos, assay, feat, strand, gene, value_ni, value_flu in rows:
        lines.append("\t".join([pid, snp, chrom, str(pos), assay, feat, strand, gene, value_ni, value_flu]))
    peaks.write_text("\n".join(lines) + "\n", encoding="utf-8")

    config = outdir_p / "varwig.yaml"
    with open(config, "w", encoding="utf-8") as f:
        yaml.safe_dump(
            {
                "paths": {
                    "vcf": vcf_gz.name,
                    "metadata": metadata.name,
                    "tracks_dir": tracks_dir.name,
                    "merged_tracks": "merged",
                    "results_cache": "cache",
                },
                "merge": {"backend": "pybigwig", "semaphore_limit": 2, "padding": 1_000},
                "summary": {"backend": "pybigwig"},
                "top_peaks": {"bin_size": 25_000, "min_p_value": 0.1, "chrom_sizes": {CONTIG: CONTIG_LENGTH}},
                "workers": 4,
            },
            f,
            sort_keys=False,
        )

    summary = {
        "vcf": str(vcf_gz),
        "metadata": str(metadata),
        "tracks_dir": str(tracks_dir),
        "peaks": str(peaks),
        "config": str(config),
        "outdir": str(outdir_p),
    }
    write_json(outdir_p / "toy_summary.json", summary)
    return summary
