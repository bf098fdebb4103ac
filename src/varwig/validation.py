from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)


_UCSC_PREFIX = "chr"


def check_vcf_index(vcf_path: str | Path) -> None:
    """Ensure a bgzipped VCF has a tabix/CSI index; raise ValueError with fix instructions.

    Site lookups use random access, so an uncompressed VCF is rejected too.
    """
    vcf = Path(vcf_path)
    if vcf.suffixes[-2:] == [".vcf", ".gz"] or vcf.suffix == ".bcf":
        tbi = vcf.with_suffix(vcf.suffix + ".tbi")
        csi = vcf.with_suffix(vcf.suffix + ".csi")
        if not tbi.exists() and not csi.exists():
            raise ValueError(
                "VCF is not indexed. Run: tabix -p vcf " + str(vcf)
            )
        return
    raise ValueError(
        "Variant store must be bgzip-compressed and indexed. Run: bgzip -c "
        + str(vcf)
        + " > "
        + str(vcf)
        + ".gz; tabix -p vcf "
        + str(vcf)
        + ".gz"
    )


def detect_contig_style(contigs: Iterable[str]) -> str:
    """Infer contig style: 'ucsc' if most contigs start with 'chr', else 'ensembl'."""
    names = [c for c in contigs if c]
    if not names:
        return "unknown"
    chr_like = [c for c in names if c.startswith(_UCSC_PREFIX)]
    if len(chr_like) >= max(1, int(0.5 * len(names))):
        return "ucsc"
    return "ensembl"


def remap_contig(contig: str, style: str) -> str:
    """Remap a contig name to the requested style (ucsc or ensembl)."""
    if style == "ucsc":
        if contig.startswith(_UCSC_PREFIX):
            return contig
        if contig == "MT":
            return "chrM"
        return f"{_UCSC_PREFIX}{contig}"
    if style == "ensembl":
        if contig.startswith(_UCSC_PREFIX):
            core = contig[len(_UCSC_PREFIX) :]
            if core == "M":
                return "MT"
            return core
        return contig
    return contig
