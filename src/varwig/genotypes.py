from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import pysam

from .errors import MalformedData, NotFound
from .models import GenotypeClass, GenotypeRecord, Variant
from .validation import check_vcf_index, detect_contig_style, remap_contig

logger = logging.getLogger(__name__)

_ALLELE_SEP = re.compile(r"[/|]")
_MISSING = {"", "."}

VariantPredicate = Callable[[Variant], bool]


@dataclass(frozen=True)
class VariantSite:
    """One variant record and the raw per-sample calls at it.

    Calls are rendered as allele strings, e.g. ``A/G`` or ``A|G`` when phased.
    """

    variant: Variant
    calls: Tuple[Tuple[str, str], ...]


class VariantStore(Protocol):
    def lookup(self, chrom: str, position: int) -> Sequence[VariantSite]: ...


def is_snv(variant: Variant) -> bool:
    return variant.is_snv


def any_variant(variant: Variant) -> bool:
    return True


VARIANT_FILTERS: Dict[str, VariantPredicate] = {
    "snv": is_snv,
    "any": any_variant,
}


def split_call(call: str) -> Tuple[str, str]:
    """Split a diploid call into its two allele tokens.

    Raises ``MalformedData`` unless there are exactly two non-missing tokens.
    """
    parts = _ALLELE_SEP.split(str(call).strip())
    if len(parts) != 2:
        raise MalformedData(f"Invalid genotype call {call!r}: expected 2 alleles, got {len(parts)}")
    if any(p in _MISSING for p in parts):
        raise MalformedData(f"Invalid genotype call {call!r}: missing allele")
    return parts[0], parts[1]


def classify_call(call: str, ref: str) -> GenotypeClass:
    """Classify a call against the reference allele.

    Tokens may be bases (``A/G``) or allele indexes (``0/1``).
    """
    a, b = split_call(call)
    ref_u = ref.upper()

    def _is_ref(token: str) -> bool:
        return token == "0" or token.upper() == ref_u

    if _is_ref(a) and _is_ref(b):
        return GenotypeClass.REF
    if a.upper() != b.upper():
        return GenotypeClass.HET
    return GenotypeClass.HOM


def _raw_call(sample: pysam.libcbcf.VariantRecordSample) -> str:
    alleles = sample.alleles or ()
    sep = "|" if sample.phased else "/"
    return sep.join("." if a is None else str(a) for a in alleles)


class VcfVariantStore:
    """Variant store over a bgzip+tabix indexed multi-sample VCF.

    Must be opened before use; ``lookup`` is safe to call from several threads.
    """

    def __init__(self, vcf_path: str | Path, *, contig_style: str = "auto") -> None:
        self.vcf_path = Path(vcf_path)
        self.contig_style = contig_style
        self._vcf: Optional[pysam.VariantFile] = None
        self._lock = threading.Lock()

    def open(self) -> "VcfVariantStore":
        if self._vcf is not None:
            return self
        check_vcf_index(self.vcf_path)
        self._vcf = pysam.VariantFile(str(self.vcf_path))
        if self.contig_style == "auto":
            self.contig_style = detect_contig_style(self._vcf.header.contigs)
        logger.info(
            "Opened variant store %s (%d samples, contig style %s)",
            self.vcf_path,
            len(self._vcf.header.samples),
            self.contig_style,
        )
        return self

    def close(self) -> None:
        if self._vcf is not None:
            self._vcf.close()
            self._vcf = None

    def __enter__(self) -> "VcfVariantStore":
        return self.open()

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def vcf(self) -> pysam.VariantFile:
        if self._vcf is None:
            raise RuntimeError("Variant store is not open")
        return self._vcf

    @property
    def samples(self) -> List[str]:
        return list(self.vcf.header.samples)

    def _contig(self, chrom: str) -> str:
        return remap_contig(str(chrom), self.contig_style)

    def _fetch(self, contig: str, start: Optional[int] = None, stop: Optional[int] = None) -> Iterable:
        try:
            return self.vcf.fetch(contig, start, stop)
        except ValueError:
            # contig declared in the header but absent from the index
            return iter(())

    def chroms(self) -> List[str]:
        """Contigs that carry at least one record."""
        out: List[str] = []
        with self._lock:
            for contig in self.vcf.header.contigs:
                if next(iter(self._fetch(contig)), None) is not None:
                    out.append(str(contig))
        return out

    def lookup(self, chrom: str, position: int) -> List[VariantSite]:
        contig = self._contig(chrom)
        if contig not in self.vcf.header.contigs:
            return []
        sites: List[VariantSite] = []
        with self._lock:
            for rec in self._fetch(contig, int(position) - 1, int(position)):
                # fetch() also yields records that merely span the position
                if int(rec.pos) != int(position):
                    continue
                variant = Variant(
                    chrom=str(rec.contig),
                    position=int(rec.pos),
                    ref=str(rec.ref),
                    alts=tuple(rec.alts or ()),
                    record_id=rec.id,
                )
                calls = tuple((str(name), _raw_call(rec.samples[name])) for name in rec.samples)
                sites.append(VariantSite(variant=variant, calls=calls))
        return sites

    def positions(self, chrom: str, prefix: str = "", *, limit: int = 15) -> List[int]:
        """Distinct record positions on ``chrom`` whose decimal form starts with ``prefix``."""
        contig = self._contig(chrom)
        if contig not in self.vcf.header.contigs:
            return []
        out: List[int] = []
        seen = set()
        with self._lock:
            for rec in self._fetch(contig):
                pos = int(rec.pos)
                if pos in seen or not str(pos).startswith(str(prefix)):
                    continue
                seen.add(pos)
                out.append(pos)
                if len(out) >= limit:
                    break
        return out


def resolve_genotypes(
    store: VariantStore,
    chrom: str,
    position: int,
    *,
    predicate: VariantPredicate = is_snv,
) -> Dict[str, GenotypeRecord]:
    """Classify every sample's call at ``chrom:position`` (1-based).

    Raises ``NotFound`` when no record passing ``predicate`` sits at the position.
    Calls that are not well-formed diploid calls are left out of the result.
    """
    sites = list(store.lookup(chrom, position))
    if not sites:
        raise NotFound(f"No variant at {chrom}:{position}")

    kept = [s for s in sites if predicate(s.variant)]
    if not kept:
        raise NotFound(f"No variant passing the site filter at {chrom}:{position} ({len(sites)} skipped)")
    if len(kept) > 1:
        logger.warning(
            "%d records at %s:%s; using the first (%s>%s)",
            len(kept),
            chrom,
            position,
            kept[0].variant.ref,
            ",".join(kept[0].variant.alts),
        )
    site = kept[0]

    records: Dict[str, GenotypeRecord] = {}
    malformed = 0
    for sample, call in site.calls:
        try:
            cls = classify_call(call, site.variant.ref)
        except MalformedData as e:
            malformed += 1
            logger.debug("Excluding sample %s: %s", sample, e)
            continue
        records[sample] = GenotypeRecord(
            sample=sample,
            chrom=site.variant.chrom,
            position=site.variant.position,
            call=call,
            genotype=cls,
        )

    if malformed:
        logger.warning(
            "Excluded %d malformed genotype call(s) at %s:%s",
            malformed,
            chrom,
            position,
        )
    return records


def genotype_counts(records: Dict[str, GenotypeRecord]) -> Dict[str, int]:
    counts = {g.value: 0 for g in GenotypeClass}
    for rec in records.values():
        counts[rec.genotype.value] += 1
    return counts
