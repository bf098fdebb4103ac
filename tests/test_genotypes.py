from pathlib import Path

import pytest

from conftest import write_vcf
from varwig.errors import MalformedData, NotFound
from varwig.genotypes import (
    VariantSite,
    VcfVariantStore,
    any_variant,
    classify_call,
    genotype_counts,
    resolve_genotypes,
    split_call,
)
from varwig.models import GenotypeClass, Variant


@pytest.mark.parametrize(
    "call,expected",
    [
        ("A/A", GenotypeClass.REF),
        ("0/0", GenotypeClass.REF),
        ("a|a", GenotypeClass.REF),
        ("A/G", GenotypeClass.HET),
        ("G|A", GenotypeClass.HET),
        ("0/1", GenotypeClass.HET),
        ("G/T", GenotypeClass.HET),
        ("G/G", GenotypeClass.HOM),
        ("1/1", GenotypeClass.HOM),
    ],
)
def test_classify_call(call: str, expected: GenotypeClass) -> None:
    assert classify_call(call, "A") is expected


@pytest.mark.parametrize("call", ["G", "A/G/T", "./.", "A/.", ""])
def test_split_call_rejects_non_diploid(call: str) -> None:
    with pytest.raises(MalformedData):
        split_call(call)


class _Store:
    def __init__(self, sites):
        self.sites = sites

    def lookup(self, chrom, position):
        return self.sites


def _site(ref, alts, calls, pos=100):
    return VariantSite(variant=Variant(chrom="chr1", position=pos, ref=ref, alts=tuple(alts)), calls=tuple(calls))


def test_resolve_excludes_malformed_calls() -> None:
    store = _Store([_site("A", ["G"], [("s1", "A/A"), ("s2", "A/G/T"), ("s3", "G"), ("s4", "G/G")])])
    out = resolve_genotypes(store, "chr1", 100)
    assert set(out) == {"s1", "s4"}
    assert out["s1"].genotype is GenotypeClass.REF
    assert out["s4"].genotype is GenotypeClass.HOM


def test_resolve_without_site_raises_not_found() -> None:
    with pytest.raises(NotFound):
        resolve_genotypes(_Store([]), "chr1", 100)


def test_resolve_snv_filter() -> None:
    store = _Store([_site("AT", ["A"], [("s1", "AT/A")])])
    with pytest.raises(NotFound):
        resolve_genotypes(store, "chr1", 100)
    out = resolve_genotypes(store, "chr1", 100, predicate=any_variant)
    assert out["s1"].genotype is GenotypeClass.HET


def test_resolve_uses_first_passing_site() -> None:
    store = _Store(
        [
            _site("AT", ["A"], [("s1", "A/A")]),
            _site("A", ["C"], [("s1", "A/C")]),
            _site("A", ["T"], [("s1", "T/T")]),
        ]
    )
    out = resolve_genotypes(store, "chr1", 100)
    assert out["s1"].genotype is GenotypeClass.HET
    assert out["s1"].call == "A/C"


def test_genotype_counts() -> None:
    store = _Store([_site("A", ["G"], [("a", "A/A"), ("b", "A/G"), ("c", "G|A"), ("d", "G/G")])])
    counts = genotype_counts(resolve_genotypes(store, "chr1", 100))
    assert counts == {"REF": 1, "HET": 2, "HOM": 1}


def _cohort(tmp_path: Path) -> Path:
    samples = ["s1", "s2", "s3", "s4"]
    return write_vcf(
        tmp_path,
        [
            # deletion spanning position 100
            (98, ("ACGT", "A"), {s: ((0, 1), False) for s in samples}),
            (
                100,
                ("A", "G"),
                {
                    "s1": ((0, 0), False),
                    "s2": ((0, 1), True),
                    "s3": ((1, 1), False),
                    "s4": ((1,), False),
                },
            ),
            (1000, ("C", "T"), {s: ((0, 0), False) for s in samples}),
            (1001, ("G", "A"), {s: ((0, 0), False) for s in samples}),
        ],
        samples,
    )


def test_vcf_lookup_exact_position_only(tmp_path: Path) -> None:
    with VcfVariantStore(_cohort(tmp_path)) as store:
        sites = store.lookup("chr1", 100)
        assert len(sites) == 1
        site = sites[0]
        assert site.variant.position == 100
        assert site.variant.ref == "A"
        calls = dict(site.calls)
        assert calls["s1"] == "A/A"
        assert calls["s2"] == "A|G"
        assert calls["s3"] == "G/G"
        assert calls["s4"] == "G"
        assert store.lookup("chr1", 99) == []


def test_vcf_resolve_excludes_haploid_call(tmp_path: Path) -> None:
    with VcfVariantStore(_cohort(tmp_path)) as store:
        out = resolve_genotypes(store, "chr1", 100)
    assert {k: v.genotype for k, v in out.items()} == {
        "s1": GenotypeClass.REF,
        "s2": GenotypeClass.HET,
        "s3": GenotypeClass.HOM,
    }


def test_vcf_contig_remap(tmp_path: Path) -> None:
    with VcfVariantStore(_cohort(tmp_path)) as store:
        assert store.contig_style == "ucsc"
        assert len(store.lookup("1", 100)) == 1
        assert store.lookup("chr2", 100) == []


def test_vcf_chroms_and_positions(tmp_path: Path) -> None:
    with VcfVariantStore(_cohort(tmp_path)) as store:
        assert store.chroms() == ["chr1"]
        assert store.positions("chr1", "10") == [100, 1000, 1001]
        assert store.positions("chr1", "10", limit=2) == [100, 1000]
        assert store.positions("chr1", "9") == [98]


def test_vcf_requires_index(tmp_path: Path) -> None:
    plain = tmp_path / "plain.vcf"
    plain.write_text("##fileformat=VCFv4.2\n", encoding="utf-8")
    with pytest.raises(ValueError, match="bgzip"):
        VcfVariantStore(plain).open()


def test_vcf_store_must_be_open(tmp_path: Path) -> None:
    store = VcfVariantStore(_cohort(tmp_path))
    with pytest.raises(RuntimeError):
        store.lookup("chr1", 100)
