import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import pysam
import pytest

from varwig.models import Condition, GenotypeClass, TrackReference, Window
from varwig.tools import MergeToolError, SummaryToolError


class FakeSummarizer:
    def __init__(self, values: Dict[str, Optional[float]], *, fail: Iterable[str] = (), delay: float = 0.0) -> None:
        self.values = {str(k): v for k, v in values.items()}
        self.fail = {str(p) for p in fail}
        self.delay = delay
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def summarize(self, path, chrom, start, end):
        with self._lock:
            self.calls.append((str(path), chrom, start, end))
        if self.delay:
            time.sleep(self.delay)
        if str(path) in self.fail:
            raise SummaryToolError("boom", cmd=["bigWigSummary", str(path)], returncode=1, stderr="boom")
        return self.values.get(str(path))


class FakeMerger:
    """Writes a marker file per merge and records every call."""

    def __init__(self, *, fail: bool = False, delay: float = 0.0, write_deviation: bool = True) -> None:
        self.fail = fail
        self.delay = delay
        self.write_deviation = write_deviation
        self.calls: List[tuple] = []
        self._lock = threading.Lock()
        self._active = 0
        self.max_active = 0

    def merge(self, paths: Sequence[str], window: Window, output: Path, deviation: Optional[Path] = None) -> None:
        with self._lock:
            self.calls.append((list(paths), window, Path(output), deviation))
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.fail:
                Path(output).write_text("partial", encoding="utf-8")
                raise MergeToolError("merge failed", cmd=["bigwig-merge"], returncode=1)
            Path(output).write_text("mean:" + ",".join(paths), encoding="utf-8")
            if deviation is not None and self.write_deviation:
                Path(deviation).write_text("dev", encoding="utf-8")
        finally:
            with self._lock:
                self._active -= 1


class FakeRunner:
    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.cmds: List[List[str]] = []

    def run(self, cmd, *, check=True):
        self.cmds.append(list(cmd))
        return subprocess.CompletedProcess(list(cmd), self.returncode, stdout=self.stdout, stderr=self.stderr)


def track(
    donor: str,
    genotype: GenotypeClass,
    *,
    condition: Condition = Condition.NI,
    assay: str = "ATAC-Seq",
    ancestry: str = "EU",
    view: Optional[str] = None,
    path: Optional[str] = None,
) -> TrackReference:
    return TrackReference(
        donor=donor,
        assay=assay,
        condition=condition,
        ancestry=ancestry,
        genotype=genotype,
        path=Path(path or f"/tracks/{donor}.{condition.value}.{assay}.{view or 'signal'}.bw"),
        view=view,
    )


def write_vcf(path: Path, records: Sequence[tuple], samples: Sequence[str], *, contig: str = "chr1") -> Path:
    """records: (pos1, alleles, {sample: (gt_tuple, phased)})"""
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.contigs.add(contig, length=100_000)
    header.formats.add("GT", number=1, type="String", description="Genotype")
    for s in samples:
        header.add_sample(s)

    vcf_path = path / "cohort.vcf"
    with pysam.VariantFile(str(vcf_path), "w", header=header) as vcf:
        for pos1, alleles, calls in records:
            rec = vcf.new_record(
                contig=contig,
                start=pos1 - 1,
                stop=pos1 - 1 + len(alleles[0]),
                alleles=alleles,
                qual=60,
                filter="PASS",
            )
            for s, (gt, phased) in calls.items():
                rec.samples[s]["GT"] = gt
                rec.samples[s].phased = phased
            vcf.write(rec)

    vcf_gz = path / "cohort.vcf.gz"
    pysam.tabix_compress(str(vcf_path), str(vcf_gz), force=True)
    pysam.tabix_index(str(vcf_gz), preset="vcf", force=True)
    return vcf_gz


@pytest.fixture
def toy(tmp_path: Path) -> Dict[str, str]:
    from varwig.toy_data import make_toy_data

    return make_toy_data(outdir=tmp_path / "toy")
