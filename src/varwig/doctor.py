"""Environment self-checks.

This module powers the ``varwig doctor`` CLI command.

Signal extraction and merging can run in-process through pyBigWig, but the
production setup shells out to ``bigWigSummary`` and a bigWig merge binary.
One command that lists what is missing, and how to get it, saves a lot of
guessing when a request fails deep inside a worker thread.
"""

from __future__ import annotations

import logging
import platform
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .config import Settings
from .validation import check_vcf_index

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
    name: str
    ok: bool
    detail: str
    howto: Optional[str] = None


def _which(name: str) -> Optional[str]:
    return shutil.which(name)


def check_python() -> CheckResult:
    v = platform.python_version()
    return CheckResult(name="python", ok=True, detail=f"Python {v}")


def check_executable(name: str, *, howto: Optional[str] = None) -> CheckResult:
    p = _which(name)
    if p is None:
        return CheckResult(name=name, ok=False, detail="not found in PATH", howto=howto)
    return CheckResult(name=name, ok=True, detail=p)


def check_pybigwig() -> CheckResult:
    try:
        import pyBigWig
    except ImportError as e:
        return CheckResult(
            name="pyBigWig",
            ok=False,
            detail=f"cannot import: {e}",
            howto="pip install pyBigWig  (or: mamba install -c bioconda pybigwig)",
        )
    numpy_ok = bool(getattr(pyBigWig, "numpy", 0))
    return CheckResult(name="pyBigWig", ok=True, detail=f"importable (numpy support: {numpy_ok})")


def check_vcf(path: Optional[Path]) -> CheckResult:
    if path is None:
        return CheckResult(name="vcf", ok=False, detail="paths.vcf is not configured", howto="Set paths.vcf in varwig.yaml")
    if not path.exists():
        return CheckResult(name="vcf", ok=False, detail=f"missing: {path}")
    try:
        check_vcf_index(path)
    except ValueError as e:
        return CheckResult(name="vcf", ok=False, detail=str(e))
    return CheckResult(name="vcf", ok=True, detail=str(path))


def check_file(name: str, path: Optional[Path], *, howto: Optional[str] = None) -> CheckResult:
    if path is None:
        return CheckResult(name=name, ok=False, detail="not configured", howto=howto)
    if not path.exists():
        return CheckResult(name=name, ok=False, detail=f"missing: {path}", howto=howto)
    return CheckResult(name=name, ok=True, detail=str(path))


def collect_checks(settings: Optional[Settings] = None) -> Dict[str, CheckResult]:
    """Run all checks and return a mapping name->result."""
    settings = settings or Settings()
    checks: Dict[str, CheckResult] = {}

    checks["python"] = check_python()
    checks["pyBigWig"] = check_pybigwig()
    if settings.summary.backend == "external":
        checks["summary"] = check_executable(
            settings.summary.executable,
            howto=(
                "Download from http://hgdownload.soe.ucsc.edu/admin/exe/ or\n"
                "Conda/mamba: mamba install -c bioconda ucsc-bigwigsummary\n"
                "Or set summary.backend: pybigwig in varwig.yaml"
            ),
        )
    if settings.merge.backend == "external":
        checks["merge"] = check_executable(
            settings.merge.executable,
            howto=(
                "Put the bigWig merge binary on PATH or set merge.executable.\n"
                "Or set merge.backend: pybigwig in varwig.yaml"
            ),
        )
    checks["vcf"] = check_vcf(settings.paths.vcf)
    checks["metadata"] = check_file(
        "metadata", settings.paths.metadata, howto="Set paths.metadata to the track metadata JSON"
    )
    return checks
