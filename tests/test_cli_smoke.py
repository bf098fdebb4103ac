import json
import subprocess
import sys
from pathlib import Path
from typing import Dict, Optional

from varwig.cli import main
from varwig.engine import AppContext


def _run_cli(args: list[str], *, cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "varwig"] + args,
        check=False,
        capture_output=True,
        text=True,
        cwd=str(cwd) if cwd is not None else None,
    )


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "varwig", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "varwig" in cp.stdout.lower()
    for cmd in ("genotypes", "values", "plot", "tracks", "report", "precompute", "assays", "top-peaks"):
        assert cmd in cp.stdout


def test_quickstart_output() -> None:
    cp = _run_cli(["quickstart"])
    assert cp.returncode == 0
    assert "varwig values" in cp.stdout
    assert "varwig make-toy-data" in cp.stdout


def test_make_toy_data_dry_run(tmp_path: Path) -> None:
    cp = _run_cli(["make-toy-data", "--outdir", str(tmp_path / "toy"), "--dry-run"])
    assert cp.returncode == 0
    assert "Would write" in cp.stdout
    assert not (tmp_path / "toy").exists()


def test_make_toy_data_and_values(tmp_path: Path) -> None:
    toy_dir = tmp_path / "toy"
    cp = _run_cli(["make-toy-data", "--outdir", str(toy_dir)])
    assert cp.returncode == 0
    assert (toy_dir / "varwig.yaml").exists()

    cp = _run_cli(["values", "--peaks", "peaks.tsv", "--peak-id", "toy_atac"], cwd=toy_dir)
    assert cp.returncode == 0, cp.stderr
    out = json.loads(cp.stdout)
    assert out["peak"] == "toy_atac"
    assert out["statistics"]["NI"]["HOM"]["n"] == 1
    assert out["cached"] is False

    cp = _run_cli(["values", "--peaks", "peaks.tsv", "--peak-id", "toy_atac"], cwd=toy_dir)
    assert json.loads(cp.stdout)["cached"] is True


def test_genotypes_command(toy: Dict[str, str], capsys) -> None:
    rc = main(["genotypes", "--config", toy["config"], "--chrom", "chr1", "--position", "5000"])
    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert out["counts"] == {"REF": 2, "HET": 2, "HOM": 1}
    assert out["n"] == 5

    rc = main(["genotypes", "--config", toy["config"], "--chrom", "chr1", "--complete", "50"])
    assert rc == 0
    assert json.loads(capsys.readouterr().out) == [5000]

    rc = main(["genotypes", "--config", toy["config"], "--chrom", "chr1", "--position", "4999"])
    assert rc == 2
    assert "No variant" in capsys.readouterr().err


def test_inline_peak_values(toy: Dict[str, str], capsys) -> None:
    rc = main(
        [
            "values",
            "--config",
            toy["config"],
            "--chrom",
            "chr1",
            "--position",
            "5000",
            "--assay",
            "RNA-Seq",
            "--feature",
            "chr1:4900-5100",
            "--strand",
            "+",
            "--no-cache",
        ]
    )
    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert out["statistics"]["Flu"]["REF"]["n"] == 2


def test_values_requires_peak(toy: Dict[str, str], capsys) -> None:
    rc = main(["values", "--config", toy["config"], "--chrom", "chr1"])
    assert rc == 2
    assert "Missing peak flags" in capsys.readouterr().err


def test_plot_tracks_report(toy: Dict[str, str], tmp_path: Path, capsys) -> None:
    peak_args = ["--config", toy["config"], "--peaks", toy["peaks"], "--peak-id", "toy_atac"]

    png = tmp_path / "plot.png"
    assert main(["plot", *peak_args, "--out", str(png)]) == 0
    assert png.exists() and png.stat().st_size > 0
    capsys.readouterr()

    assert main(["tracks", *peak_args]) == 0
    merges = json.loads(capsys.readouterr().out)
    assert [m["condition"] for m in merges] == ["NI", "Flu"]
    assert Path(merges[0]["output"]["REF"]["path"]).exists()

    outdir = tmp_path / "report"
    assert main(["report", *peak_args, "--outdir", str(outdir)]) == 0
    html = (outdir / "report.html").read_text(encoding="utf-8")
    assert "toy_atac" in html
    assert "Hom Alt" in html
    assert (outdir / "plot.png").exists()
    assert (outdir / "statistics.json").exists()


def test_precompute(toy: Dict[str, str], capsys) -> None:
    rc = main(["precompute", "--config", toy["config"], "--peaks", toy["peaks"], "--no-progress"])
    assert rc == 0
    counts = json.loads(capsys.readouterr().out)["counts"]
    assert counts == {"peaks": 4, "cached": 0, "computed": 3, "partial": 0, "empty": 1}

    rc = main(["precompute", "--config", toy["config"], "--peaks", toy["peaks"], "--no-progress"])
    assert json.loads(capsys.readouterr().out)["counts"]["cached"] == 3


def test_doctor_dry_run(toy: Dict[str, str], capsys) -> None:
    rc = main(["doctor", "--config", toy["config"], "--dry-run"])
    assert rc == 0
    out = capsys.readouterr().out
    assert "pyBigWig" in out
    assert "vcf" in out


def test_workers_flag_overrides_config(toy: Dict[str, str], monkeypatch, capsys) -> None:
    seen = []
    real_from_settings = AppContext.from_settings

    def _from_settings(settings, **kwargs):
        seen.append(settings.workers)
        return real_from_settings(settings, **kwargs)

    monkeypatch.setattr(AppContext, "from_settings", _from_settings)
    peak_args = ["--config", toy["config"], "--peaks", toy["peaks"], "--peak-id", "toy_atac", "--no-cache"]

    assert main(["values", *peak_args]) == 0
    assert main(["values", *peak_args, "--workers", "1"]) == 0
    assert seen == [4, 1]
    capsys.readouterr()

    assert main(["values", *peak_args, "--workers", "0"]) == 2
    assert "workers must be >= 1" in capsys.readouterr().err


def test_assays_command(toy: Dict[str, str], capsys) -> None:
    assert main(["assays", "--peaks", toy["peaks"]]) == 0
    assert json.loads(capsys.readouterr().out) == ["ATAC-Seq", "RNA-Seq"]


def test_top_peaks_command(toy: Dict[str, str], capsys) -> None:
    assert main(["top-peaks", "--config", toy["config"], "--peaks", toy["peaks"]]) == 0
    binned = json.loads(capsys.readouterr().out)
    assert [(b["pos_bin"], b["assay"], b["peak"]) for b in binned] == [
        (0, "ATAC-Seq", "toy_indel"),
        (0, "RNA-Seq", "toy_rna_plus"),
    ]

    assert main(["top-peaks", "--config", toy["config"], "--peaks", toy["peaks"], "--bin-size", "7000"]) == 0
    binned = json.loads(capsys.readouterr().out)
    assert [(b["pos_bin"], b["peak"]) for b in binned] == [(0, "toy_atac"), (0, "toy_rna_plus"), (7_000, "toy_indel")]

    assert main(["top-peaks", "--config", toy["config"], "--peaks", toy["peaks"], "--min-p-value", "0.001"]) == 0
    assert json.loads(capsys.readouterr().out) == []
