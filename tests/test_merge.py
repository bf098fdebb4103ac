import threading
from pathlib import Path

import pytest

from conftest import FakeMerger, FakeRunner
from varwig.external import ToolSlots
from varwig.merge import MergeCache, cache_key, deviation_name, merge_window
from varwig.models import Condition, Feature, GenotypeClass, Window
from varwig.tools import ExternalMergeTool, MergeToolError

WINDOW = Window("chr1", 0, 200_000)


def _cache(tmp_path: Path, merger, permits: int = 2) -> MergeCache:
    return MergeCache(tmp_path / "merged", merger, ToolSlots(permits))


def test_cache_key_ignores_path_order() -> None:
    assert cache_key(["b.bw", "a.bw"], "chr1", 0, 10) == cache_key(["a.bw", "b.bw"], "chr1", 0, 10)
    assert cache_key(["a.bw"], "chr1", 0, 10) != cache_key(["a.bw"], "chr1", 0, 11)
    assert cache_key(["a.bw"], "chr1", 0, 10) != cache_key(["a.bw"], "chr2", 0, 10)
    assert len(cache_key(["a.bw"], "chr1", 0, 10)) == 32


def test_deviation_name() -> None:
    assert deviation_name("abc123.bw") == "abc123-dev.bw"


def test_merge_window_pads_and_clamps() -> None:
    feature = Feature("chr1", 50_000, 60_000)
    assert merge_window(feature, 1_000_000) == Window("chr1", 0, 160_000)
    assert merge_window(feature, 100_000) == Window("chr1", 0, 100_000)
    assert merge_window(feature, 1_000_000, chrom="1", padding=10) == Window("1", 49_990, 60_010)


def test_same_file_set_merges_once(tmp_path: Path) -> None:
    merger = FakeMerger()
    cache = _cache(tmp_path, merger)
    first = cache.merge_group(Condition.NI, GenotypeClass.HET, ["b.bw", "a.bw"], WINDOW)
    second = cache.merge_group(Condition.NI, GenotypeClass.HET, ["a.bw", "b.bw"], WINDOW)

    assert len(merger.calls) == 1
    assert merger.calls[0][0] == ["a.bw", "b.bw"]
    assert first.path == second.path
    assert not first.cache_hit and second.cache_hit
    assert first.path.name == f"{first.key}.bw"
    assert first.deviation_path == first.path.with_name(f"{first.key}-dev.bw")
    assert first.deviation_path.exists()
    assert sorted(p.name for p in (tmp_path / "merged").iterdir()) == sorted(
        [first.path.name, first.deviation_path.name]
    )


def test_single_input_has_no_deviation(tmp_path: Path) -> None:
    merger = FakeMerger()
    merged = _cache(tmp_path, merger).merge_group(Condition.FLU, GenotypeClass.REF, ["a.bw"], WINDOW)
    assert merged.deviation_path is None
    assert merger.calls[0][3] is None
    assert merged.n_inputs == 1


def test_missing_deviation_output_is_not_reported(tmp_path: Path) -> None:
    cache = _cache(tmp_path, FakeMerger(write_deviation=False))
    merged = cache.merge_group(Condition.NI, GenotypeClass.HET, ["a.bw", "b.bw"], WINDOW)
    assert merged.path.exists()
    assert merged.deviation_path is None
    assert [p.name for p in (tmp_path / "merged").iterdir()] == [merged.path.name]

    again = cache.merge_group(Condition.NI, GenotypeClass.HET, ["b.bw", "a.bw"], WINDOW)
    assert again.cache_hit
    assert again.deviation_path is None


def test_cache_hit_checks_deviation_file(tmp_path: Path) -> None:
    cache = _cache(tmp_path, FakeMerger())
    first = cache.merge_group(Condition.FLU, GenotypeClass.HOM, ["a.bw", "b.bw"], WINDOW)
    first.deviation_path.unlink()
    second = cache.merge_group(Condition.FLU, GenotypeClass.HOM, ["a.bw", "b.bw"], WINDOW)
    assert second.cache_hit
    assert second.deviation_path is None


def test_failed_merge_is_not_cached(tmp_path: Path) -> None:
    failing = FakeMerger(fail=True)
    cache = _cache(tmp_path, failing)
    with pytest.raises(MergeToolError):
        cache.merge_group(Condition.NI, GenotypeClass.HOM, ["a.bw", "b.bw"], WINDOW)
    assert list((tmp_path / "merged").iterdir()) == []

    ok = FakeMerger()
    retry = _cache(tmp_path, ok).merge_group(Condition.NI, GenotypeClass.HOM, ["a.bw", "b.bw"], WINDOW)
    assert len(ok.calls) == 1
    assert retry.path.exists()


def test_empty_group_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        _cache(tmp_path, FakeMerger()).merge_group(Condition.NI, GenotypeClass.REF, [], WINDOW)


def test_concurrent_merges_bounded_by_slots(tmp_path: Path) -> None:
    merger = FakeMerger(delay=0.05)
    cache = _cache(tmp_path, merger, permits=2)
    errors = []

    def _run(i: int) -> None:
        try:
            cache.merge_group(Condition.NI, GenotypeClass.REF, [f"s{i}.bw"], WINDOW)
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=_run, args=(i,)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    assert len(merger.calls) == 6
    assert merger.max_active <= 2
    assert cache.slots.peak_in_flight <= 2


def test_concurrent_identical_requests_merge_once(tmp_path: Path) -> None:
    merger = FakeMerger(delay=0.05)
    cache = _cache(tmp_path, merger, permits=1)
    results = []

    def _run() -> None:
        results.append(cache.merge_group(Condition.NI, GenotypeClass.HET, ["a.bw", "b.bw"], WINDOW))

    threads = [threading.Thread(target=_run) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(merger.calls) == 1
    assert len({r.path for r in results}) == 1


def test_external_merge_command(tmp_path: Path) -> None:
    runner = FakeRunner(returncode=0)
    tool = ExternalMergeTool(executable="bigwig-merge", runner=runner)
    out = tmp_path / "out.bw"
    out.write_text("x", encoding="utf-8")
    tool.merge(["a.bw", "b.bw"], Window("chr1", 10, 20), out, tmp_path / "out-dev.bw")
    assert runner.cmds == [
        ["bigwig-merge", "-o", str(out), "-c", "chr1", "-s", "10", "-e", "20", "-d", str(tmp_path / "out-dev.bw"), "a.bw", "b.bw"]
    ]


def test_external_merge_failure(tmp_path: Path) -> None:
    tool = ExternalMergeTool(runner=FakeRunner(returncode=3, stderr="bad input"))
    with pytest.raises(MergeToolError) as exc:
        tool.merge(["a.bw"], Window("chr1", 10, 20), tmp_path / "out.bw")
    assert exc.value.returncode == 3
    assert "bad input" in str(exc.value)


def test_external_merge_without_output(tmp_path: Path) -> None:
    tool = ExternalMergeTool(runner=FakeRunner(returncode=0))
    with pytest.raises(MergeToolError, match="no output"):
        tool.merge(["a.bw"], Window("chr1", 10, 20), tmp_path / "out.bw")
