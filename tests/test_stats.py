import json

import pytest

from conftest import track
from varwig.models import Condition, ExtractedValue, GenotypeClass
from varwig.stats import GroupStatistics, RankStats, aggregate, rank_quantile, value_domain


def _ev(donor, genotype, value, *, condition=Condition.NI, ancestry="EU"):
    return ExtractedValue(track=track(donor, genotype, condition=condition, ancestry=ancestry), value=value)


def test_rank_quantile_no_interpolation() -> None:
    points = [1.0, 2.0, 3.0, 4.0]
    assert rank_quantile(points, 0.25) == 2.0
    assert rank_quantile(points, 0.5) == 3.0
    assert rank_quantile(points, 0.75) == 4.0
    assert rank_quantile([7.0], 0.75) == 7.0
    with pytest.raises(ValueError):
        rank_quantile([], 0.5)


def test_rank_stats_ordering() -> None:
    s = RankStats.from_values([5.0, -1.0, 3.0, 3.0, 10.0, 0.5, 2.0])
    assert s is not None
    assert s.min <= s.quartile_1 <= s.median <= s.quartile_3 <= s.max
    assert (s.min, s.max) == (-1.0, 10.0)
    assert RankStats.from_values([]) is None


def test_single_sample_groups() -> None:
    stats = aggregate(
        [
            _ev("A", GenotypeClass.REF, 1.2),
            _ev("B", GenotypeClass.HET, 3.4),
            _ev("C", GenotypeClass.HOM, 5.6),
        ]
    )
    out = stats.to_dict()
    for genotype, value in (("REF", 1.2), ("HET", 3.4), ("HOM", 5.6)):
        group = out["NI"][genotype]
        assert group["n"] == 1
        assert group["stats"]["min"] == group["stats"]["median"] == group["stats"]["max"] == value
    for genotype in ("REF", "HET", "HOM"):
        assert out["Flu"][genotype] == {"n": 0, "stats": None, "statsByAncestry": {}}


def test_empty_aggregate_keeps_structure() -> None:
    out = aggregate([]).to_dict()
    assert set(out) == {"NI", "Flu"}
    assert all(set(out[c]) == {"REF", "HET", "HOM"} for c in out)
    assert GroupStatistics().n == 0


def test_stats_by_ancestry() -> None:
    stats = aggregate(
        [
            _ev("A", GenotypeClass.HET, 1.0, ancestry="EU"),
            _ev("B", GenotypeClass.HET, 2.0, ancestry="EU"),
            _ev("C", GenotypeClass.HET, 9.0, ancestry="AF"),
            _ev("D", GenotypeClass.HET, 4.0, condition=Condition.FLU, ancestry="AF"),
        ]
    )
    het = stats.ni.het
    assert het.n == 3
    assert set(het.stats_by_ancestry) == {"AF", "EU"}
    assert het.stats_by_ancestry["EU"].max == 2.0
    assert het.stats_by_ancestry["AF"].median == 9.0
    assert stats.flu.het.n == 1
    assert stats.n == 4


def _walk(obj):
    if isinstance(obj, dict):
        for k, v in obj.items():
            yield k, v
            yield from _walk(v)
    elif isinstance(obj, list):
        for v in obj:
            yield None, v
            yield from _walk(v)


def test_output_carries_no_value_lists() -> None:
    values = [_ev(f"S{i}", GenotypeClass.REF, float(i) + 0.125) for i in range(9)]
    out = aggregate(values).to_dict()
    for key, value in _walk(out):
        assert not isinstance(value, list)
        assert key not in ("values", "points", "data")
    group = out["NI"]["REF"]
    assert set(group) == {"n", "stats", "statsByAncestry"}
    assert set(group["stats"]) == {"min", "quartile_1", "median", "quartile_3", "max"}
    # interior sample values only surface as rank statistics
    exposed = {v for k, v in _walk(out) if isinstance(v, float)}
    assert len(exposed & {ev.value for ev in values}) <= 5


def test_round_trip_through_json() -> None:
    stats = aggregate([_ev("A", GenotypeClass.REF, 1.0), _ev("B", GenotypeClass.HOM, 2.0, condition=Condition.FLU)])
    again = GroupStatistics.from_dict(json.loads(json.dumps(stats.to_dict())))
    assert again == stats


def test_value_domain() -> None:
    stats = aggregate([_ev("A", GenotypeClass.REF, -2.0), _ev("B", GenotypeClass.HOM, 7.5)])
    assert value_domain(stats.ni) == (-2.0, 7.5)
    assert value_domain(stats.flu) is None
