import math

import pandas as pd
import pytest

from core.segments import build_segments, classify, classify_all, cohen_d, segment_stats
from core.types import Segment


def _seg(begin, end, mean, sd, n=None):
    return Segment(begin=begin, end=end, mean=mean, sd=sd, n=n if n is not None else end - begin)


def test_stats_sample_sd_and_duration():
    ts = pd.DatetimeIndex(pd.to_datetime(["2024-01-01", "2024-01-11", "2024-01-31"], utc=True))
    st = segment_stats([1.0, 2.0, 3.0], ts)
    assert st["mean"] == 2.0
    assert st["sd"] == 1.0  # n-1 denominator
    assert st["n"] == 3
    assert st["duration_days"] == 30.0
    assert st["duration_months"] == pytest.approx(30.0 / 30.44)


def test_single_observation_sd_is_nan_not_zero():
    st = segment_stats([5.0])
    assert math.isnan(st["sd"])
    assert math.isnan(st["duration_days"])


def test_build_segments_uses_bounds():
    segs = build_segments([(0, 2), (2, 5)], [1.0, 3.0, 10.0, 10.0, 10.0])
    assert [(s.begin, s.end, s.n) for s in segs] == [(0, 2, 2), (2, 5, 3)]
    assert segs[0].mean == 2.0
    assert segs[1].sd == 0.0


def test_cohen_d_formula_and_symmetry():
    a = _seg(0, 10, 50.0, 5.0)
    b = _seg(10, 20, 150.0, 5.0)
    assert cohen_d(a, b) == pytest.approx(20.0)
    assert cohen_d(a, b) == cohen_d(b, a)

    c = _seg(0, 10, 1.0, 3.0)
    d = _seg(10, 20, 2.0, 4.0)
    assert cohen_d(c, d) == pytest.approx(1.0 / math.sqrt(12.5))


def test_equal_means_give_zero_and_are_not_flagged():
    a = _seg(0, 10, 3.0, 1.0)
    b = _seg(10, 20, 3.0, 2.0)
    cand = classify(b, a)
    assert cand.cohen_d == 0.0
    assert cand.is_large_change is False
    # flat segments at the same level
    assert cohen_d(_seg(0, 5, 0.0, 0.0), _seg(5, 9, 0.0, 0.0)) == 0.0


def test_undefined_sd_never_flags():
    single = _seg(10, 11, 1000.0, math.nan, n=1)
    prev = _seg(0, 10, 0.0, 1.0)
    cand = classify(single, prev, threshold=0.0)
    assert math.isnan(cand.cohen_d)
    assert cand.is_large_change is False


def test_threshold_is_inclusive_and_configurable():
    a = _seg(0, 10, 0.0, 1.0)
    b = _seg(10, 20, 2.0, 1.0)
    assert classify(b, a).is_large_change is True  # d == 2.0 exactly
    assert classify(b, a, threshold=2.5).is_large_change is False
    assert classify(b, a).segment_boundary_index == 10


def test_first_segment_has_no_candidate():
    segs = [_seg(0, 10, 0.0, 1.0), _seg(10, 20, 9.0, 1.0), _seg(20, 30, 9.5, 1.0)]
    cands = classify_all(segs)
    assert [c.segment_boundary_index for c in cands] == [10, 20]
    assert [c.is_large_change for c in cands] == [True, False]
    assert classify_all(segs[:1]) == []
