import numpy as np
import pytest

from core.detect.bocpd import BOCPD, PosteriorHistory
from core.detect.decode import absorb_short_runs, decode, map_change_points
from data.sim_cp import simulate


def _zigzag(levels, length):
    """Deterministic series: each level held `length` steps with ±1 alternation."""
    out = []
    for lv in levels:
        for _ in range(length):
            out.append(lv + (1.0 if len(out) % 2 == 0 else -1.0))
    return out


def _history(xs, hazard=0.01):
    det = BOCPD(hazard=hazard)
    for x in xs:
        det.update(float(x))
    return det.history()


def _hand_history(map_start, evidence):
    n = len(map_start)
    return PosteriorHistory(
        cp_prob=np.zeros(n),
        run_length=np.zeros(n, dtype=np.int64),
        map_start=np.asarray(map_start, dtype=np.int64),
        evidence=np.asarray(evidence, dtype=float),
    )


def test_map_backtrack_follows_start_pointers():
    h = _hand_history([0, 0, 0, 3, 3, 3, 6, 6], [1.0] * 8)
    assert map_change_points(h) == [3, 6]
    assert decode(h, th_cp=0.5) == [(0, 3), (3, 6), (6, 8)]


def test_short_runs_are_absorbed():
    h = _hand_history([0, 0, 0, 3, 3, 3, 6, 6], [1.0] * 8)
    # [6, 8) is too short and joins [3, 6)
    assert decode(h, th_cp=0.5, min_segment_length=3) == [(0, 3), (3, 8)]
    # a short leading run joins its successor
    assert absorb_short_runs([2, 50], 100, 10) == [50]
    assert absorb_short_runs([100, 102, 105, 300], 400, 10) == [105, 300]


def test_weak_boundaries_dropped_by_threshold():
    ev = [1.0, 0.0, 0.0, 0.4, 0.0, 0.0, 0.95, 0.0]
    h = _hand_history([0, 0, 0, 3, 3, 3, 6, 6], ev)
    assert decode(h, th_cp=0.5) == [(0, 6), (6, 8)]
    assert decode(h, th_cp=0.99) == [(0, 8)]


def test_empty_history_has_no_segments():
    assert decode(_hand_history([], []), th_cp=0.5) == []


def test_constant_series_is_one_segment_for_any_threshold():
    for value in (0.0, 7.5, -120.0):
        h = _history([value] * 300)
        for th in (0.01, 0.5, 0.98, 1.0):
            assert decode(h, th, min_segment_length=1) == [(0, 300)]


def test_segments_partition_the_prefix():
    df = simulate(1200, seed=11)
    h = _history(df["value"])
    for th in (0.1, 0.5, 0.98):
        bounds = decode(h, th, min_segment_length=10)
        assert bounds[0][0] == 0
        assert bounds[-1][1] == 1200
        for (b0, e0), (b1, e1) in zip(bounds, bounds[1:]):
            assert e0 == b1
            assert b0 < e0


def test_raising_threshold_never_adds_boundaries():
    df = simulate(1500, seed=5, shift_scale=10.0)
    h = _history(df["value"])
    counts = [len(decode(h, th, min_segment_length=5)) for th in (0.05, 0.2, 0.5, 0.8, 0.95, 0.99, 1.0)]
    assert counts == sorted(counts, reverse=True)


def test_boundary_lands_earlier_than_the_alarm():
    # level 0 -> 5 at index 201; the first new point (4.0) is not surprising enough
    # for the step-wise change probability, later points confirm the run began there
    c = 201
    xs = _zigzag([0.0], c) + [5.0 + (1.0 if i % 2 == 0 else -1.0) for i in range(c, 401)]
    assert xs[c] == 4.0
    h = _history(xs)
    assert h.cp_prob[c] < 0.5
    bounds = decode(h, th_cp=0.9, min_segment_length=10)
    assert [b for b, _ in bounds[1:]] == [c]
    assert h.evidence[c] >= 0.9


@pytest.mark.parametrize("seed", range(8))
def test_three_sd_shift_survives_the_evidence_gate(seed):
    # start location spreads over neighbouring indices; the windowed mass still confirms it
    rng = np.random.default_rng(seed)
    xs = np.concatenate([rng.normal(0.0, 1.0, 500), rng.normal(3.0, 1.0, 500)])
    h = _history(xs)
    bounds = decode(h, th_cp=0.98, min_segment_length=10)
    starts = [b for b, _ in bounds[1:]]
    assert any(abs(b - 500) <= 5 for b in starts)


def test_point_evidence_is_a_lower_bound_on_windowed_evidence():
    df = simulate(600, seed=3, seg_len_min=300, seg_len_max=300)
    narrow, wide = BOCPD(hazard=0.01, evidence_window=0), BOCPD(hazard=0.01, evidence_window=10)
    for x in df["value"]:
        narrow.update(float(x))
        wide.update(float(x))
    hn, hw = narrow.history(), wide.history()
    assert hn.map_start.tolist() == hw.map_start.tolist()
    assert np.all(hw.evidence >= hn.evidence - 1e-12)
    assert np.all(hw.evidence <= 1.0)
    assert decode(hw, th_cp=0.95, min_segment_length=10) == [(0, 300), (300, 600)]
