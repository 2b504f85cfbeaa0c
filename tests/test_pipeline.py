import json
import math

import numpy as np
import pandas as pd
import pytest

from core.errors import EmptyInput, InvalidConfiguration, NonFiniteObservation, UnorderedObservations
from core.pipeline import Pipeline, run_pipeline


def _obs(values, start="2023-01-01", freq="h"):
    ts = pd.date_range(start, periods=len(values), freq=freq, tz="UTC")
    return [(t.isoformat(), float(v)) for t, v in zip(ts, values)]


def _two_levels(n1=1000, n2=1000, seed=1):
    rng = np.random.default_rng(seed)
    return np.concatenate([rng.normal(50.0, 5.0, n1), rng.normal(150.0, 5.0, n2)])


def test_scenario_level_shift_gives_two_regimes():
    res = run_pipeline(_obs(_two_levels()), th_cp=0.98, effect_size_threshold=2.0)

    assert len(res.regimes) == 2
    boundary = res.regimes[1].start
    assert abs(boundary - 1000) <= 5
    big = [c for c in res.candidates if c.is_large_change]
    assert len(big) == 1
    assert big[0].cohen_d > 2.0
    assert res.regime_of(0) == 1
    assert res.regime_of(1999) == 2


def test_scenario_short_tail_is_not_flagged():
    xs = _two_levels()[:1005]
    res = run_pipeline(_obs(xs), th_cp=0.98, effect_size_threshold=2.0)
    assert len(res.regimes) == 1
    assert not any(c.is_large_change for c in res.candidates)


def test_scenario_brief_spike_is_not_a_regime():
    rng = np.random.default_rng(2)
    xs = rng.normal(50.0, 5.0, 1000)
    xs[500:503] = 150.0
    res = run_pipeline(_obs(xs), th_cp=0.98)
    assert len(res.regimes) == 1
    assert set(res.assignment.tolist()) == {1}


@pytest.mark.parametrize("th_cp", [0.01, 0.5, 0.98, 1.0])
def test_constant_series_one_segment_one_regime(th_cp):
    res = run_pipeline(_obs([42.0] * 250), th_cp=th_cp)
    assert len(res.segments) == 1
    assert len(res.regimes) == 1
    assert res.segments[0].sd == 0.0


def test_all_zero_series_is_ordinary_input():
    res = run_pipeline(_obs([0.0] * 100), th_cp=0.5)
    assert [(s.begin, s.end) for s in res.segments] == [(0, 100)]


def test_partition_and_coarsening_hold():
    rng = np.random.default_rng(4)
    xs = np.concatenate([rng.normal(0, 1, 300), rng.normal(1.5, 1, 300), rng.normal(8, 1, 300)])
    res = run_pipeline(_obs(xs), th_cp=0.5, effect_size_threshold=2.0)

    segs = res.segments
    assert segs[0].begin == 0 and segs[-1].end == len(xs)
    assert all(a.end == b.begin for a, b in zip(segs, segs[1:]))
    regime_starts = {r.start for r in res.regimes}
    seg_starts = {s.begin for s in segs}
    assert regime_starts <= seg_starts
    assert [r.label for r in res.regimes] == list(range(1, len(res.regimes) + 1))
    assert len(res.assignment) == len(xs)


def test_identical_prefix_is_deterministic():
    obs = _obs(_two_levels(300, 300, seed=9))
    a = run_pipeline(obs, th_cp=0.9)
    b = run_pipeline(obs, th_cp=0.9)
    assert json.dumps(a.to_dict()) == json.dumps(b.to_dict())


def test_segments_frame_columns():
    res = run_pipeline(_obs(_two_levels(200, 200)), th_cp=0.98)
    seg = res.segments_frame()
    for col in ("begin", "end", "mean", "sd", "n", "cohen_d", "is_large_change"):
        assert col in seg.columns
    assert math.isnan(seg.loc[0, "cohen_d"])
    assert bool(seg.loc[0, "is_large_change"]) is False

    reg = res.regimes_frame()
    assert list(reg["label"]) == [1, 2]
    assert reg.loc[1, "mean"] == pytest.approx(150.0, abs=2.0)
    # hourly data: 200 points span 199 hours
    assert res.segments[0].duration_days == pytest.approx(199 / 24, abs=1 / 24 * 6)


def test_empty_input_is_explicit():
    with pytest.raises(EmptyInput):
        run_pipeline([], th_cp=0.5)
    res = run_pipeline([], th_cp=0.5, empty="empty")
    assert res.segments == [] and res.regimes == [] and res.n == 0


@pytest.mark.parametrize(
    "th_cp,eff",
    [(0.0, 2.0), (1.5, 2.0), (-0.1, 2.0), (0.5, -1.0)],
)
def test_invalid_configuration_fails_fast(th_cp, eff):
    with pytest.raises(InvalidConfiguration):
        run_pipeline(_obs([1.0, 2.0]), th_cp=th_cp, effect_size_threshold=eff)


def test_invalid_hazard_in_config():
    with pytest.raises(InvalidConfiguration):
        Pipeline({"expected_run_length": 0.5})


def test_nonfinite_rejected_at_ingestion():
    obs = _obs([1.0, 2.0, 3.0])
    obs[1] = (obs[1][0], float("nan"))
    with pytest.raises(NonFiniteObservation) as ei:
        run_pipeline(obs, th_cp=0.5)
    assert ei.value.index == 1


def test_out_of_order_timestamps_rejected():
    pipe = Pipeline({})
    pipe.process({"timestamp": "2024-01-02T00:00:00Z", "value": 1.0})
    with pytest.raises(UnorderedObservations):
        pipe.process({"timestamp": "2024-01-01T00:00:00Z", "value": 1.0})
    assert len(pipe) == 1


def test_incremental_matches_batch_and_resumes_from_snapshot():
    obs = _obs(_two_levels(150, 150, seed=12))
    batch = run_pipeline(obs, th_cp=0.9)

    pipe = Pipeline({"th_cp": 0.9})
    pipe.extend(obs[:170])
    # periodic re-run on the prefix, then resume from a snapshot
    prefix = pipe.result()
    assert prefix.n == 170
    restored = Pipeline.from_state({"th_cp": 0.9}, json.loads(json.dumps(pipe.state_dict())))
    restored.extend(obs[170:])
    resumed = restored.result()

    assert [(s.begin, s.end) for s in resumed.segments] == [(s.begin, s.end) for s in batch.segments]
    assert [(r.start, r.end) for r in resumed.regimes] == [(r.start, r.end) for r in batch.regimes]


def test_mixed_timestamp_formats_are_accepted():
    obs = [("2024-01-01", 1.0), ("2024-01-01T05:00:00Z", 1.1), ("2024-01-02 06:00", 0.9)]
    res = run_pipeline(obs, th_cp=0.5)
    assert res.n == 3
    assert res.segments[0].duration_days == pytest.approx(30.0 / 24.0)


def test_mixed_timestamp_formats_survive_a_snapshot():
    pipe = Pipeline({})
    pipe.extend([("2024-01-01", 1.0), ("2024-01-01T05:00:00Z", 1.1)])
    restored = Pipeline.from_state({}, json.loads(json.dumps(pipe.state_dict())))
    restored.process(("2024-01-02 06:00", 0.9))
    with pytest.raises(UnorderedObservations):
        restored.process(("2023-12-31", 1.0))
    assert restored.result().segments[0].duration_days == pytest.approx(30.0 / 24.0)


def test_regime_of_rejects_out_of_range_index():
    res = run_pipeline(_obs([1.0, 1.1, 0.9, 1.0]), th_cp=0.5)
    assert res.regime_of(3) == 1
    with pytest.raises(IndexError):
        res.regime_of(-1)
    with pytest.raises(IndexError):
        res.regime_of(4)


def test_mapping_without_value_key_is_rejected():
    with pytest.raises(NonFiniteObservation):
        Pipeline({}).process({"timestamp": "2024-01-01", "x": 1.0})
