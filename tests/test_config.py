import pytest

from core.config import load_config, resolve_config
from core.errors import InvalidConfiguration


def test_default_yaml_is_flattened():
    cfg = load_config()
    assert cfg["th_cp"] == 0.98
    assert cfg["effect_size_threshold"] == 2.0
    assert cfg["expected_run_length"] == 100
    assert cfg["prior"]["kappa0"] == 0.01
    assert cfg["ingest_policy"] == "block"


def test_profile_overlays_default(monkeypatch):
    monkeypatch.delenv("REGIME_SHIFT_CONFIG", raising=False)
    cfg = load_config(profile="conservative")
    assert cfg["expected_run_length"] == 500
    assert cfg["min_segment_length"] == 30
    # untouched sections still come from default.yaml
    assert cfg["max_series"] == 1024


def test_missing_profile_raises():
    with pytest.raises(FileNotFoundError):
        load_config(profile="does-not-exist")


def test_explicit_file_wins(tmp_path, monkeypatch):
    p = tmp_path / "c.yaml"
    p.write_text("segmentation:\n  th_cp: 0.7\ndetector:\n  hazard: 0.02\n", encoding="utf-8")
    monkeypatch.setenv("REGIME_SHIFT_PROFILE", "sensitive")
    cfg = load_config(str(p))
    assert cfg["th_cp"] == 0.7
    assert cfg["expected_run_length"] == pytest.approx(50.0)
    # gaps are filled from the built-in defaults
    assert cfg["min_segment_length"] == 10


def test_env_config(tmp_path, monkeypatch):
    p = tmp_path / "env.yaml"
    p.write_text("th_cp: 0.6\n", encoding="utf-8")
    monkeypatch.setenv("REGIME_SHIFT_CONFIG", str(p))
    assert load_config()["th_cp"] == 0.6


@pytest.mark.parametrize(
    "override",
    [
        {"th_cp": 0.0},
        {"th_cp": 1.01},
        {"effect_size_threshold": -0.5},
        {"expected_run_length": 1.0},
        {"hazard": 0.0},
        {"min_segment_length": 0},
        {"evidence_window": -1},
        {"prior": {"beta0": 0.0}},
        {"ingest_policy": "spill"},
    ],
)
def test_out_of_range_values_are_rejected(override):
    with pytest.raises(InvalidConfiguration):
        resolve_config(override)
