# core/config.py
from __future__ import annotations

from pathlib import Path
import os
import yaml
from typing import Any, Dict

from core.errors import InvalidConfiguration

DEFAULTS: Dict[str, Any] = {
    "expected_run_length": 100.0,
    "prune_threshold": 1e-8,
    "prior": {"mu0": 0.0, "kappa0": 0.01, "alpha0": 0.01, "beta0": 1e-4},
    "th_cp": 0.98,
    "effect_size_threshold": 2.0,
    "min_segment_length": 10,
    "max_series": 1024,
    "ingest_maxsize": 10_000,
    "ingest_policy": "block",
    "snapshot_path": "",
}

# nested yaml section -> keys lifted to the top level
_SECTIONS = ("detector", "segmentation", "service")


def _read_yaml(p: Path) -> Dict[str, Any]:
    with p.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(a)
    out.update(b)
    return out


def _postprocess(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Flatten the yaml sections so the rest of the code sees flat keys it actually reads,
    then fill anything missing from DEFAULTS.
    """
    flat: Dict[str, Any] = {}
    for sec in _SECTIONS:
        body = cfg.get(sec)
        if isinstance(body, dict):
            flat.update(body)
    flat.update({k: v for k, v in cfg.items() if k not in _SECTIONS})

    # legacy spelling: hazard given directly instead of an expected run length
    if "hazard" in flat and "expected_run_length" not in flat:
        try:
            flat["expected_run_length"] = 1.0 / float(flat["hazard"])
        except (TypeError, ValueError, ZeroDivisionError):
            raise InvalidConfiguration(f"hazard must be a positive number, got {flat['hazard']!r}") from None

    prior = dict(DEFAULTS["prior"])
    if isinstance(flat.get("prior"), dict):
        prior.update(flat["prior"])
    flat["prior"] = prior
    return _merge(DEFAULTS, flat)


def validate_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Fail fast on out-of-range settings; nothing is clamped."""
    try:
        th_cp = float(cfg["th_cp"])
        eff = float(cfg["effect_size_threshold"])
        erl = float(cfg["expected_run_length"])
        prune = float(cfg["prune_threshold"])
        min_len = int(cfg["min_segment_length"])
        window = int(cfg.get("evidence_window", min_len))
        prior = {k: float(v) for k, v in cfg["prior"].items()}
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidConfiguration(f"malformed configuration: {e}") from e

    if not 0.0 < th_cp <= 1.0:
        raise InvalidConfiguration(f"th_cp must lie in (0, 1], got {th_cp}")
    if eff < 0.0:
        raise InvalidConfiguration(f"effect_size_threshold must be >= 0, got {eff}")
    if erl <= 1.0:
        # hazard = 1/erl must lie in (0, 1)
        raise InvalidConfiguration(f"expected_run_length must be > 1, got {erl}")
    if not 0.0 <= prune < 1.0:
        raise InvalidConfiguration(f"prune_threshold must lie in [0, 1), got {prune}")
    if min_len < 1:
        raise InvalidConfiguration(f"min_segment_length must be >= 1, got {min_len}")
    if window < 0:
        raise InvalidConfiguration(f"evidence_window must be >= 0, got {window}")
    for k in ("kappa0", "alpha0", "beta0"):
        if prior.get(k, 0.0) <= 0.0:
            raise InvalidConfiguration(f"prior.{k} must be > 0, got {prior.get(k)}")
    if cfg.get("ingest_policy", "block") not in ("block", "drop"):
        raise InvalidConfiguration(f"ingest_policy must be 'block' or 'drop', got {cfg['ingest_policy']!r}")
    return cfg


def load_config(
    config: str | os.PathLike | None = None,
    profile: str | None = None,
) -> Dict[str, Any]:
    """
    Resolve config with the following rules:

      A) If an explicit file is provided, it wins outright:
         1) --config
         2) $REGIME_SHIFT_CONFIG

      B) Otherwise, layer files:
         3) config/default.yaml (if present)
         4) config/profiles/<profile>.yaml when --profile or $REGIME_SHIFT_PROFILE is set
            (profile overlays default)

    Returns a flat, validated dict; built-in DEFAULTS fill any gaps.
    """
    repo_root = Path(__file__).resolve().parents[1]

    if config:
        p = Path(config)
        if not p.is_file():
            raise FileNotFoundError(f"--config not found: {p}")
        return validate_config(_postprocess(_read_yaml(p)))

    env_path = os.getenv("REGIME_SHIFT_CONFIG")
    if env_path:
        p = Path(env_path)
        if p.is_file():
            return validate_config(_postprocess(_read_yaml(p)))

    cfg: Dict[str, Any] = {}

    fallback = repo_root / "config" / "default.yaml"
    if fallback.is_file():
        cfg = _merge(cfg, _read_yaml(fallback))

    prof = profile or os.getenv("REGIME_SHIFT_PROFILE")
    if prof:
        p = repo_root / "config" / "profiles" / f"{prof}.yaml"
        if not p.is_file():
            raise FileNotFoundError(f"profile not found: {p}")
        cfg = _merge(cfg, _read_yaml(p))

    return validate_config(_postprocess(cfg))


def resolve_config(cfg: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Normalize a caller-supplied dict (flat or sectioned); None loads from disk."""
    if cfg is None:
        return load_config()
    return validate_config(_postprocess(dict(cfg)))
