from __future__ import annotations

import argparse
import itertools
import json
import math
import os
import sys
from collections.abc import Iterable
from concurrent.futures import ProcessPoolExecutor, as_completed
from pathlib import Path
from typing import Any

from tqdm import tqdm

from backtest.metrics import boundary_metrics
from core.config import load_config
from core.pipeline import Pipeline
from core.regimes import change_points
from data.replay import Replay

# -------- metrics to emit --------
METRIC_KEYS: tuple[str, ...] = (
    "cp_precision",
    "cp_recall",
    "cp_offset_mean_abs",
    "cp_pred_count",
    "cp_false_alarm_rate",
)

EXPECTED_RUN_LENGTHS = (50.0, 100.0, 250.0, 500.0)
TH_CPS = (0.5, 0.8, 0.9, 0.95, 0.98, 0.99)
EFFECT_SIZES = (0.5, 1.0, 2.0, 3.0)

# -------- per-process caches --------
_ROWS_CACHE: list[dict[str, Any]] | None = None


def _to_json_safe_float(v: Any) -> float | None:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _resolve_data_path(p: str) -> str:
    cand = Path(p)
    if cand.exists():
        return str(cand)
    base = Path(p).name
    guess = Path("data") / base
    if guess.exists():
        return str(guess)
    raise FileNotFoundError(f"Data file not found: '{p}' (also tried 'data/{base}')")


def _get_rows_cached(data_path: str) -> list[dict[str, Any]]:
    # Read once per worker and reuse for all combos
    global _ROWS_CACHE
    if _ROWS_CACHE is None:
        _ROWS_CACHE = list(Replay(data_path))
    return _ROWS_CACHE


def _threshold_iter() -> Iterable[tuple[float, float]]:
    return itertools.product(TH_CPS, EFFECT_SIZES)


def _run_one(data_path: str, cp_tol: int, max_rows: int | None, expected_run_length: float) -> list[str]:
    """
    The engine only depends on the detector settings, so fold the data once per
    expected run length and decode it for every (th_cp, effect size) pair.
    """
    rows = _get_rows_cached(data_path)
    if max_rows is not None:
        rows = rows[:max_rows]

    cfg = dict(load_config())
    cfg["expected_run_length"] = float(expected_run_length)
    pipe = Pipeline(cfg)
    pipe.extend(rows)
    flags = [int(r.get("cp", 0)) for r in rows]

    lines: list[str] = []
    for th_cp, eff in _threshold_iter():
        res = pipe.result(th_cp=th_cp, effect_size_threshold=eff)
        m = boundary_metrics(flags, change_points(res.candidates), len(pipe), cp_tol)
        rec: dict[str, Any] = {
            "expected_run_length": float(expected_run_length),
            "th_cp": float(th_cp),
            "effect_size_threshold": float(eff),
            "n_segments": len(res.segments),
            "n_regimes": len(res.regimes),
        }
        for k in METRIC_KEYS:
            rec[k] = _to_json_safe_float(m.get(k))
        lines.append(json.dumps(rec, separators=(",", ":")))
    return lines


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--data", required=True)
    ap.add_argument("--cp_tol", type=int, default=10)
    ap.add_argument("--max_rows", type=int, default=None, help="Optional cap on rows for faster sweeps")
    ap.add_argument("--jobs", type=int, default=os.cpu_count() or 1, help="Parallel workers")
    ap.add_argument("--out", type=str, default="-", help="NDJSON path or '-' for stdout")
    ap.add_argument("--no-progress", dest="progress", action="store_false")
    ap.set_defaults(progress=True)
    args = ap.parse_args()

    data_path = _resolve_data_path(args.data)

    # output
    if args.out == "-" or not args.out:
        fh = sys.stdout
        close_fh = False
    else:
        fh = open(args.out, "w", buffering=1, encoding="utf-8")
        close_fh = True

    try:
        with ProcessPoolExecutor(max_workers=max(1, args.jobs)) as ex:
            futs = [
                ex.submit(_run_one, data_path, args.cp_tol, args.max_rows, erl)
                for erl in EXPECTED_RUN_LENGTHS
            ]
            pbar = tqdm(total=len(futs), unit="engine", disable=not args.progress)
            for fut in as_completed(futs):
                try:
                    for line in fut.result():
                        fh.write(line + "\n")
                except (OSError, ValueError, KeyError) as e:
                    sys.stderr.write(f"\n[sweep] engine run failed: {e}\n")
                    sys.stderr.flush()
                finally:
                    pbar.update(1)
            pbar.close()
    finally:
        if close_fh:
            fh.close()


if __name__ == "__main__":
    main()
