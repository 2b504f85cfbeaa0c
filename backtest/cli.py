from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# Local imports
from backtest.runner import BacktestRunner
from core.config import load_config
from core.errors import RegimeShiftError
from core.pipeline import Pipeline
from data.replay import Replay

logger = logging.getLogger("regime-shift-lite")


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Segment a timestamped series into regimes.")
    ap.add_argument("--data", required=True, help="CSV/Parquet file with timestamp and value columns.")
    ap.add_argument("--ts-col", "--ts_col", dest="ts_col", default="timestamp")
    ap.add_argument("--value-col", "--value_col", dest="value_col", default="value")
    ap.add_argument("--th-cp", "--th_cp", dest="th_cp", type=float, default=None,
                    help="Change-point evidence threshold in (0, 1] (default from config).")
    ap.add_argument("--effect-size", "--effect_size", dest="effect_size", type=float, default=None,
                    help="Cohen's d threshold for a large change (default from config).")
    ap.add_argument("--cp_tol", type=int, default=10, help="Boundary matching tolerance when the data has a cp column.")
    ap.add_argument("--rerun-every", "--rerun_every", dest="rerun_every", type=int, default=50,
                    help="Decode every N observations to measure detection delay.")
    ap.add_argument("--assignment", action="store_true", help="Include the per-observation regime labels.")
    ap.add_argument("--profile", help="Config profile to load (config/profiles/<name>.yaml).")
    ap.add_argument("--config", help="Path to a YAML config file.")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    p = Path(args.data)
    if not p.is_file():
        raise FileNotFoundError(f"--data not found: {p}")

    # Resolve configuration (explicit path > env > profile > default)
    cfg = load_config(args.config, args.profile)
    if args.th_cp is not None:
        cfg["th_cp"] = args.th_cp
    if args.effect_size is not None:
        cfg["effect_size_threshold"] = args.effect_size

    try:
        pipe = Pipeline(cfg)
        runner = BacktestRunner(cp_tol=args.cp_tol, rerun_every=args.rerun_every)
        metrics, res = runner.run(pipe, Replay(str(p), ts_col=args.ts_col, value_col=args.value_col))
    except RegimeShiftError as e:
        logger.error(json.dumps({"evt": "cli_error", "err": str(e)}))
        return 2

    body = res.to_dict()
    if not args.assignment:
        body.pop("assignment", None)
    body["regime_summary"] = json.loads(res.regimes_frame().to_json(orient="records"))
    body["metrics"] = {k: (v if v == v else None) for k, v in metrics.items()}
    print(json.dumps(body, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
