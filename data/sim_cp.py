from __future__ import annotations

import argparse
from datetime import datetime, timedelta

import numpy as np
import pandas as pd


def simulate(
    n: int,
    shift_scale: float = 50.0,
    noise_sd: float = 5.0,
    base_level: float = 50.0,
    seg_len_min: int = 200,
    seg_len_max: int = 600,
    step: timedelta = timedelta(hours=1),
    seed: int = 42,
) -> pd.DataFrame:
    """
    Piecewise Gaussian level shifts: each segment has a constant mean and a shared noise sd.
    cp=1 on the FIRST index of every segment after the first, i.e. the index a
    regime boundary should land on.
    """
    rng = np.random.default_rng(seed)
    ts: list[str] = []
    x: list[float] = []
    cp: list[int] = []

    t = datetime(2024, 1, 1, 0, 0)
    i = 0
    level = base_level
    while i < n:
        seg_len = int(rng.integers(seg_len_min, seg_len_max + 1))
        seg_len = min(seg_len, n - i)
        if i > 0:
            # shifts of at least 3 noise sd, so every boundary is a large change
            jump = float(rng.normal(0.0, shift_scale))
            if abs(jump) < 3.0 * noise_sd:
                jump = float(np.copysign(3.0 * noise_sd, jump))
            level += jump
        for k in range(seg_len):
            ts.append(t.isoformat() + "Z")
            t += step
            x.append(float(rng.normal(level, noise_sd)))
            cp.append(1 if (k == 0 and i > 0) else 0)
        i += seg_len

    return pd.DataFrame({"timestamp": ts, "value": x, "cp": cp})


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--n", type=int, default=3000)
    ap.add_argument("--out", required=True)
    ap.add_argument("--seed", type=int, default=42)
    ap.add_argument("--shift_scale", type=float, default=50.0)
    ap.add_argument("--noise_sd", type=float, default=5.0)
    ap.add_argument("--base_level", type=float, default=50.0)
    ap.add_argument("--seg_min", type=int, default=200)
    ap.add_argument("--seg_max", type=int, default=600)
    args = ap.parse_args()

    df = simulate(
        n=args.n,
        shift_scale=args.shift_scale,
        noise_sd=args.noise_sd,
        base_level=args.base_level,
        seg_len_min=args.seg_min,
        seg_len_max=args.seg_max,
        seed=args.seed,
    )
    if args.out.lower().endswith((".parquet", ".pq")):
        df.to_parquet(args.out, index=False)
    else:
        df.to_csv(args.out, index=False)
    print(f"wrote {len(df)} rows to {args.out}")


if __name__ == "__main__":
    main()
