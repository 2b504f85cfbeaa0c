from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Any

import numpy as np
import pandas as pd

from core.types import ChangePointCandidate, Segment

DAYS_PER_MONTH = 30.44


def segment_stats(values: Sequence[float] | np.ndarray, timestamps: pd.DatetimeIndex | None = None) -> dict[str, Any]:
    """
    mean / sample sd (n-1) / n / duration for one segment's values.
    sd is NaN for a single observation, never 0.
    """
    v = np.asarray(values, dtype=float)
    n = int(v.shape[0])
    if n == 0:
        raise ValueError("segment must contain at least one observation")
    mean = float(v.mean())
    sd = float(v.std(ddof=1)) if n > 1 else math.nan

    days = math.nan
    if timestamps is not None and len(timestamps) == n:
        days = float((timestamps[-1] - timestamps[0]) / pd.Timedelta(days=1))

    return {
        "mean": mean,
        "sd": sd,
        "n": n,
        "duration_days": days,
        "duration_months": days / DAYS_PER_MONTH,
    }


def build_segments(
    bounds: Sequence[tuple[int, int]],
    values: Sequence[float] | np.ndarray,
    timestamps: pd.DatetimeIndex | None = None,
) -> list[Segment]:
    v = np.asarray(values, dtype=float)
    out: list[Segment] = []
    for b, e in bounds:
        ts = timestamps[b:e] if timestamps is not None else None
        st = segment_stats(v[b:e], ts)
        out.append(Segment(begin=b, end=e, mean=st["mean"], sd=st["sd"], n=st["n"], duration_days=st["duration_days"]))
    return out


def cohen_d(a: Segment, b: Segment) -> float:
    """
    |mean_a - mean_b| / sqrt((sd_a^2 + sd_b^2) / 2); NaN if either sd is undefined.
    Two flat segments (pooled sd 0) give 0 for equal means and inf otherwise.
    """
    if math.isnan(a.sd) or math.isnan(b.sd):
        return math.nan
    diff = abs(a.mean - b.mean)
    pooled = math.sqrt((a.sd * a.sd + b.sd * b.sd) / 2.0)
    if pooled == 0.0:
        return 0.0 if diff == 0.0 else math.inf
    return diff / pooled


def classify(current: Segment, previous: Segment, threshold: float = 2.0) -> ChangePointCandidate:
    d = cohen_d(current, previous)
    # NaN >= threshold is False: insufficient evidence is never flagged
    return ChangePointCandidate(
        segment_boundary_index=current.begin,
        cohen_d=d,
        is_large_change=bool(d >= threshold),
    )


def classify_all(segments: Sequence[Segment], threshold: float = 2.0) -> list[ChangePointCandidate]:
    """One candidate per segment boundary, i.e. for segments[1:]."""
    return [classify(segments[i], segments[i - 1], threshold) for i in range(1, len(segments))]
