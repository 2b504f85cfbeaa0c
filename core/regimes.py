from __future__ import annotations

from bisect import bisect_right
from collections.abc import Sequence

import numpy as np
import pandas as pd

from core.types import ChangePointCandidate, Regime, Segment


def change_points(candidates: Sequence[ChangePointCandidate]) -> list[int]:
    """Begin index of every segment flagged as a large change, ascending."""
    return sorted(c.segment_boundary_index for c in candidates if c.is_large_change)


def bin_regimes(
    segments: Sequence[Segment],
    large_change_flags: Sequence[bool],
    series_length: int,
) -> list[Regime]:
    """
    Merge segments across every boundary not flagged as a large change.
    `large_change_flags[i]` refers to segments[i]; the first flag is ignored.
    """
    if len(large_change_flags) != len(segments):
        raise ValueError(f"{len(large_change_flags)} flags for {len(segments)} segments")
    if series_length <= 0:
        return []
    cps = sorted(s.begin for i, (s, f) in enumerate(zip(segments, large_change_flags, strict=True)) if f and i > 0)
    edges = [0] + cps + [series_length]
    return [Regime(label=i + 1, start=edges[i], end=edges[i + 1]) for i in range(len(edges) - 1)]


def assign_regimes(regimes: Sequence[Regime], series_length: int) -> np.ndarray:
    """
    Regime label for every observation index 0..N-1, binned left-closed / right-open,
    so an index sitting on a change point belongs to the regime that starts there.
    """
    if series_length <= 0 or not regimes:
        return np.zeros(0, dtype=np.int64)
    edges = [r.start for r in regimes] + [series_length]
    labels = [r.label for r in regimes]
    cut = pd.cut(np.arange(series_length), bins=edges, right=False, labels=labels)
    return np.asarray(cut.astype(np.int64))


def label_at(regimes: Sequence[Regime], index: int) -> int:
    if not regimes or index < 0 or index >= regimes[-1].end:
        raise IndexError(f"index {index} outside the binned series")
    i = bisect_right([r.start for r in regimes], index) - 1
    return regimes[i].label
