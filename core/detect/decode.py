from __future__ import annotations

import logging

from core.detect.bocpd import PosteriorHistory

logger = logging.getLogger(__name__)


def map_change_points(history: PosteriorHistory) -> list[int]:
    """
    Backtrack the recorded MAP start pointers from the last step.
    Returns ascending change indices (segment starts other than 0).

    The pointers are re-read from the end on every call, so a boundary can move
    once later data shows the run began earlier than first suspected.
    """
    starts = history.map_start
    cps: list[int] = []
    t = len(history) - 1
    while t >= 0:
        s = int(starts[t])
        if s <= 0:
            break
        cps.append(s)
        t = s - 1
    cps.reverse()
    return cps


def absorb_short_runs(cps: list[int], n: int, min_len: int) -> list[int]:
    """
    Drop boundaries that would open a run shorter than `min_len`; the short run
    joins its predecessor. A short leading run joins its successor instead.
    """
    if min_len <= 1 or not cps:
        return list(cps)
    nxt = cps[1:] + [n]
    kept = [b for b, e in zip(cps, nxt, strict=True) if e - b >= min_len]
    if kept and kept[0] < min_len:
        kept = kept[1:]
    return kept


def decode(history: PosteriorHistory, th_cp: float, min_segment_length: int = 1) -> list[tuple[int, int]]:
    """
    MAP segmentation of the recorded prefix as half-open (begin, end) bounds.

    A MAP boundary c survives when its run is at least `min_segment_length` long
    and its peak location evidence reaches `th_cp`: the largest posterior mass, at
    any step, of runs starting within the engine's evidence window around c.
    Neither the MAP path nor the short-run rule depends on `th_cp`, so a higher
    threshold can only remove boundaries.
    """
    n = len(history)
    if n == 0:
        return []

    cps = map_change_points(history)
    confirmed = absorb_short_runs(cps, n, int(min_segment_length))
    kept = [c for c in confirmed if float(history.evidence[c]) >= th_cp]

    if len(kept) != len(cps):
        logger.debug("decode n=%d map=%d confirmed=%d kept=%d", n, len(cps), len(confirmed), len(kept))

    edges = [0] + kept + [n]
    return [(edges[i], edges[i + 1]) for i in range(len(edges) - 1)]
