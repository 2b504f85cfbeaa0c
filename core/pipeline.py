# core/pipeline.py
from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from core.config import resolve_config, validate_config
from core.detect.bocpd import BOCPD
from core.detect.decode import decode
from core.errors import EmptyInput, InvalidTimestamp, NonFiniteObservation, UnorderedObservations
from core.regimes import assign_regimes, bin_regimes
from core.segments import build_segments, classify_all
from core.types import ChangePointCandidate, Observation, Regime, Segment, StepOut

logger = logging.getLogger(__name__)


def _to_observation(rec: Any, index: int) -> Observation:
    """
    Accept (timestamp, value) pairs or mappings with 'timestamp' and 'value'.
    Non-finite values are rejected here.
    """
    if isinstance(rec, Mapping):
        ts = rec.get("timestamp")
        val = rec.get("value")
    else:
        ts, val = rec
    try:
        v = float(val)
    except (TypeError, ValueError):
        raise NonFiniteObservation(index, val) from None
    if not math.isfinite(v):
        raise NonFiniteObservation(index, val)
    return {"index": index, "timestamp": "" if ts is None else str(ts), "value": v}


def _parse_ts(ts: str) -> pd.Timestamp | None:
    if not ts:
        return None
    try:
        return pd.to_datetime(ts, utc=True)
    except (TypeError, ValueError) as e:
        raise InvalidTimestamp(f"cannot parse timestamp {ts!r}") from e


@dataclass(frozen=True)
class PipelineResult:
    segments: list[Segment]
    candidates: list[ChangePointCandidate]
    regimes: list[Regime]
    assignment: np.ndarray
    values: np.ndarray = field(repr=False)
    timestamps: list[str] = field(repr=False)

    @property
    def n(self) -> int:
        return int(self.values.shape[0])

    def regime_of(self, index: int) -> int:
        if not 0 <= index < self.n:
            raise IndexError(f"index {index} outside the binned series")
        return int(self.assignment[index])

    def segments_frame(self) -> pd.DataFrame:
        """begin, end, mean, sd, n, duration, cohen_d, is_large_change per segment."""
        rows = []
        for i, s in enumerate(self.segments):
            cand = self.candidates[i - 1] if i > 0 else None
            rows.append(
                {
                    "begin": s.begin,
                    "end": s.end,
                    "mean": s.mean,
                    "sd": s.sd,
                    "n": s.n,
                    "duration_days": s.duration_days,
                    "duration_months": s.duration_months,
                    "cohen_d": cand.cohen_d if cand is not None else math.nan,
                    "is_large_change": cand.is_large_change if cand is not None else False,
                }
            )
        cols = ["begin", "end", "mean", "sd", "n", "duration_days", "duration_months", "cohen_d", "is_large_change"]
        return pd.DataFrame(rows, columns=cols)

    def regimes_frame(self) -> pd.DataFrame:
        """label, start, end, first/last timestamp, mean, sd per regime."""
        df = pd.DataFrame({"value": self.values, "regime": self.assignment})
        g = df.groupby("regime")["value"]
        stats = pd.DataFrame({"mean": g.mean(), "sd": g.std(ddof=1)})
        rows = []
        for r in self.regimes:
            rows.append(
                {
                    "label": r.label,
                    "start": r.start,
                    "end": r.end,
                    "start_timestamp": self.timestamps[r.start],
                    "end_timestamp": self.timestamps[r.end - 1],
                    "mean": float(stats.loc[r.label, "mean"]),
                    "sd": float(stats.loc[r.label, "sd"]),
                }
            )
        cols = ["label", "start", "end", "start_timestamp", "end_timestamp", "mean", "sd"]
        return pd.DataFrame(rows, columns=cols)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form: NaN/inf become None."""

        def _f(v: float) -> float | None:
            return float(v) if math.isfinite(v) else None

        seg = self.segments_frame()
        return {
            "n": self.n,
            "segments": [
                {
                    "begin": int(r.begin),
                    "end": int(r.end),
                    "mean": _f(r.mean),
                    "sd": _f(r.sd),
                    "n": int(r.n),
                    "duration_days": _f(r.duration_days),
                    "cohen_d": _f(r.cohen_d),
                    "is_large_change": bool(r.is_large_change),
                }
                for r in seg.itertuples(index=False)
            ],
            "regimes": [{"label": r.label, "start": r.start, "end": r.end} for r in self.regimes],
            "assignment": [int(v) for v in self.assignment],
        }


def _empty_result() -> PipelineResult:
    return PipelineResult(
        segments=[],
        candidates=[],
        regimes=[],
        assignment=np.zeros(0, dtype=np.int64),
        values=np.zeros(0),
        timestamps=[],
    )


class Pipeline:
    """
    Single-stream, incremental pipeline:
      - BOCPD engine folded one observation at a time (process)
      - MAP decode -> segment stats -> effect-size filter -> regime binning on demand (result)
      - snapshot/restore for resumable operation across re-runs
    """

    def __init__(self, cfg: dict[str, Any] | None = None) -> None:
        self.cfg = resolve_config(cfg)
        self.engine = BOCPD.from_config(self.cfg)
        self.th_cp = float(self.cfg["th_cp"])
        self.effect_size_threshold = float(self.cfg["effect_size_threshold"])
        self.min_segment_length = int(self.cfg["min_segment_length"])

        self._values: list[float] = []
        self._timestamps: list[str] = []
        self._stamps: list[pd.Timestamp | None] = []  # parsed once in process()
        self._last_ts: pd.Timestamp | None = None

    def __len__(self) -> int:
        return len(self._values)

    #  main step
    def process(self, obs: Any) -> StepOut:
        o = _to_observation(obs, len(self._values))
        ts = _parse_ts(o["timestamp"])
        if ts is not None and self._last_ts is not None and ts < self._last_ts:
            raise UnorderedObservations(o["index"], o["timestamp"])

        out = self.engine.update(o["value"])
        self._values.append(o["value"])
        self._timestamps.append(o["timestamp"])
        self._stamps.append(ts)
        if ts is not None:
            self._last_ts = ts
        return out

    def extend(self, observations: Iterable[Any]) -> None:
        for obs in observations:
            self.process(obs)

    def result(self, th_cp: float | None = None, effect_size_threshold: float | None = None) -> PipelineResult:
        th = self.th_cp if th_cp is None else float(th_cp)
        eff = self.effect_size_threshold if effect_size_threshold is None else float(effect_size_threshold)
        validate_config({**self.cfg, "th_cp": th, "effect_size_threshold": eff})

        n = len(self._values)
        if n == 0:
            return _empty_result()

        values = np.asarray(self._values, dtype=float)
        stamps = None
        if all(ts is not None for ts in self._stamps):
            stamps = pd.DatetimeIndex(self._stamps)

        bounds = decode(self.engine.history(), th, self.min_segment_length)
        segments = build_segments(bounds, values, stamps)
        candidates = classify_all(segments, eff)
        flags = [False] + [c.is_large_change for c in candidates]
        regimes = bin_regimes(segments, flags, n)
        assignment = assign_regimes(regimes, n)

        logger.debug(
            json.dumps({"evt": "decode", "n": n, "segments": len(segments), "regimes": len(regimes), "th_cp": th})
        )
        return PipelineResult(
            segments=segments,
            candidates=candidates,
            regimes=regimes,
            assignment=assignment,
            values=values,
            timestamps=list(self._timestamps),
        )

    #  snapshot state
    def state_dict(self) -> dict[str, Any]:
        return {
            "engine": self.engine.state_dict(),
            "values": list(self._values),
            "timestamps": list(self._timestamps),
        }

    @classmethod
    def from_state(cls, cfg: dict[str, Any] | None, state: dict[str, Any]) -> Pipeline:
        self = cls(cfg)
        self.engine = BOCPD.from_state(state["engine"])
        self._values = [float(v) for v in state.get("values", [])]
        self._timestamps = [str(v) for v in state.get("timestamps", [])]
        if len(self._values) != self.engine.t:
            raise ValueError(f"snapshot has {len(self._values)} values for {self.engine.t} engine steps")
        self._stamps = [_parse_ts(ts) for ts in self._timestamps]
        self._last_ts = next((ts for ts in reversed(self._stamps) if ts is not None), None)
        return self


def run_pipeline(
    observations: Iterable[Any],
    th_cp: float,
    effect_size_threshold: float = 2.0,
    *,
    cfg: dict[str, Any] | None = None,
    empty: str = "raise",
) -> PipelineResult:
    """
    Batch form: fold every observation into a fresh engine, then decode and classify.

    empty="raise" raises EmptyInput on zero observations; empty="empty" returns an
    explicit result with no segments and no regimes.
    """
    if empty not in ("raise", "empty"):
        raise ValueError(f"empty must be 'raise' or 'empty', got {empty!r}")
    base = resolve_config(cfg)
    pipe = Pipeline({**base, "th_cp": th_cp, "effect_size_threshold": effect_size_threshold})
    pipe.extend(observations)
    if len(pipe) == 0:
        if empty == "raise":
            raise EmptyInput("run_pipeline needs at least one observation")
        return _empty_result()
    return pipe.result()
