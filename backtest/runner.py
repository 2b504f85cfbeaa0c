from __future__ import annotations

import time
from collections.abc import Iterable
from typing import Any

from core.pipeline import Pipeline, PipelineResult
from core.regimes import change_points

from .metrics import boundary_metrics, latency_p50_p95


class BacktestRunner:
    """
    Replay a labelled stream through an incremental Pipeline, re-running the
    decoder every `rerun_every` observations the way a scheduled job would.

    Each re-run can revise earlier boundaries; the runner records the first step
    at which every true change had a regime boundary within ±cp_tol.
    """

    def __init__(
        self,
        cp_tol: int = 10,
        *,
        rerun_every: int = 50,
        th_cp: float | None = None,
        effect_size_threshold: float | None = None,
    ) -> None:
        self.cp_tol = int(cp_tol)
        self.rerun_every = max(1, int(rerun_every))
        self.th_cp = th_cp
        self.effect_size_threshold = effect_size_threshold

    def _rerun(self, pipe: Pipeline) -> PipelineResult:
        return pipe.result(th_cp=self.th_cp, effect_size_threshold=self.effect_size_threshold)

    def run(
        self, pipe: Pipeline, stream: Iterable[dict[str, Any]]
    ) -> tuple[dict[str, float], PipelineResult]:
        true_flags: list[int] = []
        lat_seq: list[float] = []
        pending: list[int] = []  # true change indices not yet detected
        detected_at: dict[int, int] = {}

        def _note(step: int) -> None:
            if not pending:
                return
            res = self._rerun(pipe)
            found = change_points(res.candidates)
            for c in list(pending):
                if any(abs(b - c) <= self.cp_tol for b in found):
                    detected_at[c] = step
                    pending.remove(c)

        for tick in stream:
            t0 = time.perf_counter()
            out = pipe.process(tick)
            lat_seq.append((time.perf_counter() - t0) * 1000.0)

            flag = int(float(tick.get("cp", tick.get("is_cp", 0)) or 0))
            true_flags.append(flag)
            if flag:
                pending.append(out["index"])

            if (out["index"] + 1) % self.rerun_every == 0:
                _note(out["index"])

        n = len(pipe)
        if n and pending:
            _note(n - 1)

        final = self._rerun(pipe)
        m = boundary_metrics(true_flags, change_points(final.candidates), n, self.cp_tol, detected_at)
        p = latency_p50_p95(lat_seq)
        m["latency_p50_ms"] = p["p50"]
        m["latency_p95_ms"] = p["p95"]
        m["n_segments"] = float(len(final.segments))
        m["n_regimes"] = float(len(final.regimes))
        return m, final
