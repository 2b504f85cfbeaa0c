from __future__ import annotations

from collections.abc import Sequence


def latency_p50_p95(latencies_ms: Sequence[float]) -> dict[str, float]:
    """
    p50 / p95 of latencies using simple order statistics. Returns zeros if empty.
    """
    if not latencies_ms:
        return {"p50": 0.0, "p95": 0.0}
    xs = sorted(latencies_ms)
    n = len(xs)
    p50 = xs[int(0.5 * (n - 1))]
    p95 = xs[int(0.95 * (n - 1))]
    return {"p50": float(p50), "p95": float(p95)}


def _indices_from_flags(flags: Sequence[int]) -> list[int]:
    return [i for i, f in enumerate(flags) if int(f) == 1]


def _match_events(
    true_idx: list[int], pred_idx: list[int], tol: int
) -> tuple[int, int, int, list[int]]:
    """
    Greedy bipartite matching with ±tol window.
    Returns (tp, fp, fn, offsets_of_tp) where offset = pred_index - true_index (can be negative).
    """
    used_true: set[int] = set()
    tp = 0
    fp = 0
    offsets: list[int] = []

    for p in pred_idx:
        cand: tuple[int, int] | None = None
        best_abs = tol + 1
        for t in true_idx:
            if t in used_true:
                continue
            d = p - t
            if -tol <= d <= tol and abs(d) < best_abs:
                best_abs = abs(d)
                cand = (t, d)
        if cand is None:
            fp += 1
        else:
            used_true.add(cand[0])
            tp += 1
            offsets.append(cand[1])

    fn = len(true_idx) - len(used_true)
    return tp, fp, fn, offsets


def boundary_metrics(
    true_flags: Sequence[int] | None,
    pred_boundaries: Sequence[int],
    n: int,
    tol: int,
    detection_steps: dict[int, int] | None = None,
) -> dict[str, float]:
    """
    Regime-boundary detection metrics against ground-truth change flags.

    `pred_boundaries` are final regime start indices (excluding 0).
    `detection_steps` maps a true change index to the first step at which a
    re-run produced a boundary within ±tol of it; delays are step - index.
    """
    pred_idx = sorted(int(b) for b in pred_boundaries)
    out: dict[str, float] = {
        "cp_pred_count": float(len(pred_idx)),
        "cp_chatter_per_1000": float(len(pred_idx) / max(n, 1) * 1000.0),
    }

    no_true = (not true_flags) or (sum(int(f) for f in true_flags) == 0)
    if no_true:
        out.update(
            {
                "cp_precision": float("nan"),
                "cp_recall": float("nan"),
                "cp_offset_mean_abs": float("nan"),
                "cp_delay_mean": float("nan"),
                "cp_delay_p95": float("nan"),
                "cp_false_alarm_rate": float(len(pred_idx) / max(n, 1)),
            }
        )
        return out

    assert true_flags is not None

    true_idx = _indices_from_flags(true_flags)
    tp, fp, fn, offsets = _match_events(true_idx, pred_idx, tol)

    delays = sorted(float(step - c) for c, step in (detection_steps or {}).items())
    if delays:
        delay_mean = sum(delays) / len(delays)
        delay_p95 = delays[int(0.95 * (len(delays) - 1))]
    else:
        delay_mean = float("nan")
        delay_p95 = float("nan")

    out.update(
        {
            "cp_precision": float(tp / max(tp + fp, 1)),
            "cp_recall": float(tp / max(tp + fn, 1)),
            "cp_offset_mean_abs": float(sum(abs(o) for o in offsets) / len(offsets)) if offsets else float("nan"),
            "cp_delay_mean": float(delay_mean),
            "cp_delay_p95": float(delay_p95),
            "cp_false_alarm_rate": float(fp / max(n, 1)),
        }
    )
    return out
