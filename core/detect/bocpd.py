# core/detect/bocpd.py
"""
Bayesian online change-point detection (Adams & MacKay, 2007) for a scalar stream.

For every observation the engine updates a posterior over the run length r_t
(steps since the last change) under a Normal/Inverse-Gamma conjugate model
with a constant hazard H. Each tracked run keeps its NIG posterior
(mu, kappa, alpha, beta); the posterior predictive for the next point is a
Student-t. Alongside the marginal masses the engine carries max-product
(Viterbi) masses so a decoder can recover the MAP segmentation later without
replaying the data.

Run-length convention: r_t = 0 means x_t opened a new run, so the change
mass is scored with the prior predictive of that fresh run.
"""
from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import numpy as np
from scipy.special import gammaln, logsumexp

from core.errors import InvalidConfiguration, NonFiniteObservation
from core.types import StepOut

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NIGPrior:
    mu0: float = 0.0
    kappa0: float = 0.01
    alpha0: float = 0.01
    beta0: float = 1e-4

    def __post_init__(self) -> None:
        for name in ("kappa0", "alpha0", "beta0"):
            v = getattr(self, name)
            if not (math.isfinite(v) and v > 0.0):
                raise InvalidConfiguration(f"prior {name} must be a positive finite number, got {v}")
        if not math.isfinite(self.mu0):
            raise InvalidConfiguration(f"prior mu0 must be finite, got {self.mu0}")

    @classmethod
    def from_mapping(cls, d: Mapping[str, Any] | None) -> NIGPrior:
        d = d or {}
        return cls(**{k: float(d[k]) for k in ("mu0", "kappa0", "alpha0", "beta0") if k in d})

    def as_dict(self) -> dict[str, float]:
        return {"mu0": self.mu0, "kappa0": self.kappa0, "alpha0": self.alpha0, "beta0": self.beta0}


def _log_student_t(
    x: float,
    mu: np.ndarray,
    kappa: np.ndarray,
    alpha: np.ndarray,
    beta: np.ndarray,
) -> np.ndarray:
    """Log posterior-predictive density of x under each NIG posterior."""
    nu = 2.0 * alpha
    scale2 = beta * (kappa + 1.0) / (alpha * kappa)
    z = (x - mu) ** 2 / (nu * scale2)
    return (
        gammaln((nu + 1.0) / 2.0)
        - gammaln(nu / 2.0)
        - 0.5 * np.log(np.pi * nu * scale2)
        - (nu + 1.0) / 2.0 * np.log1p(z)
    )


@dataclass(frozen=True)
class PosteriorHistory:
    """
    Read-only record of an engine run, one entry per observation:
      - cp_prob:    P(r_t = 0 | x_1:t)
      - run_length: argmax_r P(r_t = r | x_1:t)
      - map_start:  first index of the last segment in the MAP segmentation of x_0..x_t
      - evidence:   for a start index c, max over t >= c of the posterior mass of
                    runs starting within ±evidence_window of c,
                    i.e. max_t sum_{|s-c| <= w} P(r_t = t - s | x_1:t)
    """

    cp_prob: np.ndarray
    run_length: np.ndarray
    map_start: np.ndarray
    evidence: np.ndarray

    def __len__(self) -> int:
        return int(self.cp_prob.shape[0])


class BOCPD:
    """
    Online engine for one stream. Mutated in place by update(); nothing is shared
    between instances, so independent streams can run in parallel.

      det = BOCPD(hazard=1/100)
      for x in xs:
          out = det.update(x)   # {"index", "cp_prob", "run_length"}
      hist = det.history()
    """

    def __init__(
        self,
        hazard: float = 0.01,
        prior: NIGPrior | Mapping[str, Any] | None = None,
        prune_threshold: float = 1e-8,
        evidence_window: int = 10,
    ) -> None:
        hazard = float(hazard)
        if not (0.0 < hazard < 1.0):
            raise InvalidConfiguration(f"hazard must lie in (0, 1), got {hazard}")
        if not (0.0 <= float(prune_threshold) < 1.0):
            raise InvalidConfiguration(f"prune_threshold must lie in [0, 1), got {prune_threshold}")
        if int(evidence_window) < 0:
            raise InvalidConfiguration(f"evidence_window must be >= 0, got {evidence_window}")

        self.hazard = hazard
        self.prior = prior if isinstance(prior, NIGPrior) else NIGPrior.from_mapping(prior)
        self.prune_threshold = float(prune_threshold)
        self.evidence_window = int(evidence_window)
        self._log_h = math.log(hazard)
        self._log_1mh = math.log1p(-hazard)
        self._log_floor = math.log(self.prune_threshold) if self.prune_threshold > 0.0 else -math.inf

        self.t = 0  # observations consumed
        self._r = np.zeros(0, dtype=np.int64)
        self._logp = np.zeros(0)  # normalized log marginal mass per tracked run
        self._logv = np.zeros(0)  # log Viterbi mass, max-shifted to 0
        self._mu = np.zeros(0)
        self._kappa = np.zeros(0)
        self._alpha = np.zeros(0)
        self._beta = np.zeros(0)

        self._cp: list[float] = []
        self._rl: list[int] = []
        self._map_start: list[int] = []
        self._evidence = np.zeros(64)

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> BOCPD:
        return cls(
            hazard=1.0 / float(cfg.get("expected_run_length", 100.0)),
            prior=NIGPrior.from_mapping(cfg.get("prior")),
            prune_threshold=float(cfg.get("prune_threshold", 1e-8)),
            evidence_window=int(cfg.get("evidence_window", cfg.get("min_segment_length", 10))),
        )

    #  queries
    @property
    def run_length(self) -> int:
        """Most probable current run length (0 before any data)."""
        return self._rl[-1] if self._rl else 0

    @property
    def n_tracked(self) -> int:
        return int(self._r.shape[0])

    def run_length_posterior(self) -> dict[int, float]:
        return {int(r): float(p) for r, p in zip(self._r, np.exp(self._logp), strict=True)}

    def history(self) -> PosteriorHistory:
        n = self.t
        return PosteriorHistory(
            cp_prob=np.asarray(self._cp, dtype=float),
            run_length=np.asarray(self._rl, dtype=np.int64),
            map_start=np.asarray(self._map_start, dtype=np.int64),
            evidence=self._evidence[:n].copy(),
        )

    #  update
    def _absorb(self, x: float, mu: np.ndarray, kappa: np.ndarray, alpha: np.ndarray, beta: np.ndarray):
        """NIG posterior after one more observation."""
        kappa_n = kappa + 1.0
        mu_n = (kappa * mu + x) / kappa_n
        alpha_n = alpha + 0.5
        beta_n = beta + kappa * (x - mu) ** 2 / (2.0 * kappa_n)
        return mu_n, kappa_n, alpha_n, beta_n

    def _ensure_capacity(self, n: int) -> None:
        if n <= self._evidence.shape[0]:
            return
        grown = np.zeros(max(n, 2 * self._evidence.shape[0]))
        grown[: self._evidence.shape[0]] = self._evidence
        self._evidence = grown

    def _record_evidence(self, starts: np.ndarray, probs: np.ndarray) -> None:
        """Raise evidence[s] to the mass of runs starting within ±evidence_window of s."""
        order = np.argsort(starts)
        s = starts[order]
        cum = np.concatenate(([0.0], np.cumsum(probs[order])))
        w = self.evidence_window
        lo = np.searchsorted(s, s - w, side="left")
        hi = np.searchsorted(s, s + w, side="right")
        mass = np.minimum(cum[hi] - cum[lo], 1.0)
        self._evidence[s] = np.maximum(self._evidence[s], mass)

    def update(self, x: float | Mapping[str, Any]) -> StepOut:
        """
        Consume one observation (raw float or an Observation mapping with 'value').
        Returns the un-thresholded change probability for this step.
        """
        val = x.get("value") if isinstance(x, Mapping) else x
        try:
            xv = float(val)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise NonFiniteObservation(self.t, val) from None
        if not math.isfinite(xv):
            raise NonFiniteObservation(self.t, val)

        p = self.prior
        t = self.t
        fresh = self._absorb(
            xv, np.array([p.mu0]), np.array([p.kappa0]), np.array([p.alpha0]), np.array([p.beta0])
        )

        if t == 0:
            logp = np.zeros(1)
            logv = np.zeros(1)
            r = np.zeros(1, dtype=np.int64)
            mu, kappa, alpha, beta = fresh
            cp_prob = 1.0
        else:
            log_pred = _log_student_t(xv, self._mu, self._kappa, self._alpha, self._beta)
            log_pred0 = float(
                _log_student_t(xv, np.array([p.mu0]), np.array([p.kappa0]), np.array([p.alpha0]), np.array([p.beta0]))[0]
            )

            # marginal: growth keeps x in each old run, change opens a fresh one
            log_growth = self._logp + log_pred + self._log_1mh
            log_cp = logsumexp(self._logp) + self._log_h + log_pred0
            logp = np.concatenate(([log_cp], log_growth))
            logp -= logsumexp(logp)

            # max-product: the fresh run hangs off the best segmentation of x_0..x_{t-1}
            v_grow = self._logv + log_pred + self._log_1mh
            v_cp = float(np.max(self._logv)) + self._log_h + log_pred0
            logv = np.concatenate(([v_cp], v_grow))
            logv -= np.max(logv)

            r = np.concatenate(([0], self._r + 1))
            grown = self._absorb(xv, self._mu, self._kappa, self._alpha, self._beta)
            mu, kappa, alpha, beta = (np.concatenate((f, g)) for f, g in zip(fresh, grown, strict=True))
            cp_prob = float(np.exp(logp[0]))

            # prune; the MAP hypotheses always survive
            keep = logp >= self._log_floor
            keep[int(np.argmax(logp))] = True
            keep[int(np.argmax(logv))] = True
            if not keep.all():
                r, logp, logv = r[keep], logp[keep], logv[keep]
                mu, kappa, alpha, beta = mu[keep], kappa[keep], alpha[keep], beta[keep]
                logp -= logsumexp(logp)
                logv -= np.max(logv)

        self._r, self._logp, self._logv = r, logp, logv
        self._mu, self._kappa, self._alpha, self._beta = mu, kappa, alpha, beta

        self._ensure_capacity(t + 1)
        self._record_evidence(t - r, np.exp(logp))

        best_r = int(r[int(np.argmax(logp))])
        self._cp.append(cp_prob)
        self._rl.append(best_r)
        self._map_start.append(t - int(r[int(np.argmax(logv))]))
        self.t = t + 1

        return {"index": t, "cp_prob": cp_prob, "run_length": best_r}

    #  snapshot state
    def state_dict(self) -> dict[str, Any]:
        return {
            "step_index": self.t,
            "hazard": self.hazard,
            "prune_threshold": self.prune_threshold,
            "evidence_window": self.evidence_window,
            "prior": self.prior.as_dict(),
            "tracked_run_lengths": [
                {
                    "r": int(self._r[i]),
                    "mass": float(math.exp(self._logp[i])),
                    "viterbi": float(self._logv[i]),
                    "stats": {
                        "mu": float(self._mu[i]),
                        "kappa": float(self._kappa[i]),
                        "alpha": float(self._alpha[i]),
                        "beta": float(self._beta[i]),
                    },
                }
                for i in range(self.n_tracked)
            ],
            "history": {
                "cp_prob": list(self._cp),
                "run_length": list(self._rl),
                "map_start": list(self._map_start),
                "evidence": [float(v) for v in self._evidence[: self.t]],
            },
        }

    @classmethod
    def from_state(cls, state: Mapping[str, Any]) -> BOCPD:
        self = cls(
            hazard=float(state["hazard"]),
            prior=NIGPrior.from_mapping(state.get("prior")),
            prune_threshold=float(state.get("prune_threshold", 1e-8)),
            evidence_window=int(state.get("evidence_window", 10)),
        )
        runs =list(state.get("tracked_run_lengths", []))
        hist = state.get("history", {})
        self.t = int(state.get("step_index", 0))
        if len(hist.get("cp_prob", [])) != self.t:
            raise ValueError(f"snapshot history length {len(hist.get('cp_prob', []))} != step_index {self.t}")

        self._r = np.array([int(rec["r"]) for rec in runs], dtype=np.int64)
        with np.errstate(divide="ignore"):
            self._logp = np.log(np.array([float(rec["mass"]) for rec in runs], dtype=float))
        self._logv = np.array([float(rec["viterbi"]) for rec in runs], dtype=float)
        for name in ("mu", "kappa", "alpha", "beta"):
            setattr(self, f"_{name}", np.array([float(rec["stats"][name]) for rec in runs], dtype=float))
        if runs:
            self._logp -= logsumexp(self._logp)

        self._cp = [float(v) for v in hist.get("cp_prob", [])]
        self._rl = [int(v) for v in hist.get("run_length", [])]
        self._map_start = [int(v) for v in hist.get("map_start", [])]
        self._ensure_capacity(self.t)
        self._evidence[: self.t] = np.asarray(hist.get("evidence", []), dtype=float)
        return self


def initialize(
    prior: NIGPrior | Mapping[str, Any] | None = None,
    hazard_rate: float = 0.01,
    *,
    prune_threshold: float = 1e-8,
) -> BOCPD:
    """Fresh engine state; nothing observed yet."""
    return BOCPD(hazard=hazard_rate, prior=prior, prune_threshold=prune_threshold)


def update(engine: BOCPD, x: float | Mapping[str, Any]) -> tuple[BOCPD, float]:
    """Fold one observation into `engine` and return it with P(r_t = 0 | x_1:t)."""
    out = engine.update(x)
    return engine, out["cp_prob"]
