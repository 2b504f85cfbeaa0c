# core/types.py
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TypedDict


class Observation(TypedDict):
    index: int
    timestamp: str
    value: float


class StepOut(TypedDict):
    # what BOCPD.update / Pipeline.process return per observation
    index: int
    cp_prob: float
    run_length: int


@dataclass(frozen=True)
class Segment:
    begin: int
    end: int  # exclusive
    mean: float
    sd: float  # NaN when n == 1
    n: int
    duration_days: float = math.nan

    @property
    def duration_months(self) -> float:
        return self.duration_days / 30.44


@dataclass(frozen=True)
class ChangePointCandidate:
    segment_boundary_index: int
    cohen_d: float  # NaN when undefined
    is_large_change: bool


@dataclass(frozen=True)
class Regime:
    label: int
    start: int
    end: int  # exclusive

    def __contains__(self, index: int) -> bool:
        return self.start <= index < self.end
