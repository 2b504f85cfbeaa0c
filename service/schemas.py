# service/schemas.py
from __future__ import annotations

from pydantic import BaseModel, Field


class ObserveIn(BaseModel):
    timestamp: str
    value: float
    series_id: str | None = None


class ObserveOut(BaseModel):
    series_id: str
    index: int
    cp_prob: float
    run_length: int
    alarm: bool = False  # cp_prob >= th_cp for this stream
    latency_ms: dict[str, float] = Field(default_factory=dict)


class PointIn(BaseModel):
    timestamp: str
    value: float


class SegmentIn(BaseModel):
    observations: list[PointIn]
    th_cp: float | None = None
    effect_size_threshold: float | None = None


class SegmentRow(BaseModel):
    begin: int
    end: int
    mean: float | None
    sd: float | None  # None when the segment has a single observation
    n: int
    duration_days: float | None = None
    cohen_d: float | None = None
    is_large_change: bool = False


class RegimeRow(BaseModel):
    label: int
    start: int
    end: int


class SegmentOut(BaseModel):
    series_id: str | None = None
    n: int
    segments: list[SegmentRow]
    regimes: list[RegimeRow]
    assignment: list[int]
