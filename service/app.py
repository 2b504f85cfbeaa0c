# service/app.py  (series-sharded engines, bounded ingestion, snapshot on shutdown)
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections import OrderedDict, defaultdict
from contextlib import asynccontextmanager
from math import isfinite
from threading import Lock
from typing import Any

from fastapi import FastAPI, HTTPException
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.responses import Response

from core.config import load_config
from core.errors import RegimeShiftError
from core.ingest import IngestBuffer
from core.pipeline import Pipeline, run_pipeline
from service.schemas import ObserveIn, ObserveOut, SegmentIn, SegmentOut


@asynccontextmanager
async def lifespan(app: FastAPI):
    # load snapshot on startup
    _load_snapshot()
    try:
        yield
    finally:
        # save snapshot on shutdown
        _save_snapshot()

# ---------- app & logging ----------
app = FastAPI(lifespan=lifespan)

logger = logging.getLogger("regime-shift-lite")
if not logger.handlers:
    logging.basicConfig(level=logging.INFO)

# ---------- config ----------
cfg = load_config()

def _int_from_env_or_cfg(env_name: str, cfg_key: str, default: int) -> int:
    v = os.getenv(env_name)
    if v is not None:
        try:
            return int(v)
        except ValueError:
            return default
    try:
        return int(cfg.get(cfg_key, default))
    except (TypeError, ValueError):
        return default

# ---------- Prometheus: PRIVATE registry to avoid duplicates on reload ----------
PROM_REG = CollectorRegistry()
REQS = Counter("requests_total", "Total requests", ["endpoint"], registry=PROM_REG)
OBSERVE_LAT = Histogram(
    "observe_service_ms",
    "Engine update latency per observation (ms)",
    buckets=(0.1, 0.2, 0.5, 1, 2, 5, 10, 20, 50),
    registry=PROM_REG,
)
ALARMS = Counter("cp_alarms_total", "Observations with cp_prob >= th_cp", registry=PROM_REG)
DROPPED = Counter("ingest_dropped_total", "Observations refused by a full ingest buffer", registry=PROM_REG)

# ---------- series-sharded pipelines ----------
_MAX_SERIES = _int_from_env_or_cfg("MAX_SERIES", "max_series", 1024)
_INGEST_MAXSIZE = _int_from_env_or_cfg("INGEST_MAXSIZE", "ingest_maxsize", 10_000)
_INGEST_POLICY = os.getenv("INGEST_POLICY") or str(cfg.get("ingest_policy", "block"))
_INGEST_TIMEOUT = float(os.getenv("INGEST_TIMEOUT_SEC", "1.0"))

_pipes: OrderedDict[str, Pipeline] = OrderedDict()
_buffers: dict[str, IngestBuffer] = {}
_pipe_locks: defaultdict[str, Lock] = defaultdict(Lock)
_registry_lock = Lock()

# per-request results handed back after a shared drain
_RESULTS: dict[str, Any] = {}

def _get_pipe(series_id: str) -> tuple[Pipeline, IngestBuffer]:
    with _registry_lock:
        p = _pipes.get(series_id)
        if p is None:
            p = Pipeline(cfg)
            _pipes[series_id] = p
            _buffers[series_id] = IngestBuffer(_INGEST_MAXSIZE, _INGEST_POLICY)
        _pipes.move_to_end(series_id)
        while len(_pipes) > _MAX_SERIES:
            sid_ev, _ = _pipes.popitem(last=False)
            _buffers.pop(sid_ev, None)
            logger.info(json.dumps({"evt": "series_evicted", "series_id": sid_ev}))
        return p, _buffers[series_id]

def _series_id(raw: str | None) -> str:
    return (raw or "default").strip() or "default"

def _segment_out(series_id: str | None, res) -> SegmentOut:
    return SegmentOut(series_id=series_id, **res.to_dict())

# ---------- snapshot / restore ----------
_SNAPSHOT_PATH = os.getenv("SNAPSHOT_PATH") or str(cfg.get("snapshot_path", ""))

def _load_snapshot() -> None:
    if not _SNAPSHOT_PATH or not os.path.exists(_SNAPSHOT_PATH):
        return
    try:
        with open(_SNAPSHOT_PATH, encoding="utf-8") as f:
            state = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(json.dumps({"evt": "snapshot_load_error", "err": str(e)}))
        return

    _pipes.clear()
    _buffers.clear()
    for sid, pst in state.get("pipes", {}).items():
        try:
            _pipes[sid] = Pipeline.from_state(cfg, pst)
            _buffers[sid] = IngestBuffer(_INGEST_MAXSIZE, _INGEST_POLICY)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(json.dumps({"evt": "pipe_restore_error", "series_id": sid, "err": str(e)}))
    logger.info(json.dumps({"evt": "snapshot_loaded", "series": len(_pipes)}))

def _save_snapshot() -> None:
    if not _SNAPSHOT_PATH:
        return
    try:
        state: dict[str, Any] = {"pipes": {}}
        for sid, pipe in list(_pipes.items()):
            with _pipe_locks[sid]:
                state["pipes"][sid] = pipe.state_dict()
        tmp = _SNAPSHOT_PATH + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state, f)
        os.replace(tmp, _SNAPSHOT_PATH)
    except (OSError, TypeError, ValueError) as e:
        logger.warning(json.dumps({"evt": "snapshot_save_error", "err": str(e)}))

# ---------- endpoints ----------
@app.get("/healthz")
def healthz() -> dict[str, str]:
    REQS.labels("healthz").inc()
    return {"status": "ok"}

@app.get("/metrics")
def metrics() -> Response:
    return Response(generate_latest(PROM_REG), media_type=CONTENT_TYPE_LATEST)

@app.post("/observe", response_model=ObserveOut)
def observe(inp: ObserveIn) -> ObserveOut:
    REQS.labels("observe").inc()
    t0 = time.perf_counter()

    if not isfinite(inp.value):
        raise HTTPException(status_code=422, detail="value must be a finite number")

    series_id = _series_id(inp.series_id)
    pipe, buf = _get_pipe(series_id)
    token = str(uuid.uuid4())
    if not buf.put((token, {"timestamp": inp.timestamp, "value": inp.value}), timeout=_INGEST_TIMEOUT):
        DROPPED.inc()
        raise HTTPException(status_code=503, detail="ingest buffer full")

    def _sink(item: tuple[str, dict[str, Any]]) -> None:
        tok, obs = item
        try:
            _RESULTS[tok] = pipe.process(obs)
        except RegimeShiftError as e:
            _RESULTS[tok] = e

    with _pipe_locks[series_id]:
        buf.drain(_sink)
    out = _RESULTS.pop(token, None)
    if out is None:
        raise HTTPException(status_code=500, detail="observation was not processed")
    if isinstance(out, RegimeShiftError):
        raise HTTPException(status_code=422, detail=str(out))

    service_ms = (time.perf_counter() - t0) * 1000.0
    OBSERVE_LAT.observe(service_ms)
    alarm = float(out["cp_prob"]) >= pipe.th_cp
    if alarm:
        ALARMS.inc()

    logger.info(json.dumps({
        "evt": "observe",
        "series_id": series_id,
        "index": out["index"],
        "cp_prob": round(float(out["cp_prob"]), 6),
        "run_length": out["run_length"],
        "alarm": alarm,
        "service_ms": round(service_ms, 3),
    }))
    return ObserveOut(
        series_id=series_id,
        index=int(out["index"]),
        cp_prob=float(out["cp_prob"]),
        run_length=int(out["run_length"]),
        alarm=alarm,
        latency_ms={"service_ms": service_ms},
    )

@app.get("/series/{series_id}/regimes", response_model=SegmentOut)
def series_regimes(
    series_id: str,
    th_cp: float | None = None,
    effect_size_threshold: float | None = None,
) -> SegmentOut:
    REQS.labels("regimes").inc()
    pipe = _pipes.get(series_id)
    if pipe is None:
        raise HTTPException(status_code=404, detail=f"unknown series {series_id!r}")
    try:
        with _pipe_locks[series_id]:
            res = pipe.result(th_cp=th_cp, effect_size_threshold=effect_size_threshold)
    except RegimeShiftError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    logger.info(json.dumps({
        "evt": "regimes",
        "series_id": series_id,
        "n": res.n,
        "segments": len(res.segments),
        "regimes": len(res.regimes),
    }))
    return _segment_out(series_id, res)

@app.post("/segment", response_model=SegmentOut)
def segment(payload: SegmentIn) -> SegmentOut:
    REQS.labels("segment").inc()
    th_cp = payload.th_cp if payload.th_cp is not None else float(cfg["th_cp"])
    eff = (
        payload.effect_size_threshold
        if payload.effect_size_threshold is not None
        else float(cfg["effect_size_threshold"])
    )
    try:
        res = run_pipeline(
            [p.model_dump() for p in payload.observations],
            th_cp,
            eff,
            cfg=cfg,
        )
    except RegimeShiftError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    logger.info(json.dumps({"evt": "segment", "n": res.n, "regimes": len(res.regimes)}))
    return _segment_out(None, res)
