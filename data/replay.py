from __future__ import annotations

import math
import os
from collections.abc import Iterator
from typing import Any

from core.errors import NonFiniteObservation


def _parse_boolish(val: Any) -> int:
    """Return 1 for truthy markers, else 0."""
    if val is None:
        return 0
    s = str(val).strip().lower()
    return 1 if s in {"1", "1.0", "true", "t", "yes", "y"} else 0


def _finite(val: Any, index: int) -> float:
    try:
        v = float(val)
    except (TypeError, ValueError):
        raise NonFiniteObservation(index, val) from None
    if not math.isfinite(v):
        raise NonFiniteObservation(index, val)
    return v


class Replay:
    """
    Stream timestamped observations of one constraint from CSV or Parquet.

    CSV: uses Python's csv module (streaming, low memory).
    Parquet: PyArrow streaming in batches; falls back to pandas when the file
             has to be read whole.

    Each yielded item has:
      {
        "timestamp": str,
        "value": float,
        # optional ground truth:
        "cp": 0|1
      }

    NaN / infinite / unparseable values raise NonFiniteObservation with the row index.
    """

    def __init__(
        self,
        path: str,
        ts_col: str = "timestamp",
        value_col: str = "value",
        batch_size: int = 4096,
    ) -> None:
        self.path = path
        self.ts_col = ts_col
        self.value_col = value_col
        self.batch_size = int(batch_size)

    def _check_cols(self, cols: list[str]) -> str | None:
        if self.ts_col not in cols or self.value_col not in cols:
            raise KeyError(
                f"Missing required columns '{self.ts_col}'/'{self.value_col}' in {self.path}"
            )
        return "cp" if "cp" in cols else ("is_cp" if "is_cp" in cols else None)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        ext = os.path.splitext(self.path)[1].lower()

        # CSV
        if ext == ".csv":
            import csv

            with open(self.path, newline="", encoding="utf-8") as f:
                reader = csv.DictReader(f)
                cp_field = self._check_cols(list(reader.fieldnames or []))
                for i, row in enumerate(reader):
                    rec: dict[str, Any] = {
                        "timestamp": row[self.ts_col],
                        "value": _finite(row[self.value_col], i),
                    }
                    if cp_field is not None:
                        rec["cp"] = _parse_boolish(row.get(cp_field))
                    yield rec
            return

        if ext not in {".parquet", ".pq"}:
            raise ValueError(f"unsupported file type '{ext}' (expected .csv or .parquet)")

        import pyarrow.parquet as pq

        pf = pq.ParquetFile(self.path)
        cp_field = self._check_cols([f.name for f in pf.schema_arrow])

        i = 0
        for batch in pf.iter_batches(batch_size=max(1, self.batch_size)):
            bd = batch.to_pydict()  # dict[str, list[Any]]
            ts_list = bd[self.ts_col]
            v_list = bd[self.value_col]
            for k in range(len(ts_list)):
                out: dict[str, Any] = {
                    "timestamp": str(ts_list[k]),
                    "value": _finite(v_list[k], i),
                }
                if cp_field is not None:
                    out["cp"] = _parse_boolish(bd[cp_field][k])
                yield out
                i += 1
