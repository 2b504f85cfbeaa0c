from __future__ import annotations

import logging
import queue
from typing import Any

from core.errors import InvalidConfiguration

logger = logging.getLogger(__name__)


class IngestBuffer:
    """
    Bounded hand-off between an ingestion producer and the engine consumer.

    policy="block": put() waits (up to `timeout`) for room and returns False on timeout.
    policy="drop":  put() returns False immediately when full; the drop is counted.
    """

    def __init__(self, maxsize: int = 10_000, policy: str = "block") -> None:
        if int(maxsize) <= 0:
            raise InvalidConfiguration(f"ingest maxsize must be > 0, got {maxsize}")
        if policy not in ("block", "drop"):
            raise InvalidConfiguration(f"ingest policy must be 'block' or 'drop', got {policy!r}")
        self.policy = policy
        self.maxsize = int(maxsize)
        self._q: queue.Queue[Any] = queue.Queue(maxsize=self.maxsize)
        self.dropped = 0

    def __len__(self) -> int:
        return self._q.qsize()

    def put(self, obs: Any, timeout: float | None = None) -> bool:
        try:
            if self.policy == "block":
                self._q.put(obs, block=True, timeout=timeout)
            else:
                self._q.put_nowait(obs)
        except queue.Full:
            self.dropped += 1
            logger.warning("ingest buffer full (maxsize=%d, policy=%s); dropped=%d", self.maxsize, self.policy, self.dropped)
            return False
        return True

    def drain(self, sink, limit: int | None = None) -> list[Any]:
        """Feed queued observations to `sink(obs)` in arrival order; return its outputs."""
        out: list[Any] = []
        while limit is None or len(out) < limit:
            try:
                obs = self._q.get_nowait()
            except queue.Empty:
                break
            try:
                out.append(sink(obs))
            finally:
                self._q.task_done()
        return out
