"""Rolling PnL history per position, used for ``get_avg_pnl``."""
from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Deque, Dict, Optional

from .models import Snapshot


@dataclass(slots=True)
class PnLSample:
    ts: float
    pnl: Decimal
    pnl_percentage: Decimal


class PnLHistory:
    """Keeps ``(ts, pnl, pnl%)`` samples for the last ``window_s`` seconds.

    Keys are position unique keys (``trader_symbol_side_size``).
    """

    def __init__(self, window_s: float = 3600.0) -> None:
        self.window_s = window_s
        self._samples: Dict[str, Deque[PnLSample]] = {}

    def __len__(self) -> int:
        return len(self._samples)

    def record(self, snapshot: Snapshot, now: Optional[float] = None) -> None:
        ts = time.time() if now is None else now
        for pos in snapshot.positions:
            buf = self._samples.setdefault(pos.unique_key, deque())
            buf.append(PnLSample(ts, pos.pnl_value, pos.pnl_percentage))
        self._prune(ts)

    def samples(self, unique_key: str) -> list[PnLSample]:
        return list(self._samples.get(unique_key, ()))

    def average(self, unique_key: str, now: Optional[float] = None) -> Dict[str, Any]:
        """Window average in the ``avg_pnl_result`` wire shape."""
        self._prune(time.time() if now is None else now)
        buf = self._samples.get(unique_key)
        if not buf:
            return {
                "type": "avg_pnl_result",
                "uniqueKey": unique_key,
                "success": False,
                "avgPnL": 0.0,
                "avgPnLPercent": 0.0,
                "samples": 0,
                "windowSeconds": self.window_s,
            }
        n = len(buf)
        avg_pnl = sum((s.pnl for s in buf), Decimal(0)) / n
        avg_pct = sum((s.pnl_percentage for s in buf), Decimal(0)) / n
        return {
            "type": "avg_pnl_result",
            "uniqueKey": unique_key,
            "success": True,
            "avgPnL": float(round(avg_pnl, 2)),
            "avgPnLPercent": float(round(avg_pct, 2)),
            "samples": n,
            "windowSeconds": self.window_s,
        }

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_s
        for key in list(self._samples):
            buf = self._samples[key]
            while buf and buf[0].ts < cutoff:
                buf.popleft()
            if not buf:
                del self._samples[key]
