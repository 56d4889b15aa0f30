from __future__ import annotations

import threading
from collections import deque
from typing import Deque, List, Optional

import pandas as pd

from .models import SignalMeasurement
from .quality import measurements_to_frame


class SampleHistory:
    """有界的检测历史缓冲区，超出容量时淘汰最旧记录"""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._lock = threading.Lock()
        self._items: Deque[SignalMeasurement] = deque(maxlen=max_size)
        self.total_appended = 0

    def append(self, measurement: SignalMeasurement) -> None:
        with self._lock:
            self._items.append(measurement)
            self.total_appended += 1

    def window(
        self,
        window_ms: float,
        now: Optional[float] = None,
        beacon_id: Optional[str] = None,
    ) -> List[SignalMeasurement]:
        """返回最近 window_ms 毫秒内的记录；now 缺省为最新记录的时间"""
        with self._lock:
            items = [m for m in self._items if beacon_id is None or m.beacon_id == beacon_id]
        if not items:
            return []
        reference = max(m.timestamp for m in items) if now is None else now
        cutoff = reference - window_ms
        return [m for m in items if m.timestamp >= cutoff]

    def snapshot(self) -> List[SignalMeasurement]:
        with self._lock:
            return list(self._items)

    def to_frame(self, beacon_id: Optional[str] = None) -> pd.DataFrame:
        items = self.snapshot()
        if beacon_id is not None:
            items = [m for m in items if m.beacon_id == beacon_id]
        return measurements_to_frame(items)

    def clear(self, beacon_id: Optional[str] = None) -> None:
        with self._lock:
            if beacon_id is None:
                self._items.clear()
                return
            kept = [m for m in self._items if m.beacon_id != beacon_id]
            self._items.clear()
            self._items.extend(kept)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
