"""
Operator log window - the bounded, append-only list of log lines shown on the dashboard
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

LOG_LEVELS = ('info', 'success', 'warning', 'error')


@dataclass(frozen=True)
class LogEntry:
    """One operator-visible log line"""
    timestamp: float
    level: str
    message: str
    phase: Optional[str] = None


class LogBuffer:
    """Keeps the most recent log entries; older ones fall off the end"""

    def __init__(self, capacity: int = 100):
        self.capacity = max(1, capacity)
        self._entries: Deque[LogEntry] = deque(maxlen=self.capacity)
        self._lock = threading.Lock()

    def append(self, level: str, message: str, phase: Optional[str] = None) -> LogEntry:
        if level not in LOG_LEVELS:
            level = 'info'
        entry = LogEntry(timestamp=time.time(), level=level, message=message, phase=phase)
        with self._lock:
            self._entries.append(entry)
        return entry

    def recent(self, limit: Optional[int] = None) -> List[LogEntry]:
        """Newest-last copy of the window"""
        with self._lock:
            entries = list(self._entries)
        if limit is None:
            return entries
        return entries[-limit:] if limit > 0 else []

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
