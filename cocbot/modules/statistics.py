"""
Session statistics - cumulative counters for the operator dashboard
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict

from ..utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class StatsSnapshot:
    attacks_completed: int = 0
    gold_collected: int = 0
    elixir_collected: int = 0
    dark_elixir_collected: int = 0
    walls_upgraded: int = 0
    session_start: float = field(default_factory=time.time)


class SessionStatistics:
    """Counters mutated by the run loop; reset only on operator request"""

    def __init__(self):
        self._lock = threading.Lock()
        self._stats = StatsSnapshot()

    def record_attack(self, loot) -> None:
        """
        Count one completed attack and credit its loot

        Args:
            loot: Anything with gold / elixir / dark_elixir attributes
        """
        with self._lock:
            self._stats.attacks_completed += 1
            self._stats.gold_collected += max(0, int(loot.gold))
            self._stats.elixir_collected += max(0, int(loot.elixir))
            self._stats.dark_elixir_collected += max(0, int(loot.dark_elixir))

    def record_wall_upgrade(self) -> None:
        with self._lock:
            self._stats.walls_upgraded += 1

    def reset(self) -> None:
        with self._lock:
            self._stats = StatsSnapshot()
        logger.info("Session statistics reset")

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            s = self._stats
            return StatsSnapshot(s.attacks_completed, s.gold_collected, s.elixir_collected,
                                 s.dark_elixir_collected, s.walls_upgraded, s.session_start)

    def to_payload(self) -> Dict[str, Any]:
        """Stats event payload; session_start in epoch milliseconds"""
        s = self.snapshot()
        return {
            'attacks_completed': s.attacks_completed,
            'gold_collected': s.gold_collected,
            'elixir_collected': s.elixir_collected,
            'dark_elixir_collected': s.dark_elixir_collected,
            'walls_upgraded': s.walls_upgraded,
            'session_start': int(s.session_start * 1000),
        }
