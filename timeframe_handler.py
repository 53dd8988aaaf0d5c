"""
Timeframe Handler
Kill zone clock for the market-structure analyzer

Kill Zones (UTC, start hour inclusive, end hour exclusive):
- Asian Session   00:00-08:00  builds the range
- London Session  08:00-12:00  major moves initiate
- NY AM Session   13:00-16:00  continuation or reversal of London
- NY PM Session   19:00-21:00  late reversals, position squaring

Hours 12, 16-18 and 21-23 fall outside every kill zone.
"""

from dataclasses import dataclass, asdict, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

import pytz

# ==================== DATA CLASSES ====================

@dataclass(frozen=True)
class KillZone:
    """Kill zone window and whether it contains the evaluated instant"""
    name: str
    start_hour: int
    end_hour: int
    description: str
    is_active: bool = False

    def contains_hour(self, hour: int) -> bool:
        return self.start_hour <= hour < self.end_hour

    def to_dict(self) -> Dict:
        return asdict(self)


KILL_ZONES = (
    KillZone("Asian Session", 0, 8, "Low volatility consolidation phase"),
    KillZone("London Session", 8, 12, "High volatility, major moves initiate here"),
    KillZone("NY AM Session", 13, 16, "Continuation or reversal of London moves"),
    KillZone("NY PM Session", 19, 21, "Late day reversals and position squaring"),
)

TimeInput = Union[datetime, int, float, None]


def utc_hour(at: Union[datetime, int, float]) -> int:
    """UTC hour of a datetime (naive means UTC) or epoch milliseconds"""
    if isinstance(at, datetime):
        if at.tzinfo is None:
            return at.hour
        return at.astimezone(pytz.utc).hour
    return datetime.fromtimestamp(at / 1000.0, tz=pytz.utc).hour


# ==================== MAIN HANDLER ====================

class TimeframeHandler:
    """
    Kill zone evaluation

    The clock is injectable so analyses can be pinned to a bar time; without
    an explicit instant the handler reads ``now_provider`` (wall clock by
    default).
    """

    def __init__(self, now_provider: Optional[Callable[[], datetime]] = None):
        self.now_provider = now_provider or (lambda: datetime.now(pytz.utc))
        self.killzones = KILL_ZONES

    def get_kill_zones(self, at: TimeInput = None) -> List[KillZone]:
        """All kill zones with ``is_active`` set for the given instant"""
        hour = utc_hour(self.now_provider() if at is None else at)
        return [replace(kz, is_active=kz.contains_hour(hour)) for kz in self.killzones]

    def get_active_kill_zone(self, at: TimeInput = None) -> Optional[KillZone]:
        """First active kill zone, or None between sessions"""
        for kz in self.get_kill_zones(at):
            if kz.is_active:
                return kz
        return None
