# shift_guardian/stagnation.py
import datetime as dt
from typing import List, Optional

from shift_guardian.alerts import AlertEmitter
from shift_guardian.config import EngineSettings
from shift_guardian.domain import LocationPing, StagnationAlert
from shift_guardian.geo import max_pairwise_distance_m
from shift_guardian.logging_config import get_logger
from shift_guardian.store import Store

logger = get_logger("stagnation", "stagnation.log")


# =====================================================================
# Helper: trailing stationary run (positions list is oldest-first)
# =====================================================================
def get_stagnant_run(positions: List[LocationPing], speed_threshold: float,
                     tolerance_m: float) -> List[LocationPing]:
    """
    Longest run of pings ending at the newest one in which every ping is at
    or below speed_threshold and no two pings are more than tolerance_m
    apart. Returned oldest-first; empty if the newest ping itself is moving.
    """
    start = len(positions)
    while start > 0 and float(positions[start - 1].speed or 0) <= speed_threshold:
        start -= 1
    slow = positions[start:]

    def spread(i):
        return max_pairwise_distance_m((p.latitude, p.longitude) for p in slow[i:])

    # the spread only grows as the run reaches further back, so bisect for
    # the earliest start that still stays within tolerance
    lo, hi = 0, len(slow)
    while lo < hi:
        mid = (lo + hi) // 2
        if spread(mid) <= tolerance_m:
            hi = mid
        else:
            lo = mid + 1
    return slow[lo:]


def is_stagnant_run(run: List[LocationPing], window: dt.timedelta) -> bool:
    """A run counts as stagnant once it covers the whole window."""
    if not run:
        return False
    return run[-1].timestamp - run[0].timestamp >= window


class StagnationDetector:

    def __init__(self, store: Store, emitter: AlertEmitter):
        self.store = store
        self.emitter = emitter

    async def evaluate(self, latest: LocationPing, settings: EngineSettings) -> Optional[StagnationAlert]:
        """
        Re-check the driver after `latest` was stored. Returns the ACTIVE
        alert when the driver is stagnant, None otherwise. Never closes an
        alert: that is left to the dispatcher.
        """
        since = latest.timestamp - settings.history
        positions = await self.store.get_recent_pings(
            latest.company_id, latest.driver_id, since, until=latest.timestamp
        )
        if not positions:
            # store lag; the ping we were given is still the best evidence
            positions = [latest]

        run = get_stagnant_run(positions, settings.speed_threshold, settings.movement_tolerance_m)

        if not is_stagnant_run(run, settings.stagnation_window):
            logger.info(
                f"[stagnation] company={latest.company_id} driver={latest.driver_id} "
                f"not stagnant (run={len(run)} pings of {len(positions)})"
            )
            return None

        existing = await self.store.get_active_alert(latest.company_id, latest.driver_id)
        if existing:
            logger.info(
                f"[stagnation] Active alert id={existing.id} exists for driver={latest.driver_id}; refreshing"
            )
            return await self.emitter.refresh_stagnation(existing, latest)

        return await self.emitter.raise_stagnation(run[0], latest)
