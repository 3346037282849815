from typing import List, Optional, Tuple

from shift_guardian.domain import (
    ContainmentState,
    Geofence,
    GeofenceTransition,
    LocationPing,
    TransitionKind,
)
from shift_guardian.geo import distance_to_fence_m
from shift_guardian.logging_config import get_logger
from shift_guardian.store import Store

logger = get_logger("geofencing", "geofencing.log")


def match_geofence(point, fences: List[Geofence]) -> Optional[Geofence]:
    """
    The fence the point is considered inside: the containing fence whose
    center is nearest, lowest id on a tie. None when no fence contains it.
    """
    best = None
    best_key = None
    for fence in fences:
        d = distance_to_fence_m(point, fence)
        if d > fence.radius_meters:
            continue
        key = (d, fence.id if fence.id is not None else 0)
        if best_key is None or key < best_key:
            best, best_key = fence, key
    return best


def diff_containment(previous: Optional[ContainmentState], current: Optional[Geofence],
                     ping: LocationPing) -> List[GeofenceTransition]:
    prev_id = previous.geofence_id if previous else None
    cur_id = current.id if current else None

    if prev_id == cur_id:
        return []

    transitions = []
    if prev_id is not None:
        transitions.append(GeofenceTransition(
            kind=TransitionKind.EXIT,
            geofence_id=prev_id,
            geofence_name=previous.geofence_name,
            is_depot=previous.is_depot,
            ping=ping,
        ))
    if current is not None:
        transitions.append(GeofenceTransition(
            kind=TransitionKind.ENTER,
            geofence_id=current.id,
            geofence_name=current.name,
            is_depot=current.is_depot,
            ping=ping,
        ))
    return transitions


class GeofenceMatcher:

    def __init__(self, store: Store):
        self.store = store

    async def evaluate(self, ping: LocationPing) -> Tuple[List[GeofenceTransition], ContainmentState]:
        """
        Transitions caused by the ping plus the containment state to store
        once they have been handled. Nothing is written here.
        """
        # store-side prefilter; match_geofence re-checks containment and picks the nearest
        fences = await self.store.find_containing_geofences(ping.company_id, ping.latitude, ping.longitude)
        current = match_geofence((ping.latitude, ping.longitude), fences)

        previous = await self.store.get_containment_state(ping.company_id, ping.driver_id)
        transitions = diff_containment(previous, current, ping)

        # written by the caller even without a transition, so the next ping has a baseline
        state = ContainmentState(
            company_id=ping.company_id,
            driver_id=ping.driver_id,
            geofence_id=current.id if current else None,
            geofence_name=current.name if current else None,
            is_depot=current.is_depot if current else False,
            updated_at=ping.timestamp,
        )

        zone_label = f"IN fence {current.name}" if current else "OUTSIDE fences"
        logger.info(
            f"[geofence] company={ping.company_id} driver={ping.driver_id} {zone_label} "
            f"transitions={[f'{t.kind.value}:{t.geofence_name}' for t in transitions]}"
        )
        return transitions, state
