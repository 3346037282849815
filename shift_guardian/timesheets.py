"""
timesheets.py  –  shift state per driver.

OFF_SHIFT  --ENTER depot fence / clock_in-->  ON_SHIFT   (one ACTIVE timesheet)
ON_SHIFT   --EXIT depot fence / clock_out-->  OFF_SHIFT  (timesheet CLOSED)

Transitions on non-depot fences (customer zones, ...) never touch shift state.
Geofence-driven transitions are idempotent no-ops when the driver is already
in the target state; the manual actions raise instead.
"""

import datetime as dt
from typing import Callable, List, Optional

from shift_guardian.domain import (
    GeofenceTransition,
    Timesheet,
    TimesheetSource,
    TimesheetStatus,
    TransitionKind,
)
from shift_guardian.errors import AlreadyOnShiftError, NotOnShiftError, ValidationError
from shift_guardian.geo import check_coordinate
from shift_guardian.locks import KeyedLock
from shift_guardian.logging_config import get_logger
from shift_guardian.store import Store

logger = get_logger("timesheets", "timesheets.log")

UTC = dt.timezone.utc


class TimesheetStateMachine:

    def __init__(self, store: Store, locks: KeyedLock,
                 clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(UTC)):
        self.store = store
        self.locks = locks
        self.clock = clock

    # =====================================================================
    # Geofence driven (caller already holds the driver lock)
    # =====================================================================
    async def apply(self, transition: GeofenceTransition) -> Optional[Timesheet]:
        ping = transition.ping
        if not transition.is_depot:
            logger.info(
                f"[timesheet] Ignoring {transition.kind.value} on non-depot fence "
                f"{transition.geofence_name} for driver={ping.driver_id}"
            )
            return None

        active = await self.store.get_active_timesheet(ping.company_id, ping.driver_id)

        if transition.kind == TransitionKind.ENTER:
            if active:
                logger.info(
                    f"[timesheet] driver={ping.driver_id} entered {transition.geofence_name} "
                    f"but already on shift (timesheet id={active.id})"
                )
                return None
            return await self._open(
                ping.company_id, ping.driver_id, transition.geofence_name,
                ping.latitude, ping.longitude, ping.timestamp, TimesheetSource.GEOFENCE,
            )

        if not active:
            logger.info(
                f"[timesheet] driver={ping.driver_id} left {transition.geofence_name} while off shift"
            )
            return None
        return await self._close(active, ping.latitude, ping.longitude, ping.timestamp)

    # =====================================================================
    # Manual clock actions
    # =====================================================================
    async def clock_in(self, company_id: int, driver_id: int, depot_name: str,
                       latitude=None, longitude=None, at: Optional[dt.datetime] = None) -> Timesheet:
        if not depot_name or not str(depot_name).strip():
            raise ValidationError("depot_name is required")
        latitude, longitude = self._optional_coordinate(latitude, longitude)

        async with self.locks.hold((company_id, driver_id)):
            active = await self.store.get_active_timesheet(company_id, driver_id)
            if active:
                logger.info(f"[timesheet] driver={driver_id} already clocked in (timesheet id={active.id})")
                raise AlreadyOnShiftError(f"driver {driver_id} is already clocked in")
            return await self._open(
                company_id, driver_id, str(depot_name).strip(),
                latitude, longitude, at or self.clock(), TimesheetSource.MANUAL,
            )

    async def clock_out(self, company_id: int, driver_id: int,
                        latitude=None, longitude=None, at: Optional[dt.datetime] = None) -> Timesheet:
        latitude, longitude = self._optional_coordinate(latitude, longitude)

        async with self.locks.hold((company_id, driver_id)):
            active = await self.store.get_active_timesheet(company_id, driver_id)
            if not active:
                logger.info(f"[timesheet] driver={driver_id} is not clocked in")
                raise NotOnShiftError(f"driver {driver_id} is not clocked in")
            return await self._close(active, latitude, longitude, at or self.clock())

    async def active_timesheet(self, company_id: int, driver_id: int) -> Optional[Timesheet]:
        return await self.store.get_active_timesheet(company_id, driver_id)

    async def list_timesheets(self, company_id: int, driver_id: Optional[int] = None) -> List[Timesheet]:
        return await self.store.list_timesheets(company_id, driver_id)

    # =====================================================================
    # helpers
    # =====================================================================
    @staticmethod
    def _optional_coordinate(latitude, longitude):
        if latitude is None and longitude is None:
            return None, None
        return check_coordinate(latitude, longitude)

    async def _open(self, company_id, driver_id, depot_name, latitude, longitude, at, source):
        timesheet = await self.store.create_timesheet(Timesheet(
            driver_id=driver_id,
            company_id=company_id,
            depot_name=depot_name,
            arrival_time=at,
            status=TimesheetStatus.ACTIVE,
            source=source,
            arrival_latitude=latitude,
            arrival_longitude=longitude,
        ))
        logger.info(
            f"[timesheet] Clocked in driver={driver_id} company={company_id} at {depot_name} "
            f"({source.value}) timesheet id={timesheet.id}"
        )
        return timesheet

    async def _close(self, timesheet: Timesheet, latitude, longitude, at):
        timesheet.status = TimesheetStatus.CLOSED
        timesheet.departure_time = at
        timesheet.departure_latitude = latitude
        timesheet.departure_longitude = longitude
        timesheet.total_minutes = max(int((at - timesheet.arrival_time).total_seconds() // 60), 0)
        timesheet = await self.store.close_timesheet(timesheet)
        logger.info(
            f"[timesheet] Clocked out driver={timesheet.driver_id} from {timesheet.depot_name} "
            f"after {timesheet.total_minutes} min (timesheet id={timesheet.id})"
        )
        return timesheet
