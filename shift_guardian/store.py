"""
store.py  –  persistence interface consumed by the engine.

Every call is scoped by company_id; no method reads across tenants.
Two implementations exist:
  MemoryStore  – process-local dicts, used by the tests and single-instance runs
  SqlStore     – PostgreSQL + PostGIS (see sql_store.py)
"""

import abc
import copy
import datetime as dt
import itertools
from typing import Dict, List, Optional, Tuple

from shift_guardian.domain import (
    AlertStatus,
    CompanySettings,
    ContainmentState,
    Geofence,
    GeofenceEvent,
    LocationPing,
    StagnationAlert,
    Timesheet,
    TimesheetStatus,
)
from shift_guardian.geo import is_within_geofence

UTC = dt.timezone.utc


class Store(abc.ABC):

    # ---------------- pings ----------------
    @abc.abstractmethod
    async def insert_ping(self, ping: LocationPing) -> LocationPing: ...

    @abc.abstractmethod
    async def get_recent_pings(
        self, company_id: int, driver_id: int, since: dt.datetime, until: Optional[dt.datetime] = None
    ) -> List[LocationPing]:
        """Pings with since <= timestamp <= until, oldest first."""

    @abc.abstractmethod
    async def get_latest_pings(self, company_id: int) -> List[LocationPing]:
        """Most recent ping of every driver in the company."""

    # ---------------- containment ----------------
    @abc.abstractmethod
    async def get_containment_state(self, company_id: int, driver_id: int) -> Optional[ContainmentState]: ...

    @abc.abstractmethod
    async def set_containment_state(self, state: ContainmentState) -> None: ...

    # ---------------- stagnation alerts ----------------
    @abc.abstractmethod
    async def get_active_alert(self, company_id: int, driver_id: int) -> Optional[StagnationAlert]: ...

    @abc.abstractmethod
    async def create_alert(self, alert: StagnationAlert) -> StagnationAlert: ...

    @abc.abstractmethod
    async def update_alert(self, alert: StagnationAlert) -> StagnationAlert: ...

    @abc.abstractmethod
    async def get_alert(self, company_id: int, alert_id: int) -> Optional[StagnationAlert]: ...

    @abc.abstractmethod
    async def list_alerts(self, company_id: int, status: Optional[AlertStatus] = None) -> List[StagnationAlert]: ...

    @abc.abstractmethod
    async def dismiss_active_alerts(self, company_id: int, at: dt.datetime) -> int:
        """Set every ACTIVE alert of the company to DISMISSED, return how many."""

    # ---------------- timesheets ----------------
    @abc.abstractmethod
    async def get_active_timesheet(self, company_id: int, driver_id: int) -> Optional[Timesheet]: ...

    @abc.abstractmethod
    async def create_timesheet(self, timesheet: Timesheet) -> Timesheet: ...

    @abc.abstractmethod
    async def close_timesheet(self, timesheet: Timesheet) -> Timesheet: ...

    @abc.abstractmethod
    async def list_timesheets(self, company_id: int, driver_id: Optional[int] = None) -> List[Timesheet]: ...

    # ---------------- geofences ----------------
    @abc.abstractmethod
    async def list_active_geofences(self, company_id: int) -> List[Geofence]: ...

    @abc.abstractmethod
    async def list_geofences(self, company_id: int) -> List[Geofence]: ...

    @abc.abstractmethod
    async def find_containing_geofences(self, company_id: int, latitude: float, longitude: float) -> List[Geofence]:
        """Active fences whose circle covers the point, by id."""

    @abc.abstractmethod
    async def get_geofence(self, company_id: int, geofence_id: int) -> Optional[Geofence]: ...

    @abc.abstractmethod
    async def create_geofence(self, fence: Geofence) -> Geofence: ...

    @abc.abstractmethod
    async def update_geofence(self, fence: Geofence) -> Geofence: ...

    @abc.abstractmethod
    async def delete_geofence(self, company_id: int, geofence_id: int) -> bool: ...

    # ---------------- geofence events ----------------
    @abc.abstractmethod
    async def record_geofence_event(self, event: GeofenceEvent) -> GeofenceEvent: ...

    @abc.abstractmethod
    async def get_last_geofence_event(self, company_id: int, driver_id: int) -> Optional[GeofenceEvent]: ...

    # ---------------- settings ----------------
    @abc.abstractmethod
    async def get_company_settings(self, company_id: int) -> Optional[CompanySettings]: ...


DriverKey = Tuple[int, int]


class MemoryStore(Store):
    """Dict-backed store. Records are copied in and out so callers never share state."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.pings: Dict[DriverKey, List[LocationPing]] = {}
        self.containment: Dict[DriverKey, ContainmentState] = {}
        self.alerts: Dict[int, StagnationAlert] = {}
        self.timesheets: Dict[int, Timesheet] = {}
        self.geofences: Dict[int, Geofence] = {}
        self.events: Dict[DriverKey, List[GeofenceEvent]] = {}
        self.settings: Dict[int, CompanySettings] = {}

    def _next_id(self) -> int:
        return next(self._ids)

    async def insert_ping(self, ping):
        stored = copy.copy(ping)
        stored.id = self._next_id()
        if stored.received_at is None:
            stored.received_at = dt.datetime.now(UTC)
        self.pings.setdefault((ping.company_id, ping.driver_id), []).append(stored)
        return copy.copy(stored)

    async def get_recent_pings(self, company_id, driver_id, since, until=None):
        rows = [
            p for p in self.pings.get((company_id, driver_id), [])
            if p.timestamp >= since and (until is None or p.timestamp <= until)
        ]
        rows.sort(key=lambda p: (p.timestamp, p.id))
        return [copy.copy(p) for p in rows]

    async def get_latest_pings(self, company_id):
        latest = []
        for (cid, _), rows in self.pings.items():
            if cid == company_id and rows:
                latest.append(copy.copy(max(rows, key=lambda p: (p.timestamp, p.id))))
        latest.sort(key=lambda p: p.driver_id)
        return latest

    async def get_containment_state(self, company_id, driver_id):
        state = self.containment.get((company_id, driver_id))
        return copy.copy(state) if state else None

    async def set_containment_state(self, state):
        self.containment[(state.company_id, state.driver_id)] = copy.copy(state)

    async def get_active_alert(self, company_id, driver_id):
        for a in self.alerts.values():
            if (a.company_id, a.driver_id) == (company_id, driver_id) and a.status == AlertStatus.ACTIVE:
                return copy.copy(a)
        return None

    async def create_alert(self, alert):
        stored = copy.copy(alert)
        stored.id = self._next_id()
        self.alerts[stored.id] = stored
        return copy.copy(stored)

    async def update_alert(self, alert):
        self.alerts[alert.id] = copy.copy(alert)
        return copy.copy(alert)

    async def get_alert(self, company_id, alert_id):
        a = self.alerts.get(alert_id)
        return copy.copy(a) if a and a.company_id == company_id else None

    async def list_alerts(self, company_id, status=None):
        rows = [
            copy.copy(a) for a in self.alerts.values()
            if a.company_id == company_id and (status is None or a.status == status)
        ]
        rows.sort(key=lambda a: a.started_at, reverse=True)
        return rows

    async def dismiss_active_alerts(self, company_id, at):
        count = 0
        for a in self.alerts.values():
            if a.company_id == company_id and a.status == AlertStatus.ACTIVE:
                a.status = AlertStatus.DISMISSED
                a.updated_at = at
                count += 1
        return count

    async def get_active_timesheet(self, company_id, driver_id):
        for t in self.timesheets.values():
            if (t.company_id, t.driver_id) == (company_id, driver_id) and t.status == TimesheetStatus.ACTIVE:
                return copy.copy(t)
        return None

    async def create_timesheet(self, timesheet):
        stored = copy.copy(timesheet)
        stored.id = self._next_id()
        self.timesheets[stored.id] = stored
        return copy.copy(stored)

    async def close_timesheet(self, timesheet):
        self.timesheets[timesheet.id] = copy.copy(timesheet)
        return copy.copy(timesheet)

    async def list_timesheets(self, company_id, driver_id=None):
        rows = [
            copy.copy(t) for t in self.timesheets.values()
            if t.company_id == company_id and (driver_id is None or t.driver_id == driver_id)
        ]
        rows.sort(key=lambda t: t.arrival_time, reverse=True)
        return rows

    async def list_active_geofences(self, company_id):
        return [f for f in await self.list_geofences(company_id) if f.is_active]

    async def list_geofences(self, company_id):
        rows = [copy.copy(f) for f in self.geofences.values() if f.company_id == company_id]
        rows.sort(key=lambda f: f.id)
        return rows

    async def find_containing_geofences(self, company_id, latitude, longitude):
        point = (latitude, longitude)
        return [f for f in await self.list_active_geofences(company_id) if is_within_geofence(point, f)]

    async def get_geofence(self, company_id, geofence_id):
        f = self.geofences.get(geofence_id)
        return copy.copy(f) if f and f.company_id == company_id else None

    async def create_geofence(self, fence):
        stored = copy.copy(fence)
        stored.id = self._next_id()
        now = dt.datetime.now(UTC)
        stored.created_at = stored.created_at or now
        stored.updated_at = now
        self.geofences[stored.id] = stored
        return copy.copy(stored)

    async def update_geofence(self, fence):
        stored = copy.copy(fence)
        stored.updated_at = dt.datetime.now(UTC)
        self.geofences[stored.id] = stored
        return copy.copy(stored)

    async def delete_geofence(self, company_id, geofence_id):
        f = self.geofences.get(geofence_id)
        if not f or f.company_id != company_id:
            return False
        del self.geofences[geofence_id]
        return True

    async def record_geofence_event(self, event):
        stored = copy.copy(event)
        stored.id = self._next_id()
        self.events.setdefault((event.company_id, event.driver_id), []).append(stored)
        return copy.copy(stored)

    async def get_last_geofence_event(self, company_id, driver_id):
        rows = self.events.get((company_id, driver_id))
        return copy.copy(rows[-1]) if rows else None

    async def get_company_settings(self, company_id):
        s = self.settings.get(company_id)
        return copy.copy(s) if s else None

    def put_company_settings(self, settings: CompanySettings) -> None:
        self.settings[settings.company_id] = copy.copy(settings)
