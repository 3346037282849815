# shift_guardian/sql_store.py
"""
PostgreSQL implementation of the Store interface.

Every call runs in its own session, is bounded by PERSISTENCE_TIMEOUT_SECONDS
and is retried on transient connection errors. Whatever still fails is
raised as PersistenceError so the engine fails only the ping at hand.
"""
import asyncio
import functools
from typing import Optional

import asyncpg
from sqlalchemy import select, update, delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from tenacity import (
    retry,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from shift_guardian.config import DB_RETRY_ATTEMPTS, PERSISTENCE_TIMEOUT_SECONDS
from shift_guardian.database import AsyncSessionLocal
from shift_guardian.domain import (
    AlertStatus,
    CompanySettings,
    ContainmentState,
    Geofence,
    GeofenceEvent,
    LocationPing,
    StagnationAlert,
    Timesheet,
    TimesheetSource,
    TimesheetStatus,
    TransitionKind,
)
from shift_guardian.errors import PersistenceError
from shift_guardian.geozones import center_point, geofence_ids_at
from shift_guardian.logging_config import get_logger
from shift_guardian.models import (
    CompanySettingsRow,
    DriverContainmentRow,
    GeofenceEventRow,
    GeofenceRow,
    LocationPingRow,
    StagnationAlertRow,
    TimesheetRow,
)
from shift_guardian.store import Store

logger = get_logger("store", "store.log")

TRANSIENT_ERRORS = (DBAPIError, OperationalError, OSError, asyncpg.CannotConnectNowError, asyncio.TimeoutError)


def _f(v) -> Optional[float]:
    return float(v) if v is not None else None


def db_call(fn):
    """Timeout + retry wrapper for SqlStore methods."""

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):

        @retry(
            wait=wait_exponential_jitter(initial=0.2, max=2),
            stop=stop_after_attempt(DB_RETRY_ATTEMPTS),
            retry=retry_if_exception_type(TRANSIENT_ERRORS) & retry_if_not_exception_type(IntegrityError),
            reraise=True,
        )
        async def attempt():
            return await asyncio.wait_for(fn(self, *args, **kwargs), timeout=self.timeout)

        try:
            return await attempt()
        except (SQLAlchemyError, OSError, asyncpg.PostgresError, asyncio.TimeoutError) as e:
            logger.exception(f"[store] {fn.__name__} failed: {e}")
            raise PersistenceError(f"{fn.__name__} failed: {type(e).__name__}") from e

    return wrapper


# ---------- row -> record ----------
def _ping(r: LocationPingRow) -> LocationPing:
    return LocationPing(
        id=r.id, driver_id=r.driver_id, company_id=r.company_id,
        latitude=float(r.latitude), longitude=float(r.longitude),
        speed=r.speed, heading=r.heading, accuracy=r.accuracy,
        timestamp=r.timestamp, received_at=r.received_at,
    )


def _fence(r: GeofenceRow) -> Geofence:
    return Geofence(
        id=r.id, company_id=r.company_id, name=r.name,
        latitude=float(r.latitude), longitude=float(r.longitude),
        radius_meters=r.radius_meters, is_active=r.is_active, is_depot=r.is_depot,
        created_at=r.created_at, updated_at=r.updated_at,
    )


def _timesheet(r: TimesheetRow) -> Timesheet:
    return Timesheet(
        id=r.id, driver_id=r.driver_id, company_id=r.company_id, depot_name=r.depot_name,
        status=TimesheetStatus(r.status), source=TimesheetSource(r.source),
        arrival_time=r.arrival_time,
        arrival_latitude=_f(r.arrival_latitude), arrival_longitude=_f(r.arrival_longitude),
        departure_time=r.departure_time,
        departure_latitude=_f(r.departure_latitude), departure_longitude=_f(r.departure_longitude),
        total_minutes=r.total_minutes,
    )


def _alert(r: StagnationAlertRow) -> StagnationAlert:
    return StagnationAlert(
        id=r.id, driver_id=r.driver_id, company_id=r.company_id,
        status=AlertStatus(r.status), started_at=r.started_at,
        latitude=_f(r.latitude), longitude=_f(r.longitude),
        last_ping_at=r.last_ping_at, duration_minutes=r.duration_minutes or 0,
        notified=bool(r.notified), acknowledged_by=r.acknowledged_by,
        acknowledged_at=r.acknowledged_at, resolution_notes=r.resolution_notes,
        updated_at=r.updated_at,
    )


def _event(r: GeofenceEventRow) -> GeofenceEvent:
    return GeofenceEvent(
        id=r.id, company_id=r.company_id, driver_id=r.driver_id,
        geofence_id=r.geofence_id, geofence_name=r.geofence_name,
        kind=TransitionKind(r.kind), occurred_at=r.occurred_at,
        latitude=_f(r.latitude), longitude=_f(r.longitude),
    )


class SqlStore(Store):

    def __init__(self, session_factory=AsyncSessionLocal, timeout: float = PERSISTENCE_TIMEOUT_SECONDS):
        self.session_factory = session_factory
        self.timeout = timeout

    # ---------------- pings ----------------
    @db_call
    async def insert_ping(self, ping):
        async with self.session_factory() as db:
            row = LocationPingRow(
                company_id=ping.company_id, driver_id=ping.driver_id,
                latitude=ping.latitude, longitude=ping.longitude,
                speed=ping.speed, heading=ping.heading, accuracy=ping.accuracy,
                timestamp=ping.timestamp, received_at=ping.received_at,
            )
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return _ping(row)

    @db_call
    async def get_recent_pings(self, company_id, driver_id, since, until=None):
        q = select(LocationPingRow).where(
            LocationPingRow.company_id == company_id,
            LocationPingRow.driver_id == driver_id,
            LocationPingRow.timestamp >= since,
        )
        if until is not None:
            q = q.where(LocationPingRow.timestamp <= until)
        async with self.session_factory() as db:
            res = await db.execute(q.order_by(LocationPingRow.timestamp.asc(), LocationPingRow.id.asc()))
            return [_ping(r) for r in res.scalars().all()]

    @db_call
    async def get_latest_pings(self, company_id):
        q = (
            select(LocationPingRow)
            .where(LocationPingRow.company_id == company_id)
            .distinct(LocationPingRow.driver_id)
            .order_by(LocationPingRow.driver_id, LocationPingRow.timestamp.desc(), LocationPingRow.id.desc())
        )
        async with self.session_factory() as db:
            res = await db.execute(q)
            return [_ping(r) for r in res.scalars().all()]

    # ---------------- containment ----------------
    @db_call
    async def get_containment_state(self, company_id, driver_id):
        async with self.session_factory() as db:
            row = await db.get(DriverContainmentRow, (company_id, driver_id))
            if not row:
                return None
            return ContainmentState(
                company_id=row.company_id, driver_id=row.driver_id,
                geofence_id=row.geofence_id, geofence_name=row.geofence_name,
                is_depot=bool(row.is_depot), updated_at=row.updated_at,
            )

    @db_call
    async def set_containment_state(self, state):
        values = dict(
            geofence_id=state.geofence_id,
            geofence_name=state.geofence_name,
            is_depot=state.is_depot,
            updated_at=state.updated_at,
        )
        stmt = pg_insert(DriverContainmentRow).values(
            company_id=state.company_id, driver_id=state.driver_id, **values
        ).on_conflict_do_update(index_elements=["company_id", "driver_id"], set_=values)
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()

    # ---------------- stagnation alerts ----------------
    @db_call
    async def get_active_alert(self, company_id, driver_id):
        async with self.session_factory() as db:
            res = await db.execute(
                select(StagnationAlertRow)
                .where(
                    StagnationAlertRow.company_id == company_id,
                    StagnationAlertRow.driver_id == driver_id,
                    StagnationAlertRow.status == AlertStatus.ACTIVE.value,
                )
                .limit(1)
            )
            row = res.scalar_one_or_none()
            return _alert(row) if row else None

    @db_call
    async def create_alert(self, alert):
        async with self.session_factory() as db:
            row = StagnationAlertRow(
                company_id=alert.company_id, driver_id=alert.driver_id,
                status=alert.status.value, started_at=alert.started_at,
                latitude=alert.latitude, longitude=alert.longitude,
                last_ping_at=alert.last_ping_at, duration_minutes=alert.duration_minutes,
                notified=alert.notified, updated_at=alert.updated_at,
            )
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return _alert(row)

    @db_call
    async def update_alert(self, alert):
        async with self.session_factory() as db:
            row = await db.get(StagnationAlertRow, alert.id)
            if row is None or row.company_id != alert.company_id:
                raise PersistenceError(f"stagnation alert {alert.id} vanished")
            # started_at / location are write-once
            row.status = alert.status.value
            row.last_ping_at = alert.last_ping_at
            row.duration_minutes = alert.duration_minutes
            row.notified = alert.notified
            row.acknowledged_by = alert.acknowledged_by
            row.acknowledged_at = alert.acknowledged_at
            row.resolution_notes = alert.resolution_notes
            row.updated_at = alert.updated_at
            await db.commit()
            await db.refresh(row)
            return _alert(row)

    @db_call
    async def get_alert(self, company_id, alert_id):
        async with self.session_factory() as db:
            row = await db.get(StagnationAlertRow, alert_id)
            return _alert(row) if row and row.company_id == company_id else None

    @db_call
    async def list_alerts(self, company_id, status=None):
        q = select(StagnationAlertRow).where(StagnationAlertRow.company_id == company_id)
        if status is not None:
            q = q.where(StagnationAlertRow.status == AlertStatus(status).value)
        async with self.session_factory() as db:
            res = await db.execute(q.order_by(StagnationAlertRow.started_at.desc()))
            return [_alert(r) for r in res.scalars().all()]

    @db_call
    async def dismiss_active_alerts(self, company_id, at):
        async with self.session_factory() as db:
            res = await db.execute(
                update(StagnationAlertRow)
                .where(
                    StagnationAlertRow.company_id == company_id,
                    StagnationAlertRow.status == AlertStatus.ACTIVE.value,
                )
                .values(status=AlertStatus.DISMISSED.value, updated_at=at)
            )
            await db.commit()
            return res.rowcount or 0

    # ---------------- timesheets ----------------
    @db_call
    async def get_active_timesheet(self, company_id, driver_id):
        async with self.session_factory() as db:
            res = await db.execute(
                select(TimesheetRow)
                .where(
                    TimesheetRow.company_id == company_id,
                    TimesheetRow.driver_id == driver_id,
                    TimesheetRow.status == TimesheetStatus.ACTIVE.value,
                )
                .limit(1)
            )
            row = res.scalar_one_or_none()
            return _timesheet(row) if row else None

    @db_call
    async def create_timesheet(self, timesheet):
        async with self.session_factory() as db:
            row = TimesheetRow(
                company_id=timesheet.company_id, driver_id=timesheet.driver_id,
                depot_name=timesheet.depot_name, status=timesheet.status.value,
                source=timesheet.source.value, arrival_time=timesheet.arrival_time,
                arrival_latitude=timesheet.arrival_latitude,
                arrival_longitude=timesheet.arrival_longitude,
            )
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return _timesheet(row)

    @db_call
    async def close_timesheet(self, timesheet):
        async with self.session_factory() as db:
            row = await db.get(TimesheetRow, timesheet.id)
            if row is None or row.company_id != timesheet.company_id:
                raise PersistenceError(f"timesheet {timesheet.id} vanished")
            row.status = timesheet.status.value
            row.departure_time = timesheet.departure_time
            row.departure_latitude = timesheet.departure_latitude
            row.departure_longitude = timesheet.departure_longitude
            row.total_minutes = timesheet.total_minutes
            await db.commit()
            await db.refresh(row)
            return _timesheet(row)

    @db_call
    async def list_timesheets(self, company_id, driver_id=None):
        q = select(TimesheetRow).where(TimesheetRow.company_id == company_id)
        if driver_id is not None:
            q = q.where(TimesheetRow.driver_id == driver_id)
        async with self.session_factory() as db:
            res = await db.execute(q.order_by(TimesheetRow.arrival_time.desc()))
            return [_timesheet(r) for r in res.scalars().all()]

    # ---------------- geofences ----------------
    @db_call
    async def list_active_geofences(self, company_id):
        async with self.session_factory() as db:
            res = await db.execute(
                select(GeofenceRow)
                .where(GeofenceRow.company_id == company_id, GeofenceRow.is_active.is_(True))
                .order_by(GeofenceRow.id)
            )
            return [_fence(r) for r in res.scalars().all()]

    @db_call
    async def list_geofences(self, company_id):
        async with self.session_factory() as db:
            res = await db.execute(
                select(GeofenceRow).where(GeofenceRow.company_id == company_id).order_by(GeofenceRow.id)
            )
            return [_fence(r) for r in res.scalars().all()]

    @db_call
    async def find_containing_geofences(self, company_id, latitude, longitude):
        async with self.session_factory() as db:
            ids = await geofence_ids_at(db, company_id, latitude, longitude)
            if not ids:
                return []
            res = await db.execute(select(GeofenceRow).where(GeofenceRow.id.in_(ids)).order_by(GeofenceRow.id))
            return [_fence(r) for r in res.scalars().all()]

    @db_call
    async def get_geofence(self, company_id, geofence_id):
        async with self.session_factory() as db:
            row = await db.get(GeofenceRow, geofence_id)
            return _fence(row) if row and row.company_id == company_id else None

    @db_call
    async def create_geofence(self, fence):
        async with self.session_factory() as db:
            row = GeofenceRow(
                company_id=fence.company_id, name=fence.name,
                latitude=fence.latitude, longitude=fence.longitude,
                radius_meters=fence.radius_meters, is_active=fence.is_active, is_depot=fence.is_depot,
                geom=center_point(fence.latitude, fence.longitude),
            )
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return _fence(row)

    @db_call
    async def update_geofence(self, fence):
        async with self.session_factory() as db:
            row = await db.get(GeofenceRow, fence.id)
            if row is None or row.company_id != fence.company_id:
                raise PersistenceError(f"geofence {fence.id} vanished")
            row.name = fence.name
            row.latitude = fence.latitude
            row.longitude = fence.longitude
            row.geom = center_point(fence.latitude, fence.longitude)
            row.radius_meters = fence.radius_meters
            row.is_active = fence.is_active
            row.is_depot = fence.is_depot
            await db.commit()
            await db.refresh(row)
            return _fence(row)

    @db_call
    async def delete_geofence(self, company_id, geofence_id):
        async with self.session_factory() as db:
            res = await db.execute(
                delete(GeofenceRow).where(GeofenceRow.id == geofence_id, GeofenceRow.company_id == company_id)
            )
            await db.commit()
            return bool(res.rowcount)

    # ---------------- geofence events ----------------
    @db_call
    async def record_geofence_event(self, event):
        async with self.session_factory() as db:
            row = GeofenceEventRow(
                company_id=event.company_id, driver_id=event.driver_id,
                geofence_id=event.geofence_id, geofence_name=event.geofence_name,
                kind=event.kind.value, occurred_at=event.occurred_at,
                latitude=event.latitude, longitude=event.longitude,
            )
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return _event(row)

    @db_call
    async def get_last_geofence_event(self, company_id, driver_id):
        async with self.session_factory() as db:
            res = await db.execute(
                select(GeofenceEventRow)
                .where(GeofenceEventRow.company_id == company_id, GeofenceEventRow.driver_id == driver_id)
                .order_by(GeofenceEventRow.id.desc())
                .limit(1)
            )
            row = res.scalar_one_or_none()
            return _event(row) if row else None

    # ---------------- settings ----------------
    @db_call
    async def get_company_settings(self, company_id):
        async with self.session_factory() as db:
            row = await db.get(CompanySettingsRow, company_id)
            if not row:
                return None
            return CompanySettings(
                company_id=row.company_id,
                stagnation_window_minutes=row.stagnation_window_minutes,
                stagnation_speed_threshold=_f(row.stagnation_speed_threshold),
                stagnation_movement_tolerance_m=_f(row.stagnation_movement_tolerance_m),
                default_radius_meters=row.default_radius_meters,
            )
