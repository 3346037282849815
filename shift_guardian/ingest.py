# shift_guardian/ingest.py
"""
Location ingest: the single entry point for GPS pings.

submit_ping        – validate, persist, then (under the driver's lock) run the
                     stagnation detector and geofence matcher together and
                     feed geofence transitions to the timesheet state machine.
submit_ping_batch  – best-effort catch-up for offline queues; per-item
                     results, each driver's pings evaluated in timestamp order.
"""

import asyncio
import dataclasses
import datetime as dt
import math
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from shift_guardian.alerts import AlertEmitter
from shift_guardian.config import EngineSettings
from shift_guardian.domain import BatchItemResult, DriverLocation, Geofence, LocationPing
from shift_guardian.errors import InvalidCoordinate, NotFoundError, ShiftGuardianError, ValidationError
from shift_guardian.geo import check_coordinate
from shift_guardian.geofencing import GeofenceMatcher
from shift_guardian.locks import KeyedLock
from shift_guardian.logging_config import get_logger
from shift_guardian.notifier import LogNotifier, Notifier
from shift_guardian.payloads import ping_from_payload
from shift_guardian.stagnation import StagnationDetector
from shift_guardian.store import Store
from shift_guardian.timesheets import TimesheetStateMachine

logger = get_logger("ingest", "ingest.log")

UTC = dt.timezone.utc


class LocationEngine:

    def __init__(self, store: Store, notifier: Optional[Notifier] = None,
                 settings: Optional[EngineSettings] = None,
                 clock: Optional[Callable[[], dt.datetime]] = None):
        self.store = store
        self.settings = settings or EngineSettings()
        self.clock = clock or (lambda: dt.datetime.now(UTC))
        self.locks = KeyedLock()

        self.emitter = AlertEmitter(store, notifier or LogNotifier(),
                                    notify_timeout=self.settings.notify_timeout, clock=self.clock)
        self.stagnation = StagnationDetector(store, self.emitter)
        self.geofences = GeofenceMatcher(store)
        self.timesheets = TimesheetStateMachine(store, self.locks, clock=self.clock)

    async def settings_for(self, company_id: int) -> EngineSettings:
        return self.settings.with_overrides(await self.store.get_company_settings(company_id))

    # =====================================================================
    # Validation
    # =====================================================================
    def validate_ping(self, ping: LocationPing, now: dt.datetime) -> LocationPing:
        """Return a normalised copy of the ping or raise ValidationError."""
        try:
            lat, lon = check_coordinate(ping.latitude, ping.longitude)
        except InvalidCoordinate as e:
            raise ValidationError(str(e)) from e

        for name in ("driver_id", "company_id"):
            value = getattr(ping, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValidationError(f"{name} must be a positive integer, got {value!r}")

        speed = ping.speed if ping.speed is not None else 0
        if isinstance(speed, bool) or not isinstance(speed, (int, float)) or not math.isfinite(speed):
            raise ValidationError(f"speed must be numeric, got {speed!r}")
        if speed < 0:
            raise ValidationError(f"speed must be >= 0, got {speed}")

        for name in ("heading", "accuracy"):
            value = getattr(ping, name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ValidationError(f"{name} must be numeric, got {value!r}")

        if ping.heading is not None and not 0 <= ping.heading <= 359:
            raise ValidationError(f"heading must be within 0-359, got {ping.heading}")
        if ping.accuracy is not None and ping.accuracy < 0:
            raise ValidationError(f"accuracy must be >= 0, got {ping.accuracy}")

        ts = ping.timestamp
        if not isinstance(ts, dt.datetime):
            raise ValidationError(f"timestamp must be a datetime, got {ts!r}")
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=UTC)
        if ts > now + self.settings.max_future_skew:
            raise ValidationError(f"timestamp {ts.isoformat()} is too far in the future")
        if ts < now - self.settings.max_past_window:
            raise ValidationError(f"timestamp {ts.isoformat()} is older than the accepted window")

        return dataclasses.replace(
            ping,
            latitude=lat,
            longitude=lon,
            speed=int(round(speed)),
            timestamp=ts.astimezone(UTC),
            received_at=now,
            id=None,
        )

    # =====================================================================
    # Single ping
    # =====================================================================
    async def submit_ping(self, ping: LocationPing) -> LocationPing:
        ping = self.validate_ping(ping, self.clock())
        return await self._process(ping)

    async def _process(self, ping: LocationPing) -> LocationPing:
        key = (ping.company_id, ping.driver_id)
        async with self.locks.hold(key):
            settings = await self.settings_for(ping.company_id)
            stored = await self.store.insert_ping(ping)
            logger.info(
                f"[ingest] Saved ping id={stored.id} company={stored.company_id} "
                f"driver={stored.driver_id} ts={stored.timestamp} speed={stored.speed}"
            )

            alert_result, containment = await asyncio.gather(
                self.stagnation.evaluate(stored, settings),
                self.geofences.evaluate(stored),
                return_exceptions=True,
            )
            for outcome in (alert_result, containment):
                if isinstance(outcome, BaseException):
                    raise outcome

            transitions, state = containment
            for transition in transitions:
                await self.emitter.emit_transition(transition)
                await self.timesheets.apply(transition)

            # baseline moves only once every transition has landed, so a retry
            # after a failed write sees the same transitions again
            await self.store.set_containment_state(state)

        return stored

    # =====================================================================
    # Batch (offline queue flush)
    # =====================================================================
    async def submit_ping_batch(
        self, items: Iterable[Union[LocationPing, dict]]
    ) -> List[BatchItemResult]:
        items = list(items)
        now = self.clock()
        results: List[Optional[BatchItemResult]] = [None] * len(items)
        groups: Dict[Tuple[int, int], List[Tuple[int, LocationPing]]] = {}

        for idx, item in enumerate(items):
            try:
                ping = item if isinstance(item, LocationPing) else ping_from_payload(item)
                ping = self.validate_ping(ping, now)
            except ValidationError as e:
                results[idx] = BatchItemResult(success=False, error=str(e))
                continue
            except Exception as e:
                logger.exception(f"[ingest] Batch item {idx} could not be read")
                results[idx] = BatchItemResult(success=False, error=str(e) or type(e).__name__)
                continue
            groups.setdefault((ping.company_id, ping.driver_id), []).append((idx, ping))

        async def run_group(group: List[Tuple[int, LocationPing]]):
            # causal order for this driver, wire order kept on equal timestamps
            group.sort(key=lambda pair: pair[1].timestamp)
            for idx, ping in group:
                try:
                    results[idx] = BatchItemResult(success=True, ping=await self._process(ping))
                except ShiftGuardianError as e:
                    results[idx] = BatchItemResult(success=False, error=str(e))
                except Exception as e:
                    logger.exception(
                        f"[ingest] Batch item {idx} failed for company={ping.company_id} driver={ping.driver_id}"
                    )
                    results[idx] = BatchItemResult(success=False, error=str(e) or type(e).__name__)

        await asyncio.gather(*(run_group(g) for g in groups.values()))

        failed = sum(1 for r in results if not r.success)
        logger.info(f"[ingest] Batch processed={len(results)} failed={failed} drivers={len(groups)}")
        return results

    # =====================================================================
    # Dashboard
    # =====================================================================
    async def latest_locations(self, company_id: int) -> List[DriverLocation]:
        locations = []
        for ping in await self.store.get_latest_pings(company_id):
            alert = await self.store.get_active_alert(company_id, ping.driver_id)
            state = await self.store.get_containment_state(company_id, ping.driver_id)
            locations.append(DriverLocation(
                ping=ping,
                is_stagnant=alert is not None,
                geofence_name=state.geofence_name if state else None,
            ))
        return locations

    # =====================================================================
    # Geofence administration
    # =====================================================================
    async def _check_fence(self, fence: Geofence) -> Geofence:
        try:
            lat, lon = check_coordinate(fence.latitude, fence.longitude)
        except InvalidCoordinate as e:
            raise ValidationError(str(e)) from e
        if fence.radius_meters is None:
            fence.radius_meters = (await self.settings_for(fence.company_id)).default_radius_m
        if fence.radius_meters <= 0:
            raise ValidationError(f"radiusMeters must be > 0, got {fence.radius_meters}")
        fence.latitude, fence.longitude = lat, lon
        return fence

    async def create_geofence(self, fence: Geofence) -> Geofence:
        fence = await self.store.create_geofence(await self._check_fence(fence))
        logger.info(
            f"[geofence] Created fence id={fence.id} company={fence.company_id} name={fence.name} "
            f"r={fence.radius_meters}m depot={fence.is_depot}"
        )
        return fence

    async def list_geofences(self, company_id: int, active_only: bool = False) -> List[Geofence]:
        if active_only:
            return await self.store.list_active_geofences(company_id)
        return await self.store.list_geofences(company_id)

    async def update_geofence(self, company_id: int, geofence_id: int, changes: dict) -> Geofence:
        fence = await self.store.get_geofence(company_id, geofence_id)
        if fence is None:
            raise NotFoundError(f"geofence {geofence_id} not found")
        fence = dataclasses.replace(fence, **changes)
        fence = await self.store.update_geofence(await self._check_fence(fence))
        logger.info(f"[geofence] Updated fence id={geofence_id} company={company_id} fields={sorted(changes)}")
        return fence

    async def delete_geofence(self, company_id: int, geofence_id: int) -> None:
        if not await self.store.delete_geofence(company_id, geofence_id):
            raise NotFoundError(f"geofence {geofence_id} not found")
        logger.info(f"[geofence] Deleted fence id={geofence_id} company={company_id}")
