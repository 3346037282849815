# shift_guardian/alerts.py
import asyncio
import datetime as dt
from typing import Callable, List, Optional

from shift_guardian.domain import (
    AlertStatus,
    GeofenceEvent,
    GeofenceTransition,
    LocationPing,
    StagnationAlert,
)
from shift_guardian.errors import AlertNotActiveError, NotFoundError
from shift_guardian.logging_config import get_logger
from shift_guardian.notifier import Notifier
from shift_guardian.store import Store

logger = get_logger("alerts", "alerts.log")

UTC = dt.timezone.utc


def _minutes_between(start: dt.datetime, end: dt.datetime) -> int:
    return max(int((end - start).total_seconds() // 60), 0)


class AlertEmitter:
    """
    Persists stagnation alerts and geofence events and tells the dispatcher
    about them. A failed notification never undoes the persisted record.
    """

    def __init__(self, store: Store, notifier: Notifier, notify_timeout: float = 5.0,
                 clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(UTC)):
        self.store = store
        self.notifier = notifier
        self.notify_timeout = notify_timeout
        self.clock = clock

    async def _notify(self, company_id: int, event: dict) -> bool:
        try:
            await asyncio.wait_for(
                self.notifier.notify(company_id, event, recipient_role="dispatcher"),
                timeout=self.notify_timeout,
            )
            return True
        except Exception:
            logger.exception(f"[notify] failed to deliver {event.get('type')} for company={company_id}")
            return False

    # =====================================================================
    # Stagnation alerts
    # =====================================================================
    async def raise_stagnation(self, run_start: LocationPing, latest: LocationPing) -> StagnationAlert:
        """
        Create the ACTIVE alert for a newly detected stop. The location is
        stored once, from the first ping of the stagnant run.
        """
        alert = StagnationAlert(
            driver_id=latest.driver_id,
            company_id=latest.company_id,
            started_at=run_start.timestamp,
            latitude=run_start.latitude,
            longitude=run_start.longitude,
            last_ping_at=latest.timestamp,
            duration_minutes=_minutes_between(run_start.timestamp, latest.timestamp),
            updated_at=self.clock(),
        )
        alert = await self.store.create_alert(alert)
        logger.info(
            f"[alert] New stagnation alert id={alert.id} company={alert.company_id} "
            f"driver={alert.driver_id} started_at={alert.started_at}"
        )

        if await self._notify(alert.company_id, self._alert_event(alert)):
            alert.notified = True
            alert = await self.store.update_alert(alert)
        return alert

    async def refresh_stagnation(self, alert: StagnationAlert, latest: LocationPing) -> StagnationAlert:
        # started_at and the stop location stay as they were
        if alert.last_ping_at is None or latest.timestamp > alert.last_ping_at:
            alert.last_ping_at = latest.timestamp
            alert.duration_minutes = _minutes_between(alert.started_at, latest.timestamp)
        alert.updated_at = self.clock()

        # Only send alert once
        if not alert.notified and await self._notify(alert.company_id, self._alert_event(alert)):
            alert.notified = True

        return await self.store.update_alert(alert)

    @staticmethod
    def _alert_event(alert: StagnationAlert) -> dict:
        return {
            "type": "stagnation_alert",
            "alert_id": alert.id,
            "driver_id": alert.driver_id,
            "started_at": alert.started_at.isoformat(),
            "latitude": alert.latitude,
            "longitude": alert.longitude,
            "duration_minutes": alert.duration_minutes,
        }

    # =====================================================================
    # Geofence transitions
    # =====================================================================
    async def emit_transition(self, transition: GeofenceTransition) -> Optional[GeofenceEvent]:
        ping = transition.ping
        last = await self.store.get_last_geofence_event(ping.company_id, ping.driver_id)
        if (
            last is not None
            and last.kind == transition.kind
            and last.geofence_id == transition.geofence_id
            and last.occurred_at == ping.timestamp
        ):
            logger.info(
                f"[geofence] Duplicate {transition.kind.value} for driver={ping.driver_id} "
                f"fence={transition.geofence_name} at {ping.timestamp}; skipped"
            )
            return None

        event = await self.store.record_geofence_event(GeofenceEvent(
            company_id=ping.company_id,
            driver_id=ping.driver_id,
            geofence_id=transition.geofence_id,
            geofence_name=transition.geofence_name,
            kind=transition.kind,
            occurred_at=ping.timestamp,
            latitude=ping.latitude,
            longitude=ping.longitude,
        ))

        await self._notify(ping.company_id, {
            "type": f"geofence_{transition.kind.value.lower()}",
            "driver_id": ping.driver_id,
            "geofence_id": transition.geofence_id,
            "geofence_name": transition.geofence_name,
            "is_depot": transition.is_depot,
            "occurred_at": ping.timestamp.isoformat(),
        })
        return event

    # =====================================================================
    # Operator actions
    # =====================================================================
    async def list_alerts(self, company_id: int, status: Optional[AlertStatus] = None) -> List[StagnationAlert]:
        return await self.store.list_alerts(company_id, status)

    async def acknowledge(self, company_id: int, alert_id: int,
                          by: Optional[int] = None, notes: Optional[str] = None) -> StagnationAlert:
        return await self._resolve(company_id, alert_id, AlertStatus.ACKNOWLEDGED, by, notes)

    async def dismiss(self, company_id: int, alert_id: int,
                      by: Optional[int] = None, notes: Optional[str] = None) -> StagnationAlert:
        return await self._resolve(company_id, alert_id, AlertStatus.DISMISSED, by, notes)

    async def _resolve(self, company_id, alert_id, status, by, notes):
        alert = await self.store.get_alert(company_id, alert_id)
        if alert is None:
            raise NotFoundError(f"stagnation alert {alert_id} not found")

        # an acknowledged alert can still be dismissed, nothing else moves
        allowed = {AlertStatus.ACTIVE}
        if status == AlertStatus.DISMISSED:
            allowed.add(AlertStatus.ACKNOWLEDGED)
        if alert.status not in allowed:
            raise AlertNotActiveError(f"alert {alert_id} is {alert.status.value}")

        now = self.clock()
        alert.status = status
        alert.acknowledged_by = by
        alert.acknowledged_at = now
        alert.resolution_notes = notes
        alert.updated_at = now
        alert = await self.store.update_alert(alert)

        logger.info(f"[alert] Alert {alert_id} {status.value.lower()} by={by}, notes={notes}")
        return alert

    async def dismiss_all(self, company_id: int) -> int:
        count = await self.store.dismiss_active_alerts(company_id, self.clock())
        logger.info(f"[alert] Bulk-dismissed {count} active alerts for company={company_id}")
        return count
