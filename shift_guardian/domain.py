"""
Plain records passed between the engine components and the stores.

The SQL store maps these onto the ORM tables in models.py; the in-memory
store keeps them as-is.
"""
import datetime as dt
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TimesheetStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class TimesheetSource(str, Enum):
    GEOFENCE = "GEOFENCE"
    MANUAL = "MANUAL"


class AlertStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    DISMISSED = "DISMISSED"


class TransitionKind(str, Enum):
    ENTER = "ENTER"
    EXIT = "EXIT"


@dataclass
class LocationPing:
    driver_id: int
    company_id: int
    latitude: float
    longitude: float
    speed: int
    timestamp: dt.datetime
    heading: Optional[int] = None
    accuracy: Optional[int] = None
    id: Optional[int] = None
    received_at: Optional[dt.datetime] = None


@dataclass
class Geofence:
    company_id: int
    name: str
    latitude: float
    longitude: float
    radius_meters: int
    is_active: bool = True
    is_depot: bool = True
    id: Optional[int] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None


@dataclass
class Timesheet:
    driver_id: int
    company_id: int
    depot_name: str
    arrival_time: dt.datetime
    status: TimesheetStatus = TimesheetStatus.ACTIVE
    source: TimesheetSource = TimesheetSource.GEOFENCE
    arrival_latitude: Optional[float] = None
    arrival_longitude: Optional[float] = None
    departure_time: Optional[dt.datetime] = None
    departure_latitude: Optional[float] = None
    departure_longitude: Optional[float] = None
    total_minutes: Optional[int] = None
    id: Optional[int] = None


@dataclass
class StagnationAlert:
    driver_id: int
    company_id: int
    started_at: dt.datetime
    latitude: float
    longitude: float
    status: AlertStatus = AlertStatus.ACTIVE
    last_ping_at: Optional[dt.datetime] = None
    duration_minutes: int = 0
    notified: bool = False
    acknowledged_by: Optional[int] = None
    acknowledged_at: Optional[dt.datetime] = None
    resolution_notes: Optional[str] = None
    updated_at: Optional[dt.datetime] = None
    id: Optional[int] = None


@dataclass
class ContainmentState:
    """Last fence a driver was known to be inside (geofence_id None = outside all)."""
    company_id: int
    driver_id: int
    geofence_id: Optional[int] = None
    geofence_name: Optional[str] = None
    is_depot: bool = False
    updated_at: Optional[dt.datetime] = None


@dataclass
class GeofenceTransition:
    kind: TransitionKind
    geofence_id: Optional[int]
    geofence_name: str
    is_depot: bool
    ping: LocationPing


@dataclass
class GeofenceEvent:
    company_id: int
    driver_id: int
    geofence_id: Optional[int]
    geofence_name: str
    kind: TransitionKind
    occurred_at: dt.datetime
    latitude: float
    longitude: float
    id: Optional[int] = None


@dataclass
class CompanySettings:
    company_id: int
    stagnation_window_minutes: Optional[int] = None
    stagnation_speed_threshold: Optional[float] = None
    stagnation_movement_tolerance_m: Optional[float] = None
    default_radius_meters: Optional[int] = None


@dataclass
class BatchItemResult:
    success: bool
    ping: Optional[LocationPing] = None
    error: Optional[str] = None


@dataclass
class DriverLocation:
    """Latest known position of a driver, for the manager dashboard."""
    ping: LocationPing
    is_stagnant: bool = False
    geofence_name: Optional[str] = None
