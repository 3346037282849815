from geoalchemy2 import Geography
from sqlalchemy import (BigInteger, Boolean, Column, Integer, Numeric, Text, DateTime, Index, text)
from sqlalchemy.sql import func

from shift_guardian.database import Base


class LocationPingRow(Base):
    __tablename__ = "driver_locations"
    id          = Column(BigInteger, primary_key=True, index=True)
    company_id  = Column(Integer, nullable=False)
    driver_id   = Column(Integer, nullable=False)
    latitude    = Column(Numeric, nullable=False)
    longitude   = Column(Numeric, nullable=False)
    speed       = Column(Integer, nullable=False, default=0)
    heading     = Column(Integer)
    accuracy    = Column(Integer)
    timestamp   = Column(DateTime(timezone=True), nullable=False)   # device time
    received_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_driver_locations_driver_ts", "company_id", "driver_id", "timestamp"),
    )


class GeofenceRow(Base):
    __tablename__ = "geofences"
    id            = Column(Integer, primary_key=True, index=True)
    company_id    = Column(Integer, index=True, nullable=False)
    name          = Column(Text, nullable=False)
    latitude      = Column(Numeric, nullable=False)
    longitude     = Column(Numeric, nullable=False)
    radius_meters = Column(Integer, nullable=False, default=250)
    geom          = Column(Geography("POINT", 4326), nullable=False)   # center, GIST-indexed
    is_active     = Column(Boolean, nullable=False, default=True)
    is_depot      = Column(Boolean, nullable=False, default=True)   # False: customer zone, no clock-in/out
    created_at    = Column(DateTime(timezone=True), server_default=func.now())
    updated_at    = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class TimesheetRow(Base):
    __tablename__ = "timesheets"
    id                  = Column(BigInteger, primary_key=True, index=True)
    company_id          = Column(Integer, nullable=False)
    driver_id           = Column(Integer, nullable=False)
    depot_name          = Column(Text, nullable=False)
    status              = Column(Text, nullable=False, default="ACTIVE")   # ACTIVE / CLOSED
    source              = Column(Text, nullable=False, default="GEOFENCE") # GEOFENCE / MANUAL
    arrival_time        = Column(DateTime(timezone=True), nullable=False)
    arrival_latitude    = Column(Numeric)
    arrival_longitude   = Column(Numeric)
    departure_time      = Column(DateTime(timezone=True))
    departure_latitude  = Column(Numeric)
    departure_longitude = Column(Numeric)
    total_minutes       = Column(Integer)   # computed at clock-out

    __table_args__ = (
        # one open shift per driver
        Index(
            "uq_timesheets_one_active", "company_id", "driver_id",
            unique=True, postgresql_where=text("status = 'ACTIVE'"),
        ),
    )


class StagnationAlertRow(Base):
    __tablename__ = "stagnation_alerts"
    id               = Column(BigInteger, primary_key=True, index=True)
    company_id       = Column(Integer, nullable=False)
    driver_id        = Column(Integer, nullable=False)
    status           = Column(Text, nullable=False, default="ACTIVE")  # ACTIVE / ACKNOWLEDGED / DISMISSED
    started_at       = Column(DateTime(timezone=True), nullable=False)
    latitude         = Column(Numeric)
    longitude        = Column(Numeric)
    last_ping_at     = Column(DateTime(timezone=True))
    duration_minutes = Column(Integer, default=0)
    notified         = Column(Boolean, default=False)
    acknowledged_by  = Column(Integer)
    acknowledged_at  = Column(DateTime(timezone=True))
    resolution_notes = Column(Text)
    updated_at       = Column(DateTime(timezone=True))

    __table_args__ = (
        Index(
            "uq_stagnation_alerts_one_active", "company_id", "driver_id",
            unique=True, postgresql_where=text("status = 'ACTIVE'"),
        ),
        Index("ix_stagnation_alerts_company_status", "company_id", "status"),
    )


class DriverContainmentRow(Base):
    __tablename__ = "driver_containment"
    company_id    = Column(Integer, primary_key=True)
    driver_id     = Column(Integer, primary_key=True)
    geofence_id   = Column(Integer)          # NULL when outside every fence
    geofence_name = Column(Text)
    is_depot      = Column(Boolean, default=False)
    updated_at    = Column(DateTime(timezone=True))


class GeofenceEventRow(Base):
    __tablename__ = "geofence_events"
    id            = Column(BigInteger, primary_key=True, index=True)
    company_id    = Column(Integer, nullable=False)
    driver_id     = Column(Integer, nullable=False)
    geofence_id   = Column(Integer)
    geofence_name = Column(Text)
    kind          = Column(Text, nullable=False)   # ENTER / EXIT
    occurred_at   = Column(DateTime(timezone=True), nullable=False)
    latitude      = Column(Numeric)
    longitude     = Column(Numeric)

    __table_args__ = (
        Index("ix_geofence_events_driver", "company_id", "driver_id", "id"),
    )


class CompanySettingsRow(Base):
    __tablename__ = "company_settings"
    company_id                      = Column(Integer, primary_key=True)
    stagnation_window_minutes       = Column(Integer)
    stagnation_speed_threshold      = Column(Numeric)
    stagnation_movement_tolerance_m = Column(Numeric)
    default_radius_meters           = Column(Integer)
