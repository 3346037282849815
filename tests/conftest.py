import os
import tempfile

os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "shift_guardian_test_logs"))

import asyncio
import datetime as dt

import pytest

from shift_guardian.config import EngineSettings
from shift_guardian.domain import Geofence, LocationPing
from shift_guardian.ingest import LocationEngine
from shift_guardian.notifier import Notifier
from shift_guardian.store import MemoryStore

UTC = dt.timezone.utc

NOW = dt.datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
T0 = NOW - dt.timedelta(hours=2)

DEPOT_LAT = 51.5000
DEPOT_LON = -0.1000

# one degree of latitude in meters on the haversine sphere
METERS_PER_DEG_LAT = 6_371_000.0 * 3.141592653589793 / 180.0


def north_of(lat: float, meters: float) -> float:
    return lat + meters / METERS_PER_DEG_LAT


def at(minutes: float) -> dt.datetime:
    return T0 + dt.timedelta(minutes=minutes)


def make_ping(minutes: float = 0, meters_north: float = 0, speed: int = 0,
              driver_id: int = 1, company_id: int = 1,
              lat: float = DEPOT_LAT, lon: float = DEPOT_LON, **kw) -> LocationPing:
    return LocationPing(
        driver_id=driver_id,
        company_id=company_id,
        latitude=north_of(lat, meters_north),
        longitude=lon,
        speed=speed,
        timestamp=at(minutes),
        **kw,
    )


def run(coro):
    return asyncio.run(coro)


class RecordingNotifier(Notifier):

    def __init__(self):
        self.events = []
        self.fail = False

    async def notify(self, company_id, event, recipient_role="dispatcher"):
        if self.fail:
            raise ConnectionError("dispatcher unreachable")
        self.events.append((company_id, recipient_role, event))

    def types(self):
        return [e["type"] for _, _, e in self.events]


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(store, notifier):
    return LocationEngine(store, notifier, settings=EngineSettings(), clock=lambda: NOW)


@pytest.fixture
def depot(engine):
    """250 m depot fence at (DEPOT_LAT, DEPOT_LON) for company 1."""
    return run(engine.create_geofence(Geofence(
        company_id=1, name="North Depot", latitude=DEPOT_LAT, longitude=DEPOT_LON,
        radius_meters=250,
    )))
