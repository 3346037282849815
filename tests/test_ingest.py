import asyncio
import dataclasses
import datetime as dt

import pytest

from shift_guardian.domain import LocationPing, TimesheetStatus, TransitionKind
from shift_guardian.errors import PersistenceError, ValidationError
from shift_guardian.ingest import LocationEngine
from shift_guardian.payloads import ping_from_payload, to_dt
from shift_guardian.store import MemoryStore

from conftest import NOW, RecordingNotifier, at, make_ping, run

UTC = dt.timezone.utc


def _stored_pings(store, driver_id=1, company_id=1):
    return store.pings.get((company_id, driver_id), [])


# ---------------------------------------------------
#                    validation
# ---------------------------------------------------
def test_out_of_range_latitude_is_rejected_and_not_stored(engine, store):
    with pytest.raises(ValidationError):
        run(engine.submit_ping(make_ping(lat=200)))

    assert store.pings == {}
    assert store.alerts == {}
    assert store.events == {}


@pytest.mark.parametrize("changes", [
    {"timestamp": NOW + dt.timedelta(minutes=10)},
    {"timestamp": NOW - dt.timedelta(hours=25)},
    {"speed": -1},
    {"heading": 400},
    {"accuracy": -5},
    {"heading": "90"},
    {"accuracy": "5"},
    {"heading": float("nan")},
    {"driver_id": 0},
    {"company_id": -3},
    {"longitude": 190.0},
])
def test_invalid_pings_rejected(engine, store, changes):
    ping = dataclasses.replace(make_ping(), **changes)
    with pytest.raises(ValidationError):
        run(engine.submit_ping(ping))
    assert store.pings == {}


def test_small_clock_skew_is_accepted(engine, store):
    ping = dataclasses.replace(make_ping(), timestamp=NOW + dt.timedelta(seconds=60))
    run(engine.submit_ping(ping))
    assert len(_stored_pings(store)) == 1


def test_stored_ping_is_normalised(engine, store):
    naive = dt.datetime(2026, 3, 2, 11, 30)
    stored = run(engine.submit_ping(dataclasses.replace(make_ping(), timestamp=naive, heading=90)))

    assert stored.id is not None
    assert stored.received_at == NOW
    assert stored.timestamp == dt.datetime(2026, 3, 2, 11, 30, tzinfo=UTC)
    assert stored.heading == 90


# ---------------------------------------------------
#                    payload parsing
# ---------------------------------------------------
def test_ping_from_camel_case_payload():
    ping = ping_from_payload({
        "driverId": "7", "companyId": 3, "latitude": "51.5", "longitude": -0.1,
        "speed": 12.6, "heading": 181.2, "timestamp": "2026-03-02T11:00:00Z",
    })
    assert (ping.driver_id, ping.company_id) == (7, 3)
    assert ping.latitude == 51.5
    assert ping.speed == 13
    assert ping.heading == 181
    assert ping.accuracy is None
    assert ping.timestamp == dt.datetime(2026, 3, 2, 11, 0, tzinfo=UTC)


def test_ping_from_snake_case_payload_with_epoch_millis():
    millis = int(at(0).timestamp() * 1000)
    ping = ping_from_payload({
        "driver_id": 1, "company_id": 1, "latitude": 0, "longitude": 0, "timestamp": millis,
    })
    assert ping.timestamp == at(0)
    assert ping.speed == 0


def test_missing_timestamp_uses_default_only_when_given():
    payload = {"driverId": 1, "companyId": 1, "latitude": 0, "longitude": 0}
    assert ping_from_payload(payload, default_timestamp=NOW).timestamp == NOW
    with pytest.raises(ValidationError):
        ping_from_payload(payload)


@pytest.mark.parametrize("payload", [
    {"companyId": 1, "latitude": 0, "longitude": 0, "timestamp": "2026-03-02T11:00:00Z"},
    {"driverId": 1, "companyId": 1, "longitude": 0, "timestamp": "2026-03-02T11:00:00Z"},
    {"driverId": "x", "companyId": 1, "latitude": 0, "longitude": 0, "timestamp": "2026-03-02T11:00:00Z"},
    {"driverId": 1, "companyId": 1, "latitude": 0, "longitude": 0, "timestamp": "yesterday"},
    {"driverId": 1, "companyId": 1, "latitude": 0, "longitude": 0, "speed": "fast",
     "timestamp": "2026-03-02T11:00:00Z"},
    {"driverId": float("inf"), "companyId": 1, "latitude": 0, "longitude": 0,
     "timestamp": "2026-03-02T11:00:00Z"},
    {"driverId": 1, "companyId": 1, "latitude": 0, "longitude": 0, "timestamp": 1.7e15},
])
def test_malformed_payloads(payload):
    with pytest.raises(ValidationError):
        ping_from_payload(payload)


def test_to_dt_variants():
    assert to_dt("2026-03-02T11:00:00+01:00") == dt.datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
    assert to_dt(dt.datetime(2026, 3, 2, 10, 0)).tzinfo is not None
    assert to_dt(True) is None
    assert to_dt("not a date") is None
    # microsecond epochs and non-finite numbers are not timestamps
    assert to_dt(1.7e15) is None
    assert to_dt(float("inf")) is None
    assert to_dt(float("nan")) is None


# ---------------------------------------------------
#                    batches
# ---------------------------------------------------
def test_batch_reports_each_item_in_input_order(engine, store):
    items = [
        {"driverId": 1, "companyId": 1, "latitude": 51.5, "longitude": -0.1,
         "timestamp": at(0).isoformat()},
        {"driverId": 1, "companyId": 1, "latitude": 200, "longitude": -0.1,
         "timestamp": at(1).isoformat()},
        {"driverId": 2, "companyId": 1, "latitude": 51.5, "longitude": -0.1},
        make_ping(minutes=2, driver_id=2),
    ]
    results = run(engine.submit_ping_batch(items))

    assert [r.success for r in results] == [True, False, False, True]
    assert "timestamp" in results[2].error
    assert results[0].ping.id is not None
    assert results[3].ping.driver_id == 2
    assert len(_stored_pings(store, 1)) == 1
    assert len(_stored_pings(store, 2)) == 1


def test_empty_batch(engine):
    assert run(engine.submit_ping_batch([])) == []


def test_unreadable_batch_item_fails_alone(engine, store):
    valid = {"driverId": 1, "companyId": 1, "latitude": 51.5, "longitude": -0.1,
             "timestamp": at(0).isoformat()}

    results = run(engine.submit_ping_batch([valid, dict(valid, timestamp=1.7e15)]))
    assert [r.success for r in results] == [True, False]
    assert "timestamp" in results[1].error

    results = run(engine.submit_ping_batch([dict(valid, timestamp=at(1).isoformat()),
                                            dict(valid, driverId=float("inf"))]))
    assert [r.success for r in results] == [True, False]
    assert "driverId" in results[1].error
    assert len(_stored_pings(store)) == 2


def test_out_of_order_batch_replays_geofence_history(engine, store, depot):
    batch = [
        make_ping(minutes=3, meters_north=500),
        make_ping(minutes=1, meters_north=20),
        make_ping(minutes=2, meters_north=30),
    ]
    results = run(engine.submit_ping_batch(batch))
    assert all(r.success for r in results)

    events = [(e.kind, e.occurred_at) for e in store.events[(1, 1)]]
    assert events == [(TransitionKind.ENTER, at(1)), (TransitionKind.EXIT, at(3))]

    [sheet] = run(store.list_timesheets(1, 1))
    assert sheet.status == TimesheetStatus.CLOSED
    assert sheet.arrival_time == at(1)
    assert sheet.departure_time == at(3)


class FlakyStore(MemoryStore):
    """Fails to persist pings whose speed is 99."""

    async def insert_ping(self, ping):
        if ping.speed == 99:
            raise PersistenceError("database unavailable")
        return await super().insert_ping(ping)


def test_store_failure_fails_only_that_item():
    store = FlakyStore()
    engine = LocationEngine(store, RecordingNotifier(), clock=lambda: NOW)
    results = run(engine.submit_ping_batch([
        make_ping(minutes=0),
        make_ping(minutes=1, speed=99),
        make_ping(minutes=2, driver_id=2),
    ]))

    assert [r.success for r in results] == [True, False, True]
    assert results[1].error == "database unavailable"


def test_store_failure_surfaces_on_single_submit():
    engine = LocationEngine(FlakyStore(), RecordingNotifier(), clock=lambda: NOW)
    with pytest.raises(PersistenceError):
        run(engine.submit_ping(make_ping(speed=99)))


# ---------------------------------------------------
#                    concurrency
# ---------------------------------------------------
class YieldingStore(MemoryStore):
    """Gives up the event loop inside every read so concurrent pings interleave."""

    async def get_recent_pings(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().get_recent_pings(*args, **kwargs)

    async def get_active_alert(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().get_active_alert(*args, **kwargs)

    async def get_active_timesheet(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().get_active_timesheet(*args, **kwargs)

    async def get_containment_state(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().get_containment_state(*args, **kwargs)


def test_concurrent_pings_for_one_driver_are_serialised(depot):
    store = YieldingStore()
    engine = LocationEngine(store, RecordingNotifier(), clock=lambda: NOW)
    run(engine.create_geofence(depot))

    async def go():
        # first lay down a 35 minute stop so every later ping would raise an alert
        for i in range(8):
            await engine.submit_ping(make_ping(minutes=5 * i, meters_north=i))
        await asyncio.gather(*(
            engine.submit_ping(make_ping(minutes=36 + i, meters_north=i)) for i in range(10)
        ))

    run(go())

    assert len(run(store.list_alerts(1))) == 1
    sheets = run(store.list_timesheets(1, 1))
    assert [s.status for s in sheets] == [TimesheetStatus.ACTIVE]
    assert len(engine.locks) == 0


def test_drivers_do_not_share_a_lock():
    engine = LocationEngine(MemoryStore(), RecordingNotifier(), clock=lambda: NOW)

    async def go():
        async with engine.locks.hold((1, 1)):
            # a different driver is processed while driver 1 is held
            await asyncio.wait_for(engine.submit_ping(make_ping(driver_id=2)), timeout=1)
            assert len(engine.locks) == 1

    run(go())
    assert len(engine.locks) == 0


# ---------------------------------------------------
#                    dashboard
# ---------------------------------------------------
def test_latest_locations(engine, depot):
    async def go():
        for i in range(8):
            await engine.submit_ping(make_ping(minutes=5 * i, meters_north=i))
        await engine.submit_ping(make_ping(minutes=10, driver_id=2, meters_north=2000, speed=40))
        await engine.submit_ping(make_ping(minutes=5, driver_id=2, meters_north=1000, speed=40))
        await engine.submit_ping(make_ping(minutes=5, driver_id=9, company_id=2))

    run(go())
    locations = run(engine.latest_locations(1))

    assert [loc.ping.driver_id for loc in locations] == [1, 2]
    one, two = locations
    assert one.is_stagnant is True
    assert one.geofence_name == "North Depot"
    assert one.ping.timestamp == at(35)
    assert two.is_stagnant is False
    assert two.geofence_name is None
    assert two.ping.timestamp == at(10)


def test_ping_type_passthrough(engine):
    stored = run(engine.submit_ping(make_ping()))
    assert isinstance(stored, LocationPing)


class BlockingStore(MemoryStore):
    """Holds every insert after the first one open until released."""

    def __init__(self):
        super().__init__()
        self.blocked = None
        self.release = None

    async def insert_ping(self, ping):
        if self.pings:
            self.blocked.set()
            await self.release.wait()
        return await super().insert_ping(ping)


def test_cancelled_batch_keeps_finished_pings_and_frees_locks():
    store = BlockingStore()
    engine = LocationEngine(store, RecordingNotifier(), clock=lambda: NOW)

    async def go():
        # events belong to the running loop
        store.blocked, store.release = asyncio.Event(), asyncio.Event()
        task = asyncio.ensure_future(engine.submit_ping_batch([
            make_ping(minutes=0),
            make_ping(minutes=1),
            make_ping(minutes=2),
        ]))
        await store.blocked.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    run(go())

    assert [p.timestamp for p in _stored_pings(store)] == [at(0)]
    assert len(engine.locks) == 0


# ---------------------------------------------------
#                    failed writes
# ---------------------------------------------------
class TimesheetOutageStore(MemoryStore):
    """The first timesheet write fails, later ones succeed."""

    def __init__(self):
        super().__init__()
        self.outages = 1

    async def create_timesheet(self, timesheet):
        if self.outages:
            self.outages -= 1
            raise PersistenceError("database unavailable")
        return await super().create_timesheet(timesheet)


def test_clock_in_survives_failed_timesheet_write(depot):
    store = TimesheetOutageStore()
    engine = LocationEngine(store, RecordingNotifier(), clock=lambda: NOW)
    run(engine.create_geofence(depot))

    entering = make_ping(minutes=0, meters_north=100)
    with pytest.raises(PersistenceError):
        run(engine.submit_ping(entering))
    # the driver is not yet counted as inside, so the retry sees the entry again
    assert run(store.get_containment_state(1, 1)) is None

    run(engine.submit_ping(entering))
    run(engine.submit_ping(make_ping(minutes=5, meters_north=120)))

    sheets = run(store.list_timesheets(1, 1))
    assert [(s.status, s.arrival_time) for s in sheets] == [(TimesheetStatus.ACTIVE, at(0))]
    assert [e.kind for e in store.events[(1, 1)]] == [TransitionKind.ENTER]
    assert run(store.get_containment_state(1, 1)).geofence_name == "North Depot"
