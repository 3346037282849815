import math

import pytest

from shift_guardian.domain import Geofence
from shift_guardian.errors import InvalidCoordinate, ValidationError
from shift_guardian.geo import (
    check_coordinate,
    haversine_distance_m,
    is_within_geofence,
    max_pairwise_distance_m,
)

from conftest import DEPOT_LAT, DEPOT_LON, north_of


def test_same_point_is_zero():
    assert haversine_distance_m((10.0, 20.0), (10.0, 20.0)) == 0.0


def test_london_to_paris():
    d = haversine_distance_m((51.5074, -0.1278), (48.8566, 2.3522))
    assert 342_000 < d < 345_000


def test_latitude_offset_matches_meters():
    d = haversine_distance_m((DEPOT_LAT, DEPOT_LON), (north_of(DEPOT_LAT, 100), DEPOT_LON))
    assert d == pytest.approx(100, abs=0.01)


@pytest.mark.parametrize("lat,lon", [
    (200, 0),
    (-90.5, 0),
    (0, 181),
    (math.nan, 0),
    (0, math.inf),
    ("abc", 0),
    (None, 0),
])
def test_invalid_coordinates_rejected(lat, lon):
    with pytest.raises(InvalidCoordinate):
        haversine_distance_m((lat, lon), (0, 0))


def test_invalid_coordinate_is_a_validation_error():
    with pytest.raises(ValidationError):
        check_coordinate(91, 0)


def test_poles_and_antimeridian_accepted():
    assert check_coordinate(90, 180) == (90.0, 180.0)
    assert check_coordinate("-90", "-180") == (-90.0, -180.0)


def test_within_geofence():
    fence = Geofence(company_id=1, name="Depot", latitude=DEPOT_LAT, longitude=DEPOT_LON, radius_meters=250)
    assert is_within_geofence((north_of(DEPOT_LAT, 100), DEPOT_LON), fence)
    assert is_within_geofence((north_of(DEPOT_LAT, 249.9), DEPOT_LON), fence)
    assert not is_within_geofence((north_of(DEPOT_LAT, 250.5), DEPOT_LON), fence)
    assert not is_within_geofence((north_of(DEPOT_LAT, 400), DEPOT_LON), fence)


def test_max_pairwise_distance():
    points = [(north_of(DEPOT_LAT, m), DEPOT_LON) for m in (0, 10, 35)]
    assert max_pairwise_distance_m(points) == pytest.approx(35, abs=0.01)
    assert max_pairwise_distance_m(points[:1]) == 0.0
    assert max_pairwise_distance_m([]) == 0.0
