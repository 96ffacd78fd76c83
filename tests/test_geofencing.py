import pytest

from guardtrack.core.geofencing import calculate_distance, evaluate_geofence, validate_coordinates

NYC = (40.7128, -74.0060)
LA = (34.0522, -118.2437)

def test_distance_to_self_is_zero():
    assert calculate_distance(*NYC, *NYC) == 0

@pytest.mark.parametrize("a, b", [
    (NYC, LA),
    ((0.0, 0.0), (0.0, 179.9)),
    ((-33.8688, 151.2093), (51.5074, -0.1278)),
])
def test_distance_is_symmetric(a, b):
    assert calculate_distance(*a, *b) == pytest.approx(calculate_distance(*b, *a))

def test_distance_new_york_to_los_angeles():
    # Great-circle distance is roughly 3936 km
    assert calculate_distance(*NYC, *LA) == pytest.approx(3_936_000, rel=0.01)

def test_one_thousandth_degree_latitude_is_about_111_meters():
    assert calculate_distance(0.0, 0.0, 0.001, 0.0) == pytest.approx(111.2, abs=0.5)

def test_point_at_center_is_inside():
    result = evaluate_geofence(NYC, NYC, 100)
    assert result.is_inside
    assert result.distance_meters == 0

def test_boundary_is_inclusive():
    point = (NYC[0] + 0.0005, NYC[1])
    distance = calculate_distance(*point, *NYC)

    assert evaluate_geofence(point, NYC, radius_meters=distance).is_inside
    assert not evaluate_geofence(point, NYC, radius_meters=distance - 1e-6).is_inside

def test_point_outside_radius():
    # ~111 m north of the center
    result = evaluate_geofence((NYC[0] + 0.001, NYC[1]), NYC, 100)
    assert not result.is_inside
    assert result.distance_meters > 100

def test_validate_coordinates():
    assert validate_coordinates(45.0, 90.0) == {"valid": True, "errors": []}

    result = validate_coordinates(91.0, -181.0)
    assert not result["valid"]
    assert len(result["errors"]) == 2
