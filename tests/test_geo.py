"""Tests for distance helpers used by proximity search."""

import pytest

from wastewarden.services.geo import bounding_box, haversine_m, validate_coordinates


class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_m(48.8566, 2.3522, 48.8566, 2.3522) == 0.0

    def test_one_degree_of_latitude(self):
        assert haversine_m(0.0, 0.0, 1.0, 0.0) == pytest.approx(111_195, rel=1e-3)

    def test_paris_to_london(self):
        distance = haversine_m(48.8566, 2.3522, 51.5074, -0.1278)
        assert distance == pytest.approx(343_500, rel=1e-2)

    def test_symmetric(self):
        assert haversine_m(10, 20, 11, 21) == pytest.approx(haversine_m(11, 21, 10, 20))


class TestBoundingBox:
    def test_box_contains_circle(self):
        """Points exactly ``radius`` away in each direction fall inside the box."""
        box = bounding_box(45.0, 5.0, 10_000)

        assert box.contains(45.0 + 10_000 / 111_320, 5.0)
        assert box.contains(45.0, 5.0 - 0.12)
        assert not box.contains(45.2, 5.0)

    def test_clamped_at_the_pole(self):
        box = bounding_box(90.0, 0.0, 50_000)

        assert box.max_latitude == 90.0
        assert (box.min_longitude, box.max_longitude) == (-180.0, 180.0)


class TestValidateCoordinates:
    @pytest.mark.parametrize(("lat", "lon"), [(91.0, 0.0), (-90.5, 0.0), (0.0, 180.5)])
    def test_out_of_range(self, lat, lon):
        with pytest.raises(ValueError, match="out of range"):
            validate_coordinates(lat, lon)

    def test_edges_are_valid(self):
        validate_coordinates(-90.0, 180.0)
