"""Tests for the room-acoustic estimates."""

import numpy as np
import pytest

from strata_parallel.analysis import SABINE_CONSTANT, AcousticMetrics
from strata_parallel.geometry import Geometry
from strata_parallel.materials import MaterialTable, admittance_to_reflection


@pytest.fixture
def cube():
    return Geometry.box((2.0, 2.0, 2.0))


def metrics_for(geometry, admittance, air=800, boundary=200, dx=0.1):
    table = MaterialTable.uniform(admittance, geometry.num_triangles)
    return AcousticMetrics(dx, air, boundary, geometry, table)


class TestAcousticMetrics:
    def test_volume_counts_air_and_boundary(self, cube):
        metrics = metrics_for(cube, 0.1, air=800, boundary=200, dx=0.1)
        assert metrics.volume() == pytest.approx(1.0)

    def test_surface_area(self, cube):
        assert metrics_for(cube, 0.1).total_surface_area() == pytest.approx(24.0)

    def test_absorption_area(self, cube):
        reflection = (1 - 0.2) / (1 + 0.2)
        metrics = metrics_for(cube, 0.2)
        assert metrics.total_absorption_area(0) == pytest.approx(24.0 * (1 - reflection**2))
        assert metrics.mean_absorption(0) == pytest.approx(1 - reflection**2)

    def test_sabine(self, cube):
        metrics = metrics_for(cube, 0.2)
        expected = SABINE_CONSTANT * metrics.volume() / metrics.total_absorption_area(0)
        assert metrics.sabine_rt(0) == pytest.approx(expected)

    def test_eyring(self, cube):
        metrics = metrics_for(cube, 0.2)
        alpha = metrics.mean_absorption(0)
        expected = SABINE_CONSTANT * metrics.volume() / (-24.0 * np.log(1 - alpha))
        assert metrics.eyring_rt(0) == pytest.approx(expected)

    def test_eyring_shorter_than_sabine(self, cube):
        metrics = metrics_for(cube, 0.3)
        assert 0 < metrics.eyring_rt(0) < metrics.sabine_rt(0)

    def test_sabine_linear_in_volume(self, cube):
        small = metrics_for(cube, 0.2, air=500, boundary=0)
        large = metrics_for(cube, 0.2, air=1000, boundary=0)
        assert large.sabine_rt(0) == pytest.approx(2 * small.sabine_rt(0))

    @pytest.mark.parametrize("admittance", [0.01, 0.1, 0.5, 0.9])
    def test_estimates_positive(self, cube, admittance):
        metrics = metrics_for(cube, admittance)
        assert metrics.sabine_rt(0) > 0
        assert metrics.eyring_rt(0) > 0

    def test_rigid_room_never_decays(self, cube):
        metrics = metrics_for(cube, 0.0)
        assert metrics.total_absorption_area(0) == 0.0
        assert metrics.sabine_rt(0) == np.inf
        assert metrics.eyring_rt(0) == np.inf

    def test_octave_selection(self, cube):
        table = MaterialTable(np.array([[0.05, 0.5]]), np.zeros(cube.num_triangles, dtype=int))
        metrics = AcousticMetrics(0.1, 800, 200, cube, table)
        assert metrics.sabine_rt(1) < metrics.sabine_rt(0)

    def test_mixed_materials_weighted_by_area(self, cube):
        # Floor and ceiling (4 triangles, 8 m²) absorb, the walls are rigid
        materials = np.zeros(cube.num_triangles, dtype=int)
        materials[:4] = 1
        table = MaterialTable(np.array([[0.0], [0.5]]), materials)
        metrics = AcousticMetrics(0.1, 800, 200, cube, table)
        reflection = admittance_to_reflection(0.5)
        assert metrics.total_absorption_area(0) == pytest.approx(8.0 * (1 - reflection**2))
        assert metrics.mean_absorption(0) == pytest.approx(8.0 * (1 - reflection**2) / 24.0)
        assert metrics.mean_absorption(0) == table.mean_absorption(0, cube.surface_areas())

    def test_report_keys(self, cube):
        report = metrics_for(cube, 0.2).report(0)
        assert set(report) == {
            "volume", "surface_area", "absorption_area", "mean_absorption", "sabine_rt", "eyring_rt",
        }

    def test_from_mesh(self, cube):
        class FakeMesh:
            num_air_elements = 10
            num_boundary_elements = 5

        table = MaterialTable.uniform(0.1, cube.num_triangles)
        metrics = AcousticMetrics.from_mesh(FakeMesh(), 0.5, cube, table)
        assert metrics.volume() == pytest.approx(15 * 0.125)

    def test_mismatched_table(self, cube):
        with pytest.raises(ValueError):
            AcousticMetrics(0.1, 1, 1, cube, MaterialTable.uniform(0.1, 3))

    def test_invalid_dx(self, cube):
        with pytest.raises(ValueError):
            metrics_for(cube, 0.1, dx=0.0)
