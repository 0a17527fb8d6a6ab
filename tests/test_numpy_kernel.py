"""Tests for the host compute kernel."""

import numpy as np
import pytest
from conftest import RecordingProgress, StopAfter

from strata_parallel.core.callbacks import NeverInterrupt
from strata_parallel.core.mesh import Orientation, take_slice
from strata_parallel.core.parameters import UpdateScheme
from strata_parallel.core.responses import ResponseBuffer
from strata_parallel.geometry import Geometry
from strata_parallel.materials import MaterialTable


def build_mesh(kernel, simulation, partitions=1):
    params = simulation.parameters
    grid = kernel.voxelize(simulation.geometry, params.dx)
    params.bind_to_grid(grid.origin, grid.dims)
    mesh = kernel.setup_mesh(grid, simulation.materials, params, simulation.double)
    mesh.make_partition(partitions)
    kernel.allocate(mesh)
    return mesh


def run_steps(kernel, mesh, simulation, steps, responses=None, start=0, direction=1):
    for i in range(steps):
        kernel.run_one_step(mesh, simulation.parameters, responses, start + i * direction, direction)


def new_responses(simulation):
    params = simulation.parameters
    return ResponseBuffer(params.num_steps, params.num_receivers, simulation.double)


# =============================================================================
# Mesh setup
# =============================================================================


class TestSetupMesh:
    def test_boundary_admittance(self, kernel, make_simulation):
        sim = make_simulation(admittance=0.25)
        mesh = build_mesh(kernel, sim)
        assert np.allclose(mesh.admittance[mesh.boundary], 0.25)
        assert np.all(mesh.admittance[~mesh.boundary] == 0)

    def test_rigid_scheme_zeroes_admittance(self, kernel, make_simulation):
        mesh = build_mesh(kernel, make_simulation(scheme=UpdateScheme.SRL_RIGID))
        assert not mesh.admittance.any()

    def test_precision(self, kernel, make_simulation):
        assert build_mesh(kernel, make_simulation(double=True)).partitions[0].fields["p"].dtype == np.float64
        assert build_mesh(kernel, make_simulation(double=False)).partitions[0].fields["p"].dtype == np.float32

    def test_unknown_material_rejected(self, kernel, make_simulation):
        geometry = Geometry.box((0.5, 0.5, 0.5), material=3)
        grid = kernel.voxelize(geometry, 0.1)
        sim = make_simulation()
        table = MaterialTable.uniform(0.1, geometry.num_triangles)
        with pytest.raises(ValueError, match="no entry"):
            kernel.setup_mesh(grid, table, sim.parameters)

    def test_source_and_receiver_elements(self, kernel, make_simulation):
        sim = make_simulation()
        build_mesh(kernel, sim)
        assert sim.parameters.source_elements == [(4, 4, 5)]
        assert sim.parameters.receiver_elements == [(4, 4, 5), (7, 5, 8)]


# =============================================================================
# Stepping
# =============================================================================


class TestStepping:
    def test_impulse_recorded_at_step_zero(self, kernel, make_simulation):
        sim = make_simulation()
        mesh = build_mesh(kernel, sim)
        responses = new_responses(sim)
        run_steps(kernel, mesh, sim, 1, responses)
        assert responses[0, 0] == pytest.approx(1.0)
        assert responses[0, 1] == 0.0
        assert responses.steps_completed == 1

    def test_wave_reaches_distant_receiver(self, kernel, make_simulation):
        sim = make_simulation(num_steps=20)
        mesh = build_mesh(kernel, sim)
        responses = new_responses(sim)
        run_steps(kernel, mesh, sim, 20, responses)
        # Receiver 1 is 7 cells away along the stencil
        assert not responses.receiver(1)[:6].any()
        assert responses.receiver(1)[6:].any()

    def test_outside_cells_stay_zero(self, kernel, make_simulation):
        sim = make_simulation()
        mesh = build_mesh(kernel, sim, partitions=2)
        run_steps(kernel, mesh, sim, 15)
        volume = kernel.pressure_volume(mesh)
        assert not volume[~mesh.inside].any()

    @pytest.mark.parametrize("partitions", [2, 3, 5])
    def test_partitions_match_single_partition(self, kernel, make_simulation, partitions):
        single_sim = make_simulation(num_steps=15)
        single = build_mesh(kernel, single_sim)
        expected = new_responses(single_sim)
        run_steps(kernel, single, single_sim, 15, expected)

        split_sim = make_simulation(num_steps=15)
        split = build_mesh(kernel, split_sim, partitions=partitions)
        actual = new_responses(split_sim)
        run_steps(kernel, split, split_sim, 15, actual)

        np.testing.assert_allclose(actual.data, expected.data, rtol=1e-6, atol=1e-7)
        np.testing.assert_allclose(kernel.pressure_volume(split), kernel.pressure_volume(single), atol=1e-7)

    def test_zero_admittance_matches_rigid_scheme(self, kernel, make_simulation):
        lossless = make_simulation(admittance=0.0)
        a = build_mesh(kernel, lossless)
        rigid = make_simulation(admittance=0.5, scheme=UpdateScheme.SRL_RIGID)
        b = build_mesh(kernel, rigid)
        run_steps(kernel, a, lossless, 12)
        run_steps(kernel, b, rigid, 12)
        np.testing.assert_array_equal(kernel.pressure_volume(a), kernel.pressure_volume(b))

    def test_invalid_direction(self, kernel, make_simulation):
        sim = make_simulation()
        mesh = build_mesh(kernel, sim)
        with pytest.raises(ValueError, match="direction"):
            kernel.run_one_step(mesh, sim.parameters, None, 0, 2)

    def test_unallocated_mesh(self, kernel, make_simulation):
        sim = make_simulation()
        params = sim.parameters
        grid = kernel.voxelize(sim.geometry, params.dx)
        params.bind_to_grid(grid.origin, grid.dims)
        mesh = kernel.setup_mesh(grid, sim.materials, params)
        with pytest.raises(RuntimeError, match="not allocated"):
            kernel.run_one_step(mesh, params, None, 0, 1)


# =============================================================================
# Time reversal
# =============================================================================


class TestReversal:
    def test_reverse_replay_is_lossless(self, kernel, make_simulation):
        sim = make_simulation(num_steps=20, scheme=UpdateScheme.SRL_RIGID, double=True)
        mesh = build_mesh(kernel, sim, partitions=2)

        run_steps(kernel, mesh, sim, 5)
        at_five = kernel.pressure_volume(mesh).copy()
        run_steps(kernel, mesh, sim, 5, start=5)
        at_ten = kernel.pressure_volume(mesh).copy()

        # The first reverse step swaps the field pair
        run_steps(kernel, mesh, sim, 5, start=10, direction=-1)
        np.testing.assert_allclose(kernel.pressure_volume(mesh), at_five, rtol=1e-9, atol=1e-12)

        run_steps(kernel, mesh, sim, 5, start=5)
        np.testing.assert_allclose(kernel.pressure_volume(mesh), at_ten, rtol=1e-9, atol=1e-12)

    @pytest.mark.parametrize("scheme", [UpdateScheme.SRL_RIGID, UpdateScheme.SRL])
    @pytest.mark.parametrize("partitions", [1, 2])
    def test_reverse_replay_with_driven_source(self, kernel, make_simulation, scheme, partitions):
        sim = make_simulation(num_steps=20, scheme=scheme, double=True, source_signals=[np.sin(np.arange(20))])
        mesh = build_mesh(kernel, sim, partitions=partitions)

        run_steps(kernel, mesh, sim, 5)
        at_five = kernel.pressure_volume(mesh).copy()
        run_steps(kernel, mesh, sim, 5, start=5)
        at_ten = kernel.pressure_volume(mesh).copy()

        run_steps(kernel, mesh, sim, 5, start=10, direction=-1)
        np.testing.assert_allclose(kernel.pressure_volume(mesh), at_five, rtol=1e-9, atol=1e-9)

        run_steps(kernel, mesh, sim, 5, start=5)
        np.testing.assert_allclose(kernel.pressure_volume(mesh), at_ten, rtol=1e-9, atol=1e-9)

    def test_replay_rewrites_identical_samples(self, kernel, make_simulation):
        sim = make_simulation(num_steps=20, scheme=UpdateScheme.SRL_RIGID, double=True,
                              source_signals=[np.cos(np.arange(20))])
        mesh = build_mesh(kernel, sim)
        responses = new_responses(sim)
        run_steps(kernel, mesh, sim, 12, responses)
        recorded = responses.data.copy()

        run_steps(kernel, mesh, sim, 6, responses, start=12, direction=-1)
        run_steps(kernel, mesh, sim, 6, responses, start=6)
        np.testing.assert_allclose(responses.data, recorded, rtol=1e-9, atol=1e-9)

    def test_reverse_steps_do_not_record(self, kernel, make_simulation):
        sim = make_simulation(num_steps=20, scheme=UpdateScheme.SRL_RIGID, double=True)
        mesh = build_mesh(kernel, sim)
        responses = new_responses(sim)
        run_steps(kernel, mesh, sim, 6, responses)
        recorded = responses.data.copy()
        run_steps(kernel, mesh, sim, 3, responses, start=6, direction=-1)
        np.testing.assert_array_equal(responses.data, recorded)

    def test_direction_change_tracked_on_mesh(self, kernel, make_simulation):
        sim = make_simulation()
        mesh = build_mesh(kernel, sim)
        run_steps(kernel, mesh, sim, 2)
        kernel.run_one_step(mesh, sim.parameters, None, 2, -1)
        assert mesh.last_direction == -1


# =============================================================================
# Field access
# =============================================================================


class TestFieldAccess:
    @pytest.mark.parametrize("partitions", [1, 3])
    def test_slices_match_volume(self, kernel, make_simulation, partitions):
        sim = make_simulation()
        mesh = build_mesh(kernel, sim, partitions=partitions)
        run_steps(kernel, mesh, sim, 8)
        volume = kernel.pressure_volume(mesh)
        for orientation, index in [(Orientation.XY, 5), (Orientation.XZ, 4), (Orientation.YZ, 4)]:
            expected = take_slice(volume, orientation, index)
            np.testing.assert_array_equal(kernel.pressure_slice(mesh, orientation, index), expected)

    def test_slice_shapes(self, kernel, make_simulation):
        sim = make_simulation()
        mesh = build_mesh(kernel, sim, partitions=2)
        nx, ny, nz = mesh.dims
        assert kernel.pressure_slice(mesh, Orientation.XY, 3).shape == (ny, nx)
        assert kernel.pressure_slice(mesh, Orientation.XZ, 3).shape == (nz, nx)
        assert kernel.pressure_slice(mesh, Orientation.YZ, 3).shape == (nz, ny)
        assert kernel.pressure_volume(mesh).shape == mesh.dims

    def test_reset_pressures(self, kernel, make_simulation):
        sim = make_simulation()
        mesh = build_mesh(kernel, sim, partitions=2)
        run_steps(kernel, mesh, sim, 4)
        kernel.run_one_step(mesh, sim.parameters, None, 4, -1)
        kernel.reset_pressures(mesh)
        assert not kernel.pressure_volume(mesh).any()
        assert mesh.last_direction == 1

    def test_release_drops_fields(self, kernel, make_simulation):
        sim = make_simulation()
        mesh = build_mesh(kernel, sim, partitions=2)
        kernel.release(mesh)
        assert all(not part.fields for part in mesh.partitions)
        with pytest.raises(RuntimeError):
            kernel.pressure_volume(mesh)


# =============================================================================
# Batch runs
# =============================================================================


class TestRunAllSteps:
    def test_runs_full_budget(self, kernel, make_simulation):
        sim = make_simulation(num_steps=10)
        mesh = build_mesh(kernel, sim)
        responses = new_responses(sim)
        progress = RecordingProgress()
        time_per_step, steps = kernel.run_all_steps(mesh, sim.parameters, responses, NeverInterrupt(), progress)
        assert steps == 10
        assert time_per_step >= 0
        assert [call[0] for call in progress.calls] == list(range(1, 11))
        assert responses.steps_completed == 10

    def test_stops_on_interrupt(self, kernel, make_simulation):
        sim = make_simulation(num_steps=10)
        mesh = build_mesh(kernel, sim)
        responses = new_responses(sim)
        _, steps = kernel.run_all_steps(mesh, sim.parameters, responses, StopAfter(4))
        assert steps == 4
        assert responses.steps_completed == 4
        assert not responses.data[4:].any()
