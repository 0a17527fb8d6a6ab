"""Tests for the visualization bridge and its double-buffered images."""

import logging

import numpy as np
import pytest
from conftest import make_backend

from strata_parallel.core.controller import SimulationController, SimulationState
from strata_parallel.core.devices import DeviceManager
from strata_parallel.core.errors import InvalidStateError
from strata_parallel.core.mesh import Orientation
from strata_parallel.viz.bridge import InteropBuffer, VisualizationBridge, prepare_visualization
from strata_parallel.viz.encoding import DisplaySelector, encode_materials


class RecordingSurface:
    def __init__(self):
        self.registered = {}
        self.presented = []

    def register(self, orientation, buffer):
        self.registered[orientation] = buffer

    def present(self, orientation, buffer):
        self.presented.append(orientation)


@pytest.fixture
def controller(make_simulation, kernel, device_manager):
    controller = SimulationController(make_simulation(), device_manager, kernel=kernel)
    controller.initialize_mesh()
    yield controller
    controller.close()


@pytest.fixture
def bridge(controller):
    bridge = VisualizationBridge(controller)
    bridge.setup()
    return bridge


# =============================================================================
# Double buffer
# =============================================================================


class TestInteropBuffer:
    def test_shape(self):
        buf = InteropBuffer(4, 3)
        assert buf.shape == (3, 4, 4)
        assert buf.front().shape == (3, 4, 4)

    def test_frame_visible_after_unmap(self):
        buf = InteropBuffer(2, 2)
        target = buf.map()
        target[...] = 7
        assert buf.is_mapped
        assert not buf.front().any()
        buf.unmap()
        assert np.all(buf.front() == 7)
        assert buf.frames == 1

    def test_buffers_alternate(self):
        buf = InteropBuffer(2, 2)
        first = buf.map()
        buf.unmap()
        second = buf.map()
        assert second is not first
        buf.unmap()
        assert buf.frames == 2

    def test_discard_keeps_last_frame(self):
        buf = InteropBuffer(2, 2)
        buf.map()[...] = 1
        buf.unmap()
        buf.map()[...] = 9
        buf.discard()
        assert not buf.is_mapped
        assert np.all(buf.front() == 1)
        assert buf.frames == 1

    def test_map_twice(self):
        buf = InteropBuffer(2, 2)
        buf.map()
        with pytest.raises(RuntimeError):
            buf.map()

    def test_unmap_without_map(self):
        with pytest.raises(RuntimeError):
            InteropBuffer(2, 2).unmap()

    def test_front_is_a_copy(self):
        buf = InteropBuffer(2, 2)
        buf.front()[...] = 5
        assert not buf.front().any()

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            InteropBuffer(0, 4)


# =============================================================================
# Bridge setup
# =============================================================================


class TestSetup:
    def test_buffer_per_orientation(self, bridge, controller):
        nx, ny, nz = controller.mesh.dims
        assert bridge.buffer(Orientation.XY).shape == (ny, nx, 4)
        assert bridge.buffer(Orientation.XZ).shape == (nz, nx, 4)
        assert bridge.buffer(Orientation.YZ).shape == (nz, ny, 4)

    def test_single_device_barrier(self, controller, backend):
        syncs_before = len(backend.syncs)
        bridge = VisualizationBridge(controller)
        bridge.setup()
        assert bridge.barriers == 1
        assert len(backend.syncs) == syncs_before + len(controller.device_ids)

        for _ in range(3):
            controller.execute_step()
            bridge.push_frame(Orientation.XY, 5)
        assert bridge.barriers == 1
        assert len(backend.syncs) == syncs_before + len(controller.device_ids)

    def test_setup_twice(self, bridge):
        with pytest.raises(InvalidStateError):
            bridge.setup()

    def test_buffer_before_setup(self, controller):
        with pytest.raises(InvalidStateError):
            VisualizationBridge(controller).buffer(Orientation.XY)

    def test_setup_needs_mesh(self, make_simulation, kernel, device_manager):
        controller = SimulationController(make_simulation(), device_manager, kernel=kernel)
        with pytest.raises(InvalidStateError):
            VisualizationBridge(controller).setup()

    def test_surface_registration(self, controller):
        surface = RecordingSurface()
        bridge = VisualizationBridge(controller, surface)
        bridge.setup()
        assert set(surface.registered) == set(Orientation)
        assert surface.registered[Orientation.XZ] is bridge.buffer(Orientation.XZ)

    def test_close(self, bridge):
        bridge.close()
        assert not bridge.is_setup


# =============================================================================
# Frames
# =============================================================================


class TestPushFrame:
    def test_published_frame_matches_render(self, bridge, controller):
        controller.execute_step()
        assert bridge.push_frame(Orientation.XY, 5)
        expected = bridge.render(Orientation.XY, 5)
        np.testing.assert_array_equal(bridge.buffer(Orientation.XY).front(), expected)
        assert bridge.buffer(Orientation.XY).frames == 1

    def test_source_visible_after_first_step(self, bridge, controller):
        controller.execute_step()
        bridge.push_frame(Orientation.XY, 5)
        # Source element (4, 4, 5) holds the unit impulse
        assert tuple(bridge.buffer(Orientation.XY).front()[4, 4]) == (0, 255, 0, 255)

    def test_presented_to_surface(self, controller):
        surface = RecordingSurface()
        bridge = VisualizationBridge(controller, surface)
        bridge.setup()
        bridge.push_frame(Orientation.YZ, 3)
        assert surface.presented == [Orientation.YZ]

    def test_bad_slice_is_dropped(self, bridge, caplog):
        bridge.push_frame(Orientation.XY, 5)
        before = bridge.buffer(Orientation.XY).front()
        with caplog.at_level(logging.WARNING, logger="strata_parallel.viz.bridge"):
            assert not bridge.push_frame(Orientation.XY, 500)
        assert bridge.dropped == 1
        assert "Dropped frame" in caplog.text
        buf = bridge.buffer(Orientation.XY)
        assert not buf.is_mapped
        assert buf.frames == 1
        np.testing.assert_array_equal(buf.front(), before)

    def test_dropped_frame_leaves_simulation_untouched(self, bridge, controller):
        controller.execute_step()
        volume = controller.kernel.pressure_volume(controller.mesh).copy()
        bridge.push_frame(Orientation.XZ, 999)
        np.testing.assert_array_equal(controller.kernel.pressure_volume(controller.mesh), volume)
        assert controller.current_step == 1

    def test_materials_selector(self, bridge, controller):
        bridge.push_frame(Orientation.XZ, 4, selector=DisplaySelector.MATERIALS)
        mesh = controller.mesh
        expected = encode_materials(mesh.material_slice(Orientation.XZ, 4), mesh.position_slice(Orientation.XZ, 4))
        np.testing.assert_array_equal(bridge.buffer(Orientation.XZ).front(), expected)

    def test_pressure_without_boundaries(self, bridge):
        # Fields are zero before the first step
        bridge.push_frame(Orientation.XY, 5, selector=DisplaySelector.PRESSURE)
        assert not bridge.buffer(Orientation.XY).front()[..., :3].any()

        bridge.push_frame(Orientation.XY, 5, selector=DisplaySelector.PRESSURE_WITH_BOUNDARIES)
        assert (bridge.buffer(Orientation.XY).front()[..., :3] == 255).any()

    def test_dynamic_range(self, bridge, controller):
        controller.execute_step()
        for _ in range(3):
            controller.execute_step()
        narrow = bridge.render(Orientation.XY, 5, DisplaySelector.PRESSURE, dynamic_range_db=10.0)
        wide = bridge.render(Orientation.XY, 5, DisplaySelector.PRESSURE, dynamic_range_db=120.0)
        assert np.count_nonzero(wide[..., 1:3]) >= np.count_nonzero(narrow[..., 1:3])


# =============================================================================
# Interactive setup
# =============================================================================


class TestPrepareVisualization:
    def test_single_precision_single_partition(self, make_simulation, kernel):
        simulation = make_simulation(double=True, force_partitions=2)
        controller, bridge = prepare_visualization(simulation, DeviceManager(make_backend()), kernel=kernel)

        mesh = controller.mesh
        assert not mesh.is_double
        assert mesh.num_partitions == 1
        assert controller.state == SimulationState.MESH_READY
        controller.close()

    def test_two_seconds_of_simulated_time(self, make_simulation, kernel):
        simulation = make_simulation(num_steps=20)
        controller, _ = prepare_visualization(simulation, DeviceManager(make_backend()), kernel=kernel)
        params = controller.parameters
        assert params.num_steps == int(2 * params.spatial_fs)
        assert simulation.parameters.num_steps == 20
        controller.close()

    def test_first_frame_per_orientation(self, make_simulation, kernel):
        backend = make_backend()
        surface = RecordingSurface()
        controller, bridge = prepare_visualization(
            make_simulation(), DeviceManager(backend), kernel=kernel, surface=surface
        )
        assert all(bridge.buffer(o).frames == 1 for o in Orientation)
        assert sorted(surface.presented) == sorted(Orientation)
        assert bridge.barriers == 1
        controller.close()

    def test_custom_slice_indices(self, make_simulation, kernel):
        controller, bridge = prepare_visualization(
            make_simulation(), DeviceManager(make_backend()), kernel=kernel,
            slice_indices={int(Orientation.XY): 5},
        )
        controller.execute_step()
        bridge.push_frame(Orientation.XY, 5)
        assert bridge.dropped == 0
        controller.close()
