"""Tests for HDF5 result files and PNG captures."""

import h5py
import numpy as np
import pytest
from conftest import StopAfter, make_backend

from strata_parallel import __version__
from strata_parallel.core.controller import SimulationController
from strata_parallel.core.devices import DeviceManager
from strata_parallel.core.mesh import Orientation
from strata_parallel.core.parameters import CaptureRequest, CaptureSchedule
from strata_parallel.io.captures import MemoryCaptureSink, PNGCaptureWriter
from strata_parallel.io.hdf5 import HDF5ResultReader, HDF5ResultWriter


@pytest.fixture
def make_controller(make_simulation, kernel):
    def _make(**kwargs):
        interrupt = kwargs.pop("interrupt", None)
        controller = SimulationController(
            make_simulation(**kwargs), DeviceManager(make_backend()), kernel=kernel, interrupt=interrupt
        )
        controller.initialize_mesh()
        return controller

    return _make


# =============================================================================
# Writer and reader
# =============================================================================


class TestHDF5RoundTrip:
    def test_responses(self, tmp_path, make_controller):
        controller = make_controller()
        path = tmp_path / "results.h5"
        writer = HDF5ResultWriter(path, controller, script_content="simulation = None\n")
        responses = controller.run()
        writer.finalize(responses, runtime=1.5)
        controller.close()

        with HDF5ResultReader(path) as reader:
            np.testing.assert_array_equal(reader.load_responses(), responses.data)
            np.testing.assert_array_equal(reader.load_receiver(1), responses.receiver(1))
            np.testing.assert_allclose(reader.receiver_positions(), controller.parameters.receivers)
            with pytest.raises(KeyError):
                reader.load_receiver(2)

    def test_metadata(self, tmp_path, make_controller):
        controller = make_controller(force_partitions=2)
        path = tmp_path / "results.h5"
        writer = HDF5ResultWriter(path, controller, script_content="x = 1\n")
        writer.finalize(controller.run(), runtime=2.0, mode="simulate")

        with HDF5ResultReader(path) as reader:
            meta = reader.get_metadata()
        assert meta["metadata"]["version"] == __version__
        assert len(meta["metadata"]["script_hash"]) == 64
        assert meta["metadata"]["total_runtime_seconds"] == pytest.approx(2.0)
        assert meta["metadata"]["mode"] == "simulate"
        assert list(meta["grid"]["dims"]) == list(controller.mesh.dims)
        assert meta["simulation"]["num_partitions"] == 2
        assert list(meta["simulation"]["device_ids"]) == [0, 1]
        assert meta["simulation"]["scheme"] == "SRL"
        assert meta["simulation"]["precision"] == "single"
        assert meta["simulation"]["state"] == "completed"
        assert meta["simulation"]["steps_completed"] == 20
        assert meta["metrics"]["sabine_rt"] > 0
        assert list(meta["sources"][0]["element"]) == [4, 4, 5]
        controller.close()

    def test_interrupted_run(self, tmp_path, make_controller):
        controller = make_controller(interrupt=StopAfter(6))
        path = tmp_path / "results.h5"
        writer = HDF5ResultWriter(path, controller)
        writer.finalize(controller.run())

        with HDF5ResultReader(path) as reader:
            meta = reader.get_metadata()
            data = reader.load_responses()
        assert meta["simulation"]["state"] == "interrupted"
        assert meta["simulation"]["steps_completed"] == 6
        assert not data[6:].any()
        assert "script_hash" not in meta["metadata"]
        controller.close()

    def test_grid(self, tmp_path, make_controller):
        controller = make_controller()
        path = tmp_path / "results.h5"
        HDF5ResultWriter(path, controller).finalize()
        with HDF5ResultReader(path) as reader:
            position, material = reader.load_grid()
            with pytest.raises(ValueError):
                reader.load_responses()
        np.testing.assert_array_equal(position, controller.mesh.position_idx)
        np.testing.assert_array_equal(material, controller.mesh.material_idx)
        controller.close()

    def test_volume_captures(self, tmp_path, make_controller):
        schedule = CaptureSchedule()
        schedule.add_volume(2)
        schedule.add_volume(9)
        controller = make_controller(captures=schedule)
        path = tmp_path / "results.h5"
        writer = HDF5ResultWriter(path, controller)
        controller.volume_sink = writer
        writer.finalize(controller.run())

        with HDF5ResultReader(path) as reader:
            assert reader.get_volume_steps() == [2, 9]
            early = reader.load_volume(2)
            volume = reader.load_volume(9)
            with pytest.raises(KeyError):
                reader.load_volume(3)
        assert volume.shape == controller.mesh.dims
        assert early.any() and volume.any()
        assert not np.array_equal(early, volume)
        controller.close()

    def test_no_receivers(self, tmp_path, make_controller):
        controller = make_controller()
        controller.parameters.receivers = []
        controller.parameters.receiver_elements = []
        path = tmp_path / "results.h5"
        writer = HDF5ResultWriter(path, controller)
        writer.finalize(controller.run())
        with HDF5ResultReader(path) as reader:
            assert reader.load_responses().shape == (20, 0)
            assert reader.receiver_positions().shape == (0, 3)
        controller.close()

    def test_finalize_twice(self, tmp_path, make_controller):
        controller = make_controller()
        writer = HDF5ResultWriter(tmp_path / "results.h5", controller)
        writer.finalize()
        writer.finalize()
        controller.close()

    def test_context_manager_closes_file(self, tmp_path, make_controller):
        controller = make_controller()
        path = tmp_path / "results.h5"
        with HDF5ResultWriter(path, controller) as writer:
            writer.write_volume(0, np.zeros(controller.mesh.dims, dtype=np.float32))
        with h5py.File(path, "r") as f:
            assert f["fields/pressure"].shape == (1,) + controller.mesh.dims
        controller.close()


# =============================================================================
# Slice captures
# =============================================================================


class TestCaptureWriters:
    def test_png_written(self, tmp_path):
        writer = PNGCaptureWriter(tmp_path / "captures")
        request = CaptureRequest(3, Orientation.XY, 10)
        image = np.zeros((4, 6, 4), dtype=np.uint8)
        image[..., 1] = 200
        image[..., 3] = 255
        writer.write_slice(request, image)

        path = tmp_path / "captures" / "capture_0_10_3.png"
        assert path.exists()
        assert writer.written == [path]
        with open(path, "rb") as f:
            assert f.read(8) == b"\x89PNG\r\n\x1a\n"

    def test_png_from_controller(self, tmp_path, make_controller):
        schedule = CaptureSchedule()
        schedule.add_slice(5, Orientation.XY, 4)
        controller = make_controller(captures=schedule)
        controller.slice_sink = PNGCaptureWriter(tmp_path)
        controller.run()
        assert (tmp_path / "capture_0_4_5.png").exists()
        controller.close()

    def test_memory_sink(self):
        sink = MemoryCaptureSink()
        image = np.ones((2, 2, 4), dtype=np.uint8)
        sink.write_slice(CaptureRequest(1, Orientation.YZ, 2), image)
        image[...] = 0
        assert sink.slices["capture_2_2_1"].all()
        sink.write_volume(5, np.ones((2, 2, 2)))
        assert list(sink.volumes) == [5]
