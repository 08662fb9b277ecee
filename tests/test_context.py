"""Tests for ExecutionContext: the full build-and-run flow on a host-memory backend."""

import numpy as np
import numpy.testing as npt
import pytest

from gpu_runtime.context import ContextState, ExecutionContext
from gpu_runtime.errors import (
    CompilationError,
    ConfigurationError,
    ContextStateError,
    DeviceError,
    ValidationError,
)
from gpu_runtime.launch_config import LaunchConfigComponents
from tests.conftest import FakeBackend, float_bytes, make_options

SOURCE = "// kernel source\n"


def _context(backend, key, **kwargs):
    return ExecutionContext(make_options(key, **kwargs), backend_factory=lambda options: backend)


def _vector_add_inputs():
    return {
        "A": float_bytes([1, 2, 3, 4]),
        "B": float_bytes([10, 20, 30, 40]),
    }


# ---------------------------------------------------------------------------
# 1. End-to-end flow
# ---------------------------------------------------------------------------


class TestExecutionFlow:
    def test_vector_add(self, fake_backend):
        with _context(fake_backend, "vector_add", scalar_arguments={"length": "4"}) as context:
            context.build(SOURCE)
            outputs = context.execute(_vector_add_inputs())
            assert context.state is ContextState.FINALIZED
        npt.assert_array_equal(outputs["C"].view(np.float32), [11, 22, 33, 44])
        assert fake_backend.closed == 1

    def test_copy_scenario(self, fake_backend):
        """A is 16 bytes, B is sized like A, n is required: marshaled as [A, B, n]."""
        a = np.arange(16, dtype=np.uint8)
        with _context(fake_backend, "test_copy", scalar_arguments={"n": "4"}) as context:
            context.build(SOURCE)
            buffers = context.prepare_buffers({"A": a})
            assert buffers.host_outputs["B"].nbytes == 16
            assert buffers.device_outputs["B"].size_bytes == 16

            marshaled = context.marshal_arguments()
            assert marshaled.arguments[0] is buffers.device_inputs["A"].native_handle
            assert marshaled.arguments[1] is buffers.device_outputs["B"].native_handle
            assert marshaled.arguments[2] == np.int32(4)
            assert marshaled.arguments[3] is None
            assert len(marshaled.arguments) == 4

            context.configure_launch()
            context.run()
            outputs = context.collect_outputs()
        npt.assert_array_equal(outputs["B"], a)

    def test_size_list_backend(self, opencl_style_backend):
        with _context(opencl_style_backend, "test_copy", scalar_arguments={"n": "4"}) as context:
            context.build(SOURCE)
            context.prepare_buffers({"A": np.zeros(16, dtype=np.uint8)})
            marshaled = context.marshal_arguments()
        assert len(marshaled.arguments) == 3
        assert marshaled.sizes[-1] == 4

    def test_timings(self, fake_backend):
        context = _context(
            fake_backend, "vector_add", scalar_arguments={"length": "4"}, num_runs=3, time_execution=True
        )
        with context:
            context.build(SOURCE)
            context.execute(_vector_add_inputs())
        assert context.run_timings == [1.5, 1.5, 1.5]
        assert fake_backend.operations().count("launch") == 3

    def test_untimed_runs(self, fake_backend):
        with _context(fake_backend, "vector_add", scalar_arguments={"length": "4"}, num_runs=2) as context:
            context.build(SOURCE)
            context.execute(_vector_add_inputs())
        assert context.run_timings == [None, None]

    def test_deduced_launch_config(self, fake_backend):
        with _context(fake_backend, "vector_add", scalar_arguments={"length": "1000"}) as context:
            context.build(SOURCE)
            inputs = {"A": float_bytes(np.zeros(1000)), "B": float_bytes(np.zeros(1000))}
            context.prepare_buffers(inputs)
            context.marshal_arguments()
            config = context.configure_launch()
        assert config.block_dimensions == (256, 1, 1)
        assert config.grid_dimensions == (4, 1, 1)
        assert config.requested_overall_dimensions == (1000, 1, 1)
        assert config.full_blocks is False

    def test_forced_launch_config(self, fake_backend):
        forced = LaunchConfigComponents(block_dimensions=(2,), grid_dimensions=(2,))
        with _context(
            fake_backend, "vector_add", scalar_arguments={"length": "4"}, forced_launch_config=forced
        ) as context:
            context.build(SOURCE)
            context.execute(_vector_add_inputs())
        assert context.launch_config.block_dimensions == (2, 1, 1)

    def test_undeducible_launch_config(self, fake_backend):
        with _context(fake_backend, "test_no_deduction", scalar_arguments={"n": "1"}) as context:
            context.build(SOURCE)
            context.prepare_buffers({"A": np.zeros(4, dtype=np.uint8)})
            context.marshal_arguments()
            with pytest.raises(ConfigurationError, match="Unable to deduce"):
                context.configure_launch()


# ---------------------------------------------------------------------------
# 2. Inout buffers and per-run resets
# ---------------------------------------------------------------------------


class TestInoutBuffers:
    def test_working_copy_reset_before_every_run(self, fake_backend):
        data = float_bytes([1, 2, 3, 4])
        with _context(fake_backend, "scale_in_place", scalar_arguments={"factor": "2"}, num_runs=3) as context:
            context.build(SOURCE)
            outputs = context.execute({"data": data})

        # Each launch saw the pristine contents, so the result is scaled once
        assert len(fake_backend.launches) == 3
        for launch_args in fake_backend.launches:
            npt.assert_array_equal(launch_args[0], data)
        npt.assert_array_equal(outputs["data"].view(np.float32), [2, 4, 6, 8])

    def test_generated_length(self, fake_backend):
        with _context(fake_backend, "scale_in_place", scalar_arguments={"factor": "0.5"}) as context:
            context.build(SOURCE)
            context.prepare_buffers({"data": float_bytes(np.ones(10))})
            assert context.scalar_arguments["length"] == 10
            context.marshal_arguments()
            assert context.configure_launch().requested_overall_dimensions == (10, 1, 1)

    def test_reset_precedes_launch(self, fake_backend):
        with _context(fake_backend, "scale_in_place", scalar_arguments={"factor": "2"}, num_runs=2) as context:
            context.build(SOURCE)
            context.execute({"data": float_bytes([1])})
        ops = [op for op in fake_backend.operations() if op in ("d2d", "launch")]
        assert ops == ["d2d", "launch", "d2d", "launch"]


# ---------------------------------------------------------------------------
# 3. Zeroing outputs and preprocessor definitions
# ---------------------------------------------------------------------------


class TestFillKernel:
    def test_required_definition_missing(self, fake_backend):
        context = _context(fake_backend, "fill", scalar_arguments={"value": "7", "length": "10"})
        with context, pytest.raises(ValidationError, match="ELEMENTS_PER_THREAD"):
            context.build(SOURCE)

    @pytest.mark.parametrize(
        "definitions",
        [
            {"preprocessor_definitions": ["ELEMENTS_PER_THREAD=4"]},
            {"preprocessor_value_definitions": {"ELEMENTS_PER_THREAD": "4"}},
        ],
    )
    def test_fill_with_zeroing(self, fake_backend, definitions):
        context = _context(
            fake_backend,
            "fill",
            scalar_arguments={"value": "-3", "length": "10"},
            num_runs=2,
            zero_output_buffers=True,
            **definitions,
        )
        with context:
            context.build(SOURCE)
            outputs = context.execute({})
        npt.assert_array_equal(outputs["result"].view(np.int32), np.full(10, -3))
        assert fake_backend.operations().count("zero") == 2
        assert context.launch_config.requested_overall_dimensions == (3, 1, 1)
        assert fake_backend.compile_kwargs["definitions"].valued["ELEMENTS_PER_THREAD"] == "4"

    def test_valueless_definition_rejected_by_adapter(self, fake_backend):
        context = _context(
            fake_backend,
            "fill",
            scalar_arguments={"value": "1", "length": "4"},
            preprocessor_definitions=["ELEMENTS_PER_THREAD"],
        )
        with context:
            context.build(SOURCE)
            with pytest.raises(ValidationError, match="combination"):
                context.prepare_buffers({})


# ---------------------------------------------------------------------------
# 4. Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_unknown_key_allocates_nothing(self, fake_backend):
        with _context(fake_backend, "foo") as context:
            with pytest.raises(ConfigurationError, match="'foo'"):
                context.build(SOURCE)
        assert fake_backend.allocations == []
        assert fake_backend.closed == 1

    def test_missing_scalar(self, fake_backend):
        with _context(fake_backend, "vector_add") as context:
            with pytest.raises(ValidationError, match="'length' must be specified"):
                context.build(SOURCE)

    def test_missing_input_buffer(self, fake_backend):
        with _context(fake_backend, "vector_add", scalar_arguments={"length": "1"}) as context:
            context.build(SOURCE)
            with pytest.raises(ValidationError, match="B"):
                context.prepare_buffers({"A": float_bytes([1])})

    def test_inconsistent_input_sizes(self, fake_backend):
        with _context(fake_backend, "vector_add", scalar_arguments={"length": "2"}) as context:
            context.build(SOURCE)
            with pytest.raises(ValidationError, match="invalid"):
                context.prepare_buffers({"A": float_bytes([1, 2]), "B": float_bytes([1])})

    def test_compilation_failure(self):
        backend = FakeBackend(kernels={})
        with _context(backend, "vector_add", scalar_arguments={"length": "1"}) as context:
            with pytest.raises(CompilationError) as excinfo:
                context.build(SOURCE)
        assert "vector_add" in excinfo.value.log

    def test_no_devices(self):
        with _context(FakeBackend(devices=0), "vector_add") as context:
            with pytest.raises(DeviceError, match="No fake devices"):
                context.build(SOURCE)

    def test_device_index_out_of_range(self):
        with _context(FakeBackend(devices=2), "vector_add", device_id=2) as context:
            with pytest.raises(DeviceError, match="0..1"):
                context.build(SOURCE)

    def test_invalid_function_name(self, fake_backend):
        context = _context(
            fake_backend, "vector_add", scalar_arguments={"length": "1"}, kernel_function_name="not-valid"
        )
        with context, pytest.raises(ConfigurationError, match="not-valid"):
            context.build(SOURCE)


# ---------------------------------------------------------------------------
# 5. State machine
# ---------------------------------------------------------------------------


class TestStateMachine:
    def test_steps_out_of_order(self, fake_backend):
        context = _context(fake_backend, "vector_add", scalar_arguments={"length": "4"})
        with pytest.raises(ContextStateError):
            context.prepare_buffers(_vector_add_inputs())
        context.select_backend()
        with pytest.raises(ContextStateError):
            context.compile_kernel(SOURCE)
        context.close()

    def test_runs_in_sequence(self, fake_backend):
        with _context(fake_backend, "vector_add", scalar_arguments={"length": "4"}, num_runs=2) as context:
            context.build(SOURCE)
            context.prepare_buffers(_vector_add_inputs())
            context.marshal_arguments()
            context.configure_launch()
            with pytest.raises(ContextStateError):
                context.execute_run(1)
            context.execute_run(0)
            context.execute_run(1)
            with pytest.raises(ContextStateError):
                context.execute_run(2)
            context.collect_outputs()

    def test_collect_before_run(self, fake_backend):
        with _context(fake_backend, "vector_add", scalar_arguments={"length": "4"}) as context:
            context.build(SOURCE)
            context.prepare_buffers(_vector_add_inputs())
            with pytest.raises(ContextStateError):
                context.collect_outputs()

    def test_close_is_idempotent(self, fake_backend):
        context = _context(fake_backend, "vector_add", scalar_arguments={"length": "4"})
        with context:
            context.build(SOURCE)
            context.execute(_vector_add_inputs())
        context.close()
        assert fake_backend.closed == 1
        assert all(buffer.released for buffer in fake_backend.allocations)
        with pytest.raises(ContextStateError):
            context.select_backend()


# ---------------------------------------------------------------------------
# 6. Files
# ---------------------------------------------------------------------------


class TestFiles:
    def test_source_and_inputs_from_files(self, fake_backend, tmp_path):
        (tmp_path / "test_copy.cu").write_text(SOURCE)
        np.arange(8, dtype=np.uint8).tofile(tmp_path / "A")
        context = _context(
            fake_backend,
            "test_copy",
            scalar_arguments={"n": "8"},
            kernel_sources_dir=tmp_path,
            input_buffer_dir=tmp_path,
            include_dirs=["extra"],
        )
        with context:
            context.build()
            assert context.include_dirs == [str(tmp_path), "extra"]
            outputs = context.execute()
        npt.assert_array_equal(outputs["B"], np.arange(8))

    def test_renamed_input_file(self, fake_backend, tmp_path):
        np.full(4, 3, dtype=np.uint8).tofile(tmp_path / "a.bin")
        context = _context(
            fake_backend,
            "test_copy",
            scalar_arguments={"n": "4"},
            input_buffer_dir=tmp_path,
            input_filenames={"A": "a.bin"},
        )
        with context:
            context.build(SOURCE)
            outputs = context.execute()
        npt.assert_array_equal(outputs["B"], [3, 3, 3, 3])

    def test_missing_source_file(self, fake_backend, tmp_path):
        context = _context(fake_backend, "test_copy", scalar_arguments={"n": "4"}, kernel_sources_dir=tmp_path)
        with context, pytest.raises(ConfigurationError, match="does not exist"):
            context.build()

    @pytest.mark.parametrize(
        "key,function_name,expected",
        [
            ("test_copy", None, "test_copy.cu"),
            ("suite/variant.test_copy", None, "test_copy.cu"),
            ("test_copy", "copy", "copy.cu"),
        ],
    )
    def test_default_source_name(self, fake_backend, tmp_path, key, function_name, expected):
        context = _context(fake_backend, key, kernel_function_name=function_name, kernel_sources_dir=tmp_path)
        context.select_backend()
        assert context.kernel_source_path == tmp_path / expected
