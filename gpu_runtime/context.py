"""ExecutionContext: drives one kernel from source to results.

Architecture:
    The context owns the backend (device, queue, compiled module/program),
    the kernel adapter, the buffers and the launch configuration, and moves
    through a fixed sequence of states:

        UNINITIALIZED -> BACKEND_SELECTED -> DEVICE_BOUND -> DESCRIPTOR_BOUND
        -> SOURCE_COMPILED -> BUFFERS_READY -> ARGUMENTS_MARSHALED
        -> LAUNCH_CONFIGURED -> EXECUTED (x num_runs) -> FINALIZED

    Each public step method performs one transition and refuses to run
    out of order (ContextStateError). There are no backward transitions and
    no retries; any failure propagates to the caller.

    Backend identity is decided once, in create_backend(). Everything after
    that goes through the Backend ABC.

Resource ownership:
    All native resources are released by close(), which is idempotent and
    runs on __exit__, so `with ExecutionContext(...) as context:` releases
    them on error paths as well.
"""

from __future__ import annotations

import enum
import logging
from pathlib import Path
from typing import Any, Callable, Mapping

import numpy as np

from gpu_runtime.backend import Backend, CompilationResult
from gpu_runtime.buffer_io import maybe_prepend_base_dir, read_buffers
from gpu_runtime.buffers import BufferLifecycleManager
from gpu_runtime.errors import CompilationError, ConfigurationError, ContextStateError, DeviceError, ValidationError
from gpu_runtime.launch_config import LaunchConfig, resolve_launch_config
from gpu_runtime.marshal import MarshaledArguments
from gpu_runtime.options import Ecosystem, RunOptions, clip_key
from gpu_runtime.preprocessor import PreprocessorDefinitions, finalize_preprocessor_definitions
from kernel_adapters.adapter import KernelAdapter, ParameterDirection
from kernel_adapters.registry import produce_adapter

logger = logging.getLogger(__name__)


class ContextState(enum.IntEnum):
    UNINITIALIZED = 0
    BACKEND_SELECTED = 1
    DEVICE_BOUND = 2
    DESCRIPTOR_BOUND = 3
    SOURCE_COMPILED = 4
    BUFFERS_READY = 5
    ARGUMENTS_MARSHALED = 6
    LAUNCH_CONFIGURED = 7
    EXECUTED = 8
    FINALIZED = 9


def create_backend(options: RunOptions) -> Backend:
    """Instantiate the backend for the configured ecosystem."""
    if options.ecosystem is Ecosystem.CUDA:
        from cuda_runtime.cuda_backend import CUDABackend

        return CUDABackend()
    from opencl_runtime.opencl_backend import OpenCLBackend

    return OpenCLBackend(platform_id=options.platform_id or 0)


def log_compilation_log(log: str, failed: bool) -> None:
    """Log the compiler output: always on failure, otherwise only if not blank."""
    log = (log or "").rstrip("\0")
    if not failed and not log.strip():
        return
    level = logging.ERROR if failed else logging.DEBUG
    if not log:
        logger.log(level, "Kernel compilation log is empty.")
        return
    logger.log(level, "Kernel compilation log:\n-----\n%s\n-----", log)


class ExecutionContext:
    """Aggregate root for a single kernel execution."""

    def __init__(
        self,
        options: RunOptions,
        backend_factory: Callable[[RunOptions], Backend] | None = None,
    ):
        self.options = options
        self.state = ContextState.UNINITIALIZED
        self._backend_factory = backend_factory or create_backend
        self._closed = False

        self.backend: Backend | None = None
        self.adapter: KernelAdapter | None = None
        self.kernel_function_name: str | None = None
        self.raw_scalar_arguments: dict[str, str] = {}
        self.scalar_arguments: dict[str, Any] = {}
        self.preprocessor_definitions = PreprocessorDefinitions()
        self.include_dirs: list[str] = []
        self.compiled_kernel: Any = None
        self.intermediate_representation: str | bytes = ""
        self.buffers: BufferLifecycleManager | None = None
        self.marshaled_arguments: MarshaledArguments | None = None
        self.launch_config: LaunchConfig | None = None
        self.run_timings: list[float | None] = []

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _require(self, *states: ContextState) -> None:
        if self._closed:
            raise ContextStateError("The execution context has already been closed")
        if self.state not in states:
            expected = " or ".join(s.name for s in states)
            raise ContextStateError(f"Execution context is {self.state.name}; expected {expected}")

    def _advance(self, state: ContextState) -> None:
        logger.debug("Execution context: %s -> %s", self.state.name, state.name)
        self.state = state

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def select_backend(self) -> Backend:
        self._require(ContextState.UNINITIALIZED)
        self.backend = self._backend_factory(self.options)
        logger.debug("Using the %s execution ecosystem.", self.backend.name)
        self._advance(ContextState.BACKEND_SELECTED)
        return self.backend

    def bind_device(self) -> None:
        self._require(ContextState.BACKEND_SELECTED)
        count = self.backend.device_count()
        if count == 0:
            raise DeviceError(f"No {self.backend.name} devices detected on this system")
        device_id = self.options.device_id
        if not 0 <= device_id < count:
            raise DeviceError(f"Please specify a valid device index (in the range 0..{count - 1})")
        self.backend.open_device(device_id)
        logger.info("Using %s device %d: %s", self.backend.name, device_id, self.backend.device_name)
        self._advance(ContextState.DEVICE_BOUND)

    def bind_adapter(self) -> KernelAdapter:
        """Look up the adapter; parse scalars; finalize preprocessor definitions."""
        self._require(ContextState.DEVICE_BOUND)
        adapter = produce_adapter(self.options.kernel_key)
        self.adapter = adapter

        self.kernel_function_name = self.options.kernel_function_name or adapter.kernel_function_name
        if not self.kernel_function_name.isidentifier():
            raise ConfigurationError(
                f"The kernel function name for adapter '{adapter.key}' is invalid: "
                f"'{self.kernel_function_name}'"
            )

        self._parse_scalar_arguments()

        self.preprocessor_definitions = finalize_preprocessor_definitions(
            self.options.preprocessor_definitions,
            self.options.preprocessor_value_definitions,
        )
        missing = self.preprocessor_definitions.missing(adapter.required_preprocessor_definition_terms())
        if missing:
            raise ValidationError(
                "The following preprocessor definitions must be specified, but have not been: "
                + ", ".join(missing)
            )

        self.include_dirs = self._collect_include_dirs()
        self._advance(ContextState.DESCRIPTOR_BOUND)
        return adapter

    def _parse_scalar_arguments(self) -> None:
        adapter = self.adapter
        for param in adapter.scalar_parameter_details():
            raw = self.options.scalar_arguments.get(param.name)
            if raw is None:
                if param.required:
                    raise ValidationError(f"Scalar argument '{param.name}' must be specified, but wasn't")
                continue
            logger.debug("Parsing scalar argument %s", param.name)
            self.raw_scalar_arguments[param.name] = raw
            self.scalar_arguments[param.name] = adapter.parse_scalar_argument(param, raw)

    @property
    def kernel_source_path(self) -> Path:
        """Explicit source file, or ``<function or clipped key>.<suffix>`` in the sources directory."""
        source = self.options.kernel_source_file
        if source is None:
            stem = self.options.kernel_function_name or clip_key(self.options.kernel_key)
            source = Path(f"{stem}.{self.backend.source_file_suffix}")
        return maybe_prepend_base_dir(self.options.kernel_sources_dir, source)

    def _collect_include_dirs(self) -> list[str]:
        # Order matters: the source file's directory, then the user's, then the backend's
        source_dir = str(self.kernel_source_path.parent) or "."
        dirs = [source_dir, *self.options.include_dirs]
        for extra in self.backend.default_include_dirs():
            logger.debug("Using %s include directory %s", self.backend.name, extra)
            dirs.append(extra)
        return dirs

    def compile_kernel(self, source: str | None = None) -> CompilationResult:
        """Build the kernel; the source is read from kernel_source_path if not given."""
        self._require(ContextState.DESCRIPTOR_BOUND)
        source_path = self.kernel_source_path
        if source is None:
            if not source_path.is_file():
                raise ConfigurationError(f"Kernel source file {source_path} does not exist")
            logger.debug("Reading the kernel from %s", source_path)
            source = source_path.read_text()

        options = self.options
        result = self.backend.compile(
            source,
            self.kernel_function_name,
            debug=options.compile_in_debug_mode,
            line_info=options.generate_line_info,
            language_standard=options.language_standard,
            include_dirs=self.include_dirs,
            preinclude_files=options.preinclude_files,
            definitions=self.preprocessor_definitions,
            source_name=source_path.name,
        )
        log_compilation_log(result.log, failed=not result.success)
        if not result.success:
            raise CompilationError(f"Failed building kernel '{options.kernel_key}'", log=result.log)

        self.compiled_kernel = result.kernel
        self.intermediate_representation = result.intermediate_representation
        logger.info("Kernel %s built successfully.", options.kernel_key)
        self._advance(ContextState.SOURCE_COMPILED)
        return result

    def prepare_buffers(self, host_inputs: Mapping[str, Any] | None = None) -> BufferLifecycleManager:
        """Verify inputs, create all buffers and copy the inputs to the device.

        Args:
            host_inputs: Input and inout buffer contents by name. If None, they
                         are read from the input buffer directory.
        """
        self._require(ContextState.SOURCE_COMPILED)
        adapter = self.adapter
        buffers = BufferLifecycleManager(self.backend, adapter)
        self.buffers = buffers

        if host_inputs is None:
            logger.debug("Reading input buffers.")
            host_inputs = read_buffers(
                adapter.buffer_names(ParameterDirection.IN, ParameterDirection.INOUT),
                self.options.input_filenames,
                self.options.input_buffer_dir,
            )
        buffers.set_host_inputs(host_inputs)
        self._verify_inputs()
        logger.info("Input (and inout) arguments verified - both buffers and scalars.")

        buffers.create_host_output_buffers(self.scalar_arguments, self.preprocessor_definitions)
        buffers.create_device_buffers()

        generated = adapter.generate_additional_scalar_arguments(self)
        for name in generated:
            logger.debug("Kernel adapter generated scalar argument %s", name)
        self.scalar_arguments.update(generated)

        buffers.copy_inputs_to_device()
        self._advance(ContextState.BUFFERS_READY)
        return buffers

    def _verify_inputs(self) -> None:
        logger.debug("Verifying input arguments (buffers and scalars)")
        missing = self.buffers.missing_input_buffers()
        if missing:
            raise ValidationError("Missing input/inout buffers: " + ", ".join(missing))
        for name in self.adapter.required_scalar_names():
            if name not in self.scalar_arguments:
                raise ValidationError(f"Required scalar argument {name} not provided")
        if not self.adapter.input_sizes_are_valid(self):
            raise ValidationError("Inputs are invalid, cannot execute kernel")
        if not self.adapter.extra_validity_checks(self):
            raise ValidationError(
                "The combination of input arguments (scalars and buffers) and preprocessor "
                "definitions is invalid."
            )

    def marshal_arguments(self) -> MarshaledArguments:
        self._require(ContextState.BUFFERS_READY)
        logger.debug("Marshaling kernel arguments.")
        self.marshaled_arguments = self.adapter.marshal_kernel_arguments(self)
        self._advance(ContextState.ARGUMENTS_MARSHALED)
        return self.marshaled_arguments

    def configure_launch(self) -> LaunchConfig:
        self._require(ContextState.ARGUMENTS_MARSHALED)
        logger.debug("Creating a launch configuration.")
        self.launch_config = resolve_launch_config(
            self.options.forced_launch_config,
            lambda: self.adapter.deduce_launch_config(self),
        )
        self.launch_config.log_summary()
        self._advance(ContextState.LAUNCH_CONFIGURED)
        return self.launch_config

    def execute_run(self, run_index: int) -> float | None:
        """Perform one run; runs must be executed in order, starting from 0."""
        self._require(ContextState.LAUNCH_CONFIGURED, ContextState.EXECUTED)
        num_runs = self.options.num_runs
        if run_index != len(self.run_timings) or run_index >= num_runs:
            raise ContextStateError(
                f"Run {run_index} requested; expected run {len(self.run_timings)} of {num_runs}"
            )
        logger.info("Preparing for kernel run %d of %d (1-based).", run_index + 1, num_runs)
        if self.options.zero_output_buffers:
            self.buffers.zero_output_buffers()
        self.buffers.reset_inout_working_copies()

        elapsed = self.backend.launch(
            self.compiled_kernel,
            self.launch_config,
            self.marshaled_arguments,
            time_execution=self.options.time_execution,
        )
        if elapsed is not None:
            logger.info("Kernel run %d took %.3f ms", run_index + 1, elapsed)
        logger.debug("Kernel execution run complete.")
        self.run_timings.append(elapsed)
        self._advance(ContextState.EXECUTED)
        return elapsed

    def run(self) -> list[float | None]:
        """Perform all configured runs, sequentially."""
        self._require(ContextState.LAUNCH_CONFIGURED)
        for run_index in range(self.options.num_runs):
            self.execute_run(run_index)
        return self.run_timings

    def collect_outputs(self) -> dict[str, np.ndarray]:
        """Copy output and inout buffers back to the host."""
        self._require(ContextState.EXECUTED)
        outputs = self.buffers.copy_outputs_to_host()
        self._advance(ContextState.FINALIZED)
        return outputs

    def build(self, source: str | None = None) -> CompilationResult:
        """Select backend and device, bind the adapter and compile."""
        self.select_backend()
        self.bind_device()
        self.bind_adapter()
        return self.compile_kernel(source)

    def execute(self, host_inputs: Mapping[str, Any] | None = None) -> dict[str, np.ndarray]:
        """From a compiled kernel: prepare, run num_runs times, collect outputs."""
        self.prepare_buffers(host_inputs)
        self.marshal_arguments()
        self.configure_launch()
        self.run()
        return self.collect_outputs()

    # ------------------------------------------------------------------
    # Resource release
    # ------------------------------------------------------------------

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.buffers is not None:
            self.buffers.release()
        self.marshaled_arguments = None
        self.compiled_kernel = None
        if self.backend is not None:
            self.backend.close()
        logger.debug("Execution context resources released")

    def __enter__(self) -> ExecutionContext:
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
