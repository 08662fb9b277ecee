"""OpenCL backend: pyopencl-based Backend and DeviceBuffer implementations.

Implements the Backend ABC from gpu_runtime.backend using pyopencl:
    - one platform (chosen by index) and one GPU device on it
    - a context and a profiling-enabled command queue
    - programs built from source; the program binary is the intermediate
      representation (PTX on NVIDIA platforms)
    - arguments are set one by one, each with an explicit size
    - timing from the launch event's profiling info
"""

from __future__ import annotations

import contextlib
import logging
from typing import Any, Sequence

import numpy as np

from gpu_runtime.backend import Backend, CompilationResult, DeviceBuffer
from gpu_runtime.errors import DeviceError
from gpu_runtime.launch_config import LaunchConfig
from gpu_runtime.marshal import MarshaledArguments
from gpu_runtime.preprocessor import PreprocessorDefinitions

try:
    import pyopencl as cl

    HAS_PYOPENCL = True
except ImportError:
    cl = None
    HAS_PYOPENCL = False

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def opencl_api_call(what: str):
    """Turn pyopencl failures into DeviceError."""
    try:
        yield
    except cl.Error as err:
        raise DeviceError(f"OpenCL failure while {what}: {err}") from err


class OpenCLBuffer(DeviceBuffer):
    """OpenCL device buffer backed by a read/write pyopencl.Buffer."""

    def __init__(self, buffer: cl.Buffer, size_bytes: int):
        self._buffer = buffer
        self._size_bytes = size_bytes

    @property
    def size_bytes(self) -> int:
        return self._size_bytes

    @property
    def native_handle(self) -> Any:
        """Return the underlying pyopencl.Buffer."""
        return self._buffer

    def release(self) -> None:
        if self._buffer is not None:
            self._buffer.release()
            self._buffer = None


class OpenCLBackend(Backend):
    """OpenCL GPU execution backend using pyopencl."""

    def __init__(self, platform_id: int = 0):
        if not HAS_PYOPENCL:
            raise DeviceError("pyopencl is not installed. Install with: pip install 'kernel-runner[opencl]'")
        self._platform_id = platform_id
        self._platform = None
        self._device = None
        self._context = None
        self._queue = None
        self._programs: list = []
        self._closed = False

    @property
    def name(self) -> str:
        return "opencl"

    @property
    def source_file_suffix(self) -> str:
        return "cl"

    @property
    def ir_file_extension(self) -> str:
        return "clbin"

    @property
    def requires_argument_sentinel(self) -> bool:
        return False

    @property
    def requires_argument_sizes(self) -> bool:
        return True

    @property
    def device_name(self) -> str:
        return self._device.name.strip()

    @property
    def platform(self):
        if self._platform is None:
            try:
                platforms = cl.get_platforms()
            except cl.Error as err:
                raise DeviceError(f"No OpenCL platforms found: {err}") from err
            if not platforms:
                raise DeviceError("No OpenCL platforms found.")
            if self._platform_id >= len(platforms):
                raise DeviceError(f"No OpenCL platform exists with ID {self._platform_id}")
            self._platform = platforms[self._platform_id]
            logger.debug("Using OpenCL platform %d: %s", self._platform_id, self._platform.name)
        return self._platform

    def _gpu_devices(self) -> list:
        try:
            return self.platform.get_devices(device_type=cl.device_type.GPU)
        except cl.RuntimeError:
            # DEVICE_NOT_FOUND
            return []

    def device_count(self) -> int:
        return len(self._gpu_devices())

    def open_device(self, device_id: int) -> None:
        devices = self._gpu_devices()
        if not 0 <= device_id < len(devices):
            raise DeviceError(f"No OpenCL device {device_id} on platform {self._platform_id}")
        with opencl_api_call(f"opening device {device_id}"):
            self._device = devices[device_id]
            self._context = cl.Context(devices=[self._device])
            self._queue = cl.CommandQueue(
                self._context,
                self._device,
                properties=cl.command_queue_properties.PROFILING_ENABLE,
            )

    def build_options(
        self,
        *,
        debug: bool,
        line_info: bool,
        language_standard: str | None,
        include_dirs: Sequence[str],
        definitions: PreprocessorDefinitions | None,
    ) -> list[str]:
        options: list[str] = []
        if debug:
            options.append("-cl-opt-disable")
        if line_info and "NVIDIA" in self.platform.name:
            options.append("-nv-line-info")
        if language_standard:
            logger.debug("Language standard %s does not apply to OpenCL C; ignoring it", language_standard)
        options += [f"-I{d}" for d in include_dirs]
        if definitions is not None:
            options += definitions.compiler_flags()
        return options

    def compile(
        self,
        source: str,
        entry_point: str,
        *,
        debug: bool = False,
        line_info: bool = True,
        language_standard: str | None = None,
        include_dirs: Sequence[str] = (),
        preinclude_files: Sequence[str] = (),
        definitions: PreprocessorDefinitions | None = None,
        source_name: str = "kernel.cl",
    ) -> CompilationResult:
        """Build ``source`` for the bound device and create the ``entry_point`` kernel."""
        options = self.build_options(
            debug=debug,
            line_info=line_info,
            language_standard=language_standard,
            include_dirs=include_dirs,
            definitions=definitions,
        )
        logger.debug("OpenCL build options: %s", " ".join(options))
        # OpenCL has no pre-include option
        prelude = "".join(f'#include "{path}"\n' for path in preinclude_files)

        program = cl.Program(self._context, prelude + source)
        try:
            program.build(options=options, devices=[self._device])
        except cl.RuntimeError as err:
            return CompilationResult(None, "", str(err), False)
        log = program.get_build_info(self._device, cl.program_build_info.LOG)
        binaries = program.get_info(cl.program_info.BINARIES)
        intermediate = bytes(binaries[0]) if binaries else b""

        try:
            kernel = cl.Kernel(program, entry_point)
        except cl.Error as err:
            return CompilationResult(None, intermediate, f"{log}\n{err}", False)
        self._programs.append(program)
        return CompilationResult(kernel, intermediate, log, True)

    def allocate(self, size_bytes: int) -> OpenCLBuffer:
        with opencl_api_call(f"allocating {size_bytes} bytes"):
            # OpenCL cannot allocate 0-byte buffers; use a 1-byte placeholder
            buffer = cl.Buffer(self._context, cl.mem_flags.READ_WRITE, max(size_bytes, 1))
        logger.debug("Created an OpenCL read/write buffer with size %d", size_bytes)
        return OpenCLBuffer(buffer, size_bytes)

    def copy_host_to_device(self, destination: DeviceBuffer, source: np.ndarray) -> None:
        if source.nbytes == 0:
            return
        with opencl_api_call("copying to the device"):
            cl.enqueue_copy(self._queue, destination.native_handle, source, is_blocking=True)

    def copy_device_to_host(self, destination: np.ndarray, source: DeviceBuffer) -> None:
        if destination.nbytes == 0:
            return
        with opencl_api_call("copying to the host"):
            cl.enqueue_copy(self._queue, destination, source.native_handle, is_blocking=True)

    def copy_device_to_device(self, destination: DeviceBuffer, source: DeviceBuffer) -> None:
        if source.size_bytes == 0:
            return
        with opencl_api_call("copying on the device"):
            cl.enqueue_copy(
                self._queue, destination.native_handle, source.native_handle, byte_count=source.size_bytes,
            )
            self._queue.finish()

    def zero_fill(self, buffer: DeviceBuffer) -> None:
        if buffer.size_bytes == 0:
            return
        with opencl_api_call("zeroing a buffer"):
            cl.enqueue_fill_buffer(self._queue, buffer.native_handle, np.uint8(0), 0, buffer.size_bytes)

    def _set_arguments(self, kernel, arguments: MarshaledArguments) -> None:
        if len(arguments.sizes) != len(arguments.arguments):
            raise ValueError(
                f"OpenCL kernel arguments need one size per argument; got {len(arguments.arguments)} "
                f"arguments and {len(arguments.sizes)} sizes"
            )
        for index, (argument, size) in enumerate(zip(arguments.arguments, arguments.sizes)):
            if isinstance(argument, cl.MemoryObjectHolder):
                kernel.set_arg(index, argument)
                continue
            raw = np.asarray(argument).tobytes()
            if len(raw) != size:
                raise ValueError(f"Kernel argument {index} has {len(raw)} bytes, but its size is given as {size}")
            kernel.set_arg(index, raw)

    def launch(
        self,
        kernel: Any,
        config: LaunchConfig,
        arguments: MarshaledArguments,
        time_execution: bool = False,
    ) -> float | None:
        if config.dynamic_shared_memory_size:
            logger.warning(
                "Dynamic shared memory size %d ignored: OpenCL kernels take local memory as arguments",
                config.dynamic_shared_memory_size,
            )
        with opencl_api_call("launching the kernel"):
            self._set_arguments(kernel, arguments)
            event = cl.enqueue_nd_range_kernel(
                self._queue,
                kernel,
                config.overall_grid_dimensions,
                config.block_dimensions,
            )
            event.wait()
            if time_execution:
                return (event.profile.end - event.profile.start) * 1e-6
        return None

    def synchronize(self):
        if self._queue is not None:
            self._queue.finish()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.synchronize()
        self._programs.clear()
        self._queue = None
        self._context = None
        self._device = None
