"""CUDA backend: CuPy-based Backend and DeviceBuffer implementations.

Implements the Backend ABC from gpu_runtime.backend using CuPy:
    - NVRTC compilation via cupy.cuda.nvrtc, keeping the PTX and the log
    - module loading via cupy.cuda.function.Module
    - device buffers are flat uint8 cupy.ndarray's
    - launches take a None-terminated argument list
    - timing with a pair of cupy.cuda.Event's around the launch
"""

from __future__ import annotations

import contextlib
import logging
import os
from typing import Any, Sequence

import numpy as np

from gpu_runtime.backend import Backend, CompilationResult, DeviceBuffer
from gpu_runtime.errors import DeviceError
from gpu_runtime.launch_config import LaunchConfig
from gpu_runtime.marshal import MarshaledArguments
from gpu_runtime.preprocessor import PreprocessorDefinitions

try:
    import cupy as cp
    from cupy.cuda import function as cuda_function
    from cupy.cuda import nvrtc

    HAS_CUPY = True
except ImportError:
    cp = None
    cuda_function = None
    nvrtc = None
    HAS_CUPY = False

logger = logging.getLogger(__name__)

# Scalar type codes CuPy can pass to a kernel directly
_CUPY_SCALAR_TYPES = "?bhilqBHILQefdFD"
_BIT_PATTERN_TYPES = {1: np.uint8, 2: np.uint16, 4: np.uint32, 8: np.uint64}


def kernel_argument(value: Any) -> Any:
    """Pass numpy scalars of extension dtypes (e.g. bfloat16) by their bit pattern."""
    if isinstance(value, np.generic) and value.dtype.char not in _CUPY_SCALAR_TYPES:
        return np.asarray(value).view(_BIT_PATTERN_TYPES[value.dtype.itemsize])[()]
    return value


@contextlib.contextmanager
def cuda_api_call(what: str):
    """Turn CUDA runtime/driver failures into DeviceError."""
    try:
        yield
    except (cp.cuda.runtime.CUDARuntimeError, cp.cuda.driver.CUDADriverError) as err:
        raise DeviceError(f"CUDA failure while {what}: {err}") from err


class CUDABuffer(DeviceBuffer):
    """CUDA device buffer backed by a flat uint8 cupy.ndarray."""

    def __init__(self, data: cp.ndarray):
        self._data = data

    @property
    def size_bytes(self) -> int:
        return self._data.nbytes

    @property
    def native_handle(self) -> Any:
        """Return the underlying cupy.ndarray."""
        return self._data

    def release(self) -> None:
        self._data = None


class CUDABackend(Backend):
    """CUDA GPU execution backend using CuPy."""

    def __init__(self):
        if not HAS_CUPY:
            raise DeviceError("CuPy is not installed. Install with: pip install 'kernel-runner[cuda]'")
        self._device_id: int | None = None
        self._cp_device = None
        self._modules: list = []
        self._closed = False

    @property
    def name(self) -> str:
        return "cuda"

    @property
    def source_file_suffix(self) -> str:
        return "cu"

    @property
    def ir_file_extension(self) -> str:
        return "ptx"

    @property
    def requires_argument_sentinel(self) -> bool:
        return True

    @property
    def requires_argument_sizes(self) -> bool:
        return False

    @property
    def device_name(self) -> str:
        props = cp.cuda.runtime.getDeviceProperties(self._device_id)
        name = props["name"]
        return name.decode() if isinstance(name, bytes) else str(name)

    def device_count(self) -> int:
        with cuda_api_call("counting devices"):
            return cp.cuda.runtime.getDeviceCount()

    def open_device(self, device_id: int) -> None:
        with cuda_api_call(f"opening device {device_id}"):
            self._cp_device = cp.cuda.Device(device_id)
            self._cp_device.use()
        self._device_id = device_id

    def default_include_dirs(self) -> list[str]:
        cuda_path = cp.cuda.get_cuda_path()
        include_dir = os.path.join(cuda_path, "include") if cuda_path else None
        if include_dir and os.path.isdir(include_dir):
            return [include_dir]
        logger.warning("Cannot locate CUDA include directory - trying to build the kernel with it missing.")
        return []

    def compile_options(
        self,
        *,
        debug: bool,
        line_info: bool,
        language_standard: str | None,
        include_dirs: Sequence[str],
        preinclude_files: Sequence[str],
        definitions: PreprocessorDefinitions | None,
    ) -> list[str]:
        options = [f"-arch=compute_{self._cp_device.compute_capability}"]
        if debug:
            options.append("-G")
        if line_info:
            options.append("-lineinfo")
        if language_standard:
            options.append(f"--std={language_standard}")
        options += [f"--include-path={d}" for d in include_dirs]
        options += [f"--pre-include={f}" for f in preinclude_files]
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
        source_name: str = "kernel.cu",
    ) -> CompilationResult:
        """NVRTC-compile ``source`` to PTX, then load it and look up ``entry_point``."""
        options = self.compile_options(
            debug=debug,
            line_info=line_info,
            language_standard=language_standard,
            include_dirs=include_dirs,
            preinclude_files=preinclude_files,
            definitions=definitions,
        )
        logger.debug("NVRTC options: %s", " ".join(options))

        program = nvrtc.createProgram(source, source_name, (), ())
        try:
            # Name expressions let us find C++-mangled entry points, too
            nvrtc.addNameExpression(program, entry_point)
            try:
                nvrtc.compileProgram(program, options)
            except nvrtc.NVRTCError:
                return CompilationResult(None, "", nvrtc.getProgramLog(program), False)
            log = nvrtc.getProgramLog(program)
            ptx = nvrtc.getPTX(program)
            lowered_name = nvrtc.getLoweredName(program, entry_point)
        finally:
            nvrtc.destroyProgram(program)

        with cuda_api_call(f"loading the module for {entry_point}"):
            module = cuda_function.Module()
            module.load(ptx)
            kernel = module.get_function(lowered_name)
        self._modules.append(module)

        ptx_text = ptx.decode() if isinstance(ptx, bytes) else ptx
        return CompilationResult(kernel, ptx_text.rstrip("\0"), log, True)

    def allocate(self, size_bytes: int) -> CUDABuffer:
        with cuda_api_call(f"allocating {size_bytes} bytes"):
            return CUDABuffer(cp.empty(size_bytes, dtype=cp.uint8))

    def copy_host_to_device(self, destination: DeviceBuffer, source: np.ndarray) -> None:
        with cuda_api_call("copying to the device"):
            destination.native_handle.set(source)
            self.synchronize()

    def copy_device_to_host(self, destination: np.ndarray, source: DeviceBuffer) -> None:
        with cuda_api_call("copying to the host"):
            source.native_handle.get(out=destination)
            self.synchronize()

    def copy_device_to_device(self, destination: DeviceBuffer, source: DeviceBuffer) -> None:
        with cuda_api_call("copying on the device"):
            cp.copyto(destination.native_handle, source.native_handle)
            self.synchronize()

    def zero_fill(self, buffer: DeviceBuffer) -> None:
        with cuda_api_call("zeroing a buffer"):
            buffer.native_handle.fill(0)

    def launch(
        self,
        kernel: Any,
        config: LaunchConfig,
        arguments: MarshaledArguments,
        time_execution: bool = False,
    ) -> float | None:
        if not arguments.terminated:
            raise ValueError("CUDA kernel arguments must be terminated with None")
        args = tuple(kernel_argument(value) for value in arguments.without_sentinel())
        stream = cp.cuda.get_current_stream()
        with cuda_api_call("launching the kernel"):
            if not time_execution:
                kernel(
                    config.grid_dimensions,
                    config.block_dimensions,
                    args,
                    shared_mem=config.dynamic_shared_memory_size,
                    stream=stream,
                )
                self.synchronize()
                return None
            start, end = cp.cuda.Event(), cp.cuda.Event()
            start.record(stream)
            kernel(
                config.grid_dimensions,
                config.block_dimensions,
                args,
                shared_mem=config.dynamic_shared_memory_size,
                stream=stream,
            )
            end.record(stream)
            end.synchronize()
            return cp.cuda.get_elapsed_time(start, end)

    def synchronize(self):
        """Synchronize CUDA device."""
        cp.cuda.Device(self._device_id).synchronize()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._modules.clear()
        if self._cp_device is not None:
            cp.get_default_memory_pool().free_all_blocks()
