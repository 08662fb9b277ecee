"""Shared fixtures and helpers: a host-memory backend and small test adapters."""

from __future__ import annotations

from typing import Any, Callable

import numpy as np
import pytest

from gpu_runtime.backend import Backend, CompilationResult, DeviceBuffer
from gpu_runtime.launch_config import LaunchConfig, LaunchConfigComponents
from gpu_runtime.marshal import MarshaledArguments
from gpu_runtime.options import RunOptions
from kernel_adapters import parsers
from kernel_adapters.adapter import KernelAdapter, ParameterDetails, size_by_input_buffer
from kernel_adapters.registry import register_adapter

# (arguments without sentinel, launch config) -> None; buffers are uint8 numpy arrays
FakeKernel = Callable[[list[Any], LaunchConfig], None]


# ---------------------------------------------------------------------------
# Fake kernels
# ---------------------------------------------------------------------------


def vector_add_kernel(args, config):
    a, b, c, length = args
    n = int(length)
    c.view(np.float32)[:n] = a.view(np.float32)[:n] + b.view(np.float32)[:n]


def scale_in_place_kernel(args, config):
    data, factor, length = args
    data.view(np.float32)[: int(length)] *= factor


def fill_kernel(args, config):
    result, value, length = args
    result.view(np.int32)[: int(length)] = value


def copy_kernel(args, config):
    a, b, n = args
    b[:] = a


FAKE_KERNELS: dict[str, FakeKernel] = {
    "vector_add": vector_add_kernel,
    "scale_in_place": scale_in_place_kernel,
    "fill": fill_kernel,
    "copy": copy_kernel,
}


# ---------------------------------------------------------------------------
# Host-memory backend
# ---------------------------------------------------------------------------


class FakeBuffer(DeviceBuffer):
    def __init__(self, size_bytes: int):
        self.data = np.zeros(size_bytes, dtype=np.uint8)
        self.released = False

    @property
    def size_bytes(self) -> int:
        return self.data.nbytes

    @property
    def native_handle(self) -> Any:
        return self.data

    def release(self) -> None:
        self.released = True


class FakeBackend(Backend):
    """Backend running "kernels" as Python callables on numpy arrays.

    Records every call in ``calls`` as (operation, details) tuples, and a copy
    of the argument list at each launch in ``launches``.
    """

    def __init__(
        self,
        *,
        sentinel: bool = True,
        sizes: bool = False,
        devices: int = 1,
        kernels: dict[str, FakeKernel] | None = None,
        timing_ms: float = 1.5,
    ):
        self._sentinel = sentinel
        self._sizes = sizes
        self._devices = devices
        self.kernels = dict(FAKE_KERNELS if kernels is None else kernels)
        self.timing_ms = timing_ms
        self.calls: list[tuple[str, Any]] = []
        self.allocations: list[FakeBuffer] = []
        self.launches: list[list[Any]] = []
        self.compile_kwargs: dict[str, Any] = {}
        self.opened_device: int | None = None
        self.closed = 0

    @property
    def name(self) -> str:
        return "fake"

    @property
    def source_file_suffix(self) -> str:
        return "cu"

    @property
    def ir_file_extension(self) -> str:
        return "fakeir"

    @property
    def requires_argument_sentinel(self) -> bool:
        return self._sentinel

    @property
    def requires_argument_sizes(self) -> bool:
        return self._sizes

    @property
    def device_name(self) -> str:
        return "Fake Device"

    def device_count(self) -> int:
        return self._devices

    def open_device(self, device_id: int) -> None:
        self.opened_device = device_id
        self.calls.append(("open_device", device_id))

    def compile(self, source, entry_point, **kwargs) -> CompilationResult:
        self.calls.append(("compile", entry_point))
        self.compile_kwargs = kwargs
        kernel = self.kernels.get(entry_point)
        if kernel is None:
            return CompilationResult(None, "", f"error: identifier \"{entry_point}\" is undefined", False)
        return CompilationResult(kernel, f"// IR for {entry_point}\n", "", True)

    def allocate(self, size_bytes: int) -> FakeBuffer:
        buffer = FakeBuffer(size_bytes)
        self.allocations.append(buffer)
        self.calls.append(("allocate", size_bytes))
        return buffer

    def copy_host_to_device(self, destination, source) -> None:
        self.calls.append(("h2d", source.nbytes))
        destination.native_handle[:] = source

    def copy_device_to_host(self, destination, source) -> None:
        self.calls.append(("d2h", destination.nbytes))
        destination[:] = source.native_handle

    def copy_device_to_device(self, destination, source) -> None:
        self.calls.append(("d2d", source.size_bytes))
        destination.native_handle[:] = source.native_handle

    def zero_fill(self, buffer) -> None:
        self.calls.append(("zero", buffer.size_bytes))
        buffer.native_handle.fill(0)

    def launch(self, kernel, config: LaunchConfig, arguments: MarshaledArguments, time_execution=False):
        if self._sentinel and not arguments.terminated:
            raise ValueError("argument list is not terminated")
        args = arguments.without_sentinel()
        self.launches.append([a.copy() if isinstance(a, np.ndarray) else a for a in args])
        self.calls.append(("launch", config))
        kernel(args, config)
        return self.timing_ms if time_execution else None

    def synchronize(self):
        self.calls.append(("synchronize", None))

    def close(self) -> None:
        self.closed += 1

    def operations(self) -> list[str]:
        return [op for op, _ in self.calls]


# ---------------------------------------------------------------------------
# Test adapters
# ---------------------------------------------------------------------------


@register_adapter(override=True)
class CopyAdapter(KernelAdapter):
    """A (in), B (out, sized like A), n (required scalar)."""

    key = "test_copy"
    kernel_function_name = "copy"

    def parameter_details(self):
        return [
            ParameterDetails("A", self.buffer, self.input),
            ParameterDetails("B", self.buffer, self.output, size_calculator=size_by_input_buffer("A")),
            ParameterDetails("n", self.scalar, parser=parsers.int32),
        ]

    def deduce_launch_config(self, context):
        return LaunchConfigComponents(block_dimensions=(4,), grid_dimensions=(1,))


@register_adapter(override=True)
class NoDeductionAdapter(CopyAdapter):
    key = "test_no_deduction"

    def deduce_launch_config(self, context):
        return LaunchConfigComponents()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def float_bytes(values) -> np.ndarray:
    return np.asarray(values, dtype=np.float32).view(np.uint8)


def make_options(kernel_key: str, **kwargs) -> RunOptions:
    return RunOptions(kernel_key=kernel_key, **kwargs)


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def opencl_style_backend():
    """Fake backend using the size-list calling convention, without a sentinel."""
    return FakeBackend(sentinel=False, sizes=True)
