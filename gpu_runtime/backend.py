"""Abstract backend interfaces for the kernel runner.

The execution context only talks to these ABCs. cuda_runtime and
opencl_runtime each provide one implementation; nothing outside
create_backend() knows which one is in use.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence

import numpy as np

if TYPE_CHECKING:
    from gpu_runtime.launch_config import LaunchConfig
    from gpu_runtime.marshal import MarshaledArguments
    from gpu_runtime.preprocessor import PreprocessorDefinitions


class DeviceBuffer(ABC):
    """Abstract device-side byte buffer."""

    @property
    @abstractmethod
    def size_bytes(self) -> int:
        ...

    @property
    @abstractmethod
    def native_handle(self) -> Any:
        """Backend-native buffer object (e.g. cupy.ndarray, pyopencl.Buffer)."""
        ...

    @property
    def kernel_argument(self) -> Any:
        """The object placed in a marshaled argument list for this buffer."""
        return self.native_handle

    @property
    def argument_size(self) -> int:
        """Size of the kernel argument itself: a device pointer or memory handle."""
        return np.dtype(np.uintp).itemsize

    def release(self) -> None:
        """Free device memory early; the default leaves it to garbage collection."""


@dataclass
class CompilationResult:
    """Outcome of building a kernel from source."""

    kernel: Any
    intermediate_representation: str | bytes
    log: str
    success: bool


class Backend(ABC):
    """Abstract GPU compute backend.

    Lifecycle: construct (no native calls) -> device_count() / open_device()
    -> compile / allocate / copy / launch -> close(). Backends are context
    managers; close() is idempotent.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def source_file_suffix(self) -> str:
        """File extension of kernel sources for this backend, without the dot."""
        ...

    @property
    @abstractmethod
    def ir_file_extension(self) -> str:
        """File extension for the emitted intermediate representation."""
        ...

    @property
    @abstractmethod
    def requires_argument_sentinel(self) -> bool:
        """True if the launch call expects a None-terminated argument list."""
        ...

    @property
    @abstractmethod
    def requires_argument_sizes(self) -> bool:
        """True if the launch call expects a size alongside every argument."""
        ...

    @property
    @abstractmethod
    def device_name(self) -> str:
        ...

    @abstractmethod
    def device_count(self) -> int:
        ...

    @abstractmethod
    def open_device(self, device_id: int) -> None:
        ...

    def default_include_dirs(self) -> list[str]:
        """Include directories the backend always adds after the user's."""
        return []

    @abstractmethod
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
        source_name: str = "kernel",
    ) -> CompilationResult:
        ...

    @abstractmethod
    def allocate(self, size_bytes: int) -> DeviceBuffer:
        ...

    @abstractmethod
    def copy_host_to_device(self, destination: DeviceBuffer, source: np.ndarray) -> None:
        ...

    @abstractmethod
    def copy_device_to_host(self, destination: np.ndarray, source: DeviceBuffer) -> None:
        ...

    @abstractmethod
    def copy_device_to_device(self, destination: DeviceBuffer, source: DeviceBuffer) -> None:
        ...

    @abstractmethod
    def zero_fill(self, buffer: DeviceBuffer) -> None:
        ...

    @abstractmethod
    def launch(
        self,
        kernel: Any,
        config: LaunchConfig,
        arguments: MarshaledArguments,
        time_execution: bool = False,
    ) -> float | None:
        """Launch once and wait for completion; returns elapsed ms if timed."""
        ...

    @abstractmethod
    def synchronize(self):
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
