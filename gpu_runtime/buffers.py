"""Buffer lifecycle: host/device buffers by logical name and direction.

Host buffers are flat numpy uint8 arrays. Buffers are kept in two
collections, ``inputs`` and ``outputs``, on both the host and the device
side. An inout buffer appears in both under the same name:

    device_inputs[name]    pristine copy, loaded once, never written
    device_outputs[name]   working copy the kernel mutates; reset from the
                           pristine copy before every run
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Mapping

import numpy as np

from gpu_runtime.errors import ValidationError
from kernel_adapters.adapter import ParameterDirection

if TYPE_CHECKING:
    from gpu_runtime.backend import Backend, DeviceBuffer
    from gpu_runtime.preprocessor import PreprocessorDefinitions
    from kernel_adapters.adapter import KernelAdapter

logger = logging.getLogger(__name__)


def as_host_buffer(data) -> np.ndarray:
    """View any bytes-like object or numpy array as a flat uint8 array."""
    if isinstance(data, np.ndarray):
        return np.ascontiguousarray(data).reshape(-1).view(np.uint8)
    return np.frombuffer(bytes(data), dtype=np.uint8).copy()


class BufferLifecycleManager:
    """Creates, populates and resets the buffers of one kernel execution."""

    def __init__(self, backend: Backend, adapter: KernelAdapter):
        self._backend = backend
        self._adapter = adapter
        self.host_inputs: dict[str, np.ndarray] = {}
        self.host_outputs: dict[str, np.ndarray] = {}
        self.device_inputs: dict[str, DeviceBuffer] = {}
        self.device_outputs: dict[str, DeviceBuffer] = {}

    # -- host side ----------------------------------------------------------

    def set_host_inputs(self, host_inputs: Mapping[str, Any]) -> None:
        self.host_inputs = {name: as_host_buffer(data) for name, data in host_inputs.items()}

    def missing_input_buffers(self) -> list[str]:
        wanted = self._adapter.buffer_names(ParameterDirection.IN, ParameterDirection.INOUT)
        return [name for name in wanted if name not in self.host_inputs]

    def create_host_output_buffers(
        self,
        scalars: Mapping[str, Any],
        definitions: PreprocessorDefinitions,
    ) -> None:
        """Size and allocate host output buffers (inout buffers included)."""
        logger.debug("Creating host-side output buffers")
        sizes = self._adapter.output_buffer_sizes(
            self.host_inputs, scalars, definitions.valueless, definitions.valued,
        )
        for name, size in sizes.items():
            if size is None:
                if name not in self.host_inputs:
                    raise ValidationError(
                        f"Output buffer '{name}' has no size calculator, and no input to take its size from"
                    )
                size = self.host_inputs[name].nbytes
            if size < 0:
                raise ValidationError(f"Negative size {size} computed for output buffer '{name}'")
            if name in self.host_inputs and size != self.host_inputs[name].nbytes:
                raise ValidationError(
                    f"In-out buffer '{name}' has {self.host_inputs[name].nbytes} bytes of input, "
                    f"but {size} bytes computed for its output"
                )
            logger.debug("Output buffer '%s' will have %d bytes", name, size)
            self.host_outputs[name] = np.zeros(size, dtype=np.uint8)

    # -- device side --------------------------------------------------------

    def _allocate_all(self, host_buffers: Mapping[str, np.ndarray]) -> dict[str, DeviceBuffer]:
        result: dict[str, DeviceBuffer] = {}
        for name, host_buffer in host_buffers.items():
            logger.debug("Creating device buffer of size %d for kernel parameter %s", host_buffer.nbytes, name)
            result[name] = self._backend.allocate(host_buffer.nbytes)
        return result

    def create_device_buffers(self) -> None:
        """One device buffer per host buffer; inout names get one in each collection."""
        logger.debug("Creating device buffers")
        self.device_inputs = self._allocate_all(self.host_inputs)
        self.device_outputs = self._allocate_all(self.host_outputs)

    def copy_inputs_to_device(self) -> None:
        """Load every input, including the pristine copies of inout buffers."""
        logger.debug("Copying inputs to device")
        for name, host_buffer in self.host_inputs.items():
            logger.debug("Copying buffer %s (%d bytes) to the device", name, host_buffer.nbytes)
            self._backend.copy_host_to_device(self.device_inputs[name], host_buffer)

    def zero_output_buffers(self) -> None:
        output_only = self._adapter.buffer_names(ParameterDirection.OUT)
        if not output_only:
            logger.debug("There are no output-only buffers to fill with zeros")
            return
        for name in output_only:
            self._backend.zero_fill(self.device_outputs[name])
        self._backend.synchronize()
        logger.debug("Output-only buffers filled with zeros")

    def reset_inout_working_copies(self) -> None:
        """Overwrite each inout working copy with its pristine copy."""
        inout_names = self._adapter.buffer_names(ParameterDirection.INOUT)
        if not inout_names:
            return
        logger.debug("Initializing the working copies of in-out buffers from their pristine copies")
        for name in inout_names:
            self._backend.copy_device_to_device(self.device_outputs[name], self.device_inputs[name])
        self._backend.synchronize()

    def copy_outputs_to_host(self) -> dict[str, np.ndarray]:
        logger.debug("Copying outputs back to host memory")
        for name, host_buffer in self.host_outputs.items():
            self._backend.copy_device_to_host(host_buffer, self.device_outputs[name])
        self._backend.synchronize()
        return self.host_outputs

    def release(self) -> None:
        for collection in (self.device_outputs, self.device_inputs):
            for buffer in collection.values():
                buffer.release()
            collection.clear()
