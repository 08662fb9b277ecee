"""Argument marshaling: kernel parameters -> backend calling convention.

CUDA takes a None-terminated argument list; OpenCL takes the arguments with
a parallel list of byte sizes. Which one applies is read from the backend's
requires_argument_sentinel / requires_argument_sizes flags.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Sequence

import numpy as np

from gpu_runtime.errors import ValidationError

if TYPE_CHECKING:
    from gpu_runtime.backend import Backend, DeviceBuffer
    from kernel_adapters.adapter import ParameterDetails

logger = logging.getLogger(__name__)


@dataclass
class MarshaledArguments:
    """Ordered kernel arguments, plus sizes when the backend needs them."""

    arguments: list[Any] = field(default_factory=list)
    sizes: list[int] = field(default_factory=list)

    def push_back(self, argument: Any, size: int | None = None) -> None:
        self.arguments.append(argument)
        if size is not None:
            self.sizes.append(size)

    @property
    def terminated(self) -> bool:
        return bool(self.arguments) and self.arguments[-1] is None

    def without_sentinel(self) -> list[Any]:
        return self.arguments[:-1] if self.terminated else list(self.arguments)


def scalar_size(value: Any) -> int:
    """Byte size of a typed scalar argument."""
    return np.asarray(value).dtype.itemsize


def marshal_arguments(
    parameters: Sequence[ParameterDetails],
    device_inputs: Mapping[str, DeviceBuffer],
    device_outputs: Mapping[str, DeviceBuffer],
    scalars: Mapping[str, Any],
    backend: Backend,
) -> MarshaledArguments:
    """Build the argument list in declaration order, once per parameter.

    Buffers with direction out or inout are taken from ``device_outputs``
    (for inout, the working copy), others from ``device_inputs``.
    """
    with_sizes = backend.requires_argument_sizes
    marshaled = MarshaledArguments()
    for param in parameters:
        if param.is_buffer:
            collection = device_outputs if param.direction.writes else device_inputs
            buffer = collection.get(param.name)
            if buffer is None:
                raise ValidationError(
                    f"Cannot marshal buffer parameter '{param.name}': no device buffer was allocated for it"
                )
            marshaled.push_back(buffer.kernel_argument, buffer.argument_size if with_sizes else None)
        else:
            if param.name not in scalars:
                raise ValidationError(
                    f"Cannot marshal scalar parameter '{param.name}': it was neither provided nor generated"
                )
            value = scalars[param.name]
            marshaled.push_back(value, scalar_size(value) if with_sizes else None)
        logger.debug("Marshaled %s parameter '%s'", param.kind.value, param.name)
    if backend.requires_argument_sentinel:
        marshaled.arguments.append(None)
    return marshaled
