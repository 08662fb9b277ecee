"""KernelAdapter: everything the runner needs to know about one kernel.

A concrete adapter describes a single kernel's parameters (buffers and
scalars, in the order the kernel takes them), its preprocessor definitions,
how large its outputs are, and optionally how to choose a launch
configuration. The rest of the runner knows nothing about specific kernels.

Adapters:
    - do not allocate, free or own device buffers
    - do not copy memory to or from devices, nor launch anything
    - do not depend on which backend is in use
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Mapping

import numpy as np

from gpu_runtime.launch_config import LaunchConfigComponents
from gpu_runtime.marshal import MarshaledArguments, marshal_arguments

if TYPE_CHECKING:
    from gpu_runtime.context import ExecutionContext

# (input_buffers, scalars, valueless_definitions, valued_definitions) -> bytes
SizeCalculator = Callable[
    [Mapping[str, np.ndarray], Mapping[str, Any], set, Mapping[str, str]],
    int,
]
ScalarParser = Callable[[str], Any]


class ParameterKind(enum.Enum):
    BUFFER = "buffer"
    SCALAR = "scalar"


class ParameterDirection(enum.Enum):
    IN = "input"
    OUT = "output"
    INOUT = "inout"

    @property
    def writes(self) -> bool:
        """True for directions the kernel writes, i.e. taken from the outputs collection."""
        return self is not ParameterDirection.IN


@dataclass(frozen=True)
class ParameterDetails:
    """One kernel parameter, buffer or scalar."""

    name: str
    kind: ParameterKind
    direction: ParameterDirection = ParameterDirection.IN
    required: bool = True
    parser: ScalarParser | None = None
    size_calculator: SizeCalculator | None = None
    description: str = ""

    def __post_init__(self):
        if self.kind is ParameterKind.SCALAR and self.direction is not ParameterDirection.IN:
            raise ValueError(f"Scalar parameter '{self.name}' must have direction IN")

    @property
    def is_buffer(self) -> bool:
        return self.kind is ParameterKind.BUFFER


@dataclass(frozen=True)
class PreprocessorDefinitionDetails:
    name: str
    description: str = ""
    required: bool = True


def size_by_input_buffer(input_buffer: str) -> SizeCalculator:
    """A size calculator returning the byte size of one of the input buffers."""

    def calculate(input_buffers, scalars, valueless_definitions, valued_definitions) -> int:
        return int(input_buffers[input_buffer].nbytes)

    calculate.__name__ = f"size_of_{input_buffer}"
    return calculate


class KernelAdapter(ABC):
    """Base class for per-kernel adapters.

    Subclasses set ``key`` (unique; used for lookup and as the default source
    file stem) and ``kernel_function_name`` (the entry point in the source),
    and register themselves with ``kernel_adapters.registry.register_adapter``.
    """

    key: ClassVar[str]
    kernel_function_name: ClassVar[str]

    # Shorthands for parameter_details() implementations
    input = ParameterDirection.IN
    output = ParameterDirection.OUT
    inout = ParameterDirection.INOUT
    buffer = ParameterKind.BUFFER
    scalar = ParameterKind.SCALAR

    @abstractmethod
    def parameter_details(self) -> list[ParameterDetails]:
        """All parameters, in the order the kernel function takes them."""
        ...

    def preprocessor_definition_details(self) -> list[PreprocessorDefinitionDetails]:
        return []

    # -- derived views ------------------------------------------------------

    def buffer_details(self) -> list[ParameterDetails]:
        return [p for p in self.parameter_details() if p.kind is ParameterKind.BUFFER]

    def scalar_parameter_details(self) -> list[ParameterDetails]:
        return [p for p in self.parameter_details() if p.kind is ParameterKind.SCALAR]

    def buffer_names(self, *directions: ParameterDirection) -> list[str]:
        return [p.name for p in self.buffer_details() if p.direction in directions]

    def required_scalar_names(self) -> list[str]:
        return [p.name for p in self.scalar_parameter_details() if p.required]

    def required_preprocessor_definition_terms(self) -> list[str]:
        return [d.name for d in self.preprocessor_definition_details() if d.required]

    def parameter(self, name: str) -> ParameterDetails:
        for param in self.parameter_details():
            if param.name == name:
                return param
        raise KeyError(name)

    # -- argument handling --------------------------------------------------

    def parse_scalar_argument(self, details: ParameterDetails, raw: str) -> Any:
        if details.parser is None:
            raise ValueError(f"Scalar parameter '{details.name}' has no value parser")
        return details.parser(raw)

    def output_buffer_sizes(
        self,
        input_buffers: Mapping[str, np.ndarray],
        scalars: Mapping[str, Any],
        valueless_definitions: set[str],
        valued_definitions: Mapping[str, str],
    ) -> dict[str, int | None]:
        """Byte sizes of output and inout buffers.

        An inout buffer without a size calculator maps to None, meaning "the
        same size as its input".
        """
        sizes: dict[str, int | None] = {}
        for param in self.buffer_details():
            if not param.direction.writes:
                continue
            if param.size_calculator is None:
                sizes[param.name] = None
            else:
                sizes[param.name] = int(
                    param.size_calculator(input_buffers, scalars, valueless_definitions, valued_definitions)
                )
        return sizes

    def input_sizes_are_valid(self, context: ExecutionContext) -> bool:
        return True

    def extra_validity_checks(self, context: ExecutionContext) -> bool:
        return True

    def generate_additional_scalar_arguments(self, context: ExecutionContext) -> dict[str, Any]:
        return {}

    def deduce_launch_config(self, context: ExecutionContext) -> LaunchConfigComponents:
        """Launch components derivable from the inputs; by default nothing."""
        return LaunchConfigComponents()

    def marshal_kernel_arguments(self, context: ExecutionContext) -> MarshaledArguments:
        buffers = context.buffers
        return marshal_arguments(
            self.parameter_details(),
            buffers.device_inputs,
            buffers.device_outputs,
            context.scalar_arguments,
            context.backend,
        )
