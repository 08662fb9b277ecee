"""vector_add: C[i] = A[i] + B[i] over float32 vectors."""

from __future__ import annotations

from gpu_runtime.launch_config import LaunchConfigComponents
from kernel_adapters import parsers
from kernel_adapters.adapter import KernelAdapter, ParameterDetails, size_by_input_buffer
from kernel_adapters.registry import register_adapter

ELEMENT_SIZE = 4
BLOCK_SIZE = 256


@register_adapter
class VectorAddAdapter(KernelAdapter):
    key = "vector_add"
    kernel_function_name = "vector_add"

    def parameter_details(self) -> list[ParameterDetails]:
        return [
            ParameterDetails("A", self.buffer, self.input, description="First summand vector"),
            ParameterDetails("B", self.buffer, self.input, description="Second summand vector"),
            ParameterDetails(
                "C", self.buffer, self.output,
                size_calculator=size_by_input_buffer("A"),
                description="Sum vector",
            ),
            ParameterDetails("length", self.scalar, parser=parsers.uint32, description="Number of elements"),
        ]

    def input_sizes_are_valid(self, context) -> bool:
        inputs = context.buffers.host_inputs
        length = int(context.scalar_arguments["length"])
        return inputs["A"].nbytes == inputs["B"].nbytes and inputs["A"].nbytes >= length * ELEMENT_SIZE

    def extra_validity_checks(self, context) -> bool:
        return int(context.scalar_arguments["length"]) > 0

    def deduce_launch_config(self, context) -> LaunchConfigComponents:
        length = int(context.scalar_arguments["length"])
        return LaunchConfigComponents(block_dimensions=(BLOCK_SIZE,), overall_grid_dimensions=(length,))
