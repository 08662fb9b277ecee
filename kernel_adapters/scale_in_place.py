"""scale_in_place: data[i] *= factor, on an inout float32 buffer.

The length scalar may be omitted; it is then generated from the size of
the data buffer.
"""

from __future__ import annotations

import numpy as np

from gpu_runtime.launch_config import LaunchConfigComponents
from kernel_adapters import parsers
from kernel_adapters.adapter import KernelAdapter, ParameterDetails
from kernel_adapters.registry import register_adapter

ELEMENT_SIZE = 4
BLOCK_SIZE = 256


@register_adapter
class ScaleInPlaceAdapter(KernelAdapter):
    key = "scale_in_place"
    kernel_function_name = "scale_in_place"

    def parameter_details(self) -> list[ParameterDetails]:
        return [
            ParameterDetails("data", self.buffer, self.inout, description="Vector to scale"),
            ParameterDetails("factor", self.scalar, parser=parsers.float32, description="Scaling factor"),
            ParameterDetails(
                "length", self.scalar, required=False, parser=parsers.uint32,
                description="Number of elements (default: all of data)",
            ),
        ]

    def input_sizes_are_valid(self, context) -> bool:
        data = context.buffers.host_inputs["data"]
        if data.nbytes == 0 or data.nbytes % ELEMENT_SIZE:
            return False
        length = context.scalar_arguments.get("length")
        return length is None or 0 < int(length) * ELEMENT_SIZE <= data.nbytes

    def generate_additional_scalar_arguments(self, context) -> dict:
        if "length" in context.scalar_arguments:
            return {}
        return {"length": np.uint32(context.buffers.host_inputs["data"].nbytes // ELEMENT_SIZE)}

    def deduce_launch_config(self, context) -> LaunchConfigComponents:
        length = int(context.scalar_arguments["length"])
        return LaunchConfigComponents(block_dimensions=(BLOCK_SIZE,), overall_grid_dimensions=(length,))
