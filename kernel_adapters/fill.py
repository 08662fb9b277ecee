"""fill: result[i] = value, with ELEMENTS_PER_THREAD elements per thread."""

from __future__ import annotations

from gpu_runtime.launch_config import LaunchConfigComponents
from kernel_adapters import parsers
from kernel_adapters.adapter import KernelAdapter, ParameterDetails, PreprocessorDefinitionDetails
from kernel_adapters.registry import register_adapter

ELEMENT_SIZE = 4
BLOCK_SIZE = 128


def _result_size(input_buffers, scalars, valueless_definitions, valued_definitions) -> int:
    return int(scalars["length"]) * ELEMENT_SIZE


@register_adapter
class FillAdapter(KernelAdapter):
    key = "fill"
    kernel_function_name = "fill"

    def parameter_details(self) -> list[ParameterDetails]:
        return [
            ParameterDetails("result", self.buffer, self.output, size_calculator=_result_size),
            ParameterDetails("value", self.scalar, parser=parsers.int32, description="Fill value"),
            ParameterDetails("length", self.scalar, parser=parsers.uint32, description="Number of elements"),
        ]

    def preprocessor_definition_details(self) -> list[PreprocessorDefinitionDetails]:
        return [PreprocessorDefinitionDetails("ELEMENTS_PER_THREAD", "Elements written by each thread")]

    def elements_per_thread(self, context) -> int:
        return int(context.preprocessor_definitions.valued["ELEMENTS_PER_THREAD"], 0)

    def extra_validity_checks(self, context) -> bool:
        valued = context.preprocessor_definitions.valued
        if "ELEMENTS_PER_THREAD" not in valued:
            return False
        try:
            per_thread = self.elements_per_thread(context)
        except ValueError:
            return False
        return per_thread > 0 and int(context.scalar_arguments["length"]) > 0

    def deduce_launch_config(self, context) -> LaunchConfigComponents:
        length = int(context.scalar_arguments["length"])
        per_thread = self.elements_per_thread(context)
        num_threads = (length + per_thread - 1) // per_thread
        return LaunchConfigComponents(block_dimensions=(BLOCK_SIZE,), overall_grid_dimensions=(num_threads,))
