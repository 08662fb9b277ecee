"""Kernel adapters: per-kernel descriptions, registered by key.

Importing this package registers the built-in adapters.
"""

from kernel_adapters.adapter import (
    KernelAdapter,
    ParameterDetails,
    ParameterDirection,
    ParameterKind,
    PreprocessorDefinitionDetails,
    size_by_input_buffer,
)
from kernel_adapters.registry import (
    can_produce_adapter,
    produce_adapter,
    register_adapter,
    registered_keys,
    unregister_adapter,
)
from kernel_adapters import fill, scale_in_place, vector_add  # noqa: F401

__all__ = [
    "KernelAdapter",
    "ParameterDetails",
    "ParameterDirection",
    "ParameterKind",
    "PreprocessorDefinitionDetails",
    "size_by_input_buffer",
    "register_adapter",
    "unregister_adapter",
    "can_produce_adapter",
    "produce_adapter",
    "registered_keys",
]
