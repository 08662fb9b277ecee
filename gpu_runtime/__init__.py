"""GPU runtime: backend-independent kernel execution engine.

Entry point: ExecutionContext(options) from gpu_runtime.context.
"""

from gpu_runtime.backend import Backend, CompilationResult, DeviceBuffer
from gpu_runtime.errors import (
    CompilationError,
    ConfigurationError,
    ContextStateError,
    DeviceError,
    KernelRunnerError,
    ValidationError,
)
from gpu_runtime.launch_config import LaunchConfig, LaunchConfigComponents, resolve_launch_config
from gpu_runtime.options import Ecosystem, RunOptions

__all__ = [
    "Backend",
    "CompilationResult",
    "DeviceBuffer",
    "KernelRunnerError",
    "ConfigurationError",
    "ValidationError",
    "CompilationError",
    "DeviceError",
    "ContextStateError",
    "LaunchConfig",
    "LaunchConfigComponents",
    "resolve_launch_config",
    "Ecosystem",
    "RunOptions",
]
