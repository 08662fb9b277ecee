"""Run options: everything the execution context needs from its invoker."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from pathlib import Path

from gpu_runtime.errors import ConfigurationError
from gpu_runtime.launch_config import LaunchConfigComponents

SUPPORTED_LANGUAGE_STANDARDS = ("c++11", "c++14", "c++17", "c++20")

# Characters which cannot appear in a function name, but may appear in a key
_KEY_SEPARATORS = re.compile(r"[/\-;.\[\]{}(),]")


def clip_key(key: str) -> str:
    """The part of a key after its last separator character."""
    return _KEY_SEPARATORS.split(key)[-1]


class Ecosystem(enum.Enum):
    CUDA = "cuda"
    OPENCL = "opencl"


def resolve_ecosystem(cuda: bool | None, opencl: bool | None) -> Ecosystem:
    """Choose the backend from the two (optional) selection flags.

    CUDA is the default; forcing both is an error, as is turning CUDA off
    without turning OpenCL on.
    """
    if cuda and opencl:
        raise ConfigurationError("Please specify either CUDA or OpenCL, not both")
    if opencl:
        return Ecosystem.OPENCL
    if cuda is False:
        raise ConfigurationError("Please specify either CUDA or OpenCL to be used")
    return Ecosystem.CUDA


@dataclass
class RunOptions:
    """Kernel-independent and kernel-specific settings for one run."""

    kernel_key: str
    ecosystem: Ecosystem = Ecosystem.CUDA
    device_id: int = 0
    platform_id: int | None = None
    num_runs: int = 1

    kernel_function_name: str | None = None
    kernel_source_file: Path | None = None
    kernel_sources_dir: Path = field(default_factory=Path.cwd)
    input_buffer_dir: Path = field(default_factory=Path.cwd)
    output_buffer_dir: Path = field(default_factory=Path.cwd)

    # Filename overrides, by buffer name
    input_filenames: dict[str, str] = field(default_factory=dict)
    output_filenames: dict[str, str] = field(default_factory=dict)

    # Raw scalar argument text, parsed by the kernel adapter
    scalar_arguments: dict[str, str] = field(default_factory=dict)

    # "NAME" or "NAME=VALUE" strings, and per-term values from dedicated options
    preprocessor_definitions: list[str] = field(default_factory=list)
    preprocessor_value_definitions: dict[str, str] = field(default_factory=dict)

    include_dirs: list[str] = field(default_factory=list)
    preinclude_files: list[str] = field(default_factory=list)
    language_standard: str | None = None
    compile_in_debug_mode: bool = False
    generate_line_info: bool = True

    forced_launch_config: LaunchConfigComponents = field(default_factory=LaunchConfigComponents)

    zero_output_buffers: bool = False
    time_execution: bool = False
    compile_only: bool = False
    write_output_buffers: bool = True
    write_ir: bool = False
    ir_output_file: Path | None = None
    overwrite_allowed: bool = False

    def __post_init__(self):
        if not self.kernel_key:
            raise ConfigurationError("Kernel key may not be empty")
        if self.num_runs <= 0:
            raise ConfigurationError(f"Number of runs {self.num_runs} is not a positive integer")
        if self.device_id < 0:
            raise ConfigurationError("Please specify a non-negative device index")
        if self.platform_id is not None:
            if self.ecosystem is not Ecosystem.OPENCL:
                raise ConfigurationError(
                    "CUDA does not support multiple per-machine platforms; a platform index is only "
                    "meaningful with OpenCL"
                )
            if self.platform_id < 0:
                raise ConfigurationError("Please specify a non-negative platform index")
        if self.language_standard is not None:
            standard = self.language_standard.lower()
            if standard not in SUPPORTED_LANGUAGE_STANDARDS:
                raise ConfigurationError(
                    f"Unsupported language standard for kernel compilation: {self.language_standard}"
                )
            self.language_standard = standard
