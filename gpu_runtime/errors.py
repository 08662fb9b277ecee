"""Error taxonomy for the kernel runner.

Every failure is fatal: nothing in the runtime retries. Library code raises
one of these; the command-line front end turns them into a nonzero exit.
"""

from __future__ import annotations


class KernelRunnerError(Exception):
    """Base class for all kernel-runner failures."""


class ConfigurationError(KernelRunnerError):
    """Bad or missing option value, ambiguous launch configuration, unknown kernel key."""


class ValidationError(KernelRunnerError):
    """Missing required buffer/scalar/definition, or inputs rejected by the adapter."""


class CompilationError(KernelRunnerError):
    """The native compiler rejected the kernel source."""

    def __init__(self, message: str, log: str = ""):
        super().__init__(message)
        self.log = log


class DeviceError(KernelRunnerError):
    """No devices, invalid device/platform index, or a backend API failure."""


class ContextStateError(KernelRunnerError):
    """An execution-context step was invoked before its prerequisite step."""
