"""kernel-runner: command-line harness for building and running single GPU kernels."""

from kernel_runner.cli import main

__all__ = ["main"]
