"""Launch configuration: partial components and their resolution.

A launch is described by three 3-D extents, of which any two determine the
third:

    block    threads per block      (OpenCL: local work size)
    grid     blocks per grid
    overall  threads per grid       (OpenCL: global work size)

plus the dynamic shared memory size. The user may force some of them on the
command line; the kernel adapter may deduce others from buffer sizes and
scalar arguments. resolve_launch_config() combines the two.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable

from gpu_runtime.errors import ConfigurationError

logger = logging.getLogger(__name__)

Dimensions = tuple[int, int, int]


def _ceil_div(n: int, d: int) -> int:
    return (n + d - 1) // d


def normalize_dimensions(values, what: str = "dimensions") -> Dimensions:
    """Pad a 1-3 element sequence of positive ints with 1's to a 3-tuple."""
    dims = [int(v) for v in values]
    if not dims or len(dims) > 3:
        raise ConfigurationError(f"Invalid {what}: got {len(dims)} components, expected 1 to 3")
    if any(d <= 0 for d in dims):
        raise ConfigurationError(f"Invalid {what} {tuple(dims)}: all components must be positive")
    while len(dims) < 3:
        dims.append(1)
    return (dims[0], dims[1], dims[2])


@dataclass(frozen=True)
class LaunchConfigComponents:
    """A possibly-partial launch configuration."""

    block_dimensions: Dimensions | None = None
    grid_dimensions: Dimensions | None = None
    overall_grid_dimensions: Dimensions | None = None
    dynamic_shared_memory_size: int | None = None

    def __post_init__(self):
        for field_name in ("block_dimensions", "grid_dimensions", "overall_grid_dimensions"):
            value = getattr(self, field_name)
            if value is not None:
                object.__setattr__(self, field_name, normalize_dimensions(value, field_name.replace("_", " ")))
        if self.dynamic_shared_memory_size is not None and self.dynamic_shared_memory_size < 0:
            raise ConfigurationError(
                f"Invalid dynamic shared memory size {self.dynamic_shared_memory_size}"
            )

    def layered_over(self, defaults: LaunchConfigComponents) -> LaunchConfigComponents:
        """Fill fields unset here from ``defaults``.

        A default grid is not taken when overall dimensions are set here, and
        vice versa: the fields set here are authoritative, and taking the
        other one would make the combination over-specified.
        """
        grid = self.grid_dimensions
        overall = self.overall_grid_dimensions
        if grid is None and overall is None:
            grid = defaults.grid_dimensions
            overall = defaults.overall_grid_dimensions
        return LaunchConfigComponents(
            block_dimensions=self.block_dimensions or defaults.block_dimensions,
            grid_dimensions=grid,
            overall_grid_dimensions=overall,
            dynamic_shared_memory_size=(
                self.dynamic_shared_memory_size
                if self.dynamic_shared_memory_size is not None
                else defaults.dynamic_shared_memory_size
            ),
        )


@dataclass(frozen=True)
class LaunchConfig:
    """A fully-resolved launch configuration.

    ``overall_grid_dimensions`` is always ``grid * block`` per axis, i.e. the
    number of threads actually launched. When the overall extent was requested
    explicitly, the request is kept in ``requested_overall_dimensions``;
    ``full_blocks`` is False when it is not a multiple of the block, in which
    case the kernel must bound-check the excess threads.
    """

    block_dimensions: Dimensions
    grid_dimensions: Dimensions
    overall_grid_dimensions: Dimensions
    requested_overall_dimensions: Dimensions
    dynamic_shared_memory_size: int = 0
    full_blocks: bool = True

    def log_summary(self, log: logging.Logger | None = None) -> None:
        log = log or logger
        bd, gd, od = self.block_dimensions, self.grid_dimensions, self.requested_overall_dimensions
        log.info("Launch configuration: Block dimensions:   %9d x %5d x %5d threads", *bd)
        log.info("Launch configuration: Grid dimensions:    %9d x %5d x %5d blocks", *gd)
        log.info("                                          -----------------------------------")
        log.info("Launch configuration: Overall dimensions: %9d x %5d x %5d threads", *od)
        log.info("Launch configuration: Dynamic shared memory: %d bytes", self.dynamic_shared_memory_size)
        log.info("Overall dimensions cover full blocks? %s", self.full_blocks)


def _complete(components: LaunchConfigComponents) -> LaunchConfigComponents:
    """Apply the over-specification check and derive the third extent, if possible."""
    block = components.block_dimensions
    grid = components.grid_dimensions
    overall = components.overall_grid_dimensions

    if grid is not None and overall is not None:
        raise ConfigurationError(
            "You can specify the grid dimensions either in blocks or in overall threads, but not both"
        )
    if block is not None and grid is not None:
        overall = tuple(g * b for g, b in zip(grid, block))
        return replace(components, overall_grid_dimensions=overall)
    if block is not None and overall is not None:
        grid = tuple(_ceil_div(o, b) for o, b in zip(overall, block))
        return replace(components, grid_dimensions=grid)
    return components


def _finalize(components: LaunchConfigComponents, requested_overall: Dimensions | None) -> LaunchConfig:
    block = components.block_dimensions
    grid = components.grid_dimensions
    launched = tuple(g * b for g, b in zip(grid, block))
    requested = requested_overall or launched
    return LaunchConfig(
        block_dimensions=block,
        grid_dimensions=grid,
        overall_grid_dimensions=launched,
        requested_overall_dimensions=requested,
        dynamic_shared_memory_size=components.dynamic_shared_memory_size or 0,
        full_blocks=all(l == r for l, r in zip(launched, requested)),
    )


def resolve_launch_config(
    forced: LaunchConfigComponents,
    deduce: Callable[[], LaunchConfigComponents] | None = None,
) -> LaunchConfig:
    """Resolve a complete launch configuration.

    Args:
        forced: Components set explicitly (e.g. on the command line).
        deduce: Called only if ``forced`` is insufficient; returns the kernel
                adapter's deduced components, which are layered under the
                forced ones.

    Raises:
        ConfigurationError: both grid and overall dimensions are set, or no
            complete configuration can be formed.
    """
    components = _complete(forced)
    if components.block_dimensions is None or components.grid_dimensions is None:
        if deduce is not None:
            logger.debug("Forced launch configuration is insufficient; asking the kernel adapter to deduce it")
            components = _complete(forced.layered_over(deduce()))
    if components.block_dimensions is None or components.grid_dimensions is None:
        raise ConfigurationError(
            "Unable to deduce launch configuration - please specify all launch configuration "
            "components explicitly"
        )
    return _finalize(components, components.overall_grid_dimensions)
