"""OpenCL runtime: pyopencl-based GPU execution backend."""

from opencl_runtime.opencl_backend import HAS_PYOPENCL, OpenCLBackend, OpenCLBuffer

__all__ = [
    "HAS_PYOPENCL",
    "OpenCLBackend",
    "OpenCLBuffer",
]
