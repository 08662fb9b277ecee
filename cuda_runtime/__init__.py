"""CUDA runtime: CuPy-based GPU execution backend."""

from cuda_runtime.cuda_backend import HAS_CUPY, CUDABackend, CUDABuffer

__all__ = [
    "HAS_CUPY",
    "CUDABackend",
    "CUDABuffer",
]
