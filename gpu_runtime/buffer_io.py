"""Buffer files: raw bytes, no header."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import numpy as np

from gpu_runtime.errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)


def maybe_prepend_base_dir(base_dir: str | os.PathLike, filename: str | os.PathLike) -> Path:
    """Resolve ``filename`` against ``base_dir`` unless it is already absolute."""
    path = Path(filename)
    return path if path.is_absolute() else Path(base_dir) / path


def read_buffer(path: str | os.PathLike) -> np.ndarray:
    """Read a whole file as a flat uint8 array."""
    path = Path(path)
    if not path.is_file():
        raise ValidationError(f"Buffer file {path} does not exist")
    logger.debug("Reading buffer of size %d bytes from %s", path.stat().st_size, path)
    return np.fromfile(path, dtype=np.uint8)


def read_buffers(names, filenames: dict[str, str], base_dir: str | os.PathLike) -> dict[str, np.ndarray]:
    """Read one file per buffer name; the filename defaults to the buffer name."""
    return {
        name: read_buffer(maybe_prepend_base_dir(base_dir, filenames.get(name, name)))
        for name in names
    }


def check_overwrite(path: str | os.PathLike, overwrite_allowed: bool, what: str = "file") -> None:
    path = Path(path)
    if path.exists():
        if not overwrite_allowed:
            raise ConfigurationError(f"Writing the {what} would overwrite an existing file: {path}")
        logger.info("The %s will overwrite %s", what, path)


def write_buffer(path: str | os.PathLike, buffer: np.ndarray, overwrite_allowed: bool = False) -> None:
    path = Path(path)
    check_overwrite(path, overwrite_allowed, "buffer")
    logger.debug("Writing %d bytes to %s", buffer.nbytes, path)
    np.ascontiguousarray(buffer).reshape(-1).view(np.uint8).tofile(path)


def write_text(path: str | os.PathLike, contents: str | bytes, overwrite_allowed: bool = False) -> None:
    path = Path(path)
    check_overwrite(path, overwrite_allowed, "intermediate representation")
    if isinstance(contents, bytes):
        path.write_bytes(contents)
    else:
        path.write_text(contents)
