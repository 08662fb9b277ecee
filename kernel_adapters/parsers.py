"""Value parsers for scalar kernel arguments: raw command-line text -> numpy scalar."""

from __future__ import annotations

import ml_dtypes
import numpy as np

from gpu_runtime.errors import ValidationError


def _integer_parser(dtype):
    info = np.iinfo(dtype)

    def parse(raw: str):
        try:
            value = int(raw.strip(), 0)
        except ValueError:
            raise ValidationError(f"Cannot parse '{raw}' as {np.dtype(dtype).name}") from None
        if not info.min <= value <= info.max:
            raise ValidationError(f"Value {value} out of range for {np.dtype(dtype).name}")
        return dtype(value)

    parse.__name__ = f"parse_{np.dtype(dtype).name}"
    return parse


def _float_parser(dtype):
    def parse(raw: str):
        try:
            return dtype(float(raw.strip()))
        except ValueError:
            raise ValidationError(f"Cannot parse '{raw}' as {np.dtype(dtype).name}") from None

    parse.__name__ = f"parse_{np.dtype(dtype).name}"
    return parse


def parse_bool(raw: str) -> np.bool_:
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return np.bool_(True)
    if lowered in ("0", "false", "no", "off"):
        return np.bool_(False)
    raise ValidationError(f"Cannot parse '{raw}' as a boolean")


int32 = _integer_parser(np.int32)
uint32 = _integer_parser(np.uint32)
int64 = _integer_parser(np.int64)
uint64 = _integer_parser(np.uint64)
float16 = _float_parser(np.float16)
float32 = _float_parser(np.float32)
float64 = _float_parser(np.float64)
bfloat16 = _float_parser(ml_dtypes.bfloat16)
bool_ = parse_bool
