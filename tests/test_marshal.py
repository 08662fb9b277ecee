"""Tests for kernel argument marshaling."""

import numpy as np
import pytest

from gpu_runtime.errors import ValidationError
from gpu_runtime.marshal import MarshaledArguments, marshal_arguments, scalar_size
from kernel_adapters.adapter import ParameterDetails, ParameterDirection, ParameterKind
from tests.conftest import FakeBackend, FakeBuffer

POINTER_SIZE = np.dtype(np.uintp).itemsize


def _params():
    return [
        ParameterDetails("A", ParameterKind.BUFFER, ParameterDirection.IN),
        ParameterDetails("B", ParameterKind.BUFFER, ParameterDirection.OUT),
        ParameterDetails("n", ParameterKind.SCALAR),
    ]


@pytest.fixture
def device_buffers():
    inputs = {"A": FakeBuffer(16)}
    outputs = {"B": FakeBuffer(16)}
    return inputs, outputs


# ---------------------------------------------------------------------------
# 1. MarshaledArguments
# ---------------------------------------------------------------------------


class TestMarshaledArguments:
    def test_push_back_with_and_without_size(self):
        args = MarshaledArguments()
        args.push_back("x")
        args.push_back("y", 4)
        assert args.arguments == ["x", "y"]
        assert args.sizes == [4]

    def test_sentinel(self):
        args = MarshaledArguments(arguments=[1, 2, None])
        assert args.terminated
        assert args.without_sentinel() == [1, 2]
        assert not MarshaledArguments().terminated

    def test_scalar_size(self):
        assert scalar_size(np.int32(3)) == 4
        assert scalar_size(np.float64(1.0)) == 8
        assert scalar_size(np.uint8(1)) == 1


# ---------------------------------------------------------------------------
# 2. Calling conventions
# ---------------------------------------------------------------------------


class TestMarshalArguments:
    def test_sentinel_convention(self, device_buffers):
        inputs, outputs = device_buffers
        n = np.int32(4)
        marshaled = marshal_arguments(_params(), inputs, outputs, {"n": n}, FakeBackend())
        assert len(marshaled.arguments) == 4
        assert marshaled.arguments[0] is inputs["A"].native_handle
        assert marshaled.arguments[1] is outputs["B"].native_handle
        assert marshaled.arguments[2] == n
        assert marshaled.arguments[3] is None
        assert marshaled.sizes == []

    def test_size_list_convention(self, device_buffers):
        inputs, outputs = device_buffers
        backend = FakeBackend(sentinel=False, sizes=True)
        marshaled = marshal_arguments(_params(), inputs, outputs, {"n": np.int32(4)}, backend)
        assert len(marshaled.arguments) == 3
        assert not marshaled.terminated
        assert marshaled.sizes == [POINTER_SIZE, POINTER_SIZE, 4]

    def test_inout_uses_working_copy(self):
        params = [ParameterDetails("data", ParameterKind.BUFFER, ParameterDirection.INOUT)]
        pristine, working = FakeBuffer(8), FakeBuffer(8)
        marshaled = marshal_arguments(params, {"data": pristine}, {"data": working}, {}, FakeBackend())
        assert marshaled.arguments[0] is working.native_handle

    def test_declaration_order_preserved(self):
        params = [
            ParameterDetails("s1", ParameterKind.SCALAR),
            ParameterDetails("X", ParameterKind.BUFFER, ParameterDirection.OUT),
            ParameterDetails("s2", ParameterKind.SCALAR),
        ]
        x = FakeBuffer(4)
        scalars = {"s2": np.int64(2), "s1": np.int16(1)}
        marshaled = marshal_arguments(params, {}, {"X": x}, scalars, FakeBackend(sentinel=False, sizes=True))
        assert marshaled.arguments[0] == 1
        assert marshaled.arguments[1] is x.native_handle
        assert marshaled.arguments[2] == 2
        assert marshaled.sizes == [2, POINTER_SIZE, 8]

    def test_missing_buffer(self, device_buffers):
        inputs, _ = device_buffers
        with pytest.raises(ValidationError, match="'B'"):
            marshal_arguments(_params(), inputs, {}, {"n": np.int32(4)}, FakeBackend())

    def test_missing_scalar(self, device_buffers):
        inputs, outputs = device_buffers
        with pytest.raises(ValidationError, match="'n'"):
            marshal_arguments(_params(), inputs, outputs, {}, FakeBackend())
