from __future__ import annotations

import math

import numpy as np
import pytest

from task_bridge.runtime.codec import (
    decode_message,
    decode_value,
    encode_message,
    encode_value,
    validate_inputs,
)
from task_bridge.runtime.errors import ProtocolError
from task_bridge.runtime.types import (
    Cancel,
    Cancellation,
    Completion,
    Failure,
    Launch,
    Progress,
    Submit,
)


def _roundtrip(value):
    msg = decode_message(encode_message(Completion("t1", {"v": value})))
    assert isinstance(msg, Completion)
    return msg.outputs["v"]


def test_doubles_roundtrip_exactly() -> None:
    values = [0.1, 1 / 3, -2.5e-308, 1.7976931348623157e308, 5e-324, -0.0]
    out = _roundtrip(values)
    assert out == values
    assert math.copysign(1.0, out[-1]) == -1.0
    assert all(isinstance(v, float) for v in out)


def test_int64_roundtrip_exactly() -> None:
    values = [2**63 - 1, -(2**63), 0, 9007199254740993]
    out = _roundtrip(values)
    assert out == values
    assert all(isinstance(v, int) for v in out)


def test_non_finite_doubles() -> None:
    out = _roundtrip([math.inf, -math.inf, math.nan])
    assert out[0] == math.inf and out[1] == -math.inf
    assert math.isnan(out[2])


def test_scalar_array_mapping_are_distinct() -> None:
    assert _roundtrip(6.0) == 6.0
    assert _roundtrip([6.0]) == [6.0]
    assert _roundtrip({"a": 6.0}) == {"a": 6.0}
    assert isinstance(_roundtrip(3), int)
    assert isinstance(_roundtrip(3.0), float)


def test_ndarray_roundtrip_keeps_dtype_and_shape() -> None:
    arr = np.arange(6, dtype=np.int64).reshape(2, 3)
    out = _roundtrip(arr)
    assert isinstance(out, np.ndarray)
    assert out.dtype == np.int64
    assert out.shape == (2, 3)
    assert np.array_equal(out, arr)

    floats = np.array([0.1, 1e-300, np.pi], dtype=np.float64)
    assert np.array_equal(_roundtrip(floats), floats)


def test_numpy_scalars_become_python_scalars() -> None:
    assert encode_value(np.float64(1.5)) == 1.5
    assert encode_value(np.int32(7)) == 7


def test_encode_rejects_unsupported_values() -> None:
    with pytest.raises(ValueError):
        encode_value({"x": object()})
    with pytest.raises(ValueError):
        encode_value({1: 2.0})
    with pytest.raises(ValueError):
        encode_value(np.array(["a", "b"]))
    with pytest.raises(ValueError):
        encode_value({"z": np.complex128(1 + 2j)})
    with pytest.raises(ValueError):
        encode_value(np.datetime64("2024-01-01"))


def test_submit_and_cancel_requests() -> None:
    msg = decode_message(encode_message(Submit("t1", "y = 1", {"x": [1.0, 2.0]})))
    assert msg == Submit("t1", "y = 1", {"x": [1.0, 2.0]})
    assert decode_message(encode_message(Cancel("t1"))) == Cancel("t1")


def test_responses() -> None:
    for msg in (
        Launch("t1"),
        Progress("t1", 3, 10, "step"),
        Progress("t1", 1, 0),
        Cancellation("t1"),
        Failure("t1", "Traceback: boom"),
    ):
        assert decode_message(encode_message(msg)) == msg


def test_noise_lines_are_not_messages() -> None:
    for line in (
        "",
        "\n",
        "loading library...\n",
        "[1, 2, 3]\n",
        "{not json at all\n",
        '{"level": "info", "msg": "native log"}\n',
        "WARNING: something { odd }\n",
    ):
        assert decode_message(line) is None


def test_malformed_candidates_raise_protocol_error() -> None:
    for line in (
        '{"task": "t1", "type": "EXPLODE"}',
        '{"task": "", "type": "LAUNCH"}',
        '{"task": 5, "type": "LAUNCH"}',
        '{"task": "t1", "type": "PROGRESS", "current": -1}',
        '{"task": "t1", "type": "PROGRESS", "current": 1.5}',
        '{"task": "t1", "type": "COMPLETION", "outputs": [1, 2]}',
        '{"task": "t1", "type": "FAILURE", "error": 42}',
        '{"task": "t1", "type": "SUBMIT", "script": 1}',
        '{"task": "t1", "type": "COMPLETION", "outputs": {"a": {"__ndarray__": {}}}}',
    ):
        with pytest.raises(ProtocolError):
            decode_message(line)


def test_decode_value_passthrough() -> None:
    assert decode_value({"a": [1, {"b": 2.0}]}) == {"a": [1, {"b": 2.0}]}


def test_validate_inputs() -> None:
    validate_inputs({"x": [1.0, 2.0], "n": 3, "m": {"a": [1, 2]}, "arr": np.zeros(3)})
    validate_inputs({"name": "cells"})
    with pytest.raises(ValueError):
        validate_inputs({1: 2})
    with pytest.raises(ValueError):
        validate_inputs({"x": [1.0, "a"]})
    with pytest.raises(ValueError):
        validate_inputs({"x": [True, False]})
    with pytest.raises(ValueError):
        validate_inputs({"x": None})
    with pytest.raises(ValueError):
        validate_inputs({"m": {"a": object()}})


def test_validate_inputs_rejects_non_real_numpy_scalars() -> None:
    validate_inputs({"f": np.float32(0.5), "i": np.int64(3), "a": [np.float64(1.0)]})
    with pytest.raises(ValueError):
        validate_inputs({"c": np.complex128(1 + 2j)})
    with pytest.raises(ValueError):
        validate_inputs({"x": [1.0, np.complex64(1j)]})
    with pytest.raises(ValueError):
        validate_inputs({"t": np.datetime64("2024-01-01")})
