"""Wire codec: one JSON object per line.

Scalars are JSON numbers/strings, arrays are JSON arrays, mappings are JSON
objects. numpy arrays travel as a tagged object::

    {"__ndarray__": {"dtype": "float64", "shape": [2, 3], "data": [...]}}

Python's json module writes floats with their shortest round-tripping repr
(NaN and Infinity included) and ints with arbitrary precision, so doubles and
64-bit integers come back bit-for-bit.
"""

from __future__ import annotations
import json
from typing import Any, Dict, Mapping, Optional

import numpy as np

from task_bridge.runtime.errors import ProtocolError
from task_bridge.runtime.types import (
    Cancel,
    Cancellation,
    Completion,
    Failure,
    Launch,
    Message,
    Progress,
    RequestType,
    ResponseType,
    Submit,
)

NDARRAY_TAG = "__ndarray__"

# bool, signed/unsigned int, float
_NUMERIC_KINDS = "biuf"


def _j(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _uj(text: str) -> Any:
    return json.loads(text)


# ---------- values ----------
def encode_value(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        if value.dtype.kind not in _NUMERIC_KINDS:
            raise ValueError(f"unsupported array dtype: {value.dtype}")
        return {
            NDARRAY_TAG: {
                "dtype": value.dtype.name,
                "shape": list(value.shape),
                "data": value.ravel().tolist(),
            }
        }
    if isinstance(value, np.generic):
        if value.dtype.kind not in _NUMERIC_KINDS:
            raise ValueError(f"unsupported numpy scalar: {value.dtype}")
        return value.item()
    if isinstance(value, Mapping):
        out: Dict[str, Any] = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise ValueError(f"mapping keys must be str, got {type(k).__name__}")
            if k == NDARRAY_TAG:
                raise ValueError(f"{NDARRAY_TAG!r} is a reserved key")
            out[k] = encode_value(v)
        return out
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    raise ValueError(f"unsupported value type: {type(value).__name__}")


def decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if len(value) == 1 and NDARRAY_TAG in value:
            spec = value[NDARRAY_TAG]
            try:
                arr = np.array(spec["data"], dtype=np.dtype(spec["dtype"]))
                return arr.reshape(tuple(spec["shape"]))
            except (KeyError, TypeError, ValueError) as e:
                raise ProtocolError(f"bad ndarray payload: {e}") from e
        return {k: decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    return value


def _is_number(v: Any) -> bool:
    if isinstance(v, np.generic):
        # complex, datetime などは JSON に載らない
        return v.dtype.kind in "iuf"
    return isinstance(v, (int, float))


def _check_numeric_array(name: str, values: Any) -> None:
    for v in values:
        if isinstance(v, (list, tuple)):
            _check_numeric_array(name, v)
        elif isinstance(v, bool) or not _is_number(v):
            raise ValueError(
                f"input {name!r}: arrays must hold numbers only, got {type(v).__name__}"
            )


def validate_inputs(inputs: Mapping[str, Any], _prefix: str = "") -> None:
    """
    Task inputs: str key -> number / numeric array / str / nested mapping.
    """
    for k, v in inputs.items():
        if not isinstance(k, str):
            raise ValueError(f"input keys must be str, got {type(k).__name__}")
        name = f"{_prefix}{k}"
        if isinstance(v, Mapping):
            validate_inputs(v, _prefix=f"{name}.")
        elif isinstance(v, np.ndarray):
            if v.dtype.kind not in _NUMERIC_KINDS:
                raise ValueError(f"input {name!r}: unsupported array dtype {v.dtype}")
        elif isinstance(v, (list, tuple)):
            _check_numeric_array(name, v)
        elif not isinstance(v, str) and not _is_number(v):
            raise ValueError(f"input {name!r}: unsupported type {type(v).__name__}")


# ---------- messages ----------
def encode_message(msg: Message) -> str:
    data: Dict[str, Any] = {"task": msg.task_id}
    if isinstance(msg, Submit):
        data["type"] = RequestType.Submit
        data["script"] = msg.script
        data["inputs"] = encode_value(msg.inputs)
    elif isinstance(msg, Cancel):
        data["type"] = RequestType.Cancel
    elif isinstance(msg, Launch):
        data["type"] = ResponseType.Launch
    elif isinstance(msg, Progress):
        data["type"] = ResponseType.Progress
        data["current"] = msg.current
        data["maximum"] = msg.maximum
        if msg.message is not None:
            data["message"] = msg.message
    elif isinstance(msg, Completion):
        data["type"] = ResponseType.Completion
        data["outputs"] = encode_value(msg.outputs)
    elif isinstance(msg, Cancellation):
        data["type"] = ResponseType.Cancellation
    elif isinstance(msg, Failure):
        data["type"] = ResponseType.Failure
        data["error"] = msg.error
    else:
        raise TypeError(f"not a protocol message: {msg!r}")
    return _j(data)


def _counter(data: Dict[str, Any], key: str) -> int:
    v = data.get(key, 0)
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        raise ProtocolError(f"{key} must be a non-negative integer, got {v!r}")
    return v


def decode_message(line: str) -> Optional[Message]:
    """
    Returns None for diagnostic noise (anything that is not a JSON object
    carrying a "task" key). Raises ProtocolError for a candidate that
    cannot be decoded.
    """
    text = line.strip()
    if not text.startswith("{"):
        return None
    try:
        data = _uj(text)
    except ValueError:
        return None
    if not isinstance(data, dict) or "task" not in data:
        return None

    task_id = data["task"]
    if not isinstance(task_id, str) or not task_id:
        raise ProtocolError(f"bad task id: {task_id!r}")

    kind = data.get("type")
    match kind:
        case RequestType.Submit:
            script = data.get("script")
            inputs = data.get("inputs") or {}
            if not isinstance(script, str) or not isinstance(inputs, dict):
                raise ProtocolError("SUBMIT needs a str script and a mapping of inputs")
            return Submit(task_id, script, decode_value(inputs))
        case RequestType.Cancel:
            return Cancel(task_id)
        case ResponseType.Launch:
            return Launch(task_id)
        case ResponseType.Progress:
            message = data.get("message")
            if message is not None and not isinstance(message, str):
                raise ProtocolError("PROGRESS message must be a string")
            return Progress(
                task_id,
                current=_counter(data, "current"),
                maximum=_counter(data, "maximum"),
                message=message,
            )
        case ResponseType.Completion:
            outputs = data.get("outputs") or {}
            if not isinstance(outputs, dict):
                raise ProtocolError("COMPLETION outputs must be a mapping")
            return Completion(task_id, decode_value(outputs))
        case ResponseType.Cancellation:
            return Cancellation(task_id)
        case ResponseType.Failure:
            error = data.get("error") or ""
            if not isinstance(error, str):
                raise ProtocolError("FAILURE error must be a string")
            return Failure(task_id, error)
        case _:
            raise ProtocolError(f"unknown message type: {kind!r}")
