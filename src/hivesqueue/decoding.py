"""Lenient decoding of scalar values from Slurm JSON output.

Depending on the Slurm release, ``squeue --json`` reports a scalar either as a
plain JSON value or wrapped as ``{"set": true, "infinite": false, "number": 5}``.
Numbers are sometimes serialized as strings and strings as numbers. The helpers
here never raise: a field that cannot be understood decodes to an empty value
so one odd field never discards the whole response.
"""

import math
from dataclasses import dataclass
from typing import Any

WRAPPER_KEYS = frozenset({"set", "infinite", "number", "string"})
PAYLOAD_KEYS = ("number", "string")

_TRUE_STRINGS = {"true", "yes", "1"}


@dataclass(frozen=True)
class TolerantValue:
    """Best-effort reading of one scalar."""

    text: str = ""
    number: int | None = None
    infinite: bool = False
    is_set: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.text and self.number is None


EMPTY = TolerantValue()


def _permissive_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def _truncate(value: float) -> int | None:
    if math.isnan(value) or math.isinf(value):
        return None
    return int(value)  # toward zero


def _decode_string_payload(raw: str) -> tuple[str, int | None]:
    text = raw.strip()
    try:
        return text, int(text)
    except ValueError:
        pass
    try:
        return text, _truncate(float(text))
    except ValueError:
        return text, None


def _decode_payload(payload: Any) -> tuple[str, int | None]:
    # bool is a subclass of int; check it first
    if isinstance(payload, bool):
        return ("true" if payload else "false"), None
    if isinstance(payload, int):
        return str(payload), payload
    if isinstance(payload, float):
        number = _truncate(payload)
        return (str(number) if number is not None else repr(payload)), number
    if isinstance(payload, str):
        return _decode_string_payload(payload)
    return "", None


def _decode_plain(node: Any) -> tuple[str, int | None]:
    if isinstance(node, str):
        return _decode_string_payload(node)
    if isinstance(node, bool):
        return ("true" if node else "false"), None
    if isinstance(node, int):
        return str(node), node
    if isinstance(node, float):
        return repr(node), _truncate(node)
    return "", None


def is_wrapper(node: Any) -> bool:
    """Return True if *node* looks like a ``{set, infinite, number|string}`` wrapper."""
    return isinstance(node, dict) and bool(WRAPPER_KEYS.intersection(node))


def decode_value(node: Any) -> TolerantValue:
    """Decode a plain or wrapped scalar. Never raises."""
    if is_wrapper(node):
        is_set = _permissive_bool(node.get("set", False))
        infinite = _permissive_bool(node.get("infinite", False))
        for key in PAYLOAD_KEYS:
            if key in node and node[key] is not None:
                text, number = _decode_payload(node[key])
                return TolerantValue(text=text, number=number, infinite=infinite, is_set=is_set)
        return TolerantValue(infinite=infinite, is_set=is_set)

    text, number = _decode_plain(node)
    if not text and number is None:
        return EMPTY
    return TolerantValue(text=text, number=number, is_set=True)


def decode_string(node: Any) -> str:
    """Decode a field expected to hold text."""
    return decode_value(node).text


def decode_int(node: Any) -> int | None:
    """Decode a field expected to hold an integer."""
    return decode_value(node).number


def decode_state_list(node: Any) -> list[str]:
    """Normalize a state field to an ordered list of non-empty strings.

    Accepts a single string, a wrapped string, or a list of either. The first
    element is the primary state, the rest are flags such as ``NODE_FAIL``.
    """
    items = node if isinstance(node, list) else [node]
    states: list[str] = []
    for item in items:
        if isinstance(item, str):
            text = item.strip()
        elif is_wrapper(item):
            text = decode_value(item).text
        else:
            continue
        if text:
            states.append(text)
    return states
