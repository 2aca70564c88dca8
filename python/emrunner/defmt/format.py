"""defmt format-string parsing and value rendering.

A format string such as ``"x={=u8:#x} y={} {0=0..4}"`` is split into literal
fragments and :class:`Parameter` objects.  Parameters carry the position of
the argument they refer to, the wire type of that argument and an optional
display hint.  Rendering happens after the arguments were decoded from the
frame payload (see :mod:`emrunner.defmt.table`).
"""

from __future__ import annotations

import json
import math
import re
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

INT_SIZES: Dict[str, Tuple[int, bool]] = {
    "u8": (1, False),
    "u16": (2, False),
    "u32": (4, False),
    "u64": (8, False),
    "u128": (16, False),
    "usize": (4, False),
    "i8": (1, True),
    "i16": (2, True),
    "i32": (4, True),
    "i64": (8, True),
    "i128": (16, True),
    "isize": (4, True),
}
FLOAT_SIZES: Dict[str, int] = {"f32": 4, "f64": 8}

_SIMPLE_KINDS = {"bool", "char", "str", "istr"}
_INTERNAL_KINDS = {
    "__internal_Display": "display",
    "__internal_Debug": "debug",
    "__internal_FormatSequence": "format_sequence",
}
_ARRAY_RE = re.compile(r"\[\s*(u8|\?)\s*;\s*(\d+)\s*\]")
_BITFIELD_RE = re.compile(r"(\d+)\.\.(\d+)")
_RADIX_HINT_RE = re.compile(r"(#)?(0)?(\d+)?([xXbo])")


@dataclass(frozen=True)
class ParamType:
    kind: str
    length: Optional[int] = None
    bits: Optional[Tuple[int, int]] = None


@dataclass(frozen=True)
class Parameter:
    index: int
    ty: ParamType
    hint: Optional[str] = None


Fragment = Union[str, Parameter]


def parse_type(text: str) -> ParamType:
    text = text.strip()
    if text in ("", "?"):
        return ParamType("format")
    if text in INT_SIZES or text in FLOAT_SIZES or text in _SIMPLE_KINDS:
        return ParamType(text)
    if text in _INTERNAL_KINDS:
        return ParamType(_INTERNAL_KINDS[text])
    if text == "[u8]":
        return ParamType("u8_slice")
    if text == "[?]":
        return ParamType("format_slice")
    match = _ARRAY_RE.fullmatch(text)
    if match:
        kind = "u8_array" if match.group(1) == "u8" else "format_array"
        return ParamType(kind, length=int(match.group(2)))
    match = _BITFIELD_RE.fullmatch(text)
    if match:
        low, high = int(match.group(1)), int(match.group(2))
        if low >= high:
            raise ValueError(f"empty bitfield range {text!r}")
        return ParamType("bitfield", bits=(low, high))
    raise ValueError(f"unknown parameter type {text!r}")


def _parse_param(body: str, next_position: int) -> Tuple[Parameter, bool]:
    head, has_hint, hint = body.partition(":")
    index_text, has_type, type_text = head.partition("=")
    index_text = index_text.strip()
    explicit = bool(index_text)
    if explicit and not index_text.isdigit():
        raise ValueError(f"invalid parameter index {index_text!r}")
    index = int(index_text) if explicit else next_position
    ty = parse_type(type_text) if has_type else ParamType("format")
    return Parameter(index=index, ty=ty, hint=hint.strip() if has_hint else None), explicit


def parse(format_string: str) -> List[Fragment]:
    """Split ``format_string`` into literal text and parameters."""
    fragments: List[Fragment] = []
    literal: List[str] = []
    position = 0
    i = 0
    n = len(format_string)
    while i < n:
        char = format_string[i]
        if char == "{":
            if format_string.startswith("{{", i):
                literal.append("{")
                i += 2
                continue
            end = format_string.find("}", i)
            if end < 0:
                raise ValueError(f"unterminated parameter in {format_string!r}")
            param, explicit = _parse_param(format_string[i + 1 : end], position)
            if not explicit:
                position += 1
            if literal:
                fragments.append("".join(literal))
                literal = []
            fragments.append(param)
            i = end + 1
        elif char == "}":
            if not format_string.startswith("}}", i):
                raise ValueError(f"unmatched '}}' in {format_string!r}")
            literal.append("}")
            i += 2
        else:
            literal.append(char)
            i += 1
    if literal:
        fragments.append("".join(literal))
    return fragments


@dataclass
class FormatValue:
    """A decoded nested format (``{}`` / ``{=?}`` argument)."""

    fragments: List[Fragment]
    args: Dict[int, Any] = field(default_factory=dict)

    def render(self) -> str:
        return render(self.fragments, self.args)


def render(fragments: List[Fragment], args: Mapping[int, Any]) -> str:
    parts: List[str] = []
    for fragment in fragments:
        if isinstance(fragment, str):
            parts.append(fragment)
            continue
        value = args[fragment.index]
        if fragment.ty.kind == "bitfield":
            assert fragment.ty.bits is not None
            low, high = fragment.ty.bits
            value = (value >> low) & ((1 << (high - low)) - 1)
            parts.append(format_int(value, fragment.hint))
        else:
            parts.append(format_value(value, fragment.ty, fragment.hint))
    return "".join(parts)


def format_int(value: int, hint: Optional[str]) -> str:
    if not hint or hint == "?":
        return str(value)
    if hint == "us":
        return f"{value // 1_000_000}.{value % 1_000_000:06}"
    if hint == "ms":
        return f"{value // 1_000}.{value % 1_000:03}"
    match = _RADIX_HINT_RE.fullmatch(hint)
    if match:
        alternate, zero, width, radix = match.groups()
        spec = f"{'#' if alternate else ''}{'0' if zero else ''}{width or ''}{radix}"
        text = format(value, spec)
        if radix == "X" and alternate:
            # keep the prefix lower-case like the target side does
            text = text.replace("0X", "0x", 1)
        return text
    return str(value)


def _format_f32(value: float) -> str:
    packed = struct.pack("<f", value)
    for precision in range(1, 10):
        text = f"{value:.{precision}g}"
        if struct.pack("<f", float(text)) == packed:
            return _strip_float(float(text), text)
    return repr(value)


def _strip_float(value: float, text: str) -> str:
    if value.is_integer() and abs(value) < 1e16:
        return str(int(value))
    if "e" in text:
        return repr(value)
    return text


def format_float(value: float, kind: str = "f64") -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    if kind == "f32":
        return _format_f32(value)
    return _strip_float(value, repr(value))


def _format_bytes(value: bytes, hint: Optional[str]) -> str:
    if hint == "a":
        body = "".join(
            chr(byte) if 0x20 <= byte < 0x7F and byte not in (0x22, 0x5C) else f"\\x{byte:02x}"
            for byte in value
        )
        return f'b"{body}"'
    return "[" + ", ".join(format_int(byte, hint) for byte in value) + "]"


def format_value(value: Any, ty: ParamType, hint: Optional[str]) -> str:
    kind = ty.kind
    if kind in INT_SIZES:
        return format_int(value, hint)
    if kind in FLOAT_SIZES:
        return format_float(value, kind)
    if kind == "bool":
        return "true" if value else "false"
    if kind == "char":
        return repr(value) if hint == "?" else value
    if kind in ("str", "istr", "display", "debug"):
        return json.dumps(value, ensure_ascii=False) if hint == "?" else value
    if kind in ("u8_slice", "u8_array"):
        return _format_bytes(value, hint)
    if kind == "format":
        return value.render()
    if kind in ("format_slice", "format_array"):
        return "[" + ", ".join(item.render() for item in value) + "]"
    if kind == "format_sequence":
        return "".join(item.render() for item in value)
    raise ValueError(f"cannot render parameter kind {kind!r}")
