"""Shared helpers: path joining, escape decoding, blob I/O and usage text."""

from __future__ import annotations

import string
import struct
import sys
from dataclasses import dataclass

__all__ = [
    "DtcError",
    "LongOption",
    "join_path",
    "is_printable_string",
    "get_escape_char",
    "read_blob",
    "write_blob",
    "decode_type",
    "format_property_data",
    "usage_text",
]

_OCT_DIGITS = "01234567"
_HEX_DIGITS = string.hexdigits
_SIMPLE_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "t": "\t",
    "n": "\n",
    "v": "\v",
    "f": "\f",
    "r": "\r",
}

_HEADER_TOTALSIZE = struct.Struct(">I")
_ARG_PLACEHOLDER = "<arg>"


class DtcError(Exception):
    """A fatal error raised by the device tree tools."""


@dataclass(frozen=True)
class LongOption:
    """A command-line option as shown in usage text."""

    name: str
    has_arg: bool = False
    short: str | None = None


def join_path(path: str, name: str) -> str:
    """Join a directory and a file name with exactly one separating slash."""
    if path.endswith("/"):
        return path + name
    return f"{path}/{name}"


def _is_print(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def is_printable_string(data: bytes) -> bool:
    """Return True if data is one or more non-empty, printable, NUL-terminated strings."""
    if not data or data[-1] != 0:
        return False
    segments = bytes(data[:-1]).split(b"\0")
    return all(seg and all(_is_print(b) for b in seg) for seg in segments)


def _take_digits(s: str, start: int, digits: str, limit: int) -> str:
    end = start
    while end < len(s) and end - start < limit and s[end] in digits:
        end += 1
    return s[start:end]


def get_escape_char(s: str, i: int) -> tuple[str, int]:
    """Decode the escape whose first character (after the backslash) is at s[i].

    Returns the decoded character and the index just past the escape.
    """
    c = s[i] if i < len(s) else "\0"
    if c in _SIMPLE_ESCAPES:
        return _SIMPLE_ESCAPES[c], i + 1
    if c in _OCT_DIGITS:
        digits = _take_digits(s, i, _OCT_DIGITS, 3)
        return chr(int(digits, 8) & 0xFF), i + len(digits)
    if c == "x":
        digits = _take_digits(s, i + 1, _HEX_DIGITS, 2)
        if not digits:
            raise DtcError("\\x used with no following hex digits")
        return chr(int(digits, 16)), i + 1 + len(digits)
    return c, i + 1


def read_blob(filename: str) -> bytes:
    """Read a whole device tree blob from a file, or from stdin when filename is '-'."""
    if filename == "-":
        return sys.stdin.buffer.read()
    with open(filename, "rb") as f:
        return f.read()


def write_blob(filename: str, blob: bytes) -> None:
    """Write the blob, as long as its header's totalsize, to a file or stdout ('-')."""
    if len(blob) < 8:
        raise ValueError("blob too short to hold a device tree header")
    (totalsize,) = _HEADER_TOTALSIZE.unpack_from(blob, 4)
    if totalsize > len(blob):
        raise ValueError(
            f"header totalsize {totalsize} exceeds blob length {len(blob)}"
        )
    payload = bytes(blob[:totalsize])
    if filename == "-":
        sys.stdout.buffer.write(payload)
        sys.stdout.buffer.flush()
        return
    with open(filename, "wb") as f:
        f.write(payload)


def decode_type(fmt: str) -> tuple[str, int]:
    """Decode a type string such as 'x', 'hx', 'bu' or 's'.

    Returns (type character, size in bytes), size being -1 when not given
    or not applicable. Raises ValueError on an invalid format.
    """
    if not fmt:
        raise ValueError("empty type format")
    pos = 0
    qualifier = ""
    if fmt[0] in "hlLb":
        qualifier = fmt[0]
        pos = 1
        if pos < len(fmt) and fmt[pos] == qualifier:
            if fmt[pos] == "h":
                qualifier = "b"
            pos += 1
    if pos >= len(fmt) or fmt[pos] not in "iuxsr":
        raise ValueError(f"invalid type format {fmt!r}")
    type_char = fmt[pos]
    pos += 1
    if pos != len(fmt):
        raise ValueError(f"invalid type format {fmt!r}")
    size = -1
    if type_char not in "sr":
        size = {"b": 1, "h": 2, "l": 4}.get(qualifier, -1)
    return type_char, size


def format_property_data(data: bytes) -> str:
    """Render property data as strings, 32-bit cells or bytes; empty data gives ''."""
    if not data:
        return ""
    if is_printable_string(data):
        parts = bytes(data[:-1]).split(b"\0")
        return " = " + ", ".join(f'"{p.decode("ascii")}"' for p in parts)
    if len(data) % 4 == 0:
        cells = struct.unpack(f">{len(data) // 4}I", data)
        return " = <" + " ".join(f"0x{c:08x}" for c in cells) + ">"
    return " = [" + " ".join(f"{b:02x}" for b in data) + "]"


def usage_text(
    errmsg: str | None,
    synopsis: str,
    short_opts: str,
    long_opts: list[LongOption],
    opts_help: list[str],
) -> str:
    """Build the standard usage message, with an error line when errmsg is given."""
    if len(opts_help) < len(long_opts):
        raise ValueError("every option needs a help string")
    arg_len = len(_ARG_PLACEHOLDER) + 1
    lines = [f"Usage: {synopsis}\n\nOptions: -[{short_opts}]\n"]

    optlen = max(
        (len(o.name) + 1 + (arg_len if o.has_arg else 0) for o in long_opts),
        default=0,
    )
    for opt, help_text in zip(long_opts, opts_help):
        prefix = f"  -{opt.short}, " if opt.short else "      "
        if opt.has_arg:
            pad = " " * (optlen - len(opt.name) - arg_len)
            flag = f"--{opt.name} {_ARG_PLACEHOLDER}{pad}"
        else:
            flag = f"--{opt.name:<{optlen}}"
        lines.append(f"{prefix}{flag}{help_text}\n")

    if errmsg:
        lines.append(f"\nError: {errmsg}\n")
    return "".join(lines)