"""Writing a device tree back out as device tree source text."""

from __future__ import annotations

import bisect
from typing import TextIO

from fdtkit.livetree import DtInfo, Marker, MarkerType, Node, Property
from fdtkit.srcpos import SourceTracker, SrcPos

__all__ = ["guess_value_type", "format_propval", "dt_to_source"]

_CELL_SIZE = 4

_DELIM_START = {
    MarkerType.TYPE_UINT8: "[",
    MarkerType.TYPE_UINT16: "/bits/ 16 <",
    MarkerType.TYPE_UINT32: "<",
    MarkerType.TYPE_UINT64: "/bits/ 64 <",
    MarkerType.TYPE_STRING: "",
}
_DELIM_END = {
    MarkerType.TYPE_UINT8: "]",
    MarkerType.TYPE_UINT16: ">",
    MarkerType.TYPE_UINT32: ">",
    MarkerType.TYPE_UINT64: ">",
    MarkerType.TYPE_STRING: "",
}

_STRING_ESCAPES = {
    0x07: "\\a",
    0x08: "\\b",
    0x09: "\\t",
    0x0A: "\\n",
    0x0B: "\\v",
    0x0C: "\\f",
    0x0D: "\\r",
    0x5C: "\\\\",
    0x22: '\\"',
    0x00: "\\0",
}
_CONTROL_STRING_CHARS = b"\a\b\t\n\v\f\r"


def _isprint(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def _isstring(byte: int) -> bool:
    return _isprint(byte) or byte == 0 or byte in _CONTROL_STRING_CHARS


def _is_type_marker(kind: MarkerType) -> bool:
    return kind >= MarkerType.TYPE_UINT8


def _type_marker_length(marker: Marker, following: list[Marker]) -> int:
    """Distance to the next type marker, or 0 when there is none."""
    for nxt in following:
        if _is_type_marker(nxt.type):
            return nxt.offset - marker.offset
    return 0


def _format_string(chunk: bytes) -> str:
    if not chunk:
        return ""
    if chunk[-1] != 0:
        raise ValueError("string chunk is not NUL-terminated")
    out = ['"']
    for byte in chunk[:-1]:
        if byte in _STRING_ESCAPES:
            out.append(_STRING_ESCAPES[byte])
        elif _isprint(byte):
            out.append(chr(byte))
        else:
            out.append(f"\\x{byte:02x}")
    out.append('"')
    return "".join(out)


def _format_ints(chunk: bytes, width: int) -> str:
    if len(chunk) % width:
        raise ValueError(f"{len(chunk)} bytes do not divide into {width}-byte integers")
    values = (
        int.from_bytes(chunk[off:off + width], "big")
        for off in range(0, len(chunk), width)
    )
    if width == 1:
        return " ".join(f"{v:02x}" for v in values)
    return " ".join(f"0x{v:02x}" for v in values)


def _add_string_markers(prop: Property) -> None:
    data = bytes(prop.val.val)
    markers = prop.val.markers
    offset = data.find(0) + 1
    while 0 < offset < len(data):
        pos = bisect.bisect_right(markers, offset, key=lambda mk: mk.offset)
        markers.insert(pos, Marker(offset, MarkerType.TYPE_STRING))
        end = data.find(0, offset)
        if end < 0:
            break
        offset = end + 1


def guess_value_type(prop: Property) -> MarkerType:
    """Guess how to show a value with no type markers; may add string markers."""
    data = bytes(prop.val.val)
    length = len(data)
    nnotstring = sum(1 for b in data if not _isstring(b))
    nnul = data.count(0)
    labels = [m for m in prop.val.markers if m.type == MarkerType.LABEL]
    nnotstringlbl = sum(
        1 for m in labels if m.offset > 0 and data[m.offset - 1] != 0
    )
    nnotcelllbl = sum(1 for m in labels if m.offset % _CELL_SIZE)

    if (
        data
        and data[-1] == 0
        and nnotstring == 0
        and nnul <= length - nnul
        and nnotstringlbl == 0
    ):
        if nnul > 1:
            _add_string_markers(prop)
        return MarkerType.TYPE_STRING
    if length % _CELL_SIZE == 0 and nnotcelllbl == 0:
        return MarkerType.TYPE_UINT32
    return MarkerType.TYPE_UINT8


def _annotation(
    pos: SrcPos | None,
    annotate: int,
    tracker: SourceTracker | None,
    first: bool,
) -> str:
    if not annotate:
        return ""
    tracker = tracker if tracker is not None else SourceTracker()
    if first:
        text = tracker.describe_first(pos, annotate)
    else:
        text = tracker.describe_last(pos, annotate)
    return f" /* {text} */" if text else ""


def format_propval(
    prop: Property, annotate: int = 0, tracker: SourceTracker | None = None
) -> str:
    """Render the part of a property line that follows its name."""
    data = bytes(prop.val.val)
    length = len(data)
    if length == 0:
        return ";" + _annotation(prop.srcpos, annotate, tracker, True) + "\n"

    out = [" ="]
    markers = list(prop.val.markers)
    if not any(_is_type_marker(m.type) for m in markers):
        guessed = guess_value_type(prop)
        markers = [Marker(0, guessed)] + list(prop.val.markers)

    emit_type = MarkerType.TYPE_NONE
    for idx, m in enumerate(markers):
        following = markers[idx + 1:]
        chunk_end = following[0].offset if following else length
        chunk_len = chunk_end - m.offset
        data_len = _type_marker_length(m, following) or length - m.offset

        if _is_type_marker(m.type):
            emit_type = m.type
            out.append(" " + _DELIM_START[emit_type])
        elif m.type == MarkerType.LABEL:
            out.append(f" {m.ref}:")

        if emit_type == MarkerType.TYPE_NONE or chunk_len <= 0:
            continue

        chunk = data[m.offset:m.offset + chunk_len]
        if emit_type == MarkerType.TYPE_UINT16:
            out.append(_format_ints(chunk, 2))
        elif emit_type == MarkerType.TYPE_UINT32:
            ref = next(
                (
                    r
                    for r in prop.val.markers
                    if r.type == MarkerType.REF_PHANDLE and r.offset == m.offset
                ),
                None,
            )
            if ref is not None:
                target = ref.ref or ""
                out.append(f"&{{{target}}}" if target.startswith("/") else f"&{target}")
                if chunk_len > _CELL_SIZE:
                    out.append(" " + _format_ints(chunk[_CELL_SIZE:], _CELL_SIZE))
            else:
                out.append(_format_ints(chunk, _CELL_SIZE))
            if data_len > chunk_len:
                out.append(" ")
        elif emit_type == MarkerType.TYPE_UINT64:
            out.append(_format_ints(chunk, 8))
        elif emit_type == MarkerType.TYPE_STRING:
            out.append(_format_string(chunk))
        else:
            out.append(_format_ints(chunk, 1))

        if chunk_len == data_len:
            pos = m.offset + chunk_len
            out.append(_DELIM_END.get(emit_type, "") + ("" if pos == length else ","))
            emit_type = MarkerType.TYPE_NONE

    out.append(";")
    out.append(_annotation(prop.srcpos, annotate, tracker, True))
    out.append("\n")
    return "".join(out)


def _label_prefix(labels) -> str:
    return "".join(f"{l.label}: " for l in labels if not l.deleted)


def _write_node(
    f: TextIO,
    node: Node,
    level: int,
    annotate: int,
    tracker: SourceTracker | None,
) -> None:
    indent = "\t" * level
    name = node.name if node.name else "/"
    f.write(f"{indent}{_label_prefix(node.labels)}{name} {{")
    f.write(_annotation(node.srcpos, annotate, tracker, True))
    f.write("\n")

    for prop in node.properties:
        if prop.deleted:
            continue
        f.write(
            f"{indent}\t{_label_prefix(prop.labels)}{prop.name}"
            f"{format_propval(prop, annotate, tracker)}"
        )
    for child in node.children:
        if child.deleted:
            continue
        f.write("\n")
        _write_node(f, child, level + 1, annotate, tracker)

    f.write(f"{indent}}};")
    f.write(_annotation(node.srcpos, annotate, tracker, False))
    f.write("\n")


def dt_to_source(
    f: TextIO,
    dti: DtInfo,
    annotate: int = 0,
    tracker: SourceTracker | None = None,
) -> None:
    """Write the whole tree, with its reservation map, as source text to f."""
    f.write("/dts-v1/;\n\n")
    for entry in dti.reservelist:
        f.write(
            f"{_label_prefix(entry.labels)}/memreserve/\t"
            f"0x{entry.address:016x} 0x{entry.size:016x};\n"
        )
    _write_node(f, dti.dt, 0, annotate, tracker)