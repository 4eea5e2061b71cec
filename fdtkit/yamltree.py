"""Writing a device tree as YAML."""

from __future__ import annotations

from collections.abc import Iterator
from typing import TextIO

import yaml
from yaml.events import (
    DocumentEndEvent,
    DocumentStartEvent,
    Event,
    MappingEndEvent,
    MappingStartEvent,
    ScalarEvent,
    SequenceEndEvent,
    SequenceStartEvent,
    StreamEndEvent,
    StreamStartEvent,
)

from fdtkit.livetree import DtInfo, Marker, MarkerType, Node, Property
from fdtkit.util import DtcError

__all__ = ["dt_to_yaml"]

_STR_TAG = "tag:yaml.org,2002:str"
_INT_TAG = "tag:yaml.org,2002:int"
_BOOL_TAG = "tag:yaml.org,2002:bool"
_SEQ_TAG = "tag:yaml.org,2002:seq"
_MAP_TAG = "tag:yaml.org,2002:map"
_PHANDLE_TAG = "!phandle"
_WIDTH_TAGS = {1: "!u8", 2: "!u16", 4: "!u32", 8: "!u64"}
_TYPE_WIDTHS = {
    MarkerType.TYPE_UINT16: 2,
    MarkerType.TYPE_UINT32: 4,
    MarkerType.TYPE_UINT64: 8,
}


class _Dumper(yaml.SafeDumper):
    """Emitter that honours an explicit request for plain style on tagged scalars."""

    def choose_scalar_style(self):
        if self.analysis is None:
            self.analysis = self.analyze_scalar(self.event.value)
        if self.event.style == "" and not (
            self.simple_key_context and (self.analysis.empty or self.analysis.multiline)
        ):
            if (self.flow_level and self.analysis.allow_flow_plain) or (
                not self.flow_level and self.analysis.allow_block_plain
            ):
                return ""
        return super().choose_scalar_style()


def _type_marker_length(marker: Marker, following: list[Marker]) -> int:
    for nxt in following:
        if nxt.type >= MarkerType.TYPE_UINT8:
            return nxt.offset - marker.offset
    return 0


def _int_events(
    data: bytes, markers: list[Marker], seq_offset: int, width: int
) -> Iterator[Event]:
    tag = _WIDTH_TAGS.get(width)
    if tag is None:
        raise DtcError(f"Invalid width {width}")
    if len(data) % width:
        raise DtcError(f"{len(data)} bytes do not divide into {width}-byte integers")

    yield SequenceStartEvent(None, tag, width == 4, flow_style=True)
    phandle_offsets = (
        {m.offset for m in markers if m.type == MarkerType.REF_PHANDLE}
        if width == 4
        else set()
    )
    for off in range(0, len(data), width):
        text = f"0x{int.from_bytes(data[off:off + width], 'big'):x}"
        if seq_offset + off in phandle_offsets:
            yield ScalarEvent(None, _PHANDLE_TAG, (False, False), text, style="")
        else:
            yield ScalarEvent(None, _INT_TAG, (True, True), text, style="")
    yield SequenceEndEvent()


def _string_event(data: bytes) -> ScalarEvent:
    if not data or data[-1] != 0:
        raise DtcError("string value is not NUL-terminated")
    if any(b >= 0x80 for b in data):
        raise DtcError("string value is not 7-bit ASCII")
    return ScalarEvent(
        None, _STR_TAG, (False, True), data[:-1].decode("ascii"), style='"'
    )


def _propval_events(prop: Property) -> Iterator[Event]:
    yield ScalarEvent(None, _STR_TAG, (True, True), prop.name, style="")

    data = bytes(prop.val.val)
    remaining = len(data)
    if remaining == 0:
        yield ScalarEvent(None, _BOOL_TAG, (True, False), "true", style="")
        return

    markers = prop.val.markers
    if not markers:
        raise DtcError(f"No markers present in property '{prop.name}' value")

    yield SequenceStartEvent(None, _SEQ_TAG, True, flow_style=True)
    for idx, m in enumerate(markers):
        if m.type < MarkerType.TYPE_UINT8:
            continue
        chunk_len = _type_marker_length(m, markers[idx + 1:]) or remaining
        if chunk_len <= 0:
            raise DtcError(f"empty typed chunk in property '{prop.name}'")
        remaining -= chunk_len
        chunk = data[m.offset:m.offset + chunk_len]

        if m.type == MarkerType.TYPE_STRING:
            yield _string_event(chunk)
        else:
            width = _TYPE_WIDTHS.get(m.type, 1)
            yield from _int_events(chunk, markers, m.offset, width)
    yield SequenceEndEvent()


def _tree_events(node: Node) -> Iterator[Event]:
    if node.deleted:
        return
    yield MappingStartEvent(None, _MAP_TAG, True, flow_style=None)
    for prop in node.properties:
        if not prop.deleted:
            yield from _propval_events(prop)
    for child in node.children:
        if child.deleted:
            continue
        yield ScalarEvent(None, _STR_TAG, (True, False), child.name or "", style="")
        yield from _tree_events(child)
    yield MappingEndEvent()


def _events(dti: DtInfo) -> Iterator[Event]:
    yield StreamStartEvent()
    yield DocumentStartEvent(explicit=True)
    yield SequenceStartEvent(None, _SEQ_TAG, True, flow_style=None)
    yield from _tree_events(dti.dt)
    yield SequenceEndEvent()
    yield DocumentEndEvent(explicit=True)
    yield StreamEndEvent()


def dt_to_yaml(f: TextIO, dti: DtInfo) -> None:
    """Write the tree to f as a YAML document holding a one-item sequence."""
    try:
        yaml.emit(_events(dti), stream=f, Dumper=_Dumper)
    except yaml.YAMLError as exc:
        raise DtcError(f"yaml: {exc}") from exc