"""Sequential construction of flattened device tree blobs."""

from __future__ import annotations

import struct
from collections.abc import Iterator
from enum import IntEnum, IntFlag

__all__ = [
    "FDT_MAGIC",
    "FDT_SW_MAGIC",
    "FdtErrorCode",
    "FdtError",
    "CreateFlags",
    "SequentialWriter",
]

FDT_MAGIC = 0xD00DFEED
FDT_SW_MAGIC = ~FDT_MAGIC & 0xFFFFFFFF
FDT_LAST_SUPPORTED_VERSION = 0x11
FDT_LAST_COMPATIBLE_VERSION = 0x10

FDT_BEGIN_NODE = 0x1
FDT_END_NODE = 0x2
FDT_PROP = 0x3
FDT_NOP = 0x4
FDT_END = 0x9

FDT_TAGSIZE = 4
_HEADER_SIZE = 40
_RESERVE_ENTRY_SIZE = 16
_PROP_HEADER_SIZE = 12
_MASK32 = 0xFFFFFFFF

_U32 = struct.Struct(">I")
_RESERVE_ENTRY = struct.Struct(">QQ")
_PROP_HEADER = struct.Struct(">III")

_HEADER_FIELDS = {
    "magic": 0,
    "totalsize": 4,
    "off_dt_struct": 8,
    "off_dt_strings": 12,
    "off_mem_rsvmap": 16,
    "version": 20,
    "last_comp_version": 24,
    "boot_cpuid_phys": 28,
    "size_dt_strings": 32,
    "size_dt_struct": 36,
}


def _align(x: int, a: int) -> int:
    return (x + a - 1) & ~(a - 1)


def _tagalign(x: int) -> int:
    return _align(x, FDT_TAGSIZE)


_HDRSIZE = _align(_HEADER_SIZE, _RESERVE_ENTRY_SIZE)


class FdtErrorCode(IntEnum):
    """Error codes reported by the flattened tree routines."""

    NOTFOUND = 1
    EXISTS = 2
    NOSPACE = 3
    BADOFFSET = 4
    BADPATH = 5
    BADPHANDLE = 6
    BADSTATE = 7
    TRUNCATED = 8
    BADMAGIC = 9
    BADVERSION = 10
    BADSTRUCTURE = 11
    BADLAYOUT = 12
    INTERNAL = 13
    BADNCELLS = 14
    BADVALUE = 15
    BADOVERLAY = 16
    NOPHANDLES = 17
    BADFLAGS = 18
    ALIGNMENT = 19


class FdtError(Exception):
    """A flattened tree operation failed with a specific error code."""

    def __init__(self, code: FdtErrorCode, message: str | None = None) -> None:
        self.code = FdtErrorCode(code)
        super().__init__(message or f"FDT_ERR_{self.code.name}")


class CreateFlags(IntFlag):
    """Options accepted when a sequential writer is created."""

    NONE = 0
    NO_NAME_DEDUP = 0x1
    ALL = 0x1


class SequentialWriter:
    """Builds a device tree blob in a fixed-size buffer, one item after another.

    The writer moves through three states: reservation map entries first,
    then the structure (nodes and properties), then complete after finish().
    """

    def __init__(self, bufsize: int, flags: int = CreateFlags.NONE) -> None:
        if bufsize < _HDRSIZE:
            raise FdtError(FdtErrorCode.NOSPACE)
        if int(flags) & ~int(CreateFlags.ALL):
            raise FdtError(FdtErrorCode.BADFLAGS)
        self._buf = bytearray(bufsize)
        self._set("magic", FDT_SW_MAGIC)
        self._set("version", FDT_LAST_SUPPORTED_VERSION)
        # last_comp_version holds the creation flags until finish()
        self._set("last_comp_version", int(flags))
        self._set("totalsize", bufsize)
        self._set("off_mem_rsvmap", _HDRSIZE)
        self._set("off_dt_struct", _HDRSIZE)
        self._set("off_dt_strings", 0)

    # header access

    def _get(self, name: str) -> int:
        return _U32.unpack_from(self._buf, _HEADER_FIELDS[name])[0]

    def _set(self, name: str, value: int) -> None:
        _U32.pack_into(self._buf, _HEADER_FIELDS[name], value & _MASK32)

    @property
    def totalsize(self) -> int:
        """The size recorded in the header: the buffer size until finished."""
        return self._get("totalsize")

    @property
    def is_finished(self) -> bool:
        """True once finish() has turned the buffer into a valid blob."""
        return self._get("magic") == FDT_MAGIC

    @property
    def blob(self) -> bytes:
        """The buffer contents up to the header's totalsize."""
        return bytes(self._buf[: self.totalsize])

    # state checks

    def _probe(self) -> None:
        magic = self._get("magic")
        if magic == FDT_MAGIC:
            raise FdtError(FdtErrorCode.BADSTATE)
        if magic != FDT_SW_MAGIC:
            raise FdtError(FdtErrorCode.BADMAGIC)

    def _probe_memrsv(self) -> None:
        self._probe()
        if self._get("off_dt_strings") != 0:
            raise FdtError(FdtErrorCode.BADSTATE)

    def _probe_struct(self) -> None:
        self._probe()
        if self._get("off_dt_strings") != self.totalsize:
            raise FdtError(FdtErrorCode.BADSTATE)

    def _flags(self) -> CreateFlags:
        return CreateFlags(self._get("last_comp_version") & int(CreateFlags.ALL))

    # space management

    def _grab_space(self, length: int) -> int | None:
        offset = self._get("size_dt_struct")
        spaceleft = (
            self.totalsize - self._get("off_dt_struct") - self._get("size_dt_strings")
        )
        if offset + length > spaceleft:
            return None
        self._set("size_dt_struct", offset + length)
        pos = self._get("off_dt_struct") + offset
        self._buf[pos : pos + length] = bytes(length)
        return pos

    def resize(self, bufsize: int) -> None:
        """Move the unfinished tree into a buffer of a different size."""
        self._probe()
        if bufsize < 0:
            raise FdtError(FdtErrorCode.NOSPACE)
        totalsize = self.totalsize
        headsize = self._get("off_dt_struct") + self._get("size_dt_struct")
        tailsize = self._get("size_dt_strings")
        if headsize + tailsize > totalsize:
            raise FdtError(FdtErrorCode.INTERNAL)
        if headsize + tailsize > bufsize:
            raise FdtError(FdtErrorCode.NOSPACE)

        new = bytearray(bufsize)
        new[:headsize] = self._buf[:headsize]
        if tailsize:
            new[bufsize - tailsize :] = self._buf[totalsize - tailsize : totalsize]
        self._buf = new
        self._set("totalsize", bufsize)
        if self._get("off_dt_strings"):
            self._set("off_dt_strings", bufsize)

    # reservation map

    def add_reservemap_entry(self, address: int, size: int) -> None:
        """Add a memory reservation entry."""
        self._probe_memrsv()
        offset = self._get("off_dt_struct")
        if offset + _RESERVE_ENTRY_SIZE > self.totalsize:
            raise FdtError(FdtErrorCode.NOSPACE)
        _RESERVE_ENTRY.pack_into(
            self._buf, offset, address & 0xFFFFFFFFFFFFFFFF, size & 0xFFFFFFFFFFFFFFFF
        )
        self._set("off_dt_struct", offset + _RESERVE_ENTRY_SIZE)

    def finish_reservemap(self) -> None:
        """Terminate the reservation map and move on to the structure."""
        self.add_reservemap_entry(0, 0)
        self._set("off_dt_strings", self.totalsize)

    # structure

    def begin_node(self, name: str) -> None:
        """Open a node; the root node has the empty name."""
        self._probe_struct()
        encoded = name.encode("utf-8") + b"\0"
        pos = self._grab_space(FDT_TAGSIZE + _tagalign(len(encoded)))
        if pos is None:
            raise FdtError(FdtErrorCode.NOSPACE)
        _U32.pack_into(self._buf, pos, FDT_BEGIN_NODE)
        start = pos + FDT_TAGSIZE
        self._buf[start : start + len(encoded)] = encoded

    def end_node(self) -> None:
        """Close the most recently opened node."""
        self._probe_struct()
        pos = self._grab_space(FDT_TAGSIZE)
        if pos is None:
            raise FdtError(FdtErrorCode.NOSPACE)
        _U32.pack_into(self._buf, pos, FDT_END_NODE)

    def _add_string(self, s: bytes) -> int:
        totalsize = self.totalsize
        strtabsize = self._get("size_dt_strings")
        length = len(s) + 1
        offset = strtabsize + length
        struct_top = self._get("off_dt_struct") + self._get("size_dt_struct")
        if totalsize - offset < struct_top:
            return 0
        start = totalsize - offset
        self._buf[start : start + length] = s + b"\0"
        self._set("size_dt_strings", strtabsize + length)
        return -offset

    def _del_last_string(self, s: bytes) -> None:
        self._set("size_dt_strings", self._get("size_dt_strings") - (len(s) + 1))

    def _find_add_string(self, s: bytes) -> tuple[int, bool]:
        totalsize = self.totalsize
        strtabsize = self._get("size_dt_strings")
        table = bytes(self._buf[totalsize - strtabsize : totalsize])
        found = table.find(s + b"\0")
        if found >= 0:
            return found - strtabsize, False
        return self._add_string(s), True

    def property_placeholder(self, name: str, length: int) -> memoryview:
        """Add a property of the given length and return a writable view of its value."""
        self._probe_struct()
        if length < 0:
            raise FdtError(FdtErrorCode.BADVALUE)
        encoded = name.encode("utf-8")
        if self._flags() & CreateFlags.NO_NAME_DEDUP:
            nameoff, allocated = self._add_string(encoded), True
        else:
            nameoff, allocated = self._find_add_string(encoded)
        if nameoff == 0:
            raise FdtError(FdtErrorCode.NOSPACE)

        pos = self._grab_space(_PROP_HEADER_SIZE + _tagalign(length))
        if pos is None:
            if allocated:
                self._del_last_string(encoded)
            raise FdtError(FdtErrorCode.NOSPACE)

        _PROP_HEADER.pack_into(self._buf, pos, FDT_PROP, length, nameoff & _MASK32)
        start = pos + _PROP_HEADER_SIZE
        return memoryview(self._buf)[start : start + length]

    def property(self, name: str, value: bytes) -> None:
        """Add a property with the given raw value."""
        data = bytes(value)
        view = self.property_placeholder(name, len(data))
        view[:] = data
        view.release()

    def property_u32(self, name: str, value: int) -> None:
        """Add a property holding one big-endian 32-bit integer."""
        self.property(name, struct.pack(">I", value & _MASK32))

    def property_u64(self, name: str, value: int) -> None:
        """Add a property holding one big-endian 64-bit integer."""
        self.property(name, struct.pack(">Q", value & 0xFFFFFFFFFFFFFFFF))

    def property_cell(self, name: str, value: int) -> None:
        """Add a property holding one cell."""
        self.property_u32(name, value)

    def property_string(self, name: str, value: str) -> None:
        """Add a property holding a NUL-terminated string."""
        self.property(name, value.encode("utf-8") + b"\0")

    # completion

    def _walk_tags(self) -> Iterator[tuple[int, int]]:
        base = self._get("off_dt_struct")
        limit = self._get("size_dt_struct")
        offset = 0
        while True:
            if offset + FDT_TAGSIZE > limit:
                raise FdtError(FdtErrorCode.BADSTRUCTURE)
            (tag,) = _U32.unpack_from(self._buf, base + offset)
            if tag == FDT_END:
                return
            if tag == FDT_BEGIN_NODE:
                end = self._buf.find(b"\0", base + offset + FDT_TAGSIZE, base + limit)
                if end < 0:
                    raise FdtError(FdtErrorCode.BADSTRUCTURE)
                nextoffset = _tagalign(end + 1 - base)
            elif tag == FDT_PROP:
                if offset + _PROP_HEADER_SIZE > limit:
                    raise FdtError(FdtErrorCode.BADSTRUCTURE)
                (length,) = _U32.unpack_from(self._buf, base + offset + 4)
                nextoffset = offset + _PROP_HEADER_SIZE + _tagalign(length)
            elif tag in (FDT_END_NODE, FDT_NOP):
                nextoffset = offset + FDT_TAGSIZE
            else:
                raise FdtError(FdtErrorCode.BADSTRUCTURE)
            if nextoffset > limit:
                raise FdtError(FdtErrorCode.BADSTRUCTURE)
            yield tag, offset
            offset = nextoffset

    def finish(self) -> bytes:
        """Terminate the structure, pack the strings and return the finished blob."""
        self._probe_struct()
        pos = self._grab_space(FDT_TAGSIZE)
        if pos is None:
            raise FdtError(FdtErrorCode.NOSPACE)
        _U32.pack_into(self._buf, pos, FDT_END)

        size_strings = self._get("size_dt_strings")
        oldstroffset = self.totalsize - size_strings
        newstroffset = self._get("off_dt_struct") + self._get("size_dt_struct")
        self._buf[newstroffset : newstroffset + size_strings] = self._buf[
            oldstroffset : oldstroffset + size_strings
        ]
        self._set("off_dt_strings", newstroffset)

        base = self._get("off_dt_struct")
        for tag, offset in self._walk_tags():
            if tag == FDT_PROP:
                at = base + offset + 8
                (nameoff,) = _U32.unpack_from(self._buf, at)
                _U32.pack_into(self._buf, at, (nameoff + size_strings) & _MASK32)

        self._set("totalsize", newstroffset + size_strings)
        self._set("last_comp_version", FDT_LAST_COMPATIBLE_VERSION)
        self._set("magic", FDT_MAGIC)
        return self.blob