"""In-memory device tree: nodes, properties, labels and tree-wide operations."""

from __future__ import annotations

import sys
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag

from fdtkit.srcpos import SrcPos
from fdtkit.util import DtcError, get_escape_char, join_path

__all__ = [
    "MarkerType",
    "PhandleFormat",
    "Marker",
    "Data",
    "Label",
    "Property",
    "Node",
    "ReserveEntry",
    "DtInfo",
    "add_label",
    "delete_labels",
    "build_property",
    "build_property_delete",
    "build_node",
    "build_node_delete",
]

_CELL_SIZE = 4
_INVALID_PHANDLE = 0xFFFFFFFF


class MarkerType(IntEnum):
    """Kinds of marker attached to property data."""

    TYPE_NONE = 0
    REF_PATH = 1
    REF_PHANDLE = 2
    LABEL = 3
    TYPE_UINT8 = 4
    TYPE_UINT16 = 5
    TYPE_UINT32 = 6
    TYPE_UINT64 = 7
    TYPE_STRING = 8


class PhandleFormat(IntFlag):
    """Which phandle properties are generated for a node."""

    LEGACY = 0x1
    EPAPR = 0x2
    BOTH = 0x3


def _phandle_is_valid(phandle: int) -> bool:
    return phandle not in (0, _INVALID_PHANDLE)


@dataclass
class Marker:
    """A typed annotation at an offset within property data."""

    offset: int
    type: MarkerType
    ref: str | None = None


@dataclass
class Data:
    """Property value bytes together with their markers."""

    val: bytearray = field(default_factory=bytearray)
    markers: list[Marker] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.val)

    def add_marker(self, type: MarkerType, ref: str | None) -> Data:
        """Add a marker at the current end of the data."""
        self.markers.append(Marker(len(self.val), MarkerType(type), ref))
        return self

    def append(self, data: bytes) -> Data:
        """Append raw bytes."""
        self.val += data
        return self

    def append_integer(self, value: int, bits: int) -> Data:
        """Append value as a big-endian integer of the given width in bits."""
        if bits not in (8, 16, 32, 64):
            raise ValueError(f"Invalid literal size ({bits})")
        value &= (1 << bits) - 1
        self.val += value.to_bytes(bits // 8, "big")
        return self

    def append_cell(self, value: int) -> Data:
        """Append a 32-bit cell."""
        return self.append_integer(value, 32)

    def _markers_of_type(self, type: MarkerType) -> Iterator[Marker]:
        return (m for m in self.markers if m.type == type)


def _copy_escape_string(s: str) -> Data:
    out = bytearray()
    i = 0
    while i < len(s):
        c = s[i]
        i += 1
        if c == "\\":
            c, i = get_escape_char(s, i)
        if ord(c) < 256:
            out.append(ord(c))
        else:
            out += c.encode("utf-8")
    out.append(0)
    return Data(markers=[Marker(0, MarkerType.TYPE_STRING)]).append(out)


@dataclass
class Label:
    """A label on a node, property or reserve entry."""

    label: str
    deleted: bool = False


def add_label(labels: list[Label], label: str) -> None:
    """Add label to the list, or revive it if it is already there."""
    for existing in labels:
        if existing.label == label:
            existing.deleted = False
            return
    labels.insert(0, Label(label))


def delete_labels(labels: list[Label]) -> None:
    """Mark every live label in the list as deleted."""
    for existing in labels:
        existing.deleted = True


def _live_labels(labels: Iterable[Label]) -> Iterator[Label]:
    return (l for l in labels if not l.deleted)


@dataclass(eq=False)
class Property:
    """A named property value."""

    name: str
    val: Data = field(default_factory=Data)
    labels: list[Label] = field(default_factory=list)
    deleted: bool = False
    srcpos: SrcPos | None = None

    def cell(self) -> int:
        """Return the value as a single 32-bit cell."""
        if len(self.val) != _CELL_SIZE:
            raise ValueError(
                f"property {self.name!r} is {len(self.val)} bytes, not one cell"
            )
        return int.from_bytes(self.val.val, "big")

    def cell_n(self, n: int) -> int:
        """Return the n-th 32-bit cell of the value."""
        if not 0 <= n < len(self.val) // _CELL_SIZE:
            raise IndexError(f"property {self.name!r} has no cell {n}")
        start = n * _CELL_SIZE
        return int.from_bytes(self.val.val[start:start + _CELL_SIZE], "big")


def _delete_property(prop: Property) -> None:
    prop.deleted = True
    delete_labels(prop.labels)


def build_property(name: str, val: Data, srcpos: SrcPos | None) -> Property:
    """Create a property, taking a copy of its source position."""
    return Property(
        name=name,
        val=val,
        srcpos=srcpos.copy() if srcpos is not None else None,
    )


def build_property_delete(name: str) -> Property:
    """Create a property that marks name for deletion when merged."""
    return Property(name=name, deleted=True)


def _extend_srcpos(pos: SrcPos | None, newtail: SrcPos | None) -> SrcPos | None:
    if pos is None:
        return newtail
    return pos.extend(newtail)


@dataclass(eq=False)
class Node:
    """A device tree node with its properties and children."""

    name: str | None = None
    properties: list[Property] = field(default_factory=list)
    children: list[Node] = field(default_factory=list)
    parent: Node | None = field(default=None, repr=False)
    labels: list[Label] = field(default_factory=list)
    deleted: bool = False
    srcpos: SrcPos | None = None
    phandle: int = 0
    omit_if_unused: bool = False
    is_referenced: bool = False

    @property
    def fullpath(self) -> str:
        """The absolute path of this node."""
        if self.parent is None:
            return "/"
        return join_path(self.parent.fullpath, self.name or "")

    def _live_properties(self) -> Iterator[Property]:
        return (p for p in list(self.properties) if not p.deleted)

    def _live_children(self) -> Iterator[Node]:
        return (c for c in list(self.children) if not c.deleted)

    def merge(self, new_node: Node) -> Node:
        """Merge new_node's labels, properties and children into this node."""
        self.deleted = False
        for l in new_node.labels:
            add_label(self.labels, l.label)

        for new_prop in new_node.properties:
            if new_prop.deleted:
                self.delete_property_by_name(new_prop.name)
                continue
            for old_prop in self.properties:
                if old_prop.name == new_prop.name:
                    for l in new_prop.labels:
                        add_label(old_prop.labels, l.label)
                    old_prop.val = new_prop.val
                    old_prop.deleted = False
                    old_prop.srcpos = new_prop.srcpos
                    break
            else:
                self.add_property(new_prop)

        for new_child in new_node.children:
            new_child.parent = None
            if new_child.deleted:
                self.delete_node_by_name(new_child.name)
                continue
            for old_child in self.children:
                if old_child.name == new_child.name:
                    old_child.merge(new_child)
                    break
            else:
                self.add_child(new_child)

        self.srcpos = _extend_srcpos(self.srcpos, new_node.srcpos)
        new_node.properties = []
        new_node.children = []
        return self

    def add_property(self, prop: Property) -> None:
        """Append a property."""
        self.properties.append(prop)

    def delete_property_by_name(self, name: str) -> None:
        """Mark the first property called name as deleted."""
        for prop in self.properties:
            if prop.name == name:
                _delete_property(prop)
                return

    def add_child(self, child: Node) -> None:
        """Append a child node."""
        child.parent = self
        self.children.append(child)

    def delete_node_by_name(self, name: str | None) -> None:
        """Mark the first child called name, and all beneath it, as deleted."""
        for child in self.children:
            if child.name == name:
                child.delete()
                return

    def delete(self) -> None:
        """Mark this node, its live children, properties and labels as deleted."""
        self.deleted = True
        for child in self._live_children():
            child.delete()
        for prop in self._live_properties():
            _delete_property(prop)
        delete_labels(self.labels)

    def append_to_property(self, name: str, data: bytes, type: MarkerType) -> None:
        """Append typed data to a property, creating it if missing."""
        prop = self.get_property(name)
        if prop is not None:
            prop.val.add_marker(type, name).append(data)
        else:
            d = Data().add_marker(type, name).append(data)
            self.add_property(build_property(name, d, None))

    def get_property(self, name: str) -> Property | None:
        """Return the live property called name, if any."""
        for prop in self._live_properties():
            if prop.name == name:
                return prop
        return None

    def get_subnode(self, name: str) -> Node | None:
        """Return the live child called name, if any."""
        for child in self._live_children():
            if child.name == name:
                return child
        return None

    def get_property_by_label(
        self, label: str
    ) -> tuple[Property, Node] | tuple[None, None]:
        """Find a property carrying label; return it with its node."""
        for prop in self._live_properties():
            if any(l.label == label for l in _live_labels(prop.labels)):
                return prop, self
        for child in self._live_children():
            prop, node = child.get_property_by_label(label)
            if prop is not None:
                return prop, node
        return None, None

    def get_marker_label(
        self, label: str
    ) -> tuple[Marker, Node, Property] | tuple[None, None, None]:
        """Find a label marker inside a property value; return it, its node and property."""
        for prop in self._live_properties():
            for m in prop.val._markers_of_type(MarkerType.LABEL):
                if m.ref == label:
                    return m, self, prop
        for child in self._live_children():
            found = child.get_marker_label(label)
            if found[0] is not None:
                return found
        return None, None, None

    def get_node_by_path(self, path: str | None) -> Node | None:
        """Resolve a path relative to this node."""
        if not path:
            return None if self.deleted else self
        path = path.lstrip("/")
        head, sep, rest = path.partition("/")
        for child in self._live_children():
            if sep and child.name == head:
                return child.get_node_by_path(rest)
            if not sep and child.name == path:
                return child
        return None

    def get_node_by_label(self, label: str) -> Node | None:
        """Find the node carrying label in this subtree."""
        if not label:
            raise ValueError("label must not be empty")
        if any(l.label == label for l in _live_labels(self.labels)):
            return self
        for child in self._live_children():
            node = child.get_node_by_label(label)
            if node is not None:
                return node
        return None

    def get_node_by_phandle(self, phandle: int) -> Node | None:
        """Find the live node with the given phandle in this subtree."""
        if not _phandle_is_valid(phandle):
            return None
        if self.phandle == phandle:
            return None if self.deleted else self
        for child in self._live_children():
            node = child.get_node_by_phandle(phandle)
            if node is not None:
                return node
        return None

    def get_node_by_ref(self, ref: str) -> Node | None:
        """Resolve a reference: '/', a path, a label, or label/path."""
        if ref == "/":
            return self
        if ref.startswith("/"):
            return self.get_node_by_path(ref)
        label, sep, path = ref.partition("/")
        target = self.get_node_by_label(label)
        if target is None:
            return None
        if sep:
            target = target.get_node_by_path(path)
        return target


def build_node(
    properties: Iterable[Property] | None,
    children: Iterable[Node] | None,
    srcpos: SrcPos | None,
) -> Node:
    """Create an unnamed node owning the given properties and children."""
    node = Node(
        properties=list(properties or ()),
        children=list(children or ()),
        srcpos=srcpos.copy() if srcpos is not None else None,
    )
    for child in node.children:
        child.parent = node
    return node


def build_node_delete(srcpos: SrcPos | None) -> Node:
    """Create a node that marks its name for deletion when merged."""
    return Node(deleted=True, srcpos=srcpos.copy() if srcpos is not None else None)


@dataclass
class ReserveEntry:
    """A memory reservation entry."""

    address: int
    size: int
    labels: list[Label] = field(default_factory=list)


@dataclass(eq=False)
class DtInfo:
    """A whole device tree with its reservation map and settings."""

    dt: Node
    reservelist: list[ReserveEntry] = field(default_factory=list)
    dtsflags: int = 0
    boot_cpuid_phys: int = 0
    phandle_format: PhandleFormat = PhandleFormat.EPAPR
    _next_phandle: int = field(default=1, repr=False)
    _next_orphan_fragment: int = field(default=0, repr=False)

    def add_orphan_node(self, new_node: Node, ref: str) -> Node:
        """Wrap new_node as an overlay fragment targeting ref and add it to the root."""
        if ref.startswith("/"):
            d = Data().add_marker(MarkerType.TYPE_STRING, ref)
            d.append(ref.encode() + b"\0")
            prop = build_property("target-path", d, None)
        else:
            d = Data().add_marker(MarkerType.REF_PHANDLE, ref)
            d.append_integer(_INVALID_PHANDLE, 32)
            prop = build_property("target", d, None)

        name = f"fragment@{self._next_orphan_fragment}"
        self._next_orphan_fragment += 1
        new_node.name = "__overlay__"
        fragment = build_node([prop], [new_node], None)
        fragment.name = name
        self.dt.add_child(fragment)
        return self.dt

    def _add_phandle_property(self, node: Node, name: str, fmt: PhandleFormat) -> None:
        if not self.phandle_format & fmt:
            return
        if node.get_property(name) is not None:
            return
        d = Data().add_marker(MarkerType.TYPE_UINT32, None).append_cell(node.phandle)
        node.add_property(build_property(name, d, None))

    def get_node_phandle(self, node: Node) -> int:
        """Return node's phandle, allocating an unused one if it has none."""
        if _phandle_is_valid(node.phandle):
            return node.phandle
        while self.dt.get_node_by_phandle(self._next_phandle) is not None:
            self._next_phandle += 1
        node.phandle = self._next_phandle
        self._add_phandle_property(node, "linux,phandle", PhandleFormat.LEGACY)
        self._add_phandle_property(node, "phandle", PhandleFormat.EPAPR)
        return node.phandle

    def guess_boot_cpuid(self) -> int:
        """Take the boot CPU id from the reg of the first node under /cpus."""
        cpus = self.dt.get_node_by_path("/cpus")
        if cpus is None or not cpus.children:
            return 0
        reg = cpus.children[0].get_property("reg")
        if reg is None or len(reg.val) != _CELL_SIZE:
            return 0
        return reg.cell()

    def sort(self) -> None:
        """Sort reserve entries, and every node's properties and children by name."""
        self.reservelist.sort(key=lambda r: (r.address, r.size))
        _sort_node(self.dt)

    def _build_root_node(self, name: str) -> Node:
        node = self.dt.get_subnode(name)
        if node is None:
            node = Node(name=name)
            self.dt.add_child(node)
        return node

    def generate_label_tree(self, name: str, allocph: bool) -> None:
        """Add a node under the root mapping every label to its node's path."""
        if not _any_label(self.dt):
            return
        self._label_tree(self._build_root_node(name), self.dt, allocph)

    def _label_tree(self, an: Node, node: Node, allocph: bool) -> None:
        if node.labels:
            for l in _live_labels(node.labels):
                if an.get_property(l.label) is not None:
                    print(
                        f"WARNING: label {l.label} already exists in /{an.name}",
                        file=sys.stderr,
                    )
                    continue
                an.add_property(
                    build_property(l.label, _copy_escape_string(node.fullpath), None)
                )
            if allocph:
                self.get_node_phandle(node)
        for child in node._live_children():
            self._label_tree(an, child, allocph)

    def _phandle_refs(self, node: Node) -> Iterator[tuple[Node, Property, Marker]]:
        for prop in node._live_properties():
            for m in prop.val._markers_of_type(MarkerType.REF_PHANDLE):
                yield node, prop, m
        for child in node._live_children():
            yield from self._phandle_refs(child)

    def generate_fixups_tree(self, name: str) -> None:
        """Record unresolved phandle references under a node of the root."""
        unresolved = [
            ref
            for ref in self._phandle_refs(self.dt)
            if self.dt.get_node_by_ref(ref[2].ref) is None
        ]
        if not unresolved:
            return
        fn = self._build_root_node(name)
        for node, prop, m in unresolved:
            if "/" in m.ref:
                raise DtcError(f"Can't generate fixup for reference to path &{{{m.ref}}}")
            if ":" in node.fullpath or ":" in prop.name:
                raise DtcError("arguments should not contain ':'")
            entry = f"{node.fullpath}:{prop.name}:{m.offset}"
            fn.append_to_property(m.ref, entry.encode() + b"\0", MarkerType.TYPE_STRING)

    def generate_local_fixups_tree(self, name: str) -> None:
        """Record resolved phandle references under a node tree mirroring their paths."""
        resolved = [
            ref
            for ref in self._phandle_refs(self.dt)
            if self.dt.get_node_by_ref(ref[2].ref) is not None
        ]
        if not resolved:
            return
        lfn = self._build_root_node(name)
        for node, prop, m in resolved:
            names: list[str | None] = []
            walk: Node | None = node
            while walk is not None:
                names.append(walk.name)
                walk = walk.parent
            target = lfn
            for component in reversed(names[:-1]):
                sub = target.get_subnode(component)
                if sub is None:
                    sub = Node(name=component)
                    target.add_child(sub)
                target = sub
            target.append_to_property(
                prop.name, m.offset.to_bytes(4, "big"), MarkerType.TYPE_UINT32
            )


def _any_label(node: Node) -> bool:
    if node.labels:
        return True
    return any(_any_label(c) for c in node._live_children())


def _sort_node(node: Node) -> None:
    node.properties.sort(key=lambda p: p.name)
    node.children.sort(key=lambda c: c.name or "")
    for child in node.children:
        _sort_node(child)