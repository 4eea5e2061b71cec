# fdtkit

`fdtkit` is a pure-Python toolkit for working with device trees. It lets you:

- build and change a live device tree in memory, with nodes, properties, labels,
  phandles, reserve entries, merging and overlay fixup generation
  (`fdtkit.livetree`);
- write a tree as device tree source (`fdtkit.treesource`) or as YAML
  (`fdtkit.yamltree`);
- build a flattened device tree blob (`.dtb`) step by step with a sequential
  writer (`fdtkit.fdt_sw`);
- track source files, include search paths and source positions for
  diagnostics (`fdtkit.srcpos`);
- use shared helpers for blob file I/O, escape decoding, type strings,
  property formatting and usage text (`fdtkit.util`).

## Installation

From the project directory:

```
pip install .
```

To install the test dependencies as well:

```
pip install ".[test]"
```

## Building a tree and writing source

```python
import io

from fdtkit.livetree import Data, DtInfo, MarkerType, build_node, build_property
from fdtkit.treesource import dt_to_source

value = Data().add_marker(MarkerType.TYPE_STRING, None).append(b"my-board\0")
root = build_node([build_property("compatible", value, None)], [], None)
root.name = ""
dti = DtInfo(root)

out = io.StringIO()
dt_to_source(out, dti, 0, None)
print(out.getvalue())
```

This prints:

```
/dts-v1/;

/ {
	compatible = "my-board";
};
```

`Node` offers lookups (`get_property`, `get_subnode`, `get_node_by_path`,
`get_node_by_label`, `get_node_by_phandle`, `get_node_by_ref`), edits
(`add_property`, `add_child`, `delete`, `delete_property_by_name`,
`delete_node_by_name`, `append_to_property`) and `merge`. `DtInfo` offers
`get_node_phandle`, `add_orphan_node`, `guess_boot_cpuid`, `sort`,
`generate_label_tree`, `generate_fixups_tree` and `generate_local_fixups_tree`.

When a property value carries no type markers, `guess_value_type` from
`fdtkit.treesource` decides whether to show it as strings, cells or bytes;
`format_propval` renders a single property value.

## Writing YAML

`dt_to_yaml(f, dti)` from `fdtkit.yamltree` writes the tree as a YAML document
holding a one-item sequence. Every non-empty property value must carry type
markers; otherwise `DtcError` is raised.

## Writing a flattened blob

```python
from fdtkit.fdt_sw import SequentialWriter

w = SequentialWriter(65536)
w.add_reservemap_entry(0xDEADBEEF00000000, 0x100000)
w.finish_reservemap()
w.begin_node("")
w.property_string("compatible", "test_tree1")
w.property_u32("#address-cells", 1)
w.begin_node("subnode@1")
w.property_u32("reg", 1)
w.end_node()
w.end_node()
blob = w.finish()
```

Errors from the writer are raised as `FdtError`, whose `code` is an
`FdtErrorCode` such as `NOSPACE` or `BADSTATE`. When space runs out, call
`resize()` with a larger size and retry the step. `property_placeholder()`
returns a writable view of a new property's value.
`SequentialWriter(size, CreateFlags.NO_NAME_DEDUP)` turns off deduplication
of property names in the strings block.

## Blob files

`fdtkit.util.read_blob(filename)` reads a whole file and
`write_blob(filename, blob)` writes as many bytes as the blob's header gives
as its total size. The name `-` means standard input or output. File errors
come through as `OSError`; `write_blob` raises `ValueError` for a blob too
short for its header or shorter than its recorded total size.

## Source positions

`SourceTracker` in `fdtkit.srcpos` opens files relative to the current file
and then along its search paths (`add_search_path`), keeps the include stack
(`push`, `pop`), advances positions (`update`, `set_line`), and describes
`SrcPos` spans for annotations (`describe_first`, `describe_last`).
`format_error(pos, prefix, message)` builds a located error message.

## What this package does not do

- It does not read device tree source: there is no `.dts` parser or lexer.
- It does not read, search or modify existing flattened blobs; it only writes
  new ones with `SequentialWriter`.
- It has no command-line programs.

## Running the tests

```
pytest
```