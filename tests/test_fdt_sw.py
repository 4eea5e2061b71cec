import struct

import pytest

from fdtkit.fdt_sw import (
    FDT_MAGIC,
    CreateFlags,
    FdtError,
    FdtErrorCode,
    SequentialWriter,
)

SPACE = 65536
TEST_ADDR_1 = 0xDEADBEEF00000000
TEST_SIZE_1 = 0x100000
TEST_ADDR_2 = 123456789
TEST_SIZE_2 = 0o10000
TEST_VALUE_1 = 0xDEADBEEF
TEST_VALUE_2 = 123456789
TEST_VALUE64_1 = 0xDEADBEEF01ABCDEF
PHANDLE_1 = 0x2000
PHANDLE_2 = 0x2001
TEST_STRING_1 = "hello world"
PLACE = b"this is a placeholder string\0string2\0"


def _align4(x):
    return (x + 3) & ~3


def _parse(blob):
    fields = struct.unpack_from(">10I", blob, 0)
    names = (
        "magic totalsize off_dt_struct off_dt_strings off_mem_rsvmap version "
        "last_comp_version boot_cpuid_phys size_dt_strings size_dt_struct"
    ).split()
    header = dict(zip(names, fields))
    rsv = []
    pos = header["off_mem_rsvmap"]
    while True:
        addr, size = struct.unpack_from(">QQ", blob, pos)
        pos += 16
        if addr == 0 and size == 0:
            break
        rsv.append((addr, size))
    strings = blob[header["off_dt_strings"]:header["off_dt_strings"] + header["size_dt_strings"]]

    def name_at(off):
        return strings[off:strings.index(b"\0", off)].decode()

    pos = header["off_dt_struct"]
    stack = []
    root = None
    while True:
        (tag,) = struct.unpack_from(">I", blob, pos)
        pos += 4
        if tag == 1:
            end = blob.index(b"\0", pos)
            node = {"name": blob[pos:end].decode(), "props": [], "children": []}
            pos = _align4(end + 1)
            if stack:
                stack[-1]["children"].append(node)
            else:
                root = node
            stack.append(node)
        elif tag == 3:
            length, nameoff = struct.unpack_from(">II", blob, pos)
            pos += 8
            stack[-1]["props"].append((name_at(nameoff), blob[pos:pos + length]))
            pos = _align4(pos + length)
        elif tag == 2:
            stack.pop()
        elif tag == 4:
            continue
        elif tag == 9:
            break
        else:
            raise AssertionError(f"bad tag {tag}")
    return header, rsv, root, strings


def _direct(op):
    return op()


def _growing(writer):
    def call(op):
        while True:
            try:
                return op()
            except FdtError as exc:
                if exc.code != FdtErrorCode.NOSPACE:
                    raise
                writer.resize(writer.totalsize + 1)
    return call


def _build_tree1(w, call):
    call(lambda: w.add_reservemap_entry(TEST_ADDR_1, TEST_SIZE_1))
    call(lambda: w.add_reservemap_entry(TEST_ADDR_2, TEST_SIZE_2))
    call(w.finish_reservemap)

    call(lambda: w.begin_node(""))
    call(lambda: w.property_string("compatible", "test_tree1"))
    call(lambda: w.property_u32("prop-int", TEST_VALUE_1))
    call(lambda: w.property_u64("prop-int64", TEST_VALUE64_1))
    call(lambda: w.property_string("prop-str", TEST_STRING_1))
    call(lambda: w.property_u32("#address-cells", 1))
    call(lambda: w.property_u32("#size-cells", 0))

    call(lambda: w.begin_node("subnode@1"))
    call(lambda: w.property_string("compatible", "subnode1"))
    call(lambda: w.property_u32("reg", 1))
    call(lambda: w.property_cell("prop-int", TEST_VALUE_1))
    call(lambda: w.begin_node("subsubnode"))
    call(lambda: w.property("compatible", b"subsubnode1\0subsubnode\0"))
    place = call(lambda: w.property_placeholder("placeholder", len(PLACE)))
    place[:] = PLACE
    call(lambda: w.property_cell("prop-int", TEST_VALUE_1))
    call(w.end_node)
    call(lambda: w.begin_node("ss1"))
    call(w.end_node)
    call(w.end_node)

    call(lambda: w.begin_node("subnode@2"))
    call(lambda: w.property_u32("reg", 2))
    call(lambda: w.property_cell("linux,phandle", PHANDLE_1))
    call(lambda: w.property_cell("prop-int", TEST_VALUE_2))
    call(lambda: w.property_u32("#address-cells", 1))
    call(lambda: w.property_u32("#size-cells", 0))
    call(lambda: w.begin_node("subsubnode@0"))
    call(lambda: w.property_u32("reg", 0))
    call(lambda: w.property_cell("phandle", PHANDLE_2))
    call(lambda: w.property("compatible", b"subsubnode2\0subsubnode\0"))
    call(lambda: w.property_cell("prop-int", TEST_VALUE_2))
    call(w.end_node)
    call(lambda: w.begin_node("ss2"))
    call(w.end_node)
    call(w.end_node)
    call(w.end_node)
    return call(w.finish)


def _fixed_tree(flags=CreateFlags.NONE):
    w = SequentialWriter(SPACE, flags)
    return _build_tree1(w, _direct)


def _u32(v):
    return struct.pack(">I", v)


def test_fixed_tree_header_and_reservations():
    blob = _fixed_tree()
    header, rsv, _, _ = _parse(blob)
    assert header["magic"] == FDT_MAGIC
    assert header["version"] == 17
    assert header["last_comp_version"] == 16
    assert header["totalsize"] == len(blob)
    assert header["off_dt_strings"] + header["size_dt_strings"] == header["totalsize"]
    assert rsv == [(TEST_ADDR_1, TEST_SIZE_1), (TEST_ADDR_2, TEST_SIZE_2)]


def test_fixed_tree_contents():
    _, _, root, _ = _parse(_fixed_tree())
    assert root["name"] == ""
    props = dict(root["props"])
    assert props["compatible"] == b"test_tree1\0"
    assert props["prop-int"] == _u32(TEST_VALUE_1)
    assert props["prop-int64"] == struct.pack(">Q", TEST_VALUE64_1)
    assert props["prop-str"] == b"hello world\0"
    assert props["#size-cells"] == _u32(0)
    assert [c["name"] for c in root["children"]] == ["subnode@1", "subnode@2"]

    sub1, sub2 = root["children"]
    assert [c["name"] for c in sub1["children"]] == ["subsubnode", "ss1"]
    subsub = dict(sub1["children"][0]["props"])
    assert subsub["compatible"] == b"subsubnode1\0subsubnode\0"
    assert subsub["placeholder"] == PLACE
    assert dict(sub2["props"])["linux,phandle"] == _u32(PHANDLE_1)
    assert dict(sub2["children"][0]["props"])["phandle"] == _u32(PHANDLE_2)
    assert dict(sub2["props"])["prop-int"] == _u32(TEST_VALUE_2)


def test_names_are_deduplicated_by_default():
    _, _, _, strings = _parse(_fixed_tree())
    assert strings.count(b"compatible\0") == 1
    assert strings.count(b"prop-int\0") == 1


def test_no_name_dedup_repeats_names():
    blob = _fixed_tree(CreateFlags.NO_NAME_DEDUP)
    _, _, root, strings = _parse(blob)
    assert strings.count(b"compatible\0") == 4
    assert _parse(_fixed_tree())[2] == root


@pytest.mark.parametrize("start_size", [0, 48, 100])
def test_growing_buffer_matches_fixed(start_size):
    size = start_size
    while True:
        try:
            w = SequentialWriter(size)
            break
        except FdtError as exc:
            assert exc.code == FdtErrorCode.NOSPACE
            size += 1
    assert size == max(start_size, 48)
    assert _build_tree1(w, _growing(w)) == _fixed_tree()


def test_bad_flags():
    with pytest.raises(FdtError) as info:
        SequentialWriter(SPACE, 0xFFFFFFFF)
    assert info.value.code == FdtErrorCode.BADFLAGS


def test_too_small_buffer():
    with pytest.raises(FdtError) as info:
        SequentialWriter(47)
    assert info.value.code == FdtErrorCode.NOSPACE


def test_struct_before_reservemap_finished_is_bad_state():
    w = SequentialWriter(1024)
    with pytest.raises(FdtError) as info:
        w.begin_node("")
    assert info.value.code == FdtErrorCode.BADSTATE


def test_reserve_after_finish_reservemap_is_bad_state():
    w = SequentialWriter(1024)
    w.finish_reservemap()
    with pytest.raises(FdtError) as info:
        w.add_reservemap_entry(1, 2)
    assert info.value.code == FdtErrorCode.BADSTATE


def test_operations_after_finish_are_bad_state():
    w = SequentialWriter(1024)
    w.finish_reservemap()
    w.begin_node("")
    w.end_node()
    w.finish()
    assert w.is_finished
    for op in (w.end_node, lambda: w.property_u32("x", 1), lambda: w.resize(2048)):
        with pytest.raises(FdtError) as info:
            op()
        assert info.value.code == FdtErrorCode.BADSTATE


def test_resize_rejects_too_small_and_negative():
    w = SequentialWriter(1024)
    w.finish_reservemap()
    w.begin_node("")
    w.property_string("compatible", "abc")
    for size in (-1, 60):
        with pytest.raises(FdtError) as info:
            w.resize(size)
        assert info.value.code == FdtErrorCode.NOSPACE
    w.resize(200)
    w.end_node()
    _, _, root, _ = _parse(w.finish())
    assert root["props"] == [("compatible", b"abc\0")]


def test_suffix_name_reuses_existing_string():
    w = SequentialWriter(1024)
    w.finish_reservemap()
    w.begin_node("")
    w.property_u32("prop-int", 7)
    w.property_u32("int", 9)
    w.end_node()
    _, _, root, strings = _parse(w.finish())
    assert strings == b"prop-int\0"
    assert root["props"] == [("prop-int", _u32(7)), ("int", _u32(9))]


def test_failed_property_rolls_back_name():
    w = SequentialWriter(100)
    w.finish_reservemap()
    w.begin_node("")
    with pytest.raises(FdtError) as info:
        w.property("big-property", bytes(64))
    assert info.value.code == FdtErrorCode.NOSPACE
    w.resize(400)
    w.property("big-property", bytes(64))
    w.end_node()
    header, _, root, strings = _parse(w.finish())
    assert strings == b"big-property\0"
    assert root["props"] == [("big-property", bytes(64))]
    assert header["totalsize"] == header["off_dt_strings"] + len(strings)


def test_unfinished_blob_spans_whole_buffer():
    w = SequentialWriter(512)
    w.finish_reservemap()
    assert w.totalsize == 512
    assert len(w.blob) == 512
    assert not w.is_finished