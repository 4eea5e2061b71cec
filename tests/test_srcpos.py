import io

import pytest

from fdtkit.srcpos import (
    MAX_SRCFILE_DEPTH,
    SourceFile,
    SourceTracker,
    SrcPos,
    format_error,
)
from fdtkit.util import DtcError, join_path


def _write(path, text="/dts-v1/;\n"):
    path.write_text(text)
    return path


@pytest.fixture
def tracker():
    t = SourceTracker()
    yield t
    while t.current is not None:
        t.pop()


def test_describe_single_point_without_file():
    assert SrcPos(1, 2, 1, 2).describe() == "<no-file>:1.2"


def test_describe_same_line_range():
    pos = SrcPos(3, 1, 3, 5, file=SourceFile(name="board.dts"))
    assert pos.describe() == "board.dts:3.1-5"


def test_describe_multi_line_range():
    pos = SrcPos(2, 4, 7, 9, file=SourceFile(name="board.dts"))
    assert pos.describe() == f"board.dts:{2}.{4}-{7}.{9}"


def test_copy_is_independent():
    src = SourceFile(name="a.dts", lineno=4)
    pos = SrcPos(1, 1, 2, 2, file=src)
    dup = pos.copy()
    assert dup == pos
    assert dup.file is not src
    src.lineno = 99
    assert dup.file.lineno == 4


def test_copy_of_chained_position_is_rejected():
    pos = SrcPos().extend(SrcPos())
    with pytest.raises(ValueError):
        pos.copy()


def test_extend_appends_at_tail():
    a, b, c = SrcPos(1, 1, 1, 1), SrcPos(2, 1, 2, 1), SrcPos(3, 1, 3, 1)
    assert a.extend(b) is a
    assert a.extend(c) is a
    assert a.next is b
    assert b.next is c
    assert c.next is None


def test_relative_open_missing_file(tracker, tmp_path):
    with pytest.raises(DtcError, match="Couldn't open"):
        tracker.relative_open(str(tmp_path / "missing.dts"))


def test_relative_open_uses_search_path(tracker, tmp_path):
    inc = tmp_path / "inc"
    inc.mkdir()
    _write(inc / "common.dtsi")
    tracker.add_search_path(str(inc))
    f, fullname = tracker.relative_open("common.dtsi")
    with f:
        assert fullname == join_path(str(inc), "common.dtsi")
        assert f.read() == b"/dts-v1/;\n"


def test_relative_open_prefers_current_directory(tracker, tmp_path):
    main = _write(tmp_path / "main.dts")
    _write(tmp_path / "part.dtsi", "local")
    other = tmp_path / "other"
    other.mkdir()
    _write(other / "part.dtsi", "other")
    tracker.add_search_path(str(other))
    tracker.push(str(main))
    f, fullname = tracker.relative_open("part.dtsi")
    with f:
        assert fullname == join_path(str(tmp_path), "part.dtsi")
        assert f.read() == b"local"


def test_relative_open_stdin(tracker):
    _, fullname = tracker.relative_open("-")
    assert fullname == "<stdin>"


def test_depfile_records_opened_names(tmp_path):
    dep = io.StringIO()
    t = SourceTracker(depfile=dep)
    main = _write(tmp_path / "main.dts")
    t.push(str(main))
    t.pop()
    assert dep.getvalue() == f" {main}"


def test_push_sets_state_and_pop_reports_remaining(tracker, tmp_path):
    main = _write(tmp_path / "main.dts")
    inc = _write(tmp_path / "inc.dtsi")
    outer = tracker.push(str(main))
    assert outer.dir == str(tmp_path)
    assert (outer.lineno, outer.colno) == (1, 1)
    inner = tracker.push("inc.dtsi")
    assert inner.prev is outer
    assert inner.name == str(inc)
    assert tracker.pop() is True
    assert tracker.current is outer
    assert tracker.pop() is False
    assert tracker.current is None


def test_pop_without_file_raises():
    with pytest.raises(DtcError):
        SourceTracker().pop()


def test_depth_limit_counts_every_push(tracker, tmp_path):
    main = _write(tmp_path / "main.dts")
    for _ in range(MAX_SRCFILE_DEPTH):
        tracker.push(str(main))
        tracker.pop()
    with pytest.raises(DtcError, match="nested too deeply"):
        tracker.push(str(main))


def test_update_tracks_lines_and_columns(tracker, tmp_path):
    tracker.push(str(_write(tmp_path / "main.dts")))
    pos = SrcPos()
    tracker.update(pos, "ab\ncd")
    assert pos.file is tracker.current
    assert (pos.first_line, pos.first_column) == (1, 1)
    assert (pos.last_line, pos.last_column) == (2, 3)
    nxt = SrcPos()
    tracker.update(nxt, "x")
    assert (nxt.first_line, nxt.first_column) == (pos.last_line, pos.last_column)
    assert nxt.last_column == nxt.first_column + 1


def test_shorten_to_initial_path(tracker, tmp_path):
    tracker.push(str(_write(tmp_path / "main.dts")))
    tracker.set_line("a/b/main.dts", 1)
    assert tracker.initial_path == "a/b/main.dts"
    assert tracker.shorten_to_initial_path("a/b/inc.dtsi") == "inc.dtsi"
    assert tracker.shorten_to_initial_path("a/c/x.dtsi") == "../c/x.dtsi"
    assert tracker.shorten_to_initial_path("zz") is None


def test_set_line_only_first_sets_initial_path(tracker, tmp_path):
    tracker.push(str(_write(tmp_path / "main.dts")))
    tracker.set_line("first/one.dts", 5)
    tracker.set_line("second/two.dts", 8)
    assert tracker.initial_path == "first/one.dts"
    assert tracker.current.name == "second/two.dts"
    assert tracker.current.lineno == 8


def test_describe_first_and_last(tracker, tmp_path):
    tracker.push(str(_write(tmp_path / "main.dts")))
    tracker.set_line("a/b/main.dts", 1)
    pos = SrcPos(3, 1, 6, 2, file=SourceFile(name="a/b/inc.dtsi"))
    assert tracker.describe_first(pos, 1) == "inc.dtsi:3"
    assert tracker.describe_last(pos, 1) == "inc.dtsi:6"
    assert tracker.describe_first(pos, 2) == "a/b/inc.dtsi:3:1-6:2"


def test_describe_missing_position(tracker):
    assert tracker.describe_first(None, 1) is None
    assert tracker.describe_last(None, 2) == "<no-file>:<no-line>"


def test_describe_chain_and_unnamed_files(tracker):
    pos = SrcPos(1, 1, 1, 1, file=SourceFile(name=None))
    pos.extend(SrcPos(2, 1, 2, 1))
    text = tracker.describe_first(pos, 1)
    assert text.split(", ") == ["<no-filename>:1", "<no-file>:2"]


def test_format_error():
    pos = SrcPos(1, 2, 1, 2)
    assert format_error(pos, "ERROR", "bad value") == (
        f"ERROR: {pos.describe()} bad value"
    )