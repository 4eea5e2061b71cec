"""Source file tracking and source position descriptions."""

from __future__ import annotations

import copy as _copy
import os
import sys
from dataclasses import dataclass, field, replace
from typing import IO, BinaryIO

from fdtkit.util import DtcError, join_path

__all__ = [
    "MAX_SRCFILE_DEPTH",
    "SourceFile",
    "SrcPos",
    "SourceTracker",
    "format_error",
]

MAX_SRCFILE_DEPTH = 200
_STDIN_NAME = "<stdin>"


@dataclass
class SourceFile:
    """State of one source file being read."""

    name: str | None = None
    dir: str | None = None
    f: BinaryIO | None = None
    lineno: int = 1
    colno: int = 1
    prev: SourceFile | None = field(default=None, repr=False)


@dataclass
class SrcPos:
    """A span of source text, possibly chained to further spans."""

    first_line: int = 1
    first_column: int = 1
    last_line: int = 1
    last_column: int = 1
    file: SourceFile | None = None
    next: SrcPos | None = field(default=None, repr=False)

    def copy(self) -> SrcPos:
        """Return an independent copy, including a snapshot of the file state."""
        if self.next is not None:
            raise ValueError("cannot copy a chained source position")
        file_state = _copy.copy(self.file) if self.file is not None else None
        return replace(self, file=file_state, next=None)

    def extend(self, newtail: SrcPos | None) -> SrcPos:
        """Append newtail to the end of this position's chain and return self."""
        tail = self
        while tail.next is not None:
            tail = tail.next
        tail.next = newtail
        return self

    def describe(self) -> str:
        """Describe the span as file:line.col with an optional range."""
        fname = "<no-file>"
        if self.file is not None and self.file.name:
            fname = self.file.name
        if self.first_line != self.last_line:
            return (
                f"{fname}:{self.first_line}.{self.first_column}"
                f"-{self.last_line}.{self.last_column}"
            )
        if self.first_column != self.last_column:
            return (
                f"{fname}:{self.first_line}.{self.first_column}"
                f"-{self.last_column}"
            )
        return f"{fname}:{self.first_line}.{self.first_column}"


def _get_dirname(path: str) -> str | None:
    slash = path.rfind("/")
    if slash < 0:
        return None
    return path[:slash]


def format_error(pos: SrcPos, prefix: str, message: str) -> str:
    """Format an error message located at pos."""
    return f"{prefix}: {pos.describe()} {message}"


class SourceTracker:
    """Opens source files along a search path and tracks the include stack."""

    def __init__(self, depfile: IO[str] | None = None) -> None:
        self.depfile = depfile
        self.current: SourceFile | None = None
        self.search_paths: list[str] = []
        self.depth = 0
        self.initial_path: str | None = None
        self.initial_pathlen = 0
        self._initial_cpp = True

    def add_search_path(self, dirname: str) -> None:
        """Add a directory to the end of the search path."""
        self.search_paths.append(dirname)

    @staticmethod
    def _try_open(dirname: str | None, fname: str) -> tuple[BinaryIO, str]:
        if dirname is None or fname.startswith("/"):
            fullname = fname
        else:
            fullname = join_path(dirname, fname)
        return open(fullname, "rb"), fullname

    def relative_open(self, fname: str) -> tuple[BinaryIO, str]:
        """Open fname, trying the current file's directory then the search path.

        Returns the open binary file and the name it was found under.
        """
        if fname == "-":
            f: BinaryIO = sys.stdin.buffer
            fullname = _STDIN_NAME
        else:
            cur_dir = self.current.dir if self.current is not None else None
            last_error: OSError | None = None
            for dirname in (cur_dir, *self.search_paths):
                try:
                    f, fullname = self._try_open(dirname, fname)
                    break
                except OSError as exc:
                    last_error = exc
            else:
                reason = (
                    os.strerror(last_error.errno)
                    if last_error is not None and last_error.errno
                    else str(last_error)
                )
                raise DtcError(f'Couldn\'t open "{fname}": {reason}')
        if self.depfile is not None:
            self.depfile.write(f" {fullname}")
        return f, fullname

    def _set_initial_path(self, fname: str) -> None:
        self.initial_path = fname
        self.initial_pathlen = fname.count("/")

    def push(self, fname: str) -> SourceFile:
        """Open fname and make it the current source file."""
        depth = self.depth
        self.depth += 1
        if depth >= MAX_SRCFILE_DEPTH:
            raise DtcError("Includes nested too deeply")
        f, fullname = self.relative_open(fname)
        srcfile = SourceFile(
            name=fullname,
            dir=_get_dirname(fullname),
            f=f,
            prev=self.current,
        )
        self.current = srcfile
        if self.depth == 1:
            self._set_initial_path(fullname)
        return srcfile

    def pop(self) -> bool:
        """Close the current file; return True if an enclosing file remains."""
        srcfile = self.current
        if srcfile is None:
            raise DtcError("no source file to pop")
        self.current = srcfile.prev
        if srcfile.f is not None and srcfile.f is not sys.stdin.buffer:
            try:
                srcfile.f.close()
            except OSError as exc:
                raise DtcError(
                    f'Error closing "{srcfile.name}": {exc.strerror or exc}'
                ) from exc
        return self.current is not None

    def update(self, pos: SrcPos, text: str) -> None:
        """Set pos to cover text read at the current location and advance it."""
        cur = self.current
        if cur is None:
            raise DtcError("no current source file")
        pos.file = cur
        pos.first_line = cur.lineno
        pos.first_column = cur.colno
        for ch in text:
            if ch == "\n":
                cur.lineno += 1
                cur.colno = 1
            else:
                cur.colno += 1
        pos.last_line = cur.lineno
        pos.last_column = cur.colno

    def set_line(self, fname: str, lineno: int) -> None:
        """Apply a line marker: rename the current file and set its line."""
        cur = self.current
        if cur is None:
            raise DtcError("no current source file")
        cur.name = fname
        cur.lineno = lineno
        if self._initial_cpp:
            self._initial_cpp = False
            self._set_initial_path(fname)

    def shorten_to_initial_path(self, fname: str) -> str | None:
        """Express fname relative to the directory of the initial file, if they share one."""
        initial = self.initial_path or ""
        prevslash: int | None = None
        slashes = 0
        for idx, (a, b) in enumerate(zip(fname, initial)):
            if a != b:
                break
            if a == "/":
                prevslash = idx
                slashes += 1
        if prevslash is None:
            return None
        diff = self.initial_pathlen - slashes
        return "../" * diff + fname[prevslash + 1:]

    def _describe(self, pos: SrcPos | None, first_line: bool, level: int) -> str | None:
        if pos is None:
            return "<no-file>:<no-line>" if level > 1 else None
        parts: list[str] = []
        node: SrcPos | None = pos
        while node is not None:
            parts.append(self._describe_one(node, first_line, level))
            node = node.next
        return ", ".join(parts)

    def _describe_one(self, pos: SrcPos, first_line: bool, level: int) -> str:
        if pos.file is None:
            fname = "<no-file>"
        elif not pos.file.name:
            fname = "<no-filename>"
        elif level > 1:
            fname = pos.file.name
        else:
            fname = self.shorten_to_initial_path(pos.file.name) or pos.file.name
        if level > 1:
            return (
                f"{fname}:{pos.first_line}:{pos.first_column}"
                f"-{pos.last_line}:{pos.last_column}"
            )
        line = pos.first_line if first_line else pos.last_line
        return f"{fname}:{line}"

    def describe_first(self, pos: SrcPos | None, level: int) -> str | None:
        """Annotation text for pos using its first line; None when there is nothing to say."""
        return self._describe(pos, True, level)

    def describe_last(self, pos: SrcPos | None, level: int) -> str | None:
        """Annotation text for pos using its last line; None when there is nothing to say."""
        return self._describe(pos, False, level)