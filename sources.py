"""Character sources feeding the dispatch loop.

A program is a stream of single bytes. The interpreter reads from whichever
source sits on top of a ``SourceStack``: the program file or standard input
at the bottom, one function body above it per active call.
"""

from __future__ import annotations
import sys
from typing import BinaryIO, List, Optional

from lexer import SkaFileError


class CharSource:
    """One producer of program bytes."""

    name = "<source>"

    def has_more(self) -> bool:
        raise NotImplementedError

    def next_char(self) -> bytes:
        raise NotImplementedError

    def close(self) -> None:
        pass


class _StreamSource(CharSource):
    # Keeps one byte of lookahead so has_more() is exact.

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._pending: Optional[bytes] = None
        self._eof = False

    def _fill(self) -> None:
        if self._pending is None and not self._eof:
            data = self._stream.read(1)
            if data:
                self._pending = data
            else:
                self._eof = True

    def has_more(self) -> bool:
        self._fill()
        return self._pending is not None

    def next_char(self) -> bytes:
        self._fill()
        if self._pending is None:
            raise EOFError(f"{self.name} is exhausted")
        ch, self._pending = self._pending, None
        return ch


class FileSource(_StreamSource):
    def __init__(self, stream: BinaryIO, name: str) -> None:
        super().__init__(stream)
        self.name = name
        self.closed = False

    @classmethod
    def open(cls, path: str) -> "FileSource":
        try:
            handle = open(path, "rb")
        except OSError:
            raise SkaFileError(path)
        return cls(handle, path)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._stream.close()


class InteractiveSource(_StreamSource):
    """Reads the process's standard input. The stream is borrowed, not closed."""

    name = "<stdin>"

    def __init__(self, stream: Optional[BinaryIO] = None) -> None:
        super().__init__(stream if stream is not None else sys.stdin.buffer)


class FunctionBodySource(CharSource):
    def __init__(self, body: bytes, name: str = "<function>") -> None:
        self.body = bytes(body)
        self.name = name
        self.index = 0

    def has_more(self) -> bool:
        return self.index < len(self.body)

    def next_char(self) -> bytes:
        if self.index >= len(self.body):
            raise EOFError(f"{self.name} is exhausted")
        ch = self.body[self.index:self.index + 1]
        self.index += 1
        return ch


class SourceStack:
    """Exclusively owns its sources; popping a source releases it."""

    def __init__(self) -> None:
        self._items: List[CharSource] = []

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __enter__(self) -> "SourceStack":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close_all()

    @property
    def top(self) -> CharSource:
        return self._items[-1]

    def push(self, source: CharSource) -> None:
        self._items.append(source)

    def pop(self) -> None:
        source = self._items.pop()
        source.close()

    def close_all(self) -> None:
        while self._items:
            self.pop()
