from __future__ import annotations
import enum
from dataclasses import dataclass
from typing import Callable, Dict, List, NoReturn, Optional


class ErrorKind(enum.Enum):
    UNRECOGNISED_TOKEN = "UnrecognisedToken"
    UNDEFINED_REFERENCE = "UndefinedReference"
    UNDEFINED_FUNCTION = "UndefinedFunction"
    INVALID_ESCAPE = "InvalidEscape"
    UNTERMINATED_STRING = "UnterminatedString"
    UNMATCHED_BRACE = "UnmatchedBrace"
    DIVISION_BY_ZERO = "DivisionByZero"
    FILE_OPEN_FAILURE = "FileOpenFailure"
    EXTENSION_FAILURE = "ExtensionFailure"


@dataclass(frozen=True)
class Position:
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.line}:{self.column}"


class SkaError(Exception):
    """Base class for interpreter errors."""


class SkaRuntimeError(SkaError):
    """Raised for faults inside the dispatch loop."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        *,
        location: Optional[Position] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.location = location
        self.step_index: Optional[int] = None


class SkaFileError(SkaError):
    """Raised when the program file cannot be opened."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Could not open file \"{path}\"")
        self.path = path
        self.kind = ErrorKind.FILE_OPEN_FAILURE


# Pulls the next byte from the active source and advances the position.
# Returns None once the source is exhausted.
Consume = Callable[[], Optional[bytes]]
# Raises SkaRuntimeError at the current position.
Fail = Callable[[str, ErrorKind], NoReturn]


SIMPLE_ESCAPES: Dict[bytes, bytes] = {
    b"a": b"\x07",
    b"b": b"\x08",
    b"e": b"\x1b",
    b"f": b"\x0c",
    b"n": b"\n",
    b"r": b"\r",
    b"t": b"\t",
    b"v": b"\x0b",
    b"\\": b"\\",
}

# escape letter -> number of hex digits in the payload
CODEPOINT_ESCAPES: Dict[bytes, int] = {
    b"x": 2,
    b"u": 4,
    b"U": 8,
}

HEX_DIGITS = frozenset(b"0123456789abcdefABCDEF")


def encode_utf8(codepoint: int) -> bytes:
    """Encode a code point with the standard UTF-8 bit patterns.

    Surrogates and values past U+10FFFF are not rejected; anything above
    0xFFFF takes the four byte form with the high bits masked off.
    """
    if codepoint <= 0x7F:
        return bytes([codepoint])
    if codepoint <= 0x7FF:
        return bytes([
            0xC0 | ((codepoint >> 6) & 0x1F),
            0x80 | (codepoint & 0x3F),
        ])
    if codepoint <= 0xFFFF:
        return bytes([
            0xE0 | ((codepoint >> 12) & 0x0F),
            0x80 | ((codepoint >> 6) & 0x3F),
            0x80 | (codepoint & 0x3F),
        ])
    return bytes([
        0xF0 | ((codepoint >> 18) & 0x07),
        0x80 | ((codepoint >> 12) & 0x3F),
        0x80 | ((codepoint >> 6) & 0x3F),
        0x80 | (codepoint & 0x3F),
    ])


def read_literal(consume: Consume, quote: bytes, fail: Fail) -> bytes:
    """Collect a quoted literal whose opening quote was already consumed.

    Reads up to the next unescaped ``quote`` and returns the decoded bytes.
    """
    chars: List[bytes] = []
    while True:
        ch = consume()
        if ch is None:
            fail("Unterminated string literal", ErrorKind.UNTERMINATED_STRING)
        if ch == quote:
            return b"".join(chars)
        if ch != b"\\":
            chars.append(ch)
            continue
        chars.append(_read_escape(consume, quote, fail))


def _read_escape(consume: Consume, quote: bytes, fail: Fail) -> bytes:
    letter = consume()
    if letter is None:
        fail("Unterminated string literal", ErrorKind.UNTERMINATED_STRING)
    if letter == quote:
        return quote
    simple = SIMPLE_ESCAPES.get(letter)
    if simple is not None:
        return simple
    width = CODEPOINT_ESCAPES.get(letter)
    if width is None:
        fail("Invalid escape sequence", ErrorKind.INVALID_ESCAPE)
    digits = bytearray()
    for _ in range(width):
        ch = consume()
        if ch is None:
            fail("Unterminated string literal", ErrorKind.UNTERMINATED_STRING)
        digits += ch
    if not all(b in HEX_DIGITS for b in digits):
        fail(
            f"Invalid hexadecimal value for \\{letter.decode('ascii')}",
            ErrorKind.INVALID_ESCAPE,
        )
    return encode_utf8(int(digits, 16))
