"""
Escape decoder and UTF-8 encoder tests.

String literals are decoded byte by byte from whatever source is active, so
these tests drive ``read_literal`` with a plain in-memory feeder.
"""
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from lexer import ErrorKind, SkaRuntimeError, encode_utf8, read_literal


def _feeder(data: bytes):
    chunks = iter([data[i:i + 1] for i in range(len(data))])
    return lambda: next(chunks, None)


def _fail(message, kind):
    raise SkaRuntimeError(message, kind)


def decode(body: bytes, quote: bytes = b'"') -> bytes:
    """Decode a literal body; ``body`` excludes the opening quote."""
    return read_literal(_feeder(body), quote, _fail)


def decode_error(body: bytes, quote: bytes = b'"') -> SkaRuntimeError:
    with pytest.raises(SkaRuntimeError) as info:
        decode(body, quote)
    return info.value


class TestEncodeUtf8:
    @pytest.mark.parametrize("codepoint, width", [
        (0x00, 1),
        (0x41, 1),
        (0x7F, 1),
        (0x80, 2),
        (0x7FF, 2),
        (0x800, 3),
        (0xFFFF, 3),
        (0x10000, 4),
        (0x1F600, 4),
        (0x10FFFF, 4),
    ])
    def test_matches_standard_encoding(self, codepoint, width):
        encoded = encode_utf8(codepoint)
        assert len(encoded) == width
        assert encoded == chr(codepoint).encode("utf-8")

    def test_surrogates_are_encoded_not_rejected(self):
        assert encode_utf8(0xD800) == b"\xed\xa0\x80"


class TestReadLiteral:
    def test_plain_text(self):
        assert decode(b'hello"') == b"hello"

    def test_empty_literal(self):
        assert decode(b'"') == b""

    def test_stops_at_first_unescaped_quote(self):
        feed = _feeder(b'ab"cd')
        assert read_literal(feed, b'"', _fail) == b"ab"
        assert feed() == b"c"

    def test_unicode_escape(self):
        assert decode(b'\\u0041"') == b"A"

    def test_long_unicode_escape(self):
        assert decode(b'\\U0001F600"') == b"\xf0\x9f\x98\x80"

    def test_hex_escape_above_ascii_is_utf8(self):
        assert decode(b'\\x41\\xe9"') == b"A\xc3\xa9"

    def test_mixed_case_hex(self):
        assert decode(b'\\u20Ac"') == "\u20ac".encode("utf-8")

    def test_single_byte_escapes(self):
        assert decode(b'\\a\\b\\e\\f\\n\\r\\t\\v\\\\"') == b"\x07\x08\x1b\x0c\n\r\t\x0b\\"

    def test_escaped_double_quote(self):
        assert decode(b'say \\"hi\\""') == b'say "hi"'

    def test_escaped_single_quote_in_single_quoted_literal(self):
        assert decode(b"it\\'s'", quote=b"'") == b"it's"

    def test_other_quote_needs_no_escape(self):
        assert decode(b"it's\"") == b"it's"

    def test_non_ascii_bytes_are_copied(self):
        assert decode("caf\u00e9\"".encode("utf-8")) == "caf\u00e9".encode("utf-8")

    def test_newline_is_literal_content(self):
        assert decode(b'a\nb"') == b"a\nb"


class TestReadLiteralErrors:
    def test_unterminated(self):
        error = decode_error(b"abc")
        assert error.kind is ErrorKind.UNTERMINATED_STRING
        assert error.message == "Unterminated string literal"

    def test_unterminated_after_backslash(self):
        assert decode_error(b"abc\\").kind is ErrorKind.UNTERMINATED_STRING

    def test_unterminated_inside_hex_payload(self):
        assert decode_error(b"\\u00").kind is ErrorKind.UNTERMINATED_STRING

    def test_unknown_escape_letter(self):
        error = decode_error(b'\\q"')
        assert error.kind is ErrorKind.INVALID_ESCAPE
        assert error.message == "Invalid escape sequence"

    def test_wrong_quote_escape(self):
        assert decode_error(b"\\'\"").kind is ErrorKind.INVALID_ESCAPE

    @pytest.mark.parametrize("body, letter", [
        (b'\\xg1"', "x"),
        (b'\\u00G1"', "u"),
        (b'\\U0001F60Z"', "U"),
    ])
    def test_malformed_hex_payload(self, body, letter):
        error = decode_error(body)
        assert error.kind is ErrorKind.INVALID_ESCAPE
        assert error.message == f"Invalid hexadecimal value for \\{letter}"
