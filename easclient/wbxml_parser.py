#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
wbxml_parser.py - streaming WBXML decoder and the base class for EAS response parsers.

Token handling (WBXML 1.3 as used by EAS):
- SWITCH_PAGE (0x00) + page byte selects the active tag table; repeated switches are consumed
  transparently before the next real token.
- END (0x01) closes the innermost open element.
- STR_I (0x03) inline string, NUL terminated; decoded as UTF-8 or as an ASCII base-10 integer.
- OPAQUE (0xC3) length-prefixed raw bytes.
- Any other byte is a tag: low 6 bits = code, 0x40 = content follows.  A tag without the
  content bit yields StartElement now and a synthesized EndElement on the next call, without
  consuming input.

Reading past the end of input inside a token raises EndOfStream; running out of input between
top-level elements is a clean Eof.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import BinaryIO, List, Optional, Tuple, Union

from .errors import EndOfStream, MalformedStream
from .tags import CATALOG, PAGE_SHIFT, TagCatalog, code_of_tag, page_of

logger = logging.getLogger(__name__)

# WBXML control
SWITCH_PAGE = 0x00
END = 0x01
ENTITY = 0x02
STR_I = 0x03
LITERAL = 0x04
OPAQUE = 0xC3

TAG_CODE_MASK = 0x3F
WITH_CONTENT = 0x40
WITH_ATTRIBUTES = 0x80

_NOT_FETCHED = None
_EOF = -1


@dataclass(frozen=True)
class ActivePage:
    """Tag table currently selected by the last SWITCH_PAGE."""

    index: int
    names: Tuple[str, ...]

    @classmethod
    def select(cls, catalog: TagCatalog, index: int) -> "ActivePage":
        return cls(index, catalog.resolve(index))

    def tag(self, code: int) -> int:
        return (self.index << PAGE_SHIFT) | code

    def name_of(self, code: int) -> Optional[str]:
        i = code - 5
        if 0 <= i < len(self.names):
            return self.names[i]
        return None


@dataclass(frozen=True)
class StartElement:
    tag: int
    name: Optional[str]
    has_content: bool = True

    @property
    def page(self) -> int:
        return page_of(self.tag)

    @property
    def code(self) -> int:
        return code_of_tag(self.tag)


@dataclass(frozen=True)
class EndElement:
    tag: int
    name: Optional[str]


@dataclass(frozen=True)
class Text:
    value: Union[str, int, bytes]


@dataclass(frozen=True)
class Eof:
    pass


EOF = Eof()
DecodedEvent = Union[StartElement, EndElement, Text, Eof]


class WbxmlDecoder:
    """Pull decoder; obtain one through ``WbxmlDecoder.open(stream)``."""

    def __init__(self, stream: BinaryIO, catalog: TagCatalog = CATALOG):
        self._in = stream
        self._catalog = catalog
        self._page = ActivePage.select(catalog, 0)
        self._next_id: Optional[int] = _NOT_FETCHED
        self._stack: List[StartElement] = []
        self._no_content = False
        self.version = 0
        self.public_id = 0
        self.charset = 0

    @classmethod
    def open(cls, stream: Union[bytes, bytearray, BinaryIO], catalog: TagCatalog = CATALOG) -> "WbxmlDecoder":
        if isinstance(stream, (bytes, bytearray)):
            stream = io.BytesIO(bytes(stream))
        decoder = cls(stream, catalog)
        decoder._read_header()
        return decoder

    @property
    def depth(self) -> int:
        return len(self._stack)

    @property
    def active_page(self) -> ActivePage:
        return self._page

    # ---------- header ----------

    def _read_header(self) -> None:
        self.version = self._read_byte()
        self.public_id = self._read_mb_int()
        self.charset = self._read_mb_int()
        table_length = self._read_mb_int()
        # EAS never uses string table references; skip whatever is there
        for _ in range(table_length):
            self._read_byte()

    # ---------- token stream ----------

    def next(self, as_int: bool = False) -> DecodedEvent:
        if self._no_content:
            self._no_content = False
            return self._close()

        token = self._peek_id()
        while token == SWITCH_PAGE:
            self._next_id = _NOT_FETCHED
            self._page = ActivePage.select(self._catalog, self._read_byte())
            token = self._peek_id()
        self._next_id = _NOT_FETCHED

        if token == _EOF:
            if self._stack:
                raise EndOfStream(f"input ended inside <{self._stack[-1].name}>")
            return EOF
        if token == END:
            if not self._stack:
                raise MalformedStream("END token with no open element")
            return self._close()
        if token == STR_I:
            return Text(self._read_inline_int() if as_int else self._read_inline_string())
        if token == OPAQUE:
            length = self._read_mb_int()
            return Text(self._read_exact(length))
        if token in (ENTITY, LITERAL) or token & WITH_ATTRIBUTES:
            raise MalformedStream(f"unsupported WBXML token 0x{token:02X}")

        code = token & TAG_CODE_MASK
        if code < 5:
            raise MalformedStream(f"unsupported WBXML token 0x{token:02X}")
        event = StartElement(self._page.tag(code), self._page.name_of(code), bool(token & WITH_CONTENT))
        self._stack.append(event)
        self._no_content = not event.has_content
        return event

    def _close(self) -> EndElement:
        start = self._stack.pop()
        return EndElement(start.tag, start.name)

    # ---------- primitives ----------

    def _read(self) -> int:
        b = self._in.read(1)
        if not b:
            return _EOF
        return b[0]

    def _peek_id(self) -> int:
        if self._next_id is _NOT_FETCHED:
            self._next_id = self._read()
        return self._next_id

    def _read_byte(self) -> int:
        b = self._read()
        if b == _EOF:
            raise EndOfStream("unexpected end of WBXML input")
        return b

    def _read_exact(self, length: int) -> bytes:
        data = bytearray()
        while len(data) < length:
            chunk = self._in.read(length - len(data))
            if not chunk:
                raise EndOfStream(f"OPAQUE data truncated at {len(data)}/{length} bytes")
            data.extend(chunk)
        return bytes(data)

    def _read_mb_int(self) -> int:
        result = 0
        while True:
            b = self._read_byte()
            result = (result << 7) | (b & 0x7F)
            if not b & 0x80:
                return result

    def _read_inline_string(self) -> str:
        buf = bytearray()
        while True:
            b = self._read_byte()
            if b == 0:
                return buf.decode("utf-8", errors="replace")
            buf.append(b)

    def _read_inline_int(self) -> int:
        result = 0
        while True:
            b = self._read_byte()
            if b == 0:
                return result
            if 0x30 <= b <= 0x39:
                result = result * 10 + (b - 0x30)
            else:
                raise MalformedStream(f"non integer byte 0x{b:02X} in inline integer")


class Parser:
    """
    Base for protocol response parsers.

    Subclasses walk the document with ``next_tag(end_tag)`` and read leaf values with
    ``get_value()`` / ``get_value_int()``; anything they do not understand goes through
    ``skip_tag()``.  ``tag`` always holds the combined (page << 6 | code) of the last
    StartElement.
    """

    START_DOCUMENT = 0
    END = -1
    END_DOCUMENT = -2

    def __init__(self, data: Union[bytes, BinaryIO], catalog: TagCatalog = CATALOG):
        self.decoder = WbxmlDecoder.open(data, catalog)
        self.tag: int = 0
        self.name: Optional[str] = None

    def next_tag(self, end_tag: int) -> int:
        """Advance to the next StartElement, or return END when ``end_tag`` closes."""
        while True:
            event = self.decoder.next()
            if isinstance(event, StartElement):
                self.tag = event.tag
                self.name = event.name
                return event.tag
            if isinstance(event, EndElement) and event.tag == end_tag:
                return self.END
            if isinstance(event, Eof):
                if end_tag == self.START_DOCUMENT:
                    return self.END_DOCUMENT
                raise EndOfStream(f"document ended before </{CATALOG.qualified_name(end_tag)}>")

    def get_value(self) -> str:
        event = self.decoder.next()
        if isinstance(event, EndElement):
            return ""
        if not isinstance(event, Text):
            raise MalformedStream(f"expected text inside <{self.name}>")
        self._expect_end()
        value = event.value
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return value

    def get_value_int(self) -> int:
        event = self.decoder.next(as_int=True)
        if isinstance(event, EndElement):
            return 0
        if not isinstance(event, Text) or not isinstance(event.value, int):
            raise MalformedStream(f"expected integer inside <{self.name}>")
        self._expect_end()
        return event.value

    def get_value_bytes(self) -> bytes:
        event = self.decoder.next()
        if isinstance(event, EndElement):
            return b""
        if not isinstance(event, Text):
            raise MalformedStream(f"expected data inside <{self.name}>")
        self._expect_end()
        value = event.value
        return value if isinstance(value, bytes) else str(value).encode("utf-8")

    def skip_tag(self) -> None:
        depth = self.decoder.depth
        while self.decoder.depth >= depth:
            if isinstance(self.decoder.next(), Eof):
                raise EndOfStream(f"document ended inside <{self.name}>")

    def _expect_end(self) -> None:
        if not isinstance(self.decoder.next(), EndElement):
            raise MalformedStream(f"no END after value of <{self.name}>")

    def parse(self):
        raise NotImplementedError


def describe(data: bytes, catalog: TagCatalog = CATALOG, indent: str = "  ") -> str:
    """Render a WBXML document as indented pseudo-XML (for logs and debugging)."""
    decoder = WbxmlDecoder.open(data, catalog)
    lines: List[str] = []
    while True:
        event = decoder.next()
        if isinstance(event, Eof):
            break
        pad = indent * decoder.depth
        if isinstance(event, StartElement):
            name = catalog.qualified_name(event.tag)
            if event.has_content:
                lines.append(f"{indent * (decoder.depth - 1)}<{name}>")
            else:
                lines.append(f"{indent * (decoder.depth - 1)}<{name}/>")
                decoder.next()
        elif isinstance(event, EndElement):
            lines.append(f"{pad}</{catalog.qualified_name(event.tag)}>")
        else:
            value = event.value
            if isinstance(value, bytes):
                value = f"[{len(value)} bytes]"
            lines.append(f"{pad}{value}")
    return "\n".join(lines)
