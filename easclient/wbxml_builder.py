#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
wbxml_builder.py - WBXML writer and the fluent serializer used to build EAS command bodies.

Highlights
- Tags are written lazily: a started element is held back until we know whether content
  follows, so an element closed immediately is emitted without the 0x40 content bit.
- SWITCH_PAGE is emitted only when the tag's page differs from the last page written.
- Names resolve through the tag catalog; a bare name is looked up on the page of the
  enclosing element first, ``"Namespace:Name"`` picks the page explicitly.
"""

from __future__ import annotations

from typing import List, Optional, Tuple, Union

from .tags import AIRSYNC, CATALOG, TagCatalog
from .wbxml_parser import END, OPAQUE, STR_I, SWITCH_PAGE, WITH_CONTENT

WBXML_VERSION = 0x03
PUBLIC_ID_UNKNOWN = 0x01
CHARSETS = {"UTF-8": 0x6A}


def mb_u_int32(n: int) -> bytes:
    """Encode a WBXML multibyte integer (7 bits per byte, MSB = continuation)."""
    if n < 0:
        raise ValueError("mb_u_int32 cannot encode negative values")
    stack = []
    while True:
        stack.append(n & 0x7F)
        n >>= 7
        if n == 0:
            break
    out = bytearray()
    while stack:
        b = stack.pop()
        if stack:
            b |= 0x80
        out.append(b)
    return bytes(out)


class WBXMLWriter:
    def __init__(self):
        self.buf = bytearray()
        self.cur_page = 0

    def header(self, charset: int = 0x6A, string_table: bytes = b""):
        self.buf.append(WBXML_VERSION)
        self.buf.extend(mb_u_int32(PUBLIC_ID_UNKNOWN))
        self.buf.extend(mb_u_int32(charset))
        self.buf.extend(mb_u_int32(len(string_table)))
        self.buf.extend(string_table)

    def write_byte(self, b: int):
        self.buf.append(b & 0xFF)

    def write_str(self, s: str):
        self.write_byte(STR_I)
        self.buf.extend(s.encode("utf-8"))
        self.write_byte(0x00)

    def write_opaque(self, data_bytes: bytes):
        self.write_byte(OPAQUE)
        self.buf.extend(mb_u_int32(len(data_bytes)))
        self.buf.extend(data_bytes)

    def page(self, cp: int):
        if self.cur_page != cp:
            self.write_byte(SWITCH_PAGE)
            self.write_byte(cp)
            self.cur_page = cp

    def start(self, tok: int, with_content: bool = True):
        self.write_byte((tok | WITH_CONTENT) if with_content else tok)

    def end(self):
        self.write_byte(END)

    def bytes(self) -> bytes:
        return bytes(self.buf)


class Serializer:
    """
    Fluent builder for one WBXML document::

        body = (Serializer()
                .start("FolderHierarchy:FolderSync").data("SyncKey", "0").end()
                .done())
    """

    def __init__(self, catalog: TagCatalog = CATALOG, start_document: bool = True):
        self._catalog = catalog
        self._writer = WBXMLWriter()
        self._open: List[Tuple[str, int, int]] = []
        self._pending: Optional[Tuple[int, int]] = None
        self._finished = False
        if start_document:
            self.start_document()

    def start_document(self, charset: str = "UTF-8") -> "Serializer":
        if self._writer.buf:
            raise ValueError("document already started")
        try:
            code = CHARSETS[charset.upper()]
        except KeyError:
            raise ValueError(f"unsupported charset {charset!r}") from None
        self._writer.header(code)
        return self

    def start_element(self, name: str) -> "Serializer":
        self._flush_pending(with_content=True)
        context = self._open[-1][1] if self._open else AIRSYNC
        page, code = self._catalog.lookup(name, context)
        self._open.append((name, page, code))
        self._pending = (page, code)
        return self

    def end_element(self, name: Optional[str] = None) -> "Serializer":
        if not self._open:
            raise ValueError("end_element with no open element")
        open_name, _, _ = self._open.pop()
        if name is not None and name != open_name:
            raise ValueError(f"end_element({name!r}) does not match open {open_name!r}")
        if self._pending is not None:
            self._flush_pending(with_content=False)
        else:
            self._writer.end()
        return self

    def text(self, value: Union[str, int]) -> "Serializer":
        if not self._open:
            raise ValueError("text outside of an element")
        value = str(value)
        if "\x00" in value:
            # STR_I is NUL terminated; such values have to go through opaque()
            raise ValueError("inline string contains NUL")
        self._flush_pending(with_content=True)
        self._writer.write_str(value)
        return self

    def opaque(self, data: bytes) -> "Serializer":
        if not self._open:
            raise ValueError("opaque data outside of an element")
        self._flush_pending(with_content=True)
        self._writer.write_opaque(data)
        return self

    def data(self, name: str, value: Union[str, int]) -> "Serializer":
        return self.start_element(name).text(value).end_element()

    def tag(self, name: str) -> "Serializer":
        """Empty element."""
        return self.start_element(name).end_element()

    def end_document(self) -> "Serializer":
        if self._open:
            raise ValueError(f"unclosed elements: {[n for n, _, _ in self._open]}")
        self._finished = True
        return self

    def to_bytes(self) -> bytes:
        if not self._finished:
            raise ValueError("end_document() has not been called")
        return self._writer.bytes()

    def done(self) -> bytes:
        return self.end_document().to_bytes()

    # Short names used by the request builders
    start = start_element
    end = end_element

    def _flush_pending(self, with_content: bool):
        if self._pending is None:
            return
        page, code = self._pending
        self._pending = None
        self._writer.page(page)
        self._writer.start(code, with_content)
