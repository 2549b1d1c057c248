import pytest

from easclient import tags
from easclient.commands import build_folder_sync_request
from easclient.errors import EndOfStream, MalformedStream
from easclient.wbxml_builder import Serializer, mb_u_int32
from easclient.wbxml_parser import EOF, EndElement, Parser, StartElement, Text, WbxmlDecoder, describe

HEADER = b"\x03\x01\x6a\x00"


def test_element_without_content_bit_yields_synthesized_end():
    decoder = WbxmlDecoder.open(HEADER + b"\x05")

    start = decoder.next()
    assert isinstance(start, StartElement)
    assert start.tag == tags.SYNC_SYNC
    assert start.has_content is False

    end = decoder.next()
    assert isinstance(end, EndElement)
    assert end.tag == tags.SYNC_SYNC
    assert decoder.depth == 0
    assert decoder.next() is EOF


def test_empty_element_then_sibling_does_not_consume_sibling():
    # <Sync><GetChanges/><WindowSize>5</WindowSize></Sync>
    data = HEADER + b"\x45\x13\x55\x035\x00\x01\x01"
    decoder = WbxmlDecoder.open(data)
    decoder.next()
    assert decoder.next().tag == tags.make_tag(tags.AIRSYNC, 0x13)
    assert isinstance(decoder.next(), EndElement)
    window = decoder.next()
    assert isinstance(window, StartElement) and window.name == "WindowSize"
    assert decoder.next(as_int=True) == Text(5)


def test_truncated_multibyte_integer_is_end_of_stream():
    # OPAQUE length with the continuation bit set and nothing after it
    decoder = WbxmlDecoder.open(HEADER + b"\x45\xc3\x81")
    decoder.next()
    with pytest.raises(EndOfStream):
        decoder.next()


def test_input_ending_inside_open_element_is_end_of_stream():
    decoder = WbxmlDecoder.open(HEADER + b"\x45")
    decoder.next()
    with pytest.raises(EndOfStream):
        decoder.next()


def test_clean_end_at_top_level_is_eof():
    decoder = WbxmlDecoder.open(HEADER + b"\x45\x01")
    decoder.next()
    decoder.next()
    assert decoder.next() is EOF
    assert decoder.next() is EOF


def test_non_digit_inline_integer_is_malformed_not_eof():
    decoder = WbxmlDecoder.open(HEADER + b"\x45\x031a\x00\x01")
    decoder.next()
    with pytest.raises(MalformedStream) as excinfo:
        decoder.next(as_int=True)
    assert not isinstance(excinfo.value, EndOfStream)


def test_repeated_switch_page_is_transparent():
    data = HEADER + b"\x00\x02\x00\x07\x56\x01"
    decoder = WbxmlDecoder.open(data)
    start = decoder.next()
    assert start.tag == tags.FOLDER_FOLDER_SYNC
    assert start.name == "FolderSync"
    assert decoder.active_page.index == tags.FOLDER


def test_opaque_payload_is_returned_as_bytes():
    decoder = WbxmlDecoder.open(HEADER + b"\x45\xc3\x03abc\x01")
    decoder.next()
    assert decoder.next() == Text(b"abc")


def test_attribute_tokens_are_rejected():
    decoder = WbxmlDecoder.open(HEADER + b"\xc5")
    with pytest.raises(MalformedStream):
        decoder.next()


def test_encoder_omits_content_bit_for_empty_elements():
    body = Serializer().start("Sync").tag("GetChanges").end().done()
    assert body == HEADER + b"\x45\x13\x01"


def test_encoder_switches_page_only_when_it_changes():
    assert build_folder_sync_request("0") == HEADER + b"\x00\x07\x56\x52\x030\x00\x01\x01"


def test_encoder_qualified_names_pick_the_page():
    body = (
        Serializer()
        .start("Sync")
        .start("ApplicationData")
        .data("Email:Read", "1")
        .end()
        .end()
        .done()
    )
    # Read sits on the Email page; ApplicationData closes back on AirSync without a switch
    assert body == HEADER + b"\x45\x5d\x00\x02\x55\x031\x00\x01\x01\x01"


def test_encoder_rejects_unbalanced_documents():
    s = Serializer().start("Sync")
    with pytest.raises(ValueError):
        s.done()
    with pytest.raises(ValueError):
        Serializer().end()


def test_mb_u_int32():
    assert mb_u_int32(0) == b"\x00"
    assert mb_u_int32(0x7F) == b"\x7f"
    assert mb_u_int32(300) == b"\x82\x2c"
    with pytest.raises(ValueError):
        mb_u_int32(-1)


def test_parser_reads_empty_element_as_empty_string():
    class SyncKeyParser(Parser):
        def parse(self):
            self.next_tag(self.START_DOCUMENT)
            self.next_tag(self.START_DOCUMENT)
            return self.get_value()

    data = Serializer().start("FolderHierarchy:FolderSync").tag("SyncKey").end().done()
    assert SyncKeyParser(data).parse() == ""


def test_describe_renders_tree():
    text = describe(build_folder_sync_request("0"))
    assert text.splitlines() == [
        "<FolderHierarchy:FolderSync>",
        "  <FolderHierarchy:SyncKey>",
        "    0",
        "  </FolderHierarchy:SyncKey>",
        "</FolderHierarchy:FolderSync>",
    ]


def test_encoder_rejects_nul_in_inline_string():
    s = Serializer().start("Sync")
    with pytest.raises(ValueError):
        s.data("SyncKey", "k1\x00k2")
    s = Serializer().start("Sync").start("ApplicationData").start("Email:MIMEData")
    body = s.opaque(b"k1\x00k2").end().end().end().done()
    assert b"k1\x00k2" in body


def _events(data):
    decoder = WbxmlDecoder.open(data)
    events = []
    while True:
        event = decoder.next()
        if event is EOF:
            return events
        if isinstance(event, StartElement):
            events.append(("start", tags.CATALOG.qualified_name(event.tag), event.has_content))
        elif isinstance(event, EndElement):
            events.append(("end", tags.CATALOG.qualified_name(event.tag)))
        else:
            events.append(("text", event.value))


@pytest.mark.parametrize("build, expected", [
    pytest.param(
        lambda s: s.start("Sync").start("ApplicationData").data("Email:Read", "1")
        .start("Calendar:Attendees").start("Attendee").data("Email", "bob@example.com").end().end()
        .end().data("SyncKey", "k1").end(),
        [
            ("start", "AirSync:Sync", True),
            ("start", "AirSync:ApplicationData", True),
            ("start", "Email:Read", True), ("text", "1"), ("end", "Email:Read"),
            ("start", "Calendar:Attendees", True),
            ("start", "Calendar:Attendee", True),
            ("start", "Calendar:Email", True), ("text", "bob@example.com"), ("end", "Calendar:Email"),
            ("end", "Calendar:Attendee"),
            ("end", "Calendar:Attendees"),
            ("end", "AirSync:ApplicationData"),
            ("start", "AirSync:SyncKey", True), ("text", "k1"), ("end", "AirSync:SyncKey"),
            ("end", "AirSync:Sync"),
        ],
        id="page-switches",
    ),
    pytest.param(
        lambda s: s.start("Sync").tag("GetChanges").tag("DeletesAsMoves").end(),
        [
            ("start", "AirSync:Sync", True),
            ("start", "AirSync:GetChanges", False), ("end", "AirSync:GetChanges"),
            ("start", "AirSync:DeletesAsMoves", False), ("end", "AirSync:DeletesAsMoves"),
            ("end", "AirSync:Sync"),
        ],
        id="empty-elements",
    ),
    pytest.param(
        lambda s: s.start("Sync").data("SyncKey", "").end(),
        [
            ("start", "AirSync:Sync", True),
            ("start", "AirSync:SyncKey", True), ("text", ""), ("end", "AirSync:SyncKey"),
            ("end", "AirSync:Sync"),
        ],
        id="empty-text",
    ),
    pytest.param(
        lambda s: s.start("Sync").start("ApplicationData").data("Email:Subject", "Grüße ✓ 日本語").end().end(),
        [
            ("start", "AirSync:Sync", True),
            ("start", "AirSync:ApplicationData", True),
            ("start", "Email:Subject", True), ("text", "Grüße ✓ 日本語"), ("end", "Email:Subject"),
            ("end", "AirSync:ApplicationData"),
            ("end", "AirSync:Sync"),
        ],
        id="non-ascii-text",
    ),
    pytest.param(
        lambda s: s.start("Sync").start("ApplicationData").start("Email:MIMEData").opaque(b"\x00\x01\xff\x03")
        .end().end().end(),
        [
            ("start", "AirSync:Sync", True),
            ("start", "AirSync:ApplicationData", True),
            ("start", "Email:MIMEData", True), ("text", b"\x00\x01\xff\x03"), ("end", "Email:MIMEData"),
            ("end", "AirSync:ApplicationData"),
            ("end", "AirSync:Sync"),
        ],
        id="opaque",
    ),
])
def test_encoded_documents_decode_to_the_same_tree(build, expected):
    s = Serializer()
    build(s)
    assert _events(s.done()) == expected
