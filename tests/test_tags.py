import pytest

from easclient import tags
from easclient.tags import CATALOG, TagCatalog


def test_codes_start_at_five():
    assert CATALOG.code_of(tags.AIRSYNC, "Sync") == 0x05
    assert CATALOG.code_of(tags.FOLDER, "FolderSync") == 0x16
    assert CATALOG.name_of(tags.EMAIL, 0x15) == "Read"
    assert CATALOG.name_of(tags.EMAIL, 0x04) is None


def test_combined_tag_keeps_pages_apart():
    assert tags.SYNC_STATUS == tags.make_tag(tags.AIRSYNC, 0x0E)
    assert tags.FOLDER_STATUS == tags.make_tag(tags.FOLDER, 0x0C)
    assert tags.SYNC_STATUS != tags.FOLDER_STATUS
    assert tags.page_of(tags.PING_STATUS) == tags.PING
    assert tags.code_of_tag(tags.PING_STATUS) == 0x07


def test_lookup_prefers_enclosing_page():
    assert CATALOG.lookup("Status", tags.FOLDER) == (tags.FOLDER, 0x0C)
    assert CATALOG.lookup("Status", tags.AIRSYNC) == (tags.AIRSYNC, 0x0E)


def test_lookup_qualified_and_unique_names():
    assert CATALOG.lookup("Ping:Status") == (tags.PING, 0x07)
    assert CATALOG.lookup("HeartbeatInterval", tags.AIRSYNC) == (tags.PING, 0x08)


def test_lookup_ambiguous_or_unknown():
    with pytest.raises(KeyError):
        CATALOG.lookup("Status", tags.GAL)
    with pytest.raises(KeyError):
        CATALOG.lookup("NoSuchTag")
    with pytest.raises(KeyError):
        CATALOG.lookup("Nowhere:Sync")


def test_qualified_name():
    assert CATALOG.qualified_name(tags.SYNC_STATUS) == "AirSync:Status"
    assert CATALOG.qualified_name(tags.make_tag(tags.PING, 0x3F)) == "Ping:0x3F"


def test_oversized_page_is_rejected():
    with pytest.raises(ValueError):
        TagCatalog({0: ("Big", tuple(f"T{i}" for i in range(60)))})
