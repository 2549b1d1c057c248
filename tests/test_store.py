import pytest

from easclient.models import Folder, MailboxRole, PimItem, SYNC_NEVER, SYNC_PUSH
from easclient.store import SyncStore


@pytest.fixture
def contacts(store, account):
    store.apply_folder_batch(
        account.id,
        [Folder("9", "Contacts", MailboxRole.CONTACTS, sync_frequency=SYNC_PUSH)],
        "abc124",
    )
    return store.find_mailbox(account.id, server_id="9")


def test_push_collections_skip_unsynced_mailboxes(store, account, inbox, contacts):
    assert store.push_collections(account.id) == []

    store.apply_message_batch(inbox.id, [], [], [], "k1")

    assert [c.server_id for c in store.push_collections(account.id)] == ["5"]


def test_set_sync_frequency_for_every_push_mailbox(store, account, inbox, contacts):
    store.set_sync_frequency(account.id, 5)

    assert store.find_mailbox(account.id, server_id="5").sync_frequency == 5
    assert store.find_mailbox(account.id, server_id="9").sync_frequency == 5
    assert store.find_mailbox(account.id, role=MailboxRole.ACCOUNT).sync_frequency == SYNC_NEVER


def test_set_sync_frequency_for_one_mailbox(store, account, inbox, contacts):
    store.set_sync_frequency(account.id, 30, mailbox_id=contacts.id)

    assert store.find_mailbox(account.id, server_id="9").sync_frequency == 30
    assert store.find_mailbox(account.id, server_id="5").sync_frequency == SYNC_PUSH


def test_item_batch_adds_merges_and_deletes(store, contacts):
    store.apply_item_batch(contacts.id, [
        PimItem("c1", {"Contacts:FileAs": "Doe, Jane", "Contacts:Email1Address": "jane@example.com"}),
        PimItem("c2", {"Contacts:FileAs": "Roe, Rick"}),
    ], [], [], "k1")
    store.apply_item_batch(
        contacts.id,
        [PimItem("c3", {"Contacts:FileAs": "Poe, Pat"})],
        [PimItem("c1", {"Contacts:FileAs": "Doe-Smith, Jane"})],
        ["c2"],
        "k2",
    )

    items = {item.server_id: item.fields for item in store.items(contacts.id)}
    assert items == {
        "c1": {"Contacts:FileAs": "Doe-Smith, Jane", "Contacts:Email1Address": "jane@example.com"},
        "c3": {"Contacts:FileAs": "Poe, Pat"},
    }
    assert store.load_collection(contacts.id).sync_key == "k2"


def test_resent_item_add_replaces_earlier_copy(store, contacts):
    store.apply_item_batch(contacts.id, [PimItem("c1", {"Contacts:FileAs": "old"})], [], [], "k1")
    store.apply_item_batch(contacts.id, [PimItem("c1", {"Contacts:FileAs": "new"})], [], [], "k2")
    assert store.items(contacts.id) == [PimItem("c1", {"Contacts:FileAs": "new"})]


def test_item_batch_for_missing_mailbox_rolls_back(store):
    with pytest.raises(KeyError):
        store.apply_item_batch(9999, [PimItem("c1")], [], [], "k1")


def test_invalidate_drops_items(store, contacts):
    store.apply_item_batch(contacts.id, [PimItem("c1", {"Contacts:FileAs": "Doe, Jane"})], [], [], "k1")
    store.invalidate_collection(contacts.id)
    assert store.items(contacts.id) == []
    assert store.load_collection(contacts.id).sync_key == "0"


def test_interface_declares_what_the_service_calls():
    assert {
        "load_account", "save_protocol_version", "load_collection",
        "push_collections", "set_sync_frequency", "apply_item_batch",
    } <= SyncStore.__abstractmethods__
