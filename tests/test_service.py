from unittest import mock

import pytest
import requests

from easclient.config import Settings
from easclient.errors import AuthFailure, TransientIoFailure
from easclient.models import (
    Collection,
    ExitStatus,
    Folder,
    MailboxRole,
    OutgoingMessage,
    PartRequest,
    SYNC_NEVER,
    SYNC_PUSH,
)
from easclient.service import EasSyncService, PING_FALLBACK_INBOX, PING_FALLBACK_PIM, validate_account
from easclient.status import (
    CONNECTION_ERROR,
    IN_PROGRESS,
    LOGIN_FAILED,
    RecordingStatusCallback,
    REMOTE_EXCEPTION,
    SUCCESS,
)

from conftest import FakeResponse, folder_sync_response, sync_response, wbxml


class FastSettings(Settings):
    PING_HEARTBEAT = 1
    PING_WAIT_MARGIN = 1


def _options(versions="2.5,12.0,12.1"):
    return FakeResponse(200, headers={"MS-ASProtocolVersions": versions})


@pytest.fixture
def callback():
    return RecordingStatusCallback()


def test_account_mailbox_runs_options_and_folder_sync(store, account, transport, session, callback):
    mailbox = store.find_mailbox(account.id, role=MailboxRole.ACCOUNT)
    session.queue(_options("2.5,12.0"), FakeResponse(200, folder_sync_response("abc123", [("5", "0", "Inbox", 2)])))
    service = EasSyncService(account, mailbox, store, transport=transport, callback=callback)

    service.run()

    assert service.exit_status == ExitStatus.DONE
    assert store.load_account(account.id).protocol_version == "12.0"
    assert store.find_mailbox(account.id, role=MailboxRole.INBOX).server_id == "5"
    assert [c[2] for c in callback.of_kind("mailbox_list")] == [IN_PROGRESS, SUCCESS]


def test_login_failure_is_reported_and_raised(store, account, transport, session, callback):
    mailbox = store.find_mailbox(account.id, role=MailboxRole.ACCOUNT)
    session.queue(FakeResponse(401))
    service = EasSyncService(account, mailbox, store, transport=transport, callback=callback)

    with pytest.raises(AuthFailure):
        service.run()

    assert service.exit_status == ExitStatus.LOGIN_FAILURE
    assert callback.of_kind("mailbox_list")[-1][2] == LOGIN_FAILED


def test_io_failure_maps_to_connection_error(store, account, inbox, transport, session, callback):
    inbox.sync_frequency = SYNC_NEVER
    session.queue(_options(), FakeResponse(503))
    service = EasSyncService(account, inbox, store, transport=transport, callback=callback)

    with pytest.raises(TransientIoFailure):
        service.run()

    assert service.exit_status == ExitStatus.IO_ERROR
    assert callback.of_kind("mailbox")[-1] == ("mailbox", inbox.id, CONNECTION_ERROR, 0)


def test_manual_mailbox_syncs_once(store, account, inbox, transport, session, callback):
    inbox.sync_frequency = SYNC_NEVER
    session.queue(
        _options(),
        FakeResponse(200, sync_response("k1")),
        FakeResponse(200, sync_response("k2", adds=[("m1", {"Subject": "One"})])),
    )
    service = EasSyncService(account, inbox, store, transport=transport, callback=callback)

    service.run()

    assert service.exit_status == ExitStatus.DONE
    assert session.commands() == ["Sync", "Sync"]
    assert list(store.message_ids(inbox.id)) == ["m1"]
    assert [c[2] for c in callback.of_kind("mailbox")] == [IN_PROGRESS, SUCCESS]


def test_queued_attachments_run_before_sync(store, account, inbox, transport, session, callback, tmp_path):
    inbox.sync_frequency = SYNC_NEVER
    inbox.sync_key = "k1"
    session.queue(_options(), FakeResponse(200, b"data"), FakeResponse(200, sync_response("k2")))
    service = EasSyncService(account, inbox, store, transport=transport, callback=callback)
    service.attachments.attachment_dir = str(tmp_path)
    service.add_part_request(PartRequest(1, "5:1:0", file_name="a.txt"))

    service.run()

    assert session.commands() == ["GetAttachment", "Sync"]
    assert (tmp_path / "1" / "a.txt").read_bytes() == b"data"


def test_outbox_mailbox_sends_pending(store, account, transport, session, callback, tmp_path):
    outbox = store.find_mailbox(account.id, role=MailboxRole.OUTBOX)
    message_id = store.save_outgoing(outbox.id, OutgoingMessage(
        id=None, from_addr="alice@example.com", to="bob@example.com", subject="Hi", text="Hello"))
    session.queue(FakeResponse(200))
    settings = Settings()
    settings.CACHE_DIR = str(tmp_path)
    service = EasSyncService(account, outbox, store, transport=transport, callback=callback, settings=settings)

    service.run()

    assert session.commands() == ["SendMail"]
    assert store.pending_outbox(outbox.id) == []
    assert [c[1:3] for c in callback.of_kind("send")] == [(message_id, IN_PROGRESS), (message_id, SUCCESS)]


def test_push_mailbox_pings_until_stopped(store, account, inbox, transport, session, callback):
    ping_transport = transport.clone(session=session)
    session.queue(_options(), FakeResponse(200, sync_response("k1")), FakeResponse(200, sync_response("k2")))
    service = EasSyncService(account, inbox, store, transport=transport, callback=callback,
                             settings=FastSettings())

    def ping_then_stop(*args, **kwargs):
        service.stop()
        return FakeResponse(200, wbxml(lambda s: s.start("Ping:Ping").data("Status", 1).end()))

    with mock.patch.object(transport, "clone", return_value=ping_transport):
        session.queue(ping_then_stop)
        service.run()

    assert service.stopped
    assert session.commands() == ["Sync", "Sync", "Ping"]
    assert service.exit_status == ExitStatus.DONE


def test_unexpected_error_is_reported_and_raised(store, account, transport, session, callback):
    missing = Collection("5", id=9999, account_id=account.id, role=MailboxRole.MAIL)
    session.queue(_options(), FakeResponse(200, sync_response("k1")))
    service = EasSyncService(account, missing, store, transport=transport, callback=callback)

    with pytest.raises(KeyError):
        service.run()

    assert service.exit_status == ExitStatus.EXCEPTION
    assert callback.of_kind("mailbox")[-1] == ("mailbox", 9999, REMOTE_EXCEPTION, 0)


def _ping_changes(folder_id):
    return FakeResponse(200, wbxml(
        lambda s: s.start("Ping:Ping").data("Status", 2).start("Folders").data("Folder", folder_id).end().end()
    ))


def test_push_falls_back_to_polling_when_pings_find_nothing(store, account, inbox, transport, session, callback):
    ping_transport = transport.clone(session=session)
    session.queue(_options(), FakeResponse(200, sync_response("k1")), FakeResponse(200, sync_response("k2")))
    for key in ("k3", "k4", "k5"):
        session.queue(_ping_changes("5"), FakeResponse(200, sync_response(key)))
    service = EasSyncService(account, inbox, store, transport=transport, callback=callback,
                             settings=FastSettings())

    with mock.patch.object(transport, "clone", return_value=ping_transport):
        service.run()

    assert session.commands() == ["Sync", "Sync", "Ping", "Sync", "Ping", "Sync", "Ping", "Sync"]
    assert service.exit_status == ExitStatus.DONE
    assert service.mailbox.sync_frequency == PING_FALLBACK_INBOX
    assert store.find_mailbox(account.id, server_id="5").sync_frequency == PING_FALLBACK_INBOX


def test_ping_followed_by_changes_keeps_push(store, account, inbox, transport, session, callback):
    ping_transport = transport.clone(session=session)
    session.queue(_options(), FakeResponse(200, sync_response("k1")), FakeResponse(200, sync_response("k2")))
    for key in ("k3", "k4", "k5"):
        session.queue(_ping_changes("5"), FakeResponse(200, sync_response(key, adds=[(key, {"Subject": key})])))
    service = EasSyncService(account, inbox, store, transport=transport, callback=callback,
                             settings=FastSettings())

    def ping_then_stop(*args, **kwargs):
        service.stop()
        return FakeResponse(200, wbxml(lambda s: s.start("Ping:Ping").data("Status", 1).end()))

    with mock.patch.object(transport, "clone", return_value=ping_transport):
        session.queue(ping_then_stop)
        service.run()

    assert session.commands()[-1] == "Ping"
    assert store.find_mailbox(account.id, server_id="5").sync_frequency == SYNC_PUSH


def test_pim_push_fallback_only_touches_that_mailbox(store, account, inbox, transport):
    store.apply_folder_batch(account.id, [Folder("9", "Contacts", MailboxRole.CONTACTS, sync_frequency=SYNC_PUSH)],
                             "abc124")
    contacts = store.find_mailbox(account.id, server_id="9")
    service = EasSyncService(account, contacts, store, transport=transport)

    service.push_fallback()

    assert store.find_mailbox(account.id, server_id="9").sync_frequency == PING_FALLBACK_PIM
    assert store.find_mailbox(account.id, server_id="5").sync_frequency == SYNC_PUSH
    assert not service.is_push


def test_stop_is_idempotent_and_aborts(store, account, inbox, transport):
    service = EasSyncService(account, inbox, store, transport=transport)
    with mock.patch.object(transport, "abort") as abort:
        service.stop()
        service.stop()
    assert service.stopped
    abort.assert_called_once_with()


def test_stop_before_run_skips_work(store, account, inbox, transport, session):
    session.queue(_options())
    service = EasSyncService(account, inbox, store, transport=transport)
    service.stop()
    service.run()
    assert session.posts == []


def test_cancel_part_request(store, account, inbox, transport):
    service = EasSyncService(account, inbox, store, transport=transport)
    request = PartRequest(1, "5:1:0")
    service.add_part_request(request)
    assert service.cancel_part_request(1, "5:1:0") is request
    assert request.cancelled.is_set()
    assert len(service.part_queue) == 0


def test_validate_account_success(transport, session):
    session.queue(_options(), FakeResponse(200, folder_sync_response("k1", [("5", "0", "Inbox", 2)])))
    assert validate_account("mail.example.com", "alice", "secret", "dev123", transport=transport) == SUCCESS


def test_validate_account_bad_credentials(transport, session):
    session.queue(_options(), FakeResponse(401))
    assert validate_account("mail.example.com", "alice", "bad", "dev123", transport=transport) == LOGIN_FAILED


def test_validate_account_unreachable(transport, session):
    session.queue(requests.ConnectionError("no route to host"))
    assert validate_account("mail.example.com", "alice", "secret", "dev123", transport=transport) == CONNECTION_ERROR


def test_validate_account_bad_folder_sync_status(transport, session):
    session.queue(_options(), FakeResponse(200, folder_sync_response("k1", status=110)))
    assert validate_account("mail.example.com", "alice", "secret", "dev123", transport=transport) == REMOTE_EXCEPTION
