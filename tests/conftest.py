import sys
from pathlib import Path

import pytest
from requests.structures import CaseInsensitiveDict

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from easclient.models import Account, Folder, MailboxRole, SYNC_PUSH
from easclient.store import SqlSyncStore
from easclient.transport import EasTransport, WBXML_CONTENT_TYPE
from easclient.wbxml_builder import Serializer


class FakeRaw:
    """Response body that hands out at most ``max_read`` bytes per read()."""

    def __init__(self, data: bytes, max_read: int = None):
        self.data = data
        self.pos = 0
        self.max_read = max_read
        self.closed = False
        self.reads = []

    def read(self, n=-1):
        if self.closed:
            raise ValueError("read of closed stream")
        if n is None or n < 0:
            n = len(self.data) - self.pos
        if self.max_read is not None:
            n = min(n, self.max_read)
        chunk = self.data[self.pos:self.pos + n]
        self.pos += len(chunk)
        self.reads.append(len(chunk))
        return chunk

    def close(self):
        self.closed = True


class FakeResponse:
    def __init__(self, status_code=200, body=b"", headers=None, chunked=False, max_read=None,
                 content_type=WBXML_CONTENT_TYPE):
        self.status_code = status_code
        self.headers = CaseInsensitiveDict(headers or {})
        if chunked:
            self.headers["Transfer-Encoding"] = "chunked"
        elif "Content-Length" not in self.headers:
            self.headers["Content-Length"] = str(len(body))
        if content_type and "Content-Type" not in self.headers:
            self.headers["Content-Type"] = content_type
        self.raw = FakeRaw(body, max_read)
        self.closed = False

    def close(self):
        self.closed = True


class FakeSession:
    """Stands in for requests.Session: records requests, replays scripted responses."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.posts = []
        self.options_calls = []
        self.headers = {}

    def queue(self, *responses):
        self.responses.extend(responses)

    def _next(self):
        if not self.responses:
            raise AssertionError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            # produced at request time, e.g. to act while the request is in flight
            return response()
        return response

    def post(self, url, data=None, headers=None, **kwargs):
        self.posts.append({"url": url, "data": data, "headers": headers, **kwargs})
        return self._next()

    def options(self, url, headers=None, **kwargs):
        self.options_calls.append({"url": url, "headers": headers, **kwargs})
        return self._next()

    def commands(self):
        return [p["url"].split("Cmd=")[1].split("&")[0] for p in self.posts]


def wbxml(build) -> bytes:
    """Run ``build(serializer)`` and return the finished document."""
    s = Serializer()
    build(s)
    return s.done()


def folder_sync_response(sync_key="abc123", folders=(), status=1) -> bytes:
    def build(s):
        s.start("FolderHierarchy:FolderSync").data("Status", status).data("SyncKey", sync_key)
        s.start("Changes").data("Count", len(folders))
        for server_id, parent_id, name, folder_type in folders:
            s.start("Add")
            s.data("ServerId", server_id).data("ParentId", parent_id)
            s.data("DisplayName", name).data("Type", folder_type)
            s.end()
        s.end().end()
    return wbxml(build)


def sync_response(sync_key, status=1, adds=(), more_available=False, collection_id="5") -> bytes:
    """``adds`` is a list of (server_id, {Email tag: value}) pairs."""

    def build(s):
        s.start("Sync").start("Collections").start("Collection")
        s.data("Class", "Email").data("SyncKey", sync_key).data("CollectionId", collection_id)
        s.data("Status", status)
        if more_available:
            s.tag("MoreAvailable")
        if adds:
            s.start("Commands")
            for server_id, fields in adds:
                s.start("Add").data("ServerId", server_id).start("ApplicationData")
                for name, value in fields.items():
                    s.data(f"Email:{name}", value)
                s.end().end()
            s.end()
        s.end().end().end()
    return wbxml(build)


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def transport(session):
    return EasTransport("mail.example.com", "alice", "secret", "dev123", device_type="Android",
                        protocol_version="12.1", session=session)


@pytest.fixture
def store():
    store = SqlSyncStore("sqlite://")
    store.create_tables()
    return store


@pytest.fixture
def account(store):
    account = Account(id=None, host="mail.example.com", username="alice", password="secret",
                      device_id="dev123", email_address="alice@example.com", protocol_version="12.1")
    store.add_account(account)
    return account


@pytest.fixture
def inbox(store, account):
    store.apply_folder_batch(
        account.id,
        [Folder("5", "Inbox", MailboxRole.INBOX, sync_frequency=SYNC_PUSH)],
        "abc123",
    )
    return store.find_mailbox(account.id, server_id="5")
