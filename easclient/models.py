"""
Plain data carried between the protocol parsers, the sync engine and the store.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable, List, Optional, Union

SYNC_PUSH = -2
SYNC_NEVER = -1

# Body preference types (AirSyncBase:Type)
BODY_TYPE_TEXT = 1
BODY_TYPE_HTML = 2


class MailboxRole(str, Enum):
    ACCOUNT = "account"
    INBOX = "inbox"
    DRAFTS = "drafts"
    SENT = "sent"
    TRASH = "trash"
    OUTBOX = "outbox"
    MAIL = "mail"
    CALENDAR = "calendar"
    CONTACTS = "contacts"
    TASKS = "tasks"


# FolderHierarchy:Type -> local role; anything else (notes, journal, ...) is ignored
FOLDER_TYPES = {
    1: MailboxRole.MAIL,
    2: MailboxRole.INBOX,
    3: MailboxRole.DRAFTS,
    4: MailboxRole.TRASH,
    5: MailboxRole.SENT,
    6: MailboxRole.OUTBOX,
    7: MailboxRole.TASKS,
    8: MailboxRole.CALENDAR,
    9: MailboxRole.CONTACTS,
    12: MailboxRole.MAIL,
}

COLLECTION_CLASSES = {
    MailboxRole.CALENDAR: "Calendar",
    MailboxRole.CONTACTS: "Contacts",
    MailboxRole.TASKS: "Tasks",
}


class SyncLookback(str, Enum):
    ALL = "all"
    ONE_DAY = "1day"
    THREE_DAYS = "3days"
    ONE_WEEK = "1week"
    TWO_WEEKS = "2weeks"
    ONE_MONTH = "1month"

    @property
    def filter_type(self) -> str:
        return _FILTER_TYPES[self]


_FILTER_TYPES = {
    SyncLookback.ALL: "0",
    SyncLookback.ONE_DAY: "1",
    SyncLookback.THREE_DAYS: "2",
    SyncLookback.ONE_WEEK: "3",
    SyncLookback.TWO_WEEKS: "4",
    SyncLookback.ONE_MONTH: "5",
}


class CollectionPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIAL = "initial"
    STEADY = "steady"


class ExitStatus(IntEnum):
    DONE = 0
    IO_ERROR = 1
    LOGIN_FAILURE = 2
    EXCEPTION = 3


@dataclass
class Account:
    id: Optional[int]
    host: str
    username: str
    password: str
    device_id: str
    email_address: str = ""
    use_ssl: bool = True
    trust_all_certs: bool = False
    protocol_version: str = "2.5"
    sync_key: str = "0"
    lookback: SyncLookback = SyncLookback.ONE_WEEK


@dataclass
class Collection:
    server_id: str
    sync_key: str = "0"
    collection_class: str = "Email"
    # None: no FilterType is sent (Contacts)
    filter_type: Optional[str] = "3"
    window_size: int = 10
    id: Optional[int] = None
    account_id: Optional[int] = None
    role: MailboxRole = MailboxRole.MAIL
    sync_frequency: int = SYNC_NEVER
    phase: CollectionPhase = CollectionPhase.UNINITIALIZED


@dataclass
class Folder:
    server_id: str
    display_name: str
    role: MailboxRole
    parent_server_id: Optional[str] = None
    sync_frequency: int = SYNC_NEVER
    sync_key: str = "0"

    @property
    def collection_class(self) -> str:
        return COLLECTION_CLASSES.get(self.role, "Email")


@dataclass
class TextInfo:
    """Where a message body lives and how big it is; stored as "location;encoding;charset;size"."""

    location: str = "X"
    encoding: str = "X"
    charset: str = "8"
    size: int = 0

    def render(self) -> str:
        return f"{self.location};{self.encoding};{self.charset};{self.size}"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["TextInfo"]:
        if not value:
            return None
        parts = value.split(";")
        if len(parts) != 4:
            raise ValueError(f"malformed text info {value!r}")
        location, encoding, charset, size = parts
        return cls(location, encoding, charset, int(size) if size else 0)


@dataclass
class Attachment:
    file_name: str
    size: int
    location: str
    encoding: str = "base64"
    mime_type: Optional[str] = None
    content_uri: Optional[str] = None
    id: Optional[int] = None


@dataclass
class Message:
    server_id: str
    subject: str = ""
    display_name: str = ""
    from_addr: str = ""
    to: str = ""
    cc: str = ""
    reply_to: str = ""
    timestamp: int = 0
    flag_read: bool = False
    text: Optional[str] = None
    html: Optional[str] = None
    text_info: Optional[TextInfo] = None
    message_class: str = ""
    thread_topic: str = ""
    attachments: List[Attachment] = field(default_factory=list)

    @property
    def flag_attachment(self) -> bool:
        return bool(self.attachments)


@dataclass
class ChangedMessage:
    server_id: str
    flag_read: bool


@dataclass
class PimItem:
    """A contact, calendar event or task: ApplicationData kept as qualified tag name -> value."""

    server_id: str
    fields: dict = field(default_factory=dict)


@dataclass
class LocalChange:
    id: int
    kind: str  # "read" or "delete"
    server_id: str
    flag_read: bool = False


@dataclass
class OutgoingMessage:
    id: int
    from_addr: str
    to: str
    subject: str = ""
    cc: str = ""
    bcc: str = ""
    text: str = ""
    html: Optional[str] = None
    timestamp: int = 0
    message_id: Optional[str] = None
    quoted_text: Optional[str] = None
    intro_text: Optional[str] = None
    is_reply: bool = False
    is_forward: bool = False
    source_message_id: Optional[int] = None


@dataclass
class FolderSyncResult:
    new_sync_key: Optional[str] = None
    added_folders: List[Folder] = field(default_factory=list)
    deleted_ids: List[str] = field(default_factory=list)
    status_code: int = 0

    @property
    def ok(self) -> bool:
        return self.status_code == 1


@dataclass
class SyncResult:
    new_sync_key: Optional[str] = None
    added: List[Union[Message, PimItem]] = field(default_factory=list)
    changed: List[Union[ChangedMessage, PimItem]] = field(default_factory=list)
    deleted_ids: List[str] = field(default_factory=list)
    more_available: bool = False
    status_code: int = 1


@dataclass
class PingResult:
    status: int = 0
    changed_folders: List[str] = field(default_factory=list)
    heartbeat_interval: Optional[int] = None
    max_folders: Optional[int] = None

    @property
    def has_changes(self) -> bool:
        return self.status == 2

    @property
    def stale_folder_list(self) -> bool:
        return self.status in (4, 7)


class MoveStatus(IntEnum):
    SUCCESS = 1
    REVERT = 2
    RETRY = 3


@dataclass
class MoveRequest:
    server_id: str
    src_folder_id: str
    dst_folder_id: str


@dataclass
class MoveResult:
    src_server_id: Optional[str] = None
    status: MoveStatus = MoveStatus.REVERT
    eas_status: int = 0
    new_server_id: Optional[str] = None


@dataclass
class PartRequest:
    owner_entity_id: int
    location: str
    attachment_id: Optional[int] = None
    file_name: str = ""
    size: int = 0
    progress_sink: Optional[Callable[[int], None]] = None
    cancelled: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)
    stream: Optional[object] = field(default=None, repr=False, compare=False)


class SendOutcomeKind(str, Enum):
    SUCCESS = "success"
    PERMANENT_FAILURE = "permanent_failure"
    AUTH_FAILURE = "auth_failure"
    TRANSIENT_IO_FAILURE = "transient_io_failure"


@dataclass(frozen=True)
class SendOutcome:
    kind: SendOutcomeKind
    http_status: Optional[int] = None

    @classmethod
    def success(cls) -> "SendOutcome":
        return cls(SendOutcomeKind.SUCCESS, 200)

    @classmethod
    def permanent_failure(cls, http_status: int) -> "SendOutcome":
        return cls(SendOutcomeKind.PERMANENT_FAILURE, http_status)

    @classmethod
    def auth_failure(cls, http_status: int) -> "SendOutcome":
        return cls(SendOutcomeKind.AUTH_FAILURE, http_status)

    @classmethod
    def transient_io_failure(cls) -> "SendOutcome":
        return cls(SendOutcomeKind.TRANSIENT_IO_FAILURE)

    @property
    def aborts_batch(self) -> bool:
        return self.kind is SendOutcomeKind.AUTH_FAILURE
