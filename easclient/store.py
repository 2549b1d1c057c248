"""
Collaborator store: where folders, messages and sync keys live between cycles.

SyncStore is the interface the engine, outbox and attachment loader talk to.
SqlSyncStore is the SQLAlchemy implementation used by the CLI and the tests; every
``apply_*`` call is a single transaction that either fully lands or is rolled back.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings
from .models import (
    Account,
    Attachment,
    COLLECTION_CLASSES,
    Collection,
    LocalChange,
    MailboxRole,
    Message,
    OutgoingMessage,
    PimItem,
    SYNC_NEVER,
    SYNC_PUSH,
    SyncLookback,
    TextInfo,
)

logger = logging.getLogger(__name__)

ACCOUNT_MAILBOX_SERVER_ID = "__eas"
OUTBOX_SERVER_ID = "__outbox"


class SyncStore(ABC):
    @abstractmethod
    def apply_folder_batch(self, account_id, folders, account_sync_key, deleted_ids=()):
        """Add/update folders, drop deleted ones and store the account sync key, atomically."""

    @abstractmethod
    def apply_message_batch(self, mailbox_id, added, changed, deleted_ids, sync_key):
        """Apply one Sync round plus the new collection sync key, atomically."""

    @abstractmethod
    def apply_item_batch(self, mailbox_id, added, changed, deleted_ids, sync_key):
        """apply_message_batch for Contacts/Calendar/Tasks items (PimItem)."""

    @abstractmethod
    def invalidate_collection(self, mailbox_id):
        """Forget every cached message of the collection and reset its key to "0"."""

    @abstractmethod
    def load_account(self, account_id) -> Optional[Account]:
        pass

    @abstractmethod
    def save_protocol_version(self, account_id, version):
        pass

    @abstractmethod
    def load_collection(self, mailbox_id) -> Optional[Collection]:
        pass

    @abstractmethod
    def lookup_field(self, entity_kind, entity_id, field_names) -> Optional[list]:
        """Values of ``field_names`` for one entity, or None when it does not exist."""

    @abstractmethod
    def mark_send_failed(self, message_id):
        pass

    @abstractmethod
    def delete_message(self, message_id):
        pass

    @abstractmethod
    def pending_outbox(self, mailbox_id) -> List[int]:
        pass

    @abstractmethod
    def load_outgoing(self, message_id) -> Optional[OutgoingMessage]:
        pass

    @abstractmethod
    def update_attachment(self, attachment_id, content_uri, mime_type=None):
        pass

    @abstractmethod
    def pending_local_changes(self, mailbox_id) -> List[LocalChange]:
        pass

    @abstractmethod
    def clear_local_changes(self, change_ids):
        pass

    @abstractmethod
    def push_collections(self, account_id) -> List[Collection]:
        """Push-enabled collections that have completed at least one Sync."""

    @abstractmethod
    def set_sync_frequency(self, account_id, frequency, mailbox_id=None):
        """Set one mailbox's frequency, or every push mailbox of the account when mailbox_id is None."""


Base = declarative_base()


class AccountRow(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    email_address = Column(String, default="")
    host = Column(String, nullable=False)
    username = Column(String, nullable=False)
    password = Column(String, nullable=False)
    device_id = Column(String, nullable=False)
    use_ssl = Column(Boolean, default=True)
    trust_all_certs = Column(Boolean, default=False)
    protocol_version = Column(String, default="2.5")
    sync_key = Column(String, default="0")
    lookback = Column(String, default=SyncLookback.ONE_WEEK.value)
    created_at = Column(DateTime, default=datetime.utcnow)

    mailboxes = relationship("MailboxRow", back_populates="account", cascade="all, delete-orphan")


class MailboxRow(Base):
    __tablename__ = "mailboxes"
    __table_args__ = (UniqueConstraint("account_id", "server_id", name="uq_mailbox_server_id"),)

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    server_id = Column(String, nullable=False)
    display_name = Column(String, default="")
    role = Column(String, default=MailboxRole.MAIL.value)
    parent_server_id = Column(String, nullable=True)
    sync_key = Column(String, default="0")
    sync_frequency = Column(Integer, default=SYNC_NEVER)
    collection_class = Column(String, default="Email")

    account = relationship("AccountRow", back_populates="mailboxes")
    messages = relationship("MessageRow", back_populates="mailbox", cascade="all, delete-orphan")
    items = relationship("PimItemRow", back_populates="mailbox", cascade="all, delete-orphan")


class MessageRow(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    mailbox_id = Column(Integer, ForeignKey("mailboxes.id"), nullable=False, index=True)
    server_id = Column(String, nullable=True, index=True)
    subject = Column(String, default="")
    display_name = Column(String, default="")
    from_addr = Column(String, default="")
    to_addr = Column(Text, default="")
    cc_addr = Column(Text, default="")
    bcc_addr = Column(Text, default="")
    reply_to = Column(String, default="")
    timestamp = Column(BigInteger, default=0)
    flag_read = Column(Boolean, default=False)
    flag_attachment = Column(Boolean, default=False)
    text = Column(Text, nullable=True)
    html = Column(Text, nullable=True)
    text_info = Column(String, nullable=True)
    message_class = Column(String, default="")
    thread_topic = Column(String, default="")
    # outgoing mail
    send_failed = Column(Boolean, default=False)
    is_reply = Column(Boolean, default=False)
    is_forward = Column(Boolean, default=False)
    source_message_id = Column(Integer, nullable=True)
    quoted_text = Column(Text, nullable=True)
    intro_text = Column(Text, nullable=True)
    message_id_header = Column(String, nullable=True)

    mailbox = relationship("MailboxRow", back_populates="messages")
    attachments = relationship("AttachmentRow", back_populates="message", cascade="all, delete-orphan")


class AttachmentRow(Base):
    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Integer, ForeignKey("messages.id"), nullable=False, index=True)
    file_name = Column(String, nullable=False)
    size = Column(Integer, default=0)
    location = Column(String, nullable=False)
    encoding = Column(String, default="base64")
    mime_type = Column(String, nullable=True)
    content_uri = Column(String, nullable=True)

    message = relationship("MessageRow", back_populates="attachments")


class PimItemRow(Base):
    __tablename__ = "pim_items"

    id = Column(Integer, primary_key=True, index=True)
    mailbox_id = Column(Integer, ForeignKey("mailboxes.id"), nullable=False, index=True)
    server_id = Column(String, nullable=False, index=True)
    # JSON object: qualified tag name -> value
    fields = Column(Text, default="{}")

    mailbox = relationship("MailboxRow", back_populates="items")


class LocalChangeRow(Base):
    __tablename__ = "local_changes"

    id = Column(Integer, primary_key=True, index=True)
    mailbox_id = Column(Integer, ForeignKey("mailboxes.id"), nullable=False, index=True)
    message_server_id = Column(String, nullable=False)
    kind = Column(String, nullable=False)
    flag_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


ENTITY_MODELS = {
    "account": AccountRow,
    "mailbox": MailboxRow,
    "message": MessageRow,
    "attachment": AttachmentRow,
}


def _collection_from_row(row: MailboxRow, window_size=None) -> Collection:
    role = MailboxRole(row.role)
    return Collection(
        server_id=row.server_id,
        sync_key=row.sync_key or "0",
        collection_class=row.collection_class or "Email",
        window_size=window_size or (
            settings.EMAIL_WINDOW_SIZE if role not in COLLECTION_CLASSES else settings.PIM_WINDOW_SIZE
        ),
        id=row.id,
        account_id=row.account_id,
        role=role,
        sync_frequency=row.sync_frequency,
    )


class SqlSyncStore(SyncStore):
    def __init__(self, database_url: Optional[str] = None, echo: bool = False):
        database_url = database_url or settings.DATABASE_URL
        kwargs = {}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, echo=echo, **kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self):
        Base.metadata.create_all(bind=self.engine)

    def _transaction(self, what):
        return _Transaction(self.SessionLocal(), what)

    # ---------- accounts & mailboxes ----------

    def add_account(self, account: Account) -> int:
        with self._transaction("add account") as db:
            row = AccountRow(
                email_address=account.email_address,
                host=account.host,
                username=account.username,
                password=account.password,
                device_id=account.device_id,
                use_ssl=account.use_ssl,
                trust_all_certs=account.trust_all_certs,
                protocol_version=account.protocol_version,
                sync_key=account.sync_key,
                lookback=account.lookback.value,
            )
            db.add(row)
            db.flush()
            db.add(MailboxRow(
                account_id=row.id, server_id=ACCOUNT_MAILBOX_SERVER_ID,
                display_name="Account", role=MailboxRole.ACCOUNT.value,
            ))
            db.add(MailboxRow(
                account_id=row.id, server_id=OUTBOX_SERVER_ID,
                display_name="Outbox", role=MailboxRole.OUTBOX.value,
            ))
            account.id = row.id
            return row.id

    def load_account(self, account_id) -> Optional[Account]:
        with self.SessionLocal() as db:
            row = db.get(AccountRow, account_id)
            if row is None:
                return None
            return Account(
                id=row.id,
                host=row.host,
                username=row.username,
                password=row.password,
                device_id=row.device_id,
                email_address=row.email_address or "",
                use_ssl=row.use_ssl,
                trust_all_certs=row.trust_all_certs,
                protocol_version=row.protocol_version or "2.5",
                sync_key=row.sync_key or "0",
                lookback=SyncLookback(row.lookback or SyncLookback.ONE_WEEK.value),
            )

    def find_account(self, host, username) -> Optional[Account]:
        with self.SessionLocal() as db:
            row = (
                db.query(AccountRow)
                .filter(AccountRow.host == host, AccountRow.username == username)
                .order_by(AccountRow.id)
                .first()
            )
            account_id = row.id if row is not None else None
        return self.load_account(account_id) if account_id is not None else None

    def save_protocol_version(self, account_id, version):
        with self._transaction("save protocol version") as db:
            row = db.get(AccountRow, account_id)
            if row is not None:
                row.protocol_version = version

    def load_collection(self, mailbox_id) -> Optional[Collection]:
        with self.SessionLocal() as db:
            row = db.get(MailboxRow, mailbox_id)
            return _collection_from_row(row) if row is not None else None

    def find_mailbox(self, account_id, server_id=None, role=None) -> Optional[Collection]:
        with self.SessionLocal() as db:
            query = db.query(MailboxRow).filter(MailboxRow.account_id == account_id)
            if server_id is not None:
                query = query.filter(MailboxRow.server_id == server_id)
            if role is not None:
                query = query.filter(MailboxRow.role == MailboxRole(role).value)
            row = query.order_by(MailboxRow.id).first()
            return _collection_from_row(row) if row is not None else None

    def collections(self, account_id) -> List[Collection]:
        with self.SessionLocal() as db:
            rows = (
                db.query(MailboxRow)
                .filter(MailboxRow.account_id == account_id)
                .order_by(MailboxRow.id)
                .all()
            )
            return [_collection_from_row(r) for r in rows]

    def push_collections(self, account_id) -> List[Collection]:
        # a Ping naming a key "0" collection is answered with status 3
        return [
            c for c in self.collections(account_id)
            if c.sync_frequency == SYNC_PUSH and c.sync_key != "0"
        ]

    def set_sync_frequency(self, account_id, frequency, mailbox_id=None):
        with self._transaction("set sync frequency") as db:
            query = db.query(MailboxRow).filter(MailboxRow.account_id == account_id)
            if mailbox_id is not None:
                query = query.filter(MailboxRow.id == mailbox_id)
            else:
                query = query.filter(
                    MailboxRow.sync_frequency == SYNC_PUSH,
                    MailboxRow.role != MailboxRole.ACCOUNT.value,
                )
            rows = query.all()
            for row in rows:
                row.sync_frequency = frequency
        logger.info(f"Account {account_id}: sync frequency {frequency} for {len(rows)} mailbox(es)")

    def apply_folder_batch(self, account_id, folders, account_sync_key, deleted_ids=()):
        with self._transaction("apply folder batch") as db:
            account = db.get(AccountRow, account_id)
            if account is None:
                raise KeyError(f"no account {account_id}")
            for server_id in deleted_ids:
                row = (
                    db.query(MailboxRow)
                    .filter(MailboxRow.account_id == account_id, MailboxRow.server_id == server_id)
                    .first()
                )
                if row is not None:
                    db.delete(row)
            for folder in folders:
                row = (
                    db.query(MailboxRow)
                    .filter(MailboxRow.account_id == account_id, MailboxRow.server_id == folder.server_id)
                    .first()
                )
                if row is None:
                    row = MailboxRow(account_id=account_id, server_id=folder.server_id,
                                     sync_key=folder.sync_key, sync_frequency=folder.sync_frequency)
                    db.add(row)
                row.display_name = folder.display_name
                row.role = folder.role.value
                row.parent_server_id = folder.parent_server_id
                row.collection_class = folder.collection_class
            account.sync_key = account_sync_key
        logger.info(f"Account {account_id}: {len(folders)} folders added/updated, "
                    f"{len(deleted_ids)} deleted, key {account_sync_key}")

    # ---------- messages ----------

    def apply_message_batch(self, mailbox_id, added, changed, deleted_ids, sync_key):
        with self._transaction("apply message batch") as db:
            mailbox = db.get(MailboxRow, mailbox_id)
            if mailbox is None:
                raise KeyError(f"no mailbox {mailbox_id}")
            for message in added:
                # a re-sent Add (lost ack) replaces the earlier copy
                for old in self._by_server_id(db, mailbox_id, message.server_id):
                    db.delete(old)
                db.add(self._message_row(mailbox_id, message))
            for change in changed:
                for row in self._by_server_id(db, mailbox_id, change.server_id):
                    row.flag_read = change.flag_read
            for server_id in deleted_ids:
                for row in self._by_server_id(db, mailbox_id, server_id):
                    db.delete(row)
            mailbox.sync_key = sync_key

    def invalidate_collection(self, mailbox_id):
        with self._transaction("invalidate collection") as db:
            mailbox = db.get(MailboxRow, mailbox_id)
            if mailbox is None:
                return
            for row in db.query(MessageRow).filter(MessageRow.mailbox_id == mailbox_id).all():
                db.delete(row)
            db.query(PimItemRow).filter(PimItemRow.mailbox_id == mailbox_id).delete()
            db.query(LocalChangeRow).filter(LocalChangeRow.mailbox_id == mailbox_id).delete()
            mailbox.sync_key = "0"
        logger.info(f"Mailbox {mailbox_id} invalidated")

    def messages(self, mailbox_id) -> List[Message]:
        with self.SessionLocal() as db:
            rows = (
                db.query(MessageRow)
                .filter(MessageRow.mailbox_id == mailbox_id)
                .order_by(MessageRow.timestamp.desc(), MessageRow.id)
                .all()
            )
            return [self._message(r) for r in rows]

    def message_ids(self, mailbox_id) -> dict:
        """server id -> local id"""
        with self.SessionLocal() as db:
            rows = db.query(MessageRow.server_id, MessageRow.id).filter(MessageRow.mailbox_id == mailbox_id)
            return {server_id: local_id for server_id, local_id in rows}

    def delete_message(self, message_id):
        with self._transaction("delete message") as db:
            row = db.get(MessageRow, message_id)
            if row is not None:
                db.delete(row)

    def lookup_field(self, entity_kind, entity_id, field_names) -> Optional[list]:
        model = ENTITY_MODELS.get(entity_kind)
        if model is None:
            raise ValueError(f"unknown entity kind {entity_kind!r}")
        columns = model.__table__.columns
        for name in field_names:
            if name not in columns:
                raise ValueError(f"{entity_kind} has no field {name!r}")
        with self.SessionLocal() as db:
            row = db.get(model, entity_id)
            if row is None:
                return None
            return [getattr(row, name) for name in field_names]

    # ---------- contacts / calendar / tasks ----------

    def apply_item_batch(self, mailbox_id, added, changed, deleted_ids, sync_key):
        with self._transaction("apply item batch") as db:
            mailbox = db.get(MailboxRow, mailbox_id)
            if mailbox is None:
                raise KeyError(f"no mailbox {mailbox_id}")
            for item in added:
                self._items_by_server_id(db, mailbox_id, item.server_id).delete()
                db.add(PimItemRow(mailbox_id=mailbox_id, server_id=item.server_id,
                                  fields=json.dumps(item.fields)))
            for item in changed:
                for row in self._items_by_server_id(db, mailbox_id, item.server_id).all():
                    fields = json.loads(row.fields or "{}")
                    fields.update(item.fields)
                    row.fields = json.dumps(fields)
            for server_id in deleted_ids:
                self._items_by_server_id(db, mailbox_id, server_id).delete()
            mailbox.sync_key = sync_key

    def items(self, mailbox_id) -> List[PimItem]:
        with self.SessionLocal() as db:
            rows = db.query(PimItemRow).filter(PimItemRow.mailbox_id == mailbox_id).order_by(PimItemRow.id)
            return [PimItem(row.server_id, json.loads(row.fields or "{}")) for row in rows]

    @staticmethod
    def _items_by_server_id(db, mailbox_id, server_id):
        return db.query(PimItemRow).filter(PimItemRow.mailbox_id == mailbox_id, PimItemRow.server_id == server_id)

    # ---------- outbox ----------

    def save_outgoing(self, mailbox_id, message: OutgoingMessage) -> int:
        with self._transaction("save outgoing") as db:
            row = MessageRow(
                mailbox_id=mailbox_id,
                subject=message.subject,
                from_addr=message.from_addr,
                to_addr=message.to,
                cc_addr=message.cc,
                bcc_addr=message.bcc,
                text=message.text,
                html=message.html,
                timestamp=message.timestamp,
                flag_read=True,
                is_reply=message.is_reply,
                is_forward=message.is_forward,
                source_message_id=message.source_message_id,
                quoted_text=message.quoted_text,
                intro_text=message.intro_text,
                message_id_header=message.message_id,
            )
            db.add(row)
            db.flush()
            message.id = row.id
            return row.id

    def pending_outbox(self, mailbox_id) -> List[int]:
        with self.SessionLocal() as db:
            rows = (
                db.query(MessageRow.id)
                .filter(MessageRow.mailbox_id == mailbox_id, MessageRow.send_failed.is_(False))
                .order_by(MessageRow.id)
                .all()
            )
            return [r.id for r in rows]

    def load_outgoing(self, message_id) -> Optional[OutgoingMessage]:
        with self.SessionLocal() as db:
            row = db.get(MessageRow, message_id)
            if row is None:
                return None
            return OutgoingMessage(
                id=row.id,
                from_addr=row.from_addr or "",
                to=row.to_addr or "",
                subject=row.subject or "",
                cc=row.cc_addr or "",
                bcc=row.bcc_addr or "",
                text=row.text or "",
                html=row.html,
                timestamp=row.timestamp or 0,
                message_id=row.message_id_header,
                quoted_text=row.quoted_text,
                intro_text=row.intro_text,
                is_reply=bool(row.is_reply),
                is_forward=bool(row.is_forward),
                source_message_id=row.source_message_id,
            )

    def mark_send_failed(self, message_id):
        with self._transaction("mark send failed") as db:
            row = db.get(MessageRow, message_id)
            if row is not None:
                row.send_failed = True

    # ---------- attachments ----------

    def load_attachment(self, attachment_id) -> Optional[Attachment]:
        with self.SessionLocal() as db:
            row = db.get(AttachmentRow, attachment_id)
            if row is None:
                return None
            return Attachment(
                file_name=row.file_name, size=row.size, location=row.location, encoding=row.encoding,
                mime_type=row.mime_type, content_uri=row.content_uri, id=row.id,
            )

    def update_attachment(self, attachment_id, content_uri, mime_type=None):
        with self._transaction("update attachment") as db:
            row = db.get(AttachmentRow, attachment_id)
            if row is None:
                raise KeyError(f"no attachment {attachment_id}")
            row.content_uri = content_uri
            if mime_type:
                row.mime_type = mime_type

    # ---------- local changes ----------

    def add_local_change(self, mailbox_id, server_id, kind, flag_read=False) -> int:
        if kind not in ("read", "delete"):
            raise ValueError(f"unknown change kind {kind!r}")
        with self._transaction("add local change") as db:
            row = LocalChangeRow(mailbox_id=mailbox_id, message_server_id=server_id, kind=kind, flag_read=flag_read)
            db.add(row)
            db.flush()
            return row.id

    def pending_local_changes(self, mailbox_id) -> List[LocalChange]:
        with self.SessionLocal() as db:
            rows = (
                db.query(LocalChangeRow)
                .filter(LocalChangeRow.mailbox_id == mailbox_id)
                .order_by(LocalChangeRow.id)
                .all()
            )
            return [LocalChange(r.id, r.kind, r.message_server_id, bool(r.flag_read)) for r in rows]

    def clear_local_changes(self, change_ids: Iterable[int]):
        change_ids = list(change_ids)
        if not change_ids:
            return
        with self._transaction("clear local changes") as db:
            db.query(LocalChangeRow).filter(LocalChangeRow.id.in_(change_ids)).delete(synchronize_session=False)

    # ---------- helpers ----------

    @staticmethod
    def _by_server_id(db, mailbox_id, server_id) -> Sequence[MessageRow]:
        return (
            db.query(MessageRow)
            .filter(MessageRow.mailbox_id == mailbox_id, MessageRow.server_id == server_id)
            .all()
        )

    @staticmethod
    def _message_row(mailbox_id, message: Message) -> MessageRow:
        row = MessageRow(
            mailbox_id=mailbox_id,
            server_id=message.server_id,
            subject=message.subject,
            display_name=message.display_name,
            from_addr=message.from_addr,
            to_addr=message.to,
            cc_addr=message.cc,
            reply_to=message.reply_to,
            timestamp=message.timestamp,
            flag_read=message.flag_read,
            flag_attachment=message.flag_attachment,
            text=message.text,
            html=message.html,
            text_info=message.text_info.render() if message.text_info else None,
            message_class=message.message_class,
            thread_topic=message.thread_topic,
        )
        for att in message.attachments:
            row.attachments.append(AttachmentRow(
                file_name=att.file_name, size=att.size, location=att.location, encoding=att.encoding,
            ))
        return row

    @staticmethod
    def _message(row: MessageRow) -> Message:
        return Message(
            server_id=row.server_id or "",
            subject=row.subject or "",
            display_name=row.display_name or "",
            from_addr=row.from_addr or "",
            to=row.to_addr or "",
            cc=row.cc_addr or "",
            reply_to=row.reply_to or "",
            timestamp=row.timestamp or 0,
            flag_read=bool(row.flag_read),
            text=row.text,
            html=row.html,
            text_info=TextInfo.parse(row.text_info),
            message_class=row.message_class or "",
            thread_topic=row.thread_topic or "",
            attachments=[
                Attachment(a.file_name, a.size, a.location, a.encoding, a.mime_type, a.content_uri, a.id)
                for a in row.attachments
            ],
        )


class _Transaction:
    """Session scope: commit on success, rollback and re-raise on error."""

    def __init__(self, db, what):
        self.db = db
        self.what = what

    def __enter__(self):
        return self.db

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc_type is None:
                self.db.commit()
            else:
                logger.error(f"Store: {self.what} failed: {exc}")
                self.db.rollback()
        finally:
            self.db.close()
        return False

