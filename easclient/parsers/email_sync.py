"""
Sync response parser for Email collections.

Handles both the 2.5 Email-page body/attachment elements and the AirSyncBase ones sent
to 12.x clients.  Status 3 (invalid sync key) is folded into the result here: the key
becomes "0", more_available is forced on and any commands in the response are dropped.
"""

import calendar
import logging
from email.utils import parseaddr

from .. import tags
from ..errors import MalformedStream
from ..models import Attachment, BODY_TYPE_HTML, ChangedMessage, Message, SyncResult, TextInfo
from ..wbxml_parser import Parser

logger = logging.getLogger(__name__)

STATUS_OK = 1
STATUS_INVALID_SYNC_KEY = 3


def parse_date(value: str) -> int:
    """``YYYY-MM-DDTHH:MM:SS.sssZ`` (UTC) -> epoch milliseconds, by fixed offsets."""
    try:
        seconds = calendar.timegm((
            int(value[0:4]), int(value[5:7]), int(value[8:10]),
            int(value[11:13]), int(value[14:16]), int(value[17:19]),
            0, 0, 0,
        ))
        millis = int(value[20:23]) if len(value) >= 23 and value[19] == "." else 0
    except ValueError:
        raise MalformedStream(f"bad EAS date {value!r}") from None
    return seconds * 1000 + millis


def display_name_of(address: str) -> str:
    """The quoted part of ``"Bob" <b@x.com>``; falls back to the parsed name or the address."""
    first = address.find('"')
    if first >= 0:
        second = address.find('"', first + 1)
        if second > first:
            return address[first + 1:second]
    name, addr = parseaddr(address)
    return name or addr or address


class EmailSyncParser(Parser):
    def __init__(self, data, sync_key="0"):
        super().__init__(data)
        self.old_sync_key = sync_key
        self.result = SyncResult(status_code=0)

    @property
    def invalid_sync_key(self) -> bool:
        return self.result.status_code == STATUS_INVALID_SYNC_KEY

    def parse(self) -> SyncResult:
        if self.next_tag(self.START_DOCUMENT) != tags.SYNC_SYNC:
            raise MalformedStream("Sync response does not start with <Sync>")
        while self.next_tag(self.START_DOCUMENT) != self.END_DOCUMENT:
            if self.tag in (tags.SYNC_COLLECTIONS, tags.SYNC_COLLECTION):
                continue
            if self.tag == tags.SYNC_STATUS:
                self.set_status(self.get_value_int())
            elif self.tag == tags.SYNC_SYNC_KEY:
                self.set_sync_key(self.get_value())
            elif self.tag == tags.SYNC_MORE_AVAILABLE:
                self.skip_tag()
                self.result.more_available = True
            elif self.tag == tags.SYNC_COMMANDS and not self.invalid_sync_key:
                self.parse_commands()
            else:
                self.skip_tag()

        if self.result.status_code == 0:
            # a Sync reply may omit Status entirely when nothing went wrong
            self.result.status_code = STATUS_OK
        if self.invalid_sync_key:
            self.result.new_sync_key = "0"
            self.result.more_available = True
            self.result.added.clear()
            self.result.changed.clear()
            self.result.deleted_ids.clear()
        return self.result

    def set_status(self, status):
        self.result.status_code = status
        if status != STATUS_OK:
            logger.warning(f"Sync status {status}")

    def set_sync_key(self, key):
        if self.invalid_sync_key:
            return
        if self.old_sync_key == "0":
            # the first key only primes the collection; items come in the next round
            self.result.more_available = True
        self.result.new_sync_key = key

    # ---------- commands ----------

    def parse_commands(self):
        while self.next_tag(tags.SYNC_COMMANDS) != self.END:
            if self.tag == tags.SYNC_ADD:
                message = self.parse_add()
                if message is not None:
                    self.result.added.append(message)
            elif self.tag == tags.SYNC_CHANGE:
                change = self.parse_change()
                if change is not None:
                    self.result.changed.append(change)
            elif self.tag == tags.SYNC_DELETE:
                server_id = self.parse_server_id_only(tags.SYNC_DELETE)
                if server_id:
                    self.result.deleted_ids.append(server_id)
            else:
                self.skip_tag()

    def parse_add(self):
        message = Message(server_id="")
        while self.next_tag(tags.SYNC_ADD) != self.END:
            if self.tag == tags.SYNC_SERVER_ID:
                message.server_id = self.get_value()
            elif self.tag == tags.SYNC_APPLICATION_DATA:
                self.parse_application_data(message)
            else:
                self.skip_tag()
        if not message.server_id:
            logger.warning("Dropping Add without ServerId")
            return None
        return message

    def parse_change(self):
        server_id = None
        flag_read = None
        while self.next_tag(tags.SYNC_CHANGE) != self.END:
            if self.tag == tags.SYNC_SERVER_ID:
                server_id = self.get_value()
            elif self.tag == tags.SYNC_APPLICATION_DATA:
                while self.next_tag(tags.SYNC_APPLICATION_DATA) != self.END:
                    if self.tag == tags.EMAIL_READ:
                        flag_read = self.get_value_int() == 1
                    else:
                        self.skip_tag()
            else:
                self.skip_tag()
        if server_id is None or flag_read is None:
            return None
        return ChangedMessage(server_id, flag_read)

    def parse_server_id_only(self, end_tag):
        server_id = None
        while self.next_tag(end_tag) != self.END:
            if self.tag == tags.SYNC_SERVER_ID:
                server_id = self.get_value()
            else:
                self.skip_tag()
        return server_id

    # ---------- ApplicationData ----------

    def parse_application_data(self, message: Message):
        body_size = None
        while self.next_tag(tags.SYNC_APPLICATION_DATA) != self.END:
            tag = self.tag
            if tag == tags.EMAIL_ATTACHMENTS:
                self.parse_attachments(message)
            elif tag == tags.BASE_ATTACHMENTS:
                self.parse_base_attachments(message)
            elif tag == tags.EMAIL_TO:
                message.to = self.get_value()
            elif tag == tags.EMAIL_CC:
                message.cc = self.get_value()
            elif tag == tags.EMAIL_REPLY_TO:
                message.reply_to = self.get_value()
            elif tag == tags.EMAIL_FROM:
                message.from_addr = self.get_value()
                message.display_name = display_name_of(message.from_addr)
            elif tag == tags.EMAIL_DATE_RECEIVED:
                message.timestamp = parse_date(self.get_value())
            elif tag == tags.EMAIL_SUBJECT:
                message.subject = self.get_value()
            elif tag == tags.EMAIL_READ:
                message.flag_read = self.get_value_int() == 1
            elif tag == tags.EMAIL_BODY:
                message.text = self.get_value()
            elif tag == tags.EMAIL_BODY_SIZE:
                body_size = self.get_value_int()
            elif tag == tags.BASE_BODY:
                body_size = self.parse_base_body(message)
            elif tag == tags.EMAIL_MESSAGE_CLASS:
                message.message_class = self.get_value()
            elif tag == tags.EMAIL_THREAD_TOPIC:
                message.thread_topic = self.get_value()
            else:
                self.skip_tag()

        body = message.text if message.text is not None else message.html
        if body is not None:
            if body_size is None:
                body_size = len(body.encode("utf-8"))
            message.text_info = TextInfo(size=body_size)

    def parse_base_body(self, message: Message):
        body_type = 1
        data = None
        size = None
        while self.next_tag(tags.BASE_BODY) != self.END:
            if self.tag == tags.BASE_TYPE:
                body_type = self.get_value_int()
            elif self.tag == tags.BASE_DATA:
                data = self.get_value()
            elif self.tag == tags.BASE_ESTIMATED_DATA_SIZE:
                size = self.get_value_int()
            else:
                self.skip_tag()
        if data is not None:
            if body_type == BODY_TYPE_HTML:
                message.html = data
            else:
                message.text = data
        return size

    def parse_attachments(self, message: Message):
        while self.next_tag(tags.EMAIL_ATTACHMENTS) != self.END:
            if self.tag == tags.EMAIL_ATTACHMENT:
                self.parse_attachment(
                    message, tags.EMAIL_ATTACHMENT, tags.EMAIL_DISPLAY_NAME, tags.EMAIL_ATT_NAME, tags.EMAIL_ATT_SIZE
                )
            else:
                self.skip_tag()

    def parse_base_attachments(self, message: Message):
        while self.next_tag(tags.BASE_ATTACHMENTS) != self.END:
            if self.tag == tags.BASE_ATTACHMENT:
                self.parse_attachment(
                    message, tags.BASE_ATTACHMENT, tags.BASE_DISPLAY_NAME,
                    tags.BASE_FILE_REFERENCE, tags.BASE_ESTIMATED_DATA_SIZE,
                )
            else:
                self.skip_tag()

    def parse_attachment(self, message, end_tag, name_tag, location_tag, size_tag):
        file_name = None
        location = None
        size = None
        while self.next_tag(end_tag) != self.END:
            if self.tag == name_tag:
                file_name = self.get_value()
            elif self.tag == location_tag:
                location = self.get_value()
            elif self.tag == size_tag:
                size = self.get_value_int()
            else:
                self.skip_tag()
        if file_name and location and size is not None:
            message.attachments.append(Attachment(file_name=file_name, size=size, location=location))
        else:
            logger.debug(f"Dropping partial attachment descriptor on {message.server_id}")
