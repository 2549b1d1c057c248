"""
Sync response parser for Contacts, Calendar and Tasks collections.

Sync key, status and MoreAvailable handling is shared with the Email parser.  Items are
not mapped onto a schema: ApplicationData is kept as a dict keyed by qualified tag name
("Contacts:FileAs"), containers become nested dicts and repeated elements become lists.
"""

import logging

from .. import tags
from ..errors import MalformedStream
from ..models import PimItem
from ..wbxml_parser import EndElement, StartElement, Text
from .email_sync import EmailSyncParser

logger = logging.getLogger(__name__)


def _put(fields: dict, name: str, value):
    if name not in fields:
        fields[name] = value
    elif isinstance(fields[name], list):
        fields[name].append(value)
    else:
        fields[name] = [fields[name], value]


class PimSyncParser(EmailSyncParser):
    def __init__(self, data, sync_key="0", collection_class="Contacts"):
        super().__init__(data, sync_key)
        self.collection_class = collection_class

    def parse_add(self):
        item = self.parse_item(tags.SYNC_ADD)
        if not item.server_id:
            logger.warning(f"Dropping {self.collection_class} Add without ServerId")
            return None
        return item

    def parse_change(self):
        item = self.parse_item(tags.SYNC_CHANGE)
        return item if item.server_id else None

    def parse_item(self, end_tag) -> PimItem:
        item = PimItem(server_id="")
        while self.next_tag(end_tag) != self.END:
            if self.tag == tags.SYNC_SERVER_ID:
                item.server_id = self.get_value()
            elif self.tag == tags.SYNC_APPLICATION_DATA:
                item.fields = self.read_fields(tags.SYNC_APPLICATION_DATA)
            else:
                self.skip_tag()
        return item

    def read_fields(self, end_tag, fields=None) -> dict:
        fields = {} if fields is None else fields
        while self.next_tag(end_tag) != self.END:
            tag = self.tag
            _put(fields, tags.CATALOG.qualified_name(tag), self.read_node(tag))
        return fields

    def read_node(self, tag):
        """Value of the element just started: text, "" when empty, or a dict of children."""
        event = self.decoder.next()
        if isinstance(event, EndElement):
            return ""
        if isinstance(event, Text):
            self._expect_end()
            value = event.value
            return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
        if isinstance(event, StartElement):
            self.tag, self.name = event.tag, event.name
            nested = {}
            _put(nested, tags.CATALOG.qualified_name(event.tag), self.read_node(event.tag))
            return self.read_fields(tag, nested)
        raise MalformedStream(f"unexpected {event!r} in {self.collection_class} item")
