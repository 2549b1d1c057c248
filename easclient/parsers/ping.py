"""Ping response parser."""

import logging

from .. import tags
from ..errors import MalformedStream
from ..models import PingResult
from ..wbxml_parser import Parser

logger = logging.getLogger(__name__)

STATUS_NO_CHANGES = 1
STATUS_CHANGES_FOUND = 2
STATUS_MISSING_PARAMETERS = 3
STATUS_FOLDER_REFRESH_NEEDED = 4
STATUS_HEARTBEAT_OUT_OF_RANGE = 5
STATUS_TOO_MANY_FOLDERS = 6
STATUS_FOLDER_HIERARCHY_STALE = 7
STATUS_SERVER_ERROR = 8

ERROR_STATUSES = (STATUS_MISSING_PARAMETERS, STATUS_TOO_MANY_FOLDERS, STATUS_SERVER_ERROR)


class PingParser(Parser):
    def __init__(self, data):
        super().__init__(data)
        self.result = PingResult()

    def parse(self) -> PingResult:
        if self.next_tag(self.START_DOCUMENT) != tags.PING_PING:
            raise MalformedStream("Ping response does not start with <Ping>")
        while self.next_tag(self.START_DOCUMENT) != self.END_DOCUMENT:
            if self.tag == tags.PING_STATUS:
                self.result.status = self.get_value_int()
                logger.debug(f"Ping status {self.result.status}")
            elif self.tag == tags.PING_FOLDERS:
                self.parse_folders()
            elif self.tag == tags.PING_HEARTBEAT_INTERVAL:
                # only sent with status 5: the interval the server will accept
                self.result.heartbeat_interval = self.get_value_int()
            elif self.tag == tags.PING_MAX_FOLDERS:
                self.result.max_folders = self.get_value_int()
            else:
                self.skip_tag()
        return self.result

    def parse_folders(self):
        while self.next_tag(tags.PING_FOLDERS) != self.END:
            if self.tag == tags.PING_FOLDER:
                server_id = self.get_value()
                self.result.changed_folders.append(server_id)
                logger.info(f"Ping: changes in folder {server_id}")
            else:
                self.skip_tag()
