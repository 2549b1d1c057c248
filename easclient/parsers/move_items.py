"""MoveItems response parser."""

import logging

from .. import tags
from ..errors import MalformedStream
from ..models import MoveResult, MoveStatus
from ..wbxml_parser import Parser

logger = logging.getLogger(__name__)

# EAS MoveItems statuses
STATUS_NO_SOURCE_FOLDER = 1
STATUS_NO_DESTINATION_FOLDER = 2
STATUS_SUCCESS = 3
STATUS_SOURCE_DESTINATION_SAME = 4
STATUS_INTERNAL_ERROR = 5
STATUS_ALREADY_EXISTS = 6
STATUS_LOCKED = 7


def classify_move_status(status: int) -> MoveStatus:
    if status in (STATUS_SUCCESS, STATUS_SOURCE_DESTINATION_SAME, STATUS_ALREADY_EXISTS):
        return MoveStatus.SUCCESS
    if status == STATUS_LOCKED:
        return MoveStatus.RETRY
    return MoveStatus.REVERT


class MoveItemsParser(Parser):
    def __init__(self, data):
        super().__init__(data)
        self.results = []

    def parse(self):
        if self.next_tag(self.START_DOCUMENT) != tags.MOVE_MOVE_ITEMS:
            raise MalformedStream("MoveItems response does not start with <MoveItems>")
        while self.next_tag(self.START_DOCUMENT) != self.END_DOCUMENT:
            if self.tag == tags.MOVE_RESPONSE:
                self.results.append(self.parse_response())
            else:
                self.skip_tag()
        return self.results

    def parse_response(self) -> MoveResult:
        result = MoveResult()
        while self.next_tag(tags.MOVE_RESPONSE) != self.END:
            if self.tag == tags.MOVE_STATUS:
                result.eas_status = self.get_value_int()
                result.status = classify_move_status(result.eas_status)
                if result.eas_status != STATUS_SUCCESS:
                    logger.warning(f"MoveItems status {result.eas_status}")
            elif self.tag == tags.MOVE_SRCMSGID:
                result.src_server_id = self.get_value()
            elif self.tag == tags.MOVE_DSTMSGID:
                result.new_server_id = self.get_value()
            else:
                self.skip_tag()
        return result
