"""GetItemEstimate response parser: collection id -> estimated item count."""

import logging

from .. import tags
from ..errors import MalformedStream
from ..wbxml_parser import Parser

logger = logging.getLogger(__name__)


class ItemEstimateParser(Parser):
    def __init__(self, data):
        super().__init__(data)
        self.estimates = {}
        self.statuses = {}

    def parse(self):
        if self.next_tag(self.START_DOCUMENT) != tags.GIE_GET_ITEM_ESTIMATE:
            raise MalformedStream("GetItemEstimate response does not start with <GetItemEstimate>")
        while self.next_tag(self.START_DOCUMENT) != self.END_DOCUMENT:
            if self.tag == tags.GIE_RESPONSE:
                self.parse_response()
            else:
                self.skip_tag()
        return self.estimates

    def parse_response(self):
        status = 1
        collection_id = None
        estimate = None
        while self.next_tag(tags.GIE_RESPONSE) != self.END:
            if self.tag == tags.GIE_STATUS:
                status = self.get_value_int()
            elif self.tag == tags.GIE_COLLECTION:
                continue
            elif self.tag == tags.GIE_COLLECTION_ID:
                collection_id = self.get_value()
            elif self.tag == tags.GIE_ESTIMATE:
                estimate = self.get_value_int()
            else:
                self.skip_tag()
        if collection_id is None:
            return
        self.statuses[collection_id] = status
        if status == 1 and estimate is not None:
            self.estimates[collection_id] = estimate
        else:
            logger.warning(f"GetItemEstimate for {collection_id}: status {status}")
