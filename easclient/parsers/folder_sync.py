"""FolderSync response parser."""

import logging

from .. import tags
from ..models import FOLDER_TYPES, Folder, FolderSyncResult, MailboxRole, SYNC_NEVER, SYNC_PUSH
from ..wbxml_parser import Parser
from ..errors import MalformedStream

logger = logging.getLogger(__name__)

# Roles that get push on discovery; everything else starts out manual
PUSH_ROLES = (MailboxRole.INBOX,)


class FolderSyncParser(Parser):
    def __init__(self, data, push_roles=PUSH_ROLES):
        super().__init__(data)
        self.push_roles = push_roles
        self.result = FolderSyncResult()

    def parse(self) -> FolderSyncResult:
        if self.next_tag(self.START_DOCUMENT) != tags.FOLDER_FOLDER_SYNC:
            raise MalformedStream("FolderSync response does not start with <FolderSync>")
        while self.next_tag(self.START_DOCUMENT) != self.END_DOCUMENT:
            if self.tag == tags.FOLDER_STATUS:
                self.result.status_code = self.get_value_int()
                if self.result.status_code != 1:
                    logger.warning(f"FolderSync status {self.result.status_code}")
            elif self.tag == tags.FOLDER_SYNC_KEY:
                self.result.new_sync_key = self.get_value()
            elif self.tag == tags.FOLDER_CHANGES:
                self.parse_changes()
            else:
                self.skip_tag()
        return self.result

    def parse_changes(self):
        while self.next_tag(tags.FOLDER_CHANGES) != self.END:
            if self.tag in (tags.FOLDER_ADD, tags.FOLDER_UPDATE):
                folder = self.parse_folder(self.tag)
                if folder is not None:
                    self.result.added_folders.append(folder)
            elif self.tag == tags.FOLDER_DELETE:
                self.parse_delete()
            elif self.tag == tags.FOLDER_COUNT:
                self.get_value_int()
            else:
                self.skip_tag()

    def parse_folder(self, end_tag):
        name = None
        server_id = None
        parent_id = None
        folder_type = 0
        while self.next_tag(end_tag) != self.END:
            if self.tag == tags.FOLDER_DISPLAY_NAME:
                name = self.get_value()
            elif self.tag == tags.FOLDER_TYPE:
                folder_type = self.get_value_int()
            elif self.tag == tags.FOLDER_PARENT_ID:
                parent_id = self.get_value()
            elif self.tag == tags.FOLDER_SERVER_ID:
                server_id = self.get_value()
            else:
                self.skip_tag()

        role = FOLDER_TYPES.get(folder_type)
        if role is None or server_id is None:
            logger.debug(f"Ignoring folder {name!r} type {folder_type}")
            return None
        return Folder(
            server_id=server_id,
            display_name=name or server_id,
            role=role,
            # "0" (or no ParentId at all) means top level
            parent_server_id=parent_id if parent_id not in (None, "", "0") else None,
            sync_frequency=SYNC_PUSH if role in self.push_roles else SYNC_NEVER,
        )

    def parse_delete(self):
        while self.next_tag(tags.FOLDER_DELETE) != self.END:
            if self.tag == tags.FOLDER_SERVER_ID:
                self.result.deleted_ids.append(self.get_value())
            else:
                self.skip_tag()
