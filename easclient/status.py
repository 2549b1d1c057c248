"""
Status callbacks reported to whoever owns the service (UI, scheduler, CLI).

Progress is 0 at start and 100 when finished; a nonzero status code marks the
operation as terminated with an error, whatever the progress value.
"""

import logging
from typing import List, Tuple

from .models import ExitStatus

logger = logging.getLogger(__name__)

SUCCESS = 0
IN_PROGRESS = 1
MESSAGE_NOT_FOUND = 0x10
ATTACHMENT_NOT_FOUND = 0x11
REMOTE_EXCEPTION = 0x15
LOGIN_FAILED = 0x16
CONNECTION_ERROR = 0x20
PROTOCOL_ERROR = 0x24
CANCELLED = 0x30

EXIT_STATUS_CODES = {
    ExitStatus.DONE: SUCCESS,
    ExitStatus.IO_ERROR: CONNECTION_ERROR,
    ExitStatus.LOGIN_FAILURE: LOGIN_FAILED,
    ExitStatus.EXCEPTION: REMOTE_EXCEPTION,
}


def status_for_exit(exit_status: ExitStatus) -> int:
    return EXIT_STATUS_CODES[exit_status]


class StatusCallback:
    """No-op base; override what you care about."""

    def sync_mailbox_list_status(self, account_id, status_code, progress):
        pass

    def sync_mailbox_status(self, mailbox_id, status_code, progress):
        pass

    def send_message_status(self, message_id, subject, status_code, progress):
        pass

    def load_attachment_status(self, message_id, attachment_id, status_code, progress):
        pass


class LoggingStatusCallback(StatusCallback):
    def sync_mailbox_list_status(self, account_id, status_code, progress):
        logger.info(f"Folder list account={account_id} status={status_code} progress={progress}")

    def sync_mailbox_status(self, mailbox_id, status_code, progress):
        logger.info(f"Mailbox {mailbox_id} status={status_code} progress={progress}")

    def send_message_status(self, message_id, subject, status_code, progress):
        logger.info(f"Send {message_id} '{subject}' status={status_code} progress={progress}")

    def load_attachment_status(self, message_id, attachment_id, status_code, progress):
        logger.info(f"Attachment {attachment_id} of {message_id} status={status_code} progress={progress}")


class RecordingStatusCallback(StatusCallback):
    """Keeps every notification as (kind, entity_id, status_code, progress)."""

    def __init__(self):
        self.calls: List[Tuple[str, object, int, int]] = []

    def sync_mailbox_list_status(self, account_id, status_code, progress):
        self.calls.append(("mailbox_list", account_id, status_code, progress))

    def sync_mailbox_status(self, mailbox_id, status_code, progress):
        self.calls.append(("mailbox", mailbox_id, status_code, progress))

    def send_message_status(self, message_id, subject, status_code, progress):
        self.calls.append(("send", message_id, status_code, progress))

    def load_attachment_status(self, message_id, attachment_id, status_code, progress):
        self.calls.append(("attachment", attachment_id, status_code, progress))

    def of_kind(self, kind):
        return [c for c in self.calls if c[0] == kind]
