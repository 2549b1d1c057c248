"""
Outbox: push pending local messages to the server.

Per message: IN_PROGRESS callback, RFC 822 into a temp file, then SendMail (or
SmartReply/SmartForward when the original's server ids can be resolved) with the long
send timeout.

  200        -> local copy deleted, SUCCESS
  401/403    -> marked send-failed, LOGIN_FAILED, rest of the batch abandoned
  other HTTP -> marked send-failed, reported SUCCESS so the batch moves on
  IO error   -> CONNECTION_ERROR, raised to the caller

The temp file is removed on every path.
"""

import logging
import os
import tempfile
from typing import List, Optional, Tuple

import requests

from .config import settings as default_settings
from .errors import TransientIoFailure
from .models import SendOutcome
from .rfc822 import write_message
from .status import CONNECTION_ERROR, IN_PROGRESS, LOGIN_FAILED, MESSAGE_NOT_FOUND, StatusCallback, SUCCESS

logger = logging.getLogger(__name__)


class OutboxSender:
    def __init__(self, transport, store, callback: Optional[StatusCallback] = None, cache_dir=None,
                 settings=default_settings):
        self.transport = transport
        self.store = store
        self.callback = callback or StatusCallback()
        self.cache_dir = cache_dir or settings.CACHE_DIR
        self.settings = settings

    def run(self, outbox_id, stop_event=None) -> List[Tuple[int, SendOutcome]]:
        """Send everything pending in the outbox; stops early on an auth failure."""
        outcomes = []
        for message_id in self.store.pending_outbox(outbox_id):
            if stop_event is not None and stop_event.is_set():
                break
            outcome = self.send_message(message_id)
            outcomes.append((message_id, outcome))
            if outcome.aborts_batch:
                logger.warning(f"Outbox {outbox_id}: login failed, abandoning remaining messages")
                break
        return outcomes

    def smart_send_target(self, message) -> Optional[Tuple[str, str, str]]:
        """(command, item id, collection id) for a reply/forward whose original is known."""
        if not (message.is_reply or message.is_forward) or message.source_message_id is None:
            return None
        source = self.store.lookup_field("message", message.source_message_id, ["server_id", "mailbox_id"])
        if not source or not source[0]:
            return None
        item_id, mailbox_id = source
        mailbox = self.store.lookup_field("mailbox", mailbox_id, ["server_id"])
        if not mailbox or not mailbox[0]:
            return None
        return ("SmartReply" if message.is_reply else "SmartForward", item_id, mailbox[0])

    def send_message(self, message_id) -> SendOutcome:
        message = self.store.load_outgoing(message_id)
        if message is None:
            self.callback.send_message_status(message_id, "", MESSAGE_NOT_FOUND, 0)
            return SendOutcome.permanent_failure(0)
        subject = message.subject
        self.callback.send_message_status(message_id, subject, IN_PROGRESS, 0)

        fd, tmp_path = tempfile.mkstemp(prefix="eas_", suffix=".tmp", dir=self.cache_dir)
        try:
            target = self.smart_send_target(message)
            with os.fdopen(fd, "wb") as out:
                write_message(message, out, append_quoted=target is None)
            with open(tmp_path, "rb") as f:
                body = f.read()

            if target is None:
                cmd, extra = "SendMail", {"SaveInSent": "T"}
            else:
                cmd, item_id, collection_id = target
                extra = {"ItemId": item_id, "CollectionId": collection_id, "SaveInSent": "T"}
            logger.info(f"Sending message {message_id} via {cmd} ({len(body)} bytes)")

            with self.transport.send_command(cmd, body, timeout=self.settings.SEND_MAIL_TIMEOUT, extra=extra) as resp:
                code = resp.status_code

            if code == 200:
                self.store.delete_message(message_id)
                self.callback.send_message_status(message_id, subject, SUCCESS, 100)
                return SendOutcome.success()

            self.store.mark_send_failed(message_id)
            if resp.is_auth_error:
                logger.warning(f"Message {message_id}: {cmd} rejected, HTTP {code}")
                self.callback.send_message_status(message_id, subject, LOGIN_FAILED, 0)
                return SendOutcome.auth_failure(code)
            logger.warning(f"Message {message_id}: {cmd} failed with HTTP {code}; marked as failed")
            self.callback.send_message_status(message_id, subject, SUCCESS, 100)
            return SendOutcome.permanent_failure(code)
        except (TransientIoFailure, OSError, requests.RequestException) as e:
            logger.error(f"Message {message_id}: send failed: {e}")
            self.callback.send_message_status(message_id, subject, CONNECTION_ERROR, 0)
            if isinstance(e, TransientIoFailure):
                raise
            raise TransientIoFailure(f"sending message {message_id} failed: {e}") from e
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

