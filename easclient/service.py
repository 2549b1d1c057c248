"""
Sync service: one unit of work per mailbox, driven by the mailbox's role.

  account mailbox -> OPTIONS (first run) + FolderSync
  outbox          -> send everything pending
  anything else   -> queued attachments, Sync rounds, then (push mailboxes) Ping and repeat

Failures are mapped to an ExitStatus, reported through the callback and re-raised;
nothing here retries on its own.  stop() may be called from any thread.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

from .attachments import AttachmentLoader, PartRequestQueue
from .commands import build_folder_sync_request
from .config import settings as default_settings
from .errors import AuthFailure, EasError, StaleFolderList, TransientIoFailure
from .models import Account, Collection, ExitStatus, FolderSyncResult, MailboxRole, PartRequest, SYNC_PUSH
from .outbox import OutboxSender
from .parsers import FolderSyncParser
from .ping import PingScheduler
from .state_machine import SyncEngine
from .status import (
    CONNECTION_ERROR,
    IN_PROGRESS,
    LOGIN_FAILED,
    REMOTE_EXCEPTION,
    StatusCallback,
    SUCCESS,
    status_for_exit,
)
from .transport import EasTransport

logger = logging.getLogger(__name__)

# Pings that reported changes the following Sync never found, before push is given up
MAX_PING_FAILURES = 2
# Minutes between syncs once push has been given up
PING_FALLBACK_INBOX = 5
PING_FALLBACK_PIM = 30


class SyncUnit(ABC):
    """A runnable piece of sync work that can be stopped from another thread."""

    @abstractmethod
    def run(self):
        pass

    @abstractmethod
    def stop(self):
        pass

    @property
    @abstractmethod
    def stopped(self) -> bool:
        pass


def exit_status_for(error: BaseException) -> ExitStatus:
    if isinstance(error, AuthFailure):
        return ExitStatus.LOGIN_FAILURE
    if isinstance(error, (TransientIoFailure, OSError)):
        return ExitStatus.IO_ERROR
    return ExitStatus.EXCEPTION


class EasSyncService(SyncUnit):
    def __init__(self, account: Account, mailbox: Collection, store, transport: Optional[EasTransport] = None,
                 callback: Optional[StatusCallback] = None, part_queue: Optional[PartRequestQueue] = None,
                 settings=default_settings):
        self.account = account
        self.mailbox = mailbox
        self.store = store
        self.settings = settings
        self.transport = transport or EasTransport.for_account(account, settings=settings)
        self.callback = callback or StatusCallback()
        self.part_queue = part_queue or PartRequestQueue()
        self.stop_event = threading.Event()
        self.engine = SyncEngine(self.transport, store, account, self.stop_event, settings)
        self.attachments = AttachmentLoader(self.transport, store, self.part_queue, self.callback,
                                            settings=settings)
        self.scheduler: Optional[PingScheduler] = None
        self.exit_status: Optional[ExitStatus] = None

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    @property
    def is_push(self) -> bool:
        return self.mailbox.sync_frequency == SYNC_PUSH

    def run(self):
        role = self.mailbox.role
        try:
            if role == MailboxRole.ACCOUNT:
                self.sync_folders()
            elif role == MailboxRole.OUTBOX:
                OutboxSender(self.transport, self.store, self.callback, settings=self.settings).run(
                    self.mailbox.id, self.stop_event
                )
            else:
                self.sync_mailbox()
        except Exception as e:
            self._fail(e)
            raise
        self.exit_status = ExitStatus.DONE

    def _fail(self, error: BaseException):
        self.exit_status = exit_status_for(error)
        status = status_for_exit(self.exit_status)
        logger.error(f"Mailbox {self.mailbox.server_id} ({self.mailbox.role.value}) failed: {error}")
        if self.mailbox.role == MailboxRole.ACCOUNT:
            self.callback.sync_mailbox_list_status(self.account.id, status, 0)
        elif self.mailbox.role != MailboxRole.OUTBOX:
            self.callback.sync_mailbox_status(self.mailbox.id, status, 0)

    # ---------- account mailbox ----------

    def sync_folders(self) -> FolderSyncResult:
        self.callback.sync_mailbox_list_status(self.account.id, IN_PROGRESS, 0)
        version = self.engine.negotiate()
        if self.account.id is not None:
            self.store.save_protocol_version(self.account.id, version)
        result = self.engine.folder_sync()
        self.callback.sync_mailbox_list_status(self.account.id, SUCCESS, 100)
        return result

    # ---------- mail folders ----------

    def sync_mailbox(self):
        self.engine.negotiate()
        pinged = False
        ping_failures = 0
        while not self.stopped:
            self.attachments.process_queue(self.stop_event)
            self.callback.sync_mailbox_status(self.mailbox.id, IN_PROGRESS, 0)
            results = self.engine.sync(self.mailbox)
            self.callback.sync_mailbox_status(self.mailbox.id, SUCCESS, 100)
            if pinged:
                found = sum(len(r.added) + len(r.changed) + len(r.deleted_ids) for r in results)
                ping_failures = ping_failures + 1 if found == 0 else 0
                if ping_failures > MAX_PING_FAILURES:
                    self.push_fallback()
            if not self.is_push or self.stopped:
                break
            pinged = self.wait_for_push()

    def wait_for_push(self) -> bool:
        """Ping until something changes; True when the ping named this mailbox."""
        if self.scheduler is None:
            self.scheduler = PingScheduler(self.transport.clone(), self.part_queue, settings=self.settings)
        collections = self.store.push_collections(self.account.id) or [self.mailbox]
        try:
            result = self.scheduler.wait_for_changes(collections, self.stop_event)
        except StaleFolderList:
            logger.info("Ping reports a stale folder list; running FolderSync")
            self.engine.folder_sync()
            return False
        return bool(result and result.has_changes and self.mailbox.server_id in result.changed_folders)

    def push_fallback(self):
        """Stop pushing: the server keeps announcing changes that Sync does not find."""
        if self.mailbox.role == MailboxRole.INBOX:
            frequency = PING_FALLBACK_INBOX
            self.store.set_sync_frequency(self.account.id, frequency)
        else:
            frequency = PING_FALLBACK_PIM
            self.store.set_sync_frequency(self.account.id, frequency, mailbox_id=self.mailbox.id)
        self.mailbox.sync_frequency = frequency
        logger.error(f"Push for {self.mailbox.server_id} keeps failing; syncing every {frequency} minutes")

    # ---------- attachments ----------

    def add_part_request(self, request: PartRequest):
        """Queue an attachment download and wake a waiting Ping so it runs promptly."""
        self.part_queue.add(request)
        if self.scheduler is not None:
            self.scheduler.cancel()

    def cancel_part_request(self, owner_entity_id, location) -> Optional[PartRequest]:
        return self.part_queue.cancel(owner_entity_id, location)

    # ---------- stop ----------

    def stop(self):
        """Safe from any thread and any number of times."""
        if self.stop_event.is_set():
            return
        logger.info(f"Stopping sync of {self.mailbox.server_id}")
        self.stop_event.set()
        if self.scheduler is not None:
            self.scheduler.cancel()
        self.transport.abort()


def validate_account(host, username, password, device_id, use_ssl=True, trust_all_certs=False,
                     transport: Optional[EasTransport] = None, settings=default_settings) -> int:
    """
    Check credentials and reachability: OPTIONS, then a FolderSync from key "0".
    Nothing is stored.  Returns a status code (SUCCESS, LOGIN_FAILED, CONNECTION_ERROR
    or REMOTE_EXCEPTION).
    """
    transport = transport or EasTransport(host, username, password, device_id, use_ssl=use_ssl,
                                          trust_all_certs=trust_all_certs, settings=settings)
    try:
        transport.options()
        with transport.send_command("FolderSync", build_folder_sync_request("0")) as resp:
            if resp.is_auth_error:
                return LOGIN_FAILED
            if resp.status_code != 200:
                logger.warning(f"Validation FolderSync returned HTTP {resp.status_code}")
                return CONNECTION_ERROR
            data = transport.read_body(resp)
        result = FolderSyncParser(data).parse()
    except AuthFailure:
        return LOGIN_FAILED
    except TransientIoFailure as e:
        logger.warning(f"Validation of {username}@{host} failed: {e}")
        return CONNECTION_ERROR
    except EasError as e:
        logger.warning(f"Validation of {username}@{host}: bad response: {e}")
        return REMOTE_EXCEPTION
    if not result.ok:
        logger.warning(f"Validation FolderSync status {result.status_code}")
        return REMOTE_EXCEPTION
    return SUCCESS
