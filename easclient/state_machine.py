#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Client-side sync state machine.

Per collection:  UNINITIALIZED ("0") -> INITIAL -> STEADY -> (status 3) UNINITIALIZED

- A request with SyncKey "0" carries no change options (no GetChanges/WindowSize/Options);
  the reply only primes a key, so another round follows straight away.
- Every successful round is applied to the store as one batch together with the new key;
  the key in memory only moves after the store accepted the batch.
- Status 3 (InvalidSyncKey): cached contents are dropped through the store, the key goes
  back to "0" and the loop restarts.  Any other non-1 status aborts the cycle.
- The engine never retries on its own: HTTP/IO failures and protocol errors propagate.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from .commands import (
    INITIAL_SYNC_KEY,
    build_folder_sync_request,
    build_item_estimate_request,
    build_move_items_request,
    build_sync_request,
)
from .config import settings as default_settings
from .errors import AuthFailure, InvalidSyncKey, ProtocolStatusError, TransientIoFailure
from .models import (
    Account,
    Collection,
    CollectionPhase,
    FolderSyncResult,
    MoveRequest,
    MoveResult,
    SyncResult,
)
from .parsers import EmailSyncParser, FolderSyncParser, ItemEstimateParser, MoveItemsParser, PimSyncParser

logger = logging.getLogger(__name__)

STATUS_OK = 1
STATUS_INVALID_SYNC_KEY = 3

# Calendar: events from two weeks back
CALENDAR_FILTER_TYPE = "4"

# Rounds answered with status 3 in a row before we stop trusting the server
MAX_SYNC_KEY_RESETS = 2


class SyncEngine:
    def __init__(self, transport, store, account: Account, stop_event: Optional[threading.Event] = None,
                 settings=default_settings):
        self.transport = transport
        self.store = store
        self.account = account
        self.stop_event = stop_event or threading.Event()
        self.settings = settings
        self._negotiated = False

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    @property
    def protocol_version(self) -> str:
        return self.transport.protocol_version

    # ---------- transport helpers ----------

    def _post(self, cmd: str, body: bytes, timeout=None) -> bytes:
        with self.transport.send_command(cmd, body, timeout=timeout) as resp:
            if resp.is_auth_error:
                raise AuthFailure(resp.status_code, cmd)
            if resp.status_code != 200:
                raise TransientIoFailure(f"{cmd} returned HTTP {resp.status_code}", resp.status_code)
            return self.transport.read_body(resp)

    def negotiate(self) -> str:
        """OPTIONS once per engine; later calls reuse the result."""
        if not self._negotiated:
            version = self.transport.options()
            self.account.protocol_version = version
            self._negotiated = True
        return self.transport.protocol_version

    # ---------- FolderSync ----------

    def folder_sync(self) -> FolderSyncResult:
        body = build_folder_sync_request(self.account.sync_key)
        data = self._post("FolderSync", body)
        result = FolderSyncParser(data).parse()
        if result.status_code != STATUS_OK:
            raise ProtocolStatusError(result.status_code, "FolderSync")
        new_key = result.new_sync_key or self.account.sync_key
        self.store.apply_folder_batch(self.account.id, result.added_folders, new_key, result.deleted_ids)
        self.account.sync_key = new_key
        logger.info(f"FolderSync: {len(result.added_folders)} folders, key {new_key}")
        return result

    # ---------- Sync ----------

    def prepare(self, collection: Collection) -> Collection:
        if collection.collection_class == "Email":
            collection.filter_type = self.account.lookback.filter_type
        elif collection.collection_class == "Calendar":
            collection.filter_type = CALENDAR_FILTER_TYPE
        else:
            collection.filter_type = None
        if collection.sync_key == INITIAL_SYNC_KEY:
            collection.phase = CollectionPhase.UNINITIALIZED
        return collection

    def sync(self, collection: Collection) -> List[SyncResult]:
        """Sync rounds until the server has nothing more (or we are stopped)."""
        self.prepare(collection)
        results = []
        resets = 0
        while not self.stopped:
            result = self.sync_round(collection)
            results.append(result)
            if result.status_code == STATUS_INVALID_SYNC_KEY:
                resets += 1
                if resets > MAX_SYNC_KEY_RESETS:
                    raise InvalidSyncKey("Sync")
            else:
                resets = 0
            if not result.more_available:
                break
        return results

    def sync_round(self, collection: Collection) -> SyncResult:
        old_key = collection.sync_key
        is_email = collection.collection_class == "Email"
        changes = []
        if is_email and old_key != INITIAL_SYNC_KEY:
            changes = self.store.pending_local_changes(collection.id)
        body = build_sync_request(
            collection,
            self.protocol_version,
            changes,
            truncation_size=self.settings.TRUNCATION_SIZE,
        )
        data = self._post("Sync", body)
        if not data:
            # empty reply: nothing changed since old_key
            return SyncResult(new_sync_key=old_key, status_code=STATUS_OK)

        if is_email:
            result = EmailSyncParser(data, old_key).parse()
        else:
            result = PimSyncParser(data, old_key, collection.collection_class).parse()

        if result.status_code == STATUS_INVALID_SYNC_KEY:
            logger.warning(f"Invalid sync key {old_key!r} for {collection.server_id}; resetting")
            self.store.invalidate_collection(collection.id)
            collection.sync_key = INITIAL_SYNC_KEY
            collection.phase = CollectionPhase.UNINITIALIZED
            return result
        if result.status_code != STATUS_OK:
            raise ProtocolStatusError(result.status_code, "Sync")

        new_key = result.new_sync_key or old_key
        apply_batch = self.store.apply_message_batch if is_email else self.store.apply_item_batch
        apply_batch(collection.id, result.added, result.changed, result.deleted_ids, new_key)
        if changes:
            self.store.clear_local_changes([c.id for c in changes])
        collection.sync_key = new_key
        collection.phase = CollectionPhase.INITIAL if old_key == INITIAL_SYNC_KEY else CollectionPhase.STEADY
        logger.info(
            f"Sync {collection.server_id}: +{len(result.added)} ~{len(result.changed)} "
            f"-{len(result.deleted_ids)} key {old_key} -> {new_key}"
            f"{' (more)' if result.more_available else ''}"
        )
        return result

    # ---------- MoveItems / GetItemEstimate ----------

    def move_items(self, moves: List[MoveRequest]) -> List[MoveResult]:
        if not moves:
            return []
        data = self._post("MoveItems", build_move_items_request(moves))
        results = MoveItemsParser(data).parse()
        for move, result in zip(moves, results):
            if result.src_server_id is None:
                result.src_server_id = move.server_id
        return results

    def estimate(self, collection: Collection) -> Optional[int]:
        """Items the next Sync would bring; None when the server cannot say."""
        if collection.sync_key == INITIAL_SYNC_KEY:
            return None
        self.prepare(collection)
        data = self._post("GetItemEstimate", build_item_estimate_request([collection]))
        return ItemEstimateParser(data).parse().get(collection.server_id)
