"""
WBXML request bodies for the EAS commands this client issues.

Sync request shape (MS-ASCMD 2.2.2.19):
  Sync > Collections > Collection > Class, SyncKey, CollectionId
      [DeletesAsMoves, GetChanges, WindowSize, Options, Commands]   <- only when SyncKey != "0"
"""

from typing import Iterable, List, Optional

from .models import BODY_TYPE_TEXT, Collection, LocalChange, MoveRequest
from .wbxml_builder import Serializer

INITIAL_SYNC_KEY = "0"


def protocol_at_least(version: str, minimum: str) -> bool:
    def key(v):
        return tuple(int(p) for p in v.split("."))
    return key(version) >= key(minimum)


def build_folder_sync_request(sync_key: str) -> bytes:
    return (
        Serializer()
        .start("FolderHierarchy:FolderSync")
        .data("SyncKey", sync_key or INITIAL_SYNC_KEY)
        .end()
        .done()
    )


def build_sync_request(
    collection: Collection,
    protocol_version: str = "2.5",
    local_changes: Iterable[LocalChange] = (),
    truncation_size: Optional[int] = None,
) -> bytes:
    s = Serializer()
    s.start("Sync").start("Collections").start("Collection")
    s.data("Class", collection.collection_class)
    s.data("SyncKey", collection.sync_key)
    s.data("CollectionId", collection.server_id)
    if collection.sync_key != INITIAL_SYNC_KEY:
        s.tag("DeletesAsMoves")
        s.tag("GetChanges")
        s.data("WindowSize", str(collection.window_size))
        body_preference = protocol_at_least(protocol_version, "12.0")
        if collection.filter_type is not None or body_preference:
            s.start("Options")
            if collection.filter_type is not None:
                s.data("FilterType", collection.filter_type)
            if body_preference:
                s.start("AirSyncBase:BodyPreference")
                s.data("Type", str(BODY_TYPE_TEXT))
                if truncation_size:
                    s.data("TruncationSize", str(truncation_size))
                s.end()
            s.end()
        if collection.collection_class == "Email":
            _write_local_changes(s, list(local_changes))
    s.end().end().end()
    return s.done()


def _write_local_changes(s: Serializer, changes: List[LocalChange]):
    if not changes:
        return
    s.start("Commands")
    for change in changes:
        if change.kind == "delete":
            s.start("Delete").data("ServerId", change.server_id).end()
        elif change.kind == "read":
            s.start("Change").data("ServerId", change.server_id)
            s.start("ApplicationData").data("Email:Read", "1" if change.flag_read else "0").end()
            s.end()
    s.end()


def build_ping_request(collections: Iterable[Collection], heartbeat: int) -> bytes:
    s = Serializer().start("Ping:Ping").data("HeartbeatInterval", str(heartbeat))
    s.start("Folders")
    for collection in collections:
        s.start("Folder").data("Id", collection.server_id).data("Class", collection.collection_class).end()
    s.end().end()
    return s.done()


def build_move_items_request(moves: Iterable[MoveRequest]) -> bytes:
    s = Serializer().start("Move:MoveItems")
    for move in moves:
        s.start("Move")
        s.data("SrcMsgId", move.server_id)
        s.data("SrcFldId", move.src_folder_id)
        s.data("DstFldId", move.dst_folder_id)
        s.end()
    s.end()
    return s.done()


def build_item_estimate_request(collections: Iterable[Collection]) -> bytes:
    s = Serializer().start("ItemEstimate:GetItemEstimate").start("Collections")
    for collection in collections:
        s.start("Collection")
        s.data("Class", collection.collection_class)
        s.data("CollectionId", collection.server_id)
        if collection.filter_type is not None:
            s.data("AirSync:FilterType", collection.filter_type)
        s.data("AirSync:SyncKey", collection.sync_key)
        s.end()
    s.end().end()
    return s.done()
