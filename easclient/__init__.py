"""
Exchange ActiveSync client: WBXML codec, per-folder sync engine, push (Ping),
outbox and attachment download over HTTP.
"""

from .errors import AuthFailure, EasError, MalformedStream, ProtocolStatusError, TransientIoFailure
from .service import EasSyncService, SyncUnit, validate_account
from .store import SqlSyncStore, SyncStore
from .transport import EasTransport

__all__ = [
    "AuthFailure",
    "EasError",
    "EasSyncService",
    "EasTransport",
    "MalformedStream",
    "ProtocolStatusError",
    "SqlSyncStore",
    "SyncStore",
    "SyncUnit",
    "TransientIoFailure",
    "validate_account",
]
