"""Exception taxonomy for the EAS client."""

from __future__ import annotations

from typing import Optional


class EasError(Exception):
    """Base class for all client errors."""


class MalformedStream(EasError):
    """WBXML corruption: bad token, non-digit inline integer, missing END."""


class EndOfStream(MalformedStream):
    """Input ended in the middle of a token (as opposed to a clean document end)."""


class ProtocolStatusError(EasError):
    def __init__(self, status: int, command: str = "", message: Optional[str] = None):
        self.status = status
        self.command = command
        super().__init__(message or f"{command or 'command'} failed with status {status}")


class InvalidSyncKey(ProtocolStatusError):
    """Status 3; recovered by the sync engine, never surfaced as a failure."""

    def __init__(self, command: str = "Sync"):
        super().__init__(3, command, "invalid sync key")


class StaleFolderList(ProtocolStatusError):
    """Ping status 4/7: the folder hierarchy must be re-synced."""


class AuthFailure(EasError):
    def __init__(self, http_status: int, command: str = ""):
        self.http_status = http_status
        self.command = command
        super().__init__(f"{command or 'request'} rejected with HTTP {http_status}")


class TransientIoFailure(EasError):
    def __init__(self, message: str, http_status: Optional[int] = None):
        self.http_status = http_status
        super().__init__(message)


class UnsupportedFraming(EasError):
    """Chunked transfer-encoded response bodies are not decoded by this client."""
