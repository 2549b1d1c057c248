"""
transport.py - HTTP side of Exchange ActiveSync.

Every command is a POST to ``/Microsoft-Server-ActiveSync?Cmd=<cmd>&User=..&DeviceId=..
&DeviceType=..`` with Basic auth and the negotiated ``MS-ASProtocolVersion``.  Bodies are
WBXML except for SendMail/SmartReply/SmartForward, which carry raw RFC 822.

Responses are streamed; ``read_body`` reads exactly Content-Length bytes and refuses
chunked framing, or a body with no length at all, with UnsupportedFraming.
"""

from __future__ import annotations

import base64
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
from urllib.parse import quote

import requests
import urllib3

from .config import settings as default_settings
from .errors import AuthFailure, TransientIoFailure, UnsupportedFraming
from .http_adapter import EasHTTPAdapter, abort_inflight, release_inflight
from .logging_config import log_wire

logger = logging.getLogger(__name__)

ENDPOINT = "/Microsoft-Server-ActiveSync"
WBXML_CONTENT_TYPE = "application/vnd.ms-sync.wbxml"
MIME_CONTENT_TYPE = "message/rfc822"
MIME_COMMANDS = ("SendMail", "SmartReply", "SmartForward")

LEGACY_PROTOCOL_VERSION = "2.5"
SUPPORTED_PROTOCOL_VERSIONS = ("2.5", "12.0", "12.1")

AUTH_ERROR_CODES = (401, 403)


def is_auth_error(status_code: int) -> bool:
    return status_code in AUTH_ERROR_CODES


def _version_key(version: str):
    try:
        return tuple(int(p) for p in version.split("."))
    except ValueError:
        return (0,)


def choose_protocol_version(header: Optional[str]) -> str:
    """Pick the highest version we support from ``MS-ASProtocolVersions``."""
    if not header:
        return LEGACY_PROTOCOL_VERSION
    offered = [v.strip() for v in header.split(",") if v.strip()]
    usable = [v for v in offered if v in SUPPORTED_PROTOCOL_VERSIONS]
    if not usable:
        logger.warning(f"Server offers no supported protocol version ({header}); using {LEGACY_PROTOCOL_VERSION}")
        return LEGACY_PROTOCOL_VERSION
    return max(usable, key=_version_key)


def new_session() -> requests.Session:
    session = requests.Session()
    adapter = EasHTTPAdapter()
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    # bodies are read by length; let the server send them unencoded
    session.headers.pop("Accept-Encoding", None)
    return session


@dataclass
class EasResponse:
    status_code: int
    headers: Dict[str, str]
    raw: object
    command: str = ""
    _transport: Optional["EasTransport"] = field(default=None, repr=False)
    _response: Optional[requests.Response] = field(default=None, repr=False)

    @property
    def is_chunked(self) -> bool:
        return "chunked" in (self.headers.get("Transfer-Encoding") or "").lower()

    @property
    def content_length(self) -> Optional[int]:
        value = self.headers.get("Content-Length")
        return int(value) if value not in (None, "") else None

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type") or ""

    @property
    def is_auth_error(self) -> bool:
        return is_auth_error(self.status_code)

    def close(self):
        if self._response is not None:
            self._response.close()
        if self._transport is not None:
            self._transport._release(self)
            self._transport = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class EasTransport:
    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        device_id: str,
        device_type: Optional[str] = None,
        use_ssl: bool = True,
        trust_all_certs: bool = False,
        protocol_version: Optional[str] = None,
        session: Optional[requests.Session] = None,
        settings=default_settings,
    ):
        self.host = host
        self.username = username
        self.device_id = device_id
        self.device_type = device_type or settings.DEVICE_TYPE
        self.use_ssl = use_ssl
        self.trust_all_certs = trust_all_certs
        self.protocol_version = protocol_version or settings.PROTOCOL_VERSION
        self.protocol_commands: List[str] = []
        self.settings = settings
        self.session = session or new_session()
        self._password = password
        self._auth = "Basic " + base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        self._lock = threading.Lock()
        self._active_thread: Optional[int] = None
        self._pending: Optional[EasResponse] = None
        if trust_all_certs:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @classmethod
    def for_account(cls, account, session=None, settings=default_settings) -> "EasTransport":
        return cls(
            account.host,
            account.username,
            account.password,
            account.device_id,
            use_ssl=account.use_ssl,
            trust_all_certs=account.trust_all_certs,
            protocol_version=account.protocol_version,
            session=session,
            settings=settings,
        )

    def clone(self, session: Optional[requests.Session] = None) -> "EasTransport":
        """Same account and protocol version on a separate session (used by Ping)."""
        other = EasTransport(
            self.host,
            self.username,
            self._password,
            self.device_id,
            device_type=self.device_type,
            use_ssl=self.use_ssl,
            trust_all_certs=self.trust_all_certs,
            protocol_version=self.protocol_version,
            session=session,
            settings=self.settings,
        )
        other.protocol_commands = list(self.protocol_commands)
        return other

    # ---------- request construction ----------

    @property
    def base_url(self) -> str:
        scheme = "https" if self.use_ssl else "http"
        return f"{scheme}://{self.host}{ENDPOINT}"

    def make_uri(self, cmd: Optional[str], extra: Optional[Dict[str, str]] = None) -> str:
        if cmd is None:
            return self.base_url
        uri = (
            f"{self.base_url}?Cmd={cmd}&User={quote(self.username, safe='')}"
            f"&DeviceId={quote(self.device_id, safe='')}&DeviceType={quote(self.device_type, safe='')}"
        )
        for key, value in (extra or {}).items():
            uri += f"&{key}={quote(str(value), safe='')}"
        return uri

    def make_headers(self, content_type: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": self._auth,
            "MS-ASProtocolVersion": self.protocol_version,
            "Connection": "keep-alive",
            "User-Agent": f"{self.device_type}/{self.settings.CLIENT_VERSION}",
        }
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def _timeout(self, read_timeout: Optional[float]):
        return (self.settings.CONNECT_TIMEOUT, read_timeout or self.settings.COMMAND_TIMEOUT)

    # ---------- commands ----------

    def options(self) -> str:
        """Discover the server's protocol versions; returns the version now in use."""
        try:
            resp = self.session.options(
                self.base_url,
                headers=self.make_headers(),
                timeout=self._timeout(None),
                verify=not self.trust_all_certs,
            )
        except requests.RequestException as e:
            raise TransientIoFailure(f"OPTIONS failed: {e}") from e
        try:
            if is_auth_error(resp.status_code):
                raise AuthFailure(resp.status_code, "OPTIONS")
            if resp.status_code != 200:
                raise TransientIoFailure(f"OPTIONS returned HTTP {resp.status_code}", resp.status_code)
            versions = resp.headers.get("MS-ASProtocolVersions")
            commands = resp.headers.get("MS-ASProtocolCommands") or ""
        finally:
            resp.close()
        self.protocol_commands = [c.strip() for c in commands.split(",") if c.strip()]
        self.protocol_version = choose_protocol_version(versions)
        logger.info(f"Server versions: {versions or '(none)'}; using {self.protocol_version}")
        return self.protocol_version

    def send_command(
        self,
        cmd: str,
        body: bytes = b"",
        timeout: Optional[float] = None,
        extra: Optional[Dict[str, str]] = None,
        content_type: Optional[str] = None,
    ) -> EasResponse:
        if content_type is None:
            content_type = MIME_CONTENT_TYPE if cmd in MIME_COMMANDS else WBXML_CONTENT_TYPE
        if content_type == WBXML_CONTENT_TYPE:
            log_wire(">>", cmd, body)
        uri = self.make_uri(cmd, extra)
        logger.debug(f"POST {cmd} ({len(body)} bytes)")
        with self._lock:
            self._active_thread = threading.get_ident()
        try:
            resp = self.session.post(
                uri,
                data=body,
                headers=self.make_headers(content_type),
                timeout=self._timeout(timeout),
                stream=True,
                verify=not self.trust_all_certs,
            )
        except requests.RequestException as e:
            self._release(None)
            raise TransientIoFailure(f"{cmd} failed: {e}") from e
        response = EasResponse(
            resp.status_code, resp.headers, resp.raw, cmd, _transport=self, _response=resp
        )
        with self._lock:
            self._pending = response
        if resp.status_code != 200:
            logger.warning(f"{cmd} returned HTTP {resp.status_code}")
        return response

    def read_body(self, response: EasResponse) -> bytes:
        if response.is_chunked:
            raise UnsupportedFraming(f"{response.command} response uses chunked transfer encoding")
        length = response.content_length
        if length is None:
            # neither Content-Length nor chunked: the body cannot be delimited
            raise UnsupportedFraming(f"{response.command} response has no Content-Length")
        if length == 0:
            return b""
        data = bytearray()
        for chunk in self.iter_body(response, length, length):
            data.extend(chunk)
        if response.content_type.startswith(WBXML_CONTENT_TYPE):
            log_wire("<<", response.command, bytes(data))
        return bytes(data)

    def iter_body(self, response: EasResponse, length: int, chunk_size: int) -> Iterable[bytes]:
        """Yield the body in reads of at most ``chunk_size``; short reads are accumulated."""
        remaining = length
        while remaining > 0:
            try:
                chunk = response.raw.read(min(chunk_size, remaining))
            except (OSError, ValueError, urllib3.exceptions.HTTPError) as e:
                raise TransientIoFailure(
                    f"{response.command} body read failed after {length - remaining}/{length} bytes: {e}"
                ) from e
            if not chunk:
                raise TransientIoFailure(
                    f"{response.command} connection closed after {length - remaining}/{length} bytes"
                )
            remaining -= len(chunk)
            yield chunk

    # ---------- stop ----------

    def abort(self):
        """Abort whatever request is in flight on this transport (called from another thread)."""
        with self._lock:
            thread_id = self._active_thread
        if thread_id is not None:
            abort_inflight(thread_id)

    def _release(self, response: Optional[EasResponse]):
        with self._lock:
            if response is None or self._pending is response:
                self._pending = None
                if self._active_thread is not None:
                    release_inflight(self._active_thread)
                self._active_thread = None
