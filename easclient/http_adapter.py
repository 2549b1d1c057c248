"""
requests adapter with two connection-level hooks:

- SSL_GOVERNOR: one process-wide lock held only while a TLS connection is being
  established, so concurrent services never handshake at the same time but still
  transfer data in parallel.
- In-flight registry: the connection a thread is currently using, so another thread
  can shut its socket down to abort a blocking read (Ping, long Sync bodies).
"""

import logging
import socket
import threading

from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool

logger = logging.getLogger(__name__)

SSL_GOVERNOR = threading.Lock()

_inflight_lock = threading.Lock()
_inflight = {}


def register_inflight(connection, thread_id=None):
    with _inflight_lock:
        _inflight[thread_id or threading.get_ident()] = connection


def release_inflight(thread_id=None):
    with _inflight_lock:
        _inflight.pop(thread_id or threading.get_ident(), None)


def abort_inflight(thread_id):
    """Shut down the socket used by ``thread_id``; True if there was one."""
    with _inflight_lock:
        connection = _inflight.pop(thread_id, None)
    sock = getattr(connection, "sock", None)
    if sock is None:
        return False
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        # already closed by the peer or by the owning thread
        logger.debug(f"Abort of thread {thread_id}: socket shutdown failed: {e}")
        return False
    logger.info(f"Aborted in-flight request of thread {thread_id}")
    return True


class _TrackedConnectionMixin:
    def request(self, *args, **kwargs):
        register_inflight(self)
        return super().request(*args, **kwargs)


class TrackedHTTPConnection(_TrackedConnectionMixin, HTTPConnection):
    pass


class GovernedHTTPSConnection(_TrackedConnectionMixin, HTTPSConnection):
    def connect(self):
        with SSL_GOVERNOR:
            super().connect()


class TrackedHTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = TrackedHTTPConnection


class GovernedHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = GovernedHTTPSConnection


class EasHTTPAdapter(HTTPAdapter):
    def init_poolmanager(self, *args, **kwargs):
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": TrackedHTTPConnectionPool,
            "https": GovernedHTTPSConnectionPool,
        }
