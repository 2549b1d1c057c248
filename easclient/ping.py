"""
Push: the Ping long-poll and its hand-off with the foreground sync loop.

The foreground loop arms the WakeGate (Idle -> Active), starts a PingService on its own
thread and waits on the gate for at most heartbeat + margin seconds.  The gate opens when
the ping returns (changes, timeout or error) or when the service is stopped.  Whatever
woke us, a ping that is still running gets cancelled before the next Sync.

Each arm() hands out a new generation number; a ping can only wake the gate it was
started for, so a late reply from a cancelled ping never wakes a later wait.
"""

import logging
import threading
from enum import Enum
from typing import List, Optional

from .commands import build_ping_request
from .config import settings as default_settings
from .errors import AuthFailure, EasError, ProtocolStatusError, StaleFolderList, TransientIoFailure
from .models import Collection, PingResult
from .parsers import PingParser
from .parsers.ping import ERROR_STATUSES, STATUS_HEARTBEAT_OUT_OF_RANGE

logger = logging.getLogger(__name__)


class GateState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


class WakeGate:
    def __init__(self):
        self._cond = threading.Condition()
        self._state = GateState.IDLE
        self._generation = 0
        self._signalled = False

    @property
    def state(self) -> GateState:
        with self._cond:
            return self._state

    @property
    def generation(self) -> int:
        with self._cond:
            return self._generation

    def arm(self) -> int:
        with self._cond:
            self._generation += 1
            self._state = GateState.ACTIVE
            self._signalled = False
            return self._generation

    def notify(self, generation: Optional[int] = None) -> bool:
        """Open the gate; with ``generation``, only if it is still the current one."""
        with self._cond:
            if generation is not None and generation != self._generation:
                return False
            self._signalled = True
            self._cond.notify_all()
            return True

    def wait(self, timeout: float) -> bool:
        """Block until notified or ``timeout``; True when notified."""
        with self._cond:
            woke = self._cond.wait_for(lambda: self._signalled, timeout)
            self._state = GateState.IDLE
            self._signalled = False
            return woke


class PingService:
    """One Ping round trip, run on a background thread."""

    def __init__(self, transport, collections: List[Collection], heartbeat: int, gate: WakeGate,
                 generation: int, settings=default_settings):
        self.transport = transport
        self.collections = collections
        self.heartbeat = heartbeat
        self.gate = gate
        self.generation = generation
        self.settings = settings
        self.result: Optional[PingResult] = None
        self.error: Optional[EasError] = None
        self._cancelled = threading.Event()
        self._finished = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def run(self):
        try:
            self.result = self.ping()
        except EasError as e:
            if self.cancelled:
                logger.debug(f"Ping {self.generation} ended by cancel: {e}")
            else:
                logger.warning(f"Ping {self.generation} failed: {e}")
                self.error = e
        finally:
            self._finished.set()
            self.gate.notify(self.generation)

    def ping(self) -> PingResult:
        if self.cancelled:
            raise TransientIoFailure(f"Ping {self.generation} cancelled before it was sent")
        body = build_ping_request(self.collections, self.heartbeat)
        logger.debug(f"Ping {self.generation}: heartbeat {self.heartbeat}s, {len(self.collections)} folders")
        with self.transport.send_command("Ping", body, timeout=self.settings.PING_COMMAND_TIMEOUT) as resp:
            if resp.is_auth_error:
                raise AuthFailure(resp.status_code, "Ping")
            if resp.status_code != 200:
                raise TransientIoFailure(f"Ping returned HTTP {resp.status_code}", resp.status_code)
            data = self.transport.read_body(resp)
        if not data:
            raise TransientIoFailure("Ping returned an empty body")
        return PingParser(data).parse()

    def cancel(self) -> bool:
        """Signal and abort the in-flight request; a no-op once the ping has finished."""
        if self._finished.is_set() or self._cancelled.is_set():
            return False
        self._cancelled.set()
        self.transport.abort()
        return True


class PingScheduler:
    def __init__(self, transport, part_queue=None, gate: Optional[WakeGate] = None,
                 heartbeat: Optional[int] = None, settings=default_settings):
        self.transport = transport
        self.part_queue = part_queue
        self.gate = gate or WakeGate()
        self.settings = settings
        self.heartbeat = heartbeat or settings.PING_HEARTBEAT
        self.join_timeout = 5.0
        self._service: Optional[PingService] = None
        self._lock = threading.Lock()

    @property
    def wait_timeout(self) -> float:
        return self.heartbeat + self.settings.PING_WAIT_MARGIN

    @property
    def pending(self) -> Optional[PingService]:
        if self.part_queue is not None:
            return self.part_queue.pending_ping
        with self._lock:
            return self._service

    def _set_pending(self, service: Optional[PingService]):
        if self.part_queue is not None:
            self.part_queue.pending_ping = service
        else:
            with self._lock:
                self._service = service

    def wait_for_changes(self, collections: List[Collection], stop_event: Optional[threading.Event] = None
                         ) -> Optional[PingResult]:
        """Ping on a background thread and wait on the gate; returns the ping's result, if any."""
        if stop_event is not None and stop_event.is_set():
            return None
        generation = self.gate.arm()
        if stop_event is not None and stop_event.is_set():
            # stopped between the check and arm(); leave the gate idle
            self.gate.wait(0)
            return None
        service = PingService(self.transport, collections, self.heartbeat, self.gate, generation, self.settings)
        self._set_pending(service)
        thread = threading.Thread(target=service.run, name=f"EasPing-{generation}", daemon=True)
        thread.start()
        try:
            woke = self.gate.wait(self.wait_timeout)
            if not woke:
                logger.warning(f"Ping {generation}: no answer within {self.wait_timeout}s")
            if service.cancel():
                logger.debug(f"Ping {generation} cancelled")
            thread.join(self.join_timeout)
            if thread.is_alive():
                logger.warning(f"Ping {generation} still blocked after {self.join_timeout}s; "
                               f"it ends with its read timeout")
        finally:
            self._set_pending(None)

        if service.error is not None:
            raise service.error
        result = service.result
        if result is not None and result.status == STATUS_HEARTBEAT_OUT_OF_RANGE and result.heartbeat_interval:
            logger.info(f"Server wants heartbeat {result.heartbeat_interval}s (was {self.heartbeat}s)")
            self.heartbeat = result.heartbeat_interval
        if result is not None and result.stale_folder_list:
            raise StaleFolderList(result.status, "Ping", "folder hierarchy changed on the server")
        if result is not None and result.status in ERROR_STATUSES:
            raise ProtocolStatusError(result.status, "Ping")
        return result

    def cancel(self):
        """Wake the waiting loop and cancel a pending ping; safe to call any number of times."""
        service = self.pending
        if service is not None:
            service.cancel()
        self.gate.notify()
