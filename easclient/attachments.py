"""
Attachment fetching: the part-request queue and the GetAttachment download loop.

PartRequestQueue is shared between the service thread and callers asking for
attachments.  The queue itself, the request currently being downloaded and the pending
ping service all sit behind one lock, so "find and remove" and "cancel whatever is in
flight" are atomic with respect to each other.
"""

import logging
import mimetypes
import os
import threading
from typing import List, Optional

from .config import settings as default_settings
from .errors import AuthFailure, TransientIoFailure, UnsupportedFraming
from .models import PartRequest
from .status import ATTACHMENT_NOT_FOUND, CANCELLED, IN_PROGRESS, StatusCallback, SUCCESS

logger = logging.getLogger(__name__)

CHUNK_SIZE = 16 * 1024


class PartRequestQueue:
    def __init__(self):
        self._lock = threading.RLock()
        self._requests: List[PartRequest] = []
        self._in_flight: Optional[PartRequest] = None
        self._pending_ping = None

    def __len__(self):
        with self._lock:
            return len(self._requests)

    def add(self, request: PartRequest):
        with self._lock:
            self._requests.append(request)

    def remove(self, request: PartRequest) -> bool:
        with self._lock:
            for i, queued in enumerate(self._requests):
                if queued is request:
                    del self._requests[i]
                    return True
            return False

    def find(self, owner_entity_id, location) -> Optional[PartRequest]:
        with self._lock:
            for request in self._requests:
                if request.owner_entity_id == owner_entity_id and request.location == location:
                    return request
            if self._matches(self._in_flight, owner_entity_id, location):
                return self._in_flight
            return None

    def has(self, owner_entity_id, location) -> bool:
        return self.find(owner_entity_id, location) is not None

    def pop_next(self) -> Optional[PartRequest]:
        with self._lock:
            if not self._requests:
                return None
            return self._requests.pop(0)

    def cancel(self, owner_entity_id, location) -> Optional[PartRequest]:
        """Drop a queued request or flag the in-flight one; the downloader discards partial data."""
        with self._lock:
            for i, request in enumerate(self._requests):
                if self._matches(request, owner_entity_id, location):
                    del self._requests[i]
                    request.cancelled.set()
                    return request
            request = self._in_flight
            if not self._matches(request, owner_entity_id, location):
                return None
            request.cancelled.set()
            stream = request.stream
        if stream is not None:
            _close_quietly(stream)
        return request

    # ---------- in-flight markers ----------

    @property
    def in_flight(self) -> Optional[PartRequest]:
        with self._lock:
            return self._in_flight

    def begin(self, request: PartRequest):
        with self._lock:
            self._in_flight = request

    def attach_stream(self, request: PartRequest, stream) -> bool:
        """Record the stream being read; False when the request was cancelled meanwhile."""
        with self._lock:
            request.stream = stream
            return not request.cancelled.is_set()

    def finish(self, request: PartRequest):
        with self._lock:
            request.stream = None
            if self._in_flight is request:
                self._in_flight = None

    @property
    def pending_ping(self):
        with self._lock:
            return self._pending_ping

    @pending_ping.setter
    def pending_ping(self, service):
        with self._lock:
            self._pending_ping = service

    @staticmethod
    def _matches(request, owner_entity_id, location) -> bool:
        return request is not None and request.owner_entity_id == owner_entity_id and request.location == location


def _close_quietly(stream):
    try:
        stream.close()
    except OSError as e:
        logger.debug(f"Closing cancelled attachment stream: {e}")


class AttachmentLoader:
    def __init__(self, transport, store, queue: PartRequestQueue, callback: Optional[StatusCallback] = None,
                 attachment_dir: Optional[str] = None, settings=default_settings):
        self.transport = transport
        self.store = store
        self.queue = queue
        self.callback = callback or StatusCallback()
        self.attachment_dir = attachment_dir or settings.ATTACHMENT_DIR
        self.chunk_size = CHUNK_SIZE

    def process_queue(self, stop_event: Optional[threading.Event] = None) -> int:
        """Download queued requests one at a time; returns how many completed."""
        done = 0
        while stop_event is None or not stop_event.is_set():
            request = self.queue.pop_next()
            if request is None:
                break
            if self.load(request) == SUCCESS:
                done += 1
        return done

    def destination(self, request: PartRequest) -> str:
        name = os.path.basename(request.file_name) or f"attachment-{request.attachment_id}"
        return os.path.join(self.attachment_dir, str(request.owner_entity_id), name)

    def load(self, request: PartRequest) -> int:
        """Fetch one attachment; returns the status code also reported through the callback."""
        self.queue.begin(request)
        self._status(request, IN_PROGRESS, 0)
        path = self.destination(request)
        try:
            status = self._download(request, path)
        except (TransientIoFailure, AuthFailure) as e:
            self._discard(path)
            if request.cancelled.is_set():
                logger.info(f"Attachment {request.location} cancelled")
                self._status(request, CANCELLED, 0)
                return CANCELLED
            logger.error(f"Attachment {request.location} failed: {e}")
            raise
        except BaseException:
            self._discard(path)
            raise
        finally:
            self.queue.finish(request)
        self._status(request, status, 100 if status == SUCCESS else 0)
        return status

    def _download(self, request: PartRequest, path: str) -> int:
        with self.transport.send_command("GetAttachment", b"", extra={"AttachmentName": request.location}) as resp:
            if resp.is_auth_error:
                raise AuthFailure(resp.status_code, "GetAttachment")
            if resp.status_code != 200:
                logger.warning(f"GetAttachment {request.location}: HTTP {resp.status_code}")
                return ATTACHMENT_NOT_FOUND
            if resp.is_chunked:
                raise UnsupportedFraming(f"GetAttachment {request.location} uses chunked transfer encoding")
            if resp.content_length is None:
                raise UnsupportedFraming(f"GetAttachment {request.location} has no Content-Length")
            if not self.queue.attach_stream(request, resp.raw):
                self._discard(path)
                return CANCELLED

            length = resp.content_length
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as out:
                if length:
                    remaining = length
                    for chunk in self.transport.iter_body(resp, length, self.chunk_size):
                        if request.cancelled.is_set():
                            break
                        out.write(chunk)
                        remaining -= len(chunk)
                        self._progress(request, (length - remaining) * 100 // length)
            if request.cancelled.is_set():
                self._discard(path)
                return CANCELLED

            mime_type = resp.content_type.split(";")[0].strip() or None
            if not mime_type or mime_type == "application/octet-stream":
                mime_type = mimetypes.guess_type(request.file_name)[0] or mime_type
        if request.attachment_id is not None:
            self.store.update_attachment(request.attachment_id, path, mime_type)
        logger.info(f"Attachment {request.file_name or request.location}: {length} bytes -> {path}")
        return SUCCESS

    def _progress(self, request: PartRequest, percent: int):
        if request.progress_sink is not None:
            request.progress_sink(percent)

    def _status(self, request: PartRequest, status: int, progress: int):
        self.callback.load_attachment_status(request.owner_entity_id, request.attachment_id, status, progress)

    @staticmethod
    def _discard(path: str):
        if os.path.exists(path):
            os.remove(path)
