import os

import pytest

from easclient.attachments import AttachmentLoader, PartRequestQueue
from easclient.errors import UnsupportedFraming
from easclient.models import Attachment, Message, PartRequest
from easclient.status import ATTACHMENT_NOT_FOUND, CANCELLED, IN_PROGRESS, RecordingStatusCallback, SUCCESS

from conftest import FakeResponse


@pytest.fixture
def queue():
    return PartRequestQueue()


@pytest.fixture
def callback():
    return RecordingStatusCallback()


@pytest.fixture
def stored_attachment(store, inbox):
    message = Message("m1", subject="With file",
                      attachments=[Attachment("report.pdf", 32768, "5:1:0")])
    store.apply_message_batch(inbox.id, [message], [], [], "k1")
    [loaded] = store.messages(inbox.id)
    message_id = store.message_ids(inbox.id)["m1"]
    return message_id, loaded.attachments[0]


@pytest.fixture
def loader(transport, store, queue, callback, tmp_path):
    return AttachmentLoader(transport, store, queue, callback, attachment_dir=str(tmp_path))


def test_download_reports_progress_per_chunk(loader, session, store, callback, stored_attachment):
    message_id, attachment = stored_attachment
    body = b"x" * 32768
    session.queue(FakeResponse(200, body, content_type="application/pdf"))
    progress = []
    request = PartRequest(message_id, attachment.location, attachment_id=attachment.id,
                          file_name=attachment.file_name, size=attachment.size, progress_sink=progress.append)

    status = loader.load(request)

    assert status == SUCCESS
    assert progress == [50, 100]
    path = loader.destination(request)
    with open(path, "rb") as f:
        assert f.read() == body
    saved = store.load_attachment(attachment.id)
    assert saved.content_uri == path
    assert saved.mime_type == "application/pdf"
    assert "AttachmentName=5%3A1%3A0" in session.posts[0]["url"]
    assert [c[2] for c in callback.of_kind("attachment")] == [IN_PROGRESS, SUCCESS]
    assert loader.queue.in_flight is None


def test_short_reads_still_sum_to_length(loader, session, stored_attachment):
    message_id, attachment = stored_attachment
    session.queue(FakeResponse(200, b"y" * 1000, max_read=300))
    progress = []
    request = PartRequest(message_id, attachment.location, attachment_id=attachment.id,
                          file_name="a.bin", progress_sink=progress.append)

    assert loader.load(request) == SUCCESS
    assert progress == [30, 60, 90, 100]


def test_missing_attachment(loader, session, callback, stored_attachment):
    message_id, attachment = stored_attachment
    session.queue(FakeResponse(500))
    request = PartRequest(message_id, attachment.location, attachment_id=attachment.id, file_name="a.bin")

    assert loader.load(request) == ATTACHMENT_NOT_FOUND
    assert [c[2] for c in callback.of_kind("attachment")] == [IN_PROGRESS, ATTACHMENT_NOT_FOUND]
    assert not os.path.exists(loader.destination(request))


def test_chunked_attachment_is_unsupported(loader, session, stored_attachment):
    message_id, attachment = stored_attachment
    session.queue(FakeResponse(200, b"abc", chunked=True))
    request = PartRequest(message_id, attachment.location, attachment_id=attachment.id, file_name="a.bin")
    with pytest.raises(UnsupportedFraming):
        loader.load(request)


def test_cancel_mid_transfer_discards_partial_file(loader, session, queue, callback, stored_attachment):
    message_id, attachment = stored_attachment
    session.queue(FakeResponse(200, b"z" * 40000))
    request = PartRequest(message_id, attachment.location, attachment_id=attachment.id, file_name="a.bin")

    def cancel_after_first_chunk(percent):
        queue.cancel(message_id, attachment.location)

    request.progress_sink = cancel_after_first_chunk

    assert loader.load(request) == CANCELLED
    assert not os.path.exists(loader.destination(request))
    assert callback.of_kind("attachment")[-1][2] == CANCELLED


def test_process_queue_runs_requests_in_order(loader, session, queue, stored_attachment):
    message_id, attachment = stored_attachment
    session.queue(FakeResponse(200, b"a"), FakeResponse(200, b"b"))
    queue.add(PartRequest(message_id, "loc-1", file_name="one.txt"))
    queue.add(PartRequest(message_id, "loc-2", file_name="two.txt"))

    assert loader.process_queue() == 2
    assert len(queue) == 0
    assert [p["url"].rsplit("=", 1)[1] for p in session.posts] == ["loc-1", "loc-2"]


def test_queue_find_and_cancel(queue):
    first = PartRequest(1, "loc-1")
    second = PartRequest(1, "loc-2")
    queue.add(first)
    queue.add(second)

    assert queue.find(1, "loc-2") is second
    assert queue.has(1, "loc-1")
    assert queue.cancel(1, "loc-1") is first
    assert first.cancelled.is_set()
    assert not queue.has(1, "loc-1")
    assert queue.cancel(1, "missing") is None
    assert queue.pop_next() is second
    assert queue.pop_next() is None


def test_cancel_in_flight_closes_stream(queue):
    request = PartRequest(1, "loc-1")
    queue.begin(request)

    class Stream:
        closed = False

        def close(self):
            self.closed = True

    stream = Stream()
    assert queue.attach_stream(request, stream)
    assert queue.find(1, "loc-1") is request
    assert queue.cancel(1, "loc-1") is request
    assert stream.closed
    assert not queue.attach_stream(request, stream)
    queue.finish(request)
    assert queue.in_flight is None


def test_attachment_without_content_length_is_unsupported(loader, session, stored_attachment):
    message_id, attachment = stored_attachment
    resp = FakeResponse(200, b"abc", content_type="application/octet-stream")
    del resp.headers["Content-Length"]
    session.queue(resp)
    request = PartRequest(message_id, attachment.location, attachment_id=attachment.id, file_name="a.bin")
    with pytest.raises(UnsupportedFraming):
        loader.load(request)
    assert not os.path.exists(loader.destination(request))
