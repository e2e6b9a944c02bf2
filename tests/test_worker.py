import json
import queue

import pytest

from cutout_service.channel import MessageChannel
from cutout_service.protocol import (
    ErrorResponse,
    FileProgressEvent,
    InitComplete,
    InitProgress,
    InitRequest,
    Processing,
    ProcessRequest,
    ReadyEvent,
    Result,
    encode_message,
    parse_response,
)
from cutout_service.worker import InferenceWorker


def _drain(channel):
    out = []
    while True:
        try:
            raw = channel.receive(timeout=0)
        except queue.Empty:
            return out
        out.append(parse_response(raw))


@pytest.fixture
def channels():
    return MessageChannel(64, "requests"), MessageChannel(256, "responses")


@pytest.fixture
def worker(fake_engine, channels, store):
    requests, responses = channels
    return InferenceWorker(fake_engine, requests, responses, store)


def test_init_streams_progress_then_completes(worker, channels):
    worker.handle(encode_message(InitRequest()))
    messages = _drain(channels[1])

    assert all(isinstance(m, InitProgress) for m in messages[:-1])
    assert isinstance(messages[-1], InitComplete)
    assert messages[-1].backend == "fallback"
    events = [m.data for m in messages[:-1]]
    assert any(isinstance(e, FileProgressEvent) and e.file == "config.json" for e in events)
    assert isinstance(events[-1], ReadyEvent)


def test_process_before_init_is_rejected(worker, channels, store, make_png):
    ref = store.register(make_png())
    worker.handle(encode_message(ProcessRequest(image_ref=ref, request_id=3)))
    (message,) = _drain(channels[1])
    assert message == ErrorResponse(message="Pipeline not initialized", request_id=3)


def test_process_replies_processing_then_result(worker, fake_engine, channels, store, make_png):
    worker.handle(encode_message(InitRequest()))
    _drain(channels[1])

    ref = store.register(make_png(10, 6))
    worker.handle(encode_message(ProcessRequest(image_ref=ref, request_id=1)))
    processing, result = _drain(channels[1])

    assert processing == Processing(request_id=1)
    assert isinstance(result, Result)
    assert result.request_id == 1
    assert (result.mask.width, result.mask.height) == (5, 3)
    assert fake_engine.calls == [(10, 6)]


def test_engine_failure_is_reported_with_identity(worker, fake_engine, channels, store, make_png):
    fake_engine.fail = True
    worker.handle(encode_message(InitRequest()))
    _drain(channels[1])

    worker.handle(encode_message(ProcessRequest(image_ref=store.register(make_png()), request_id=9)))
    processing, error = _drain(channels[1])
    assert processing == Processing(request_id=9)
    assert error == ErrorResponse(message="inference exploded", request_id=9)


def test_released_image_is_reported_as_error(worker, channels):
    worker.handle(encode_message(InitRequest()))
    _drain(channels[1])

    worker.handle(encode_message(ProcessRequest(image_ref="blob:gone", request_id=2)))
    _, error = _drain(channels[1])
    assert isinstance(error, ErrorResponse)
    assert error.request_id == 2


def test_unknown_message_type(worker, channels):
    worker.handle(json.dumps({"type": "segment"}))
    (message,) = _drain(channels[1])
    assert message == ErrorResponse(message="Unknown message type: segment")


def test_undecodable_request(worker, channels):
    worker.handle("{broken")
    (message,) = _drain(channels[1])
    assert isinstance(message, ErrorResponse)
    assert message.request_id is None
    assert message.message.startswith("Undecodable message")


def test_run_exits_when_request_channel_closes(worker, channels):
    worker.start()
    channels[0].close()
    worker.join(timeout=5)
    assert not worker.is_alive()
