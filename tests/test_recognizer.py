"""Tests for the DashScope streaming recognition backend."""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from errors import ASR_PROTOCOL_ERROR, AUTH_FAILED, NETWORK_ERROR, BackendUnavailable, LocaleUnsupported
from models import AudioChunk, RecognitionEvent, RecognitionKind
from recognizer import (
    DashscopeRecognitionBackend,
    DashscopeRecognitionSession,
    locale_to_language,
    to_error_event,
)


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

class FakeResult:
    def __init__(self, text: str, sentence_end: bool = False) -> None:
        self._sentence = {"text": text, "sentence_end": sentence_end}

    def get_sentence(self) -> dict:
        return self._sentence


class FakeRecognition:
    instances: list[FakeRecognition] = []

    def __init__(self, model, callback, format, sample_rate, **kwargs) -> None:  # noqa: A002, ANN001
        self.model = model
        self.callback = callback
        self.format = format
        self.sample_rate = sample_rate
        self.kwargs = kwargs
        self.frames: list[bytes] = []
        self.started = False
        self.stopped = threading.Event()
        self.send_error: Exception | None = None
        FakeRecognition.instances.append(self)

    def start(self) -> None:
        self.started = True

    def send_audio_frame(self, data: bytes) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.frames.append(data)

    def stop(self) -> None:
        self.callback.on_complete()
        self.stopped.set()


def _chunk(n_samples: int = 1024) -> AudioChunk:
    return AudioChunk(pcm16_bytes=b"\x00\x00" * n_samples, sample_rate=16000, channels=1)


def _wait_for_terminal(events: list, *, timeout: float = 3.0) -> None:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if any(e.kind in (RecognitionKind.FINAL.value, RecognitionKind.ERROR.value) for e in events):
            return
        time.sleep(0.02)


@pytest.fixture
def fake_dashscope():
    FakeRecognition.instances = []
    with patch("recognizer.dashscope", MagicMock()) as mock_ds, patch(
        "recognizer.Recognition", FakeRecognition
    ):
        yield mock_ds


def _open(locale: str = "en-US") -> tuple[DashscopeRecognitionSession, FakeRecognition, list[RecognitionEvent]]:
    events: list[RecognitionEvent] = []
    backend = DashscopeRecognitionBackend(api_key="test-key")
    session = backend.open(locale, events.append)
    return session, FakeRecognition.instances[-1], events


# ---------------------------------------------------------------
# Locale mapping
# ---------------------------------------------------------------

@pytest.mark.parametrize(
    "locale, language",
    [("zh-TW", "zh"), ("en-US", "en"), ("en_GB", "en"), ("JA", "ja"), ("yue-HK", "yue")],
)
def test_locale_to_language(locale: str, language: str) -> None:
    assert locale_to_language(locale) == language


def test_unknown_locale_raises() -> None:
    with pytest.raises(LocaleUnsupported):
        locale_to_language("xx-YY")


def test_open_unsupported_locale_raises_before_connecting(fake_dashscope: MagicMock) -> None:
    backend = DashscopeRecognitionBackend(api_key="test-key")
    with pytest.raises(LocaleUnsupported):
        backend.open("tlh", lambda e: None)
    assert FakeRecognition.instances == []


# ---------------------------------------------------------------
# Backend availability
# ---------------------------------------------------------------

@patch("recognizer.dashscope", None)
def test_dashscope_not_installed_raises() -> None:
    backend = DashscopeRecognitionBackend(api_key="test-key")
    with pytest.raises(BackendUnavailable, match="not installed"):
        backend.open("en-US", lambda e: None)


def test_missing_api_key_raises(fake_dashscope: MagicMock) -> None:
    backend = DashscopeRecognitionBackend(api_key="")
    with pytest.raises(BackendUnavailable, match="API key"):
        backend.open("en-US", lambda e: None)


def test_start_failure_raises_backend_unavailable(fake_dashscope: MagicMock) -> None:
    with patch.object(FakeRecognition, "start", side_effect=ConnectionError("refused")):
        backend = DashscopeRecognitionBackend(api_key="test-key")
        with pytest.raises(BackendUnavailable, match="refused"):
            backend.open("en-US", lambda e: None)


def test_open_configures_recognition(fake_dashscope: MagicMock) -> None:
    session, recognition, _ = _open("zh-TW")

    assert recognition.started is True
    assert recognition.model == "paraformer-realtime-v2"
    assert recognition.format == "pcm"
    assert recognition.sample_rate == 16000
    assert recognition.kwargs["language_hints"] == ["zh"]
    assert fake_dashscope.api_key == "test-key"

    session.cancel()


# ---------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------

def test_stream_emits_partials_then_final(fake_dashscope: MagicMock) -> None:
    session, recognition, events = _open("en-US")

    for _ in range(3):
        session.feed(_chunk())
    recognition.callback.on_event(FakeResult("hel"))
    recognition.callback.on_event(FakeResult("hello"))
    recognition.callback.on_event(FakeResult("hello world", sentence_end=True))
    session.signal_end_of_input()
    _wait_for_terminal(events)

    assert [e.text for e in events if e.kind == RecognitionKind.PARTIAL.value] == [
        "hel",
        "hello",
        "hello world",
    ]
    finals = [e for e in events if e.kind == RecognitionKind.FINAL.value]
    assert len(finals) == 1
    assert finals[0].text == "hello world"
    assert events[-1] is finals[0]
    assert len(recognition.frames) == 3
    assert recognition.stopped.is_set()


def test_sentences_join_without_space_for_chinese(fake_dashscope: MagicMock) -> None:
    session, recognition, events = _open("zh-TW")

    recognition.callback.on_event(FakeResult("你好。", sentence_end=True))
    recognition.callback.on_event(FakeResult("世界"))

    assert events[-1].text == "你好。世界"
    session.cancel()


def test_sentences_join_with_space_for_english(fake_dashscope: MagicMock) -> None:
    session, recognition, events = _open("en-US")

    recognition.callback.on_event(FakeResult("Hello.", sentence_end=True))
    recognition.callback.on_event(FakeResult("How are", sentence_end=False))
    session.signal_end_of_input()
    _wait_for_terminal(events)

    assert events[-2].text == "Hello. How are"
    assert events[-1].kind == RecognitionKind.FINAL.value
    assert events[-1].text == "Hello. How are"


def test_empty_audio_emits_empty_final(fake_dashscope: MagicMock) -> None:
    session, recognition, events = _open()

    session.signal_end_of_input()
    session.signal_end_of_input()
    _wait_for_terminal(events)

    assert len(events) == 1
    assert events[0].kind == RecognitionKind.FINAL.value
    assert events[0].text == ""


def test_feed_after_end_of_input_is_ignored(fake_dashscope: MagicMock) -> None:
    session, recognition, events = _open()

    session.feed(_chunk())
    session.signal_end_of_input()
    session.feed(_chunk())
    _wait_for_terminal(events)
    session.feed(_chunk())

    assert len(recognition.frames) == 1


def test_server_error_emits_single_error_and_no_final(fake_dashscope: MagicMock) -> None:
    session, recognition, events = _open()

    recognition.callback.on_event(FakeResult("hel"))
    recognition.callback.on_error(MagicMock(message="401 Unauthorized: invalid api key"))
    recognition.callback.on_event(FakeResult("hello"))
    assert recognition.stopped.wait(timeout=2.0)

    errors = [e for e in events if e.kind == RecognitionKind.ERROR.value]
    assert len(errors) == 1
    assert errors[0].code == AUTH_FAILED
    assert errors[0].retryable is False
    assert events[-1] is errors[0]
    assert not any(e.kind == RecognitionKind.FINAL.value for e in events)


def test_send_failure_maps_to_network_error(fake_dashscope: MagicMock) -> None:
    session, recognition, events = _open()
    recognition.send_error = ConnectionError("connection reset")

    session.feed(_chunk())
    _wait_for_terminal(events)

    assert len(events) == 1
    assert events[0].code == NETWORK_ERROR
    assert events[0].retryable is True


def test_cancel_suppresses_further_events(fake_dashscope: MagicMock) -> None:
    session, recognition, events = _open()
    recognition.callback.on_event(FakeResult("hel"))

    session.cancel()
    session.cancel()
    recognition.callback.on_event(FakeResult("hello"))
    session.signal_end_of_input()
    assert recognition.stopped.wait(timeout=2.0)
    time.sleep(0.05)

    assert [e.text for e in events] == ["hel"]


# ---------------------------------------------------------------
# Queue and error mapping
# ---------------------------------------------------------------

def test_full_queue_counts_dropped_chunks() -> None:
    session = DashscopeRecognitionSession(language="en", on_event=lambda e: None, queue_maxsize=1)

    session.feed(_chunk())
    assert session.dropped_chunks == 0
    session.feed(_chunk())
    assert session.dropped_chunks == 1


@pytest.mark.parametrize(
    "message, code, retryable",
    [
        ("401 Unauthorized", AUTH_FAILED, False),
        ("Invalid API key", AUTH_FAILED, False),
        ("network timeout", NETWORK_ERROR, True),
        ("Connection refused", NETWORK_ERROR, True),
        ("unexpected payload", ASR_PROTOCOL_ERROR, True),
    ],
)
def test_error_mapping(message: str, code: str, retryable: bool) -> None:
    event = to_error_event(Exception(message))
    assert event.kind == RecognitionKind.ERROR.value
    assert event.code == code
    assert event.retryable is retryable
    assert event.message == message
