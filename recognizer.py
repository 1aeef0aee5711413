"""Streaming ASR backend using DashScope real-time recognition.

Audio chunks are queued by ``feed`` and sent to
``dashscope.audio.asr.Recognition`` from a worker thread.  Sentence results
arrive on the SDK's callback thread and are folded into a running transcript,
which is surfaced as a partial event.  After end of input the worker calls
``Recognition.stop()``, which blocks until the server completes, and then the
final transcript is emitted.
"""

from __future__ import annotations

import logging
import threading
from queue import Empty, Full, Queue
from typing import Any, Optional

from errors import (
    ASR_PROTOCOL_ERROR,
    AUTH_FAILED,
    NETWORK_ERROR,
    BackendUnavailable,
    LocaleUnsupported,
)
from interfaces import EventCallback
from models import AudioChunk, RecognitionEvent, RecognitionKind

try:
    import dashscope
    from dashscope.audio.asr import Recognition
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore
    Recognition = None  # type: ignore

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = frozenset({"zh", "en", "ja", "ko", "yue", "de", "fr", "ru"})
# Languages written without spaces between sentences.
_UNSPACED_LANGUAGES = frozenset({"zh", "ja", "yue"})


def locale_to_language(locale: str) -> str:
    """Map a locale such as ``zh-TW`` or ``en_US`` to a language hint."""
    language = locale.replace("_", "-").split("-", 1)[0].strip().lower()
    if language not in SUPPORTED_LANGUAGES:
        raise LocaleUnsupported(f"no recognition model for locale {locale!r}")
    return language


def _is_sentence_end(sentence: dict) -> bool:
    if "sentence_end" in sentence:
        return bool(sentence["sentence_end"])
    return sentence.get("end_time") is not None


def to_error_event(exc: Exception | str) -> RecognitionEvent:
    """Map an SDK/network failure to a standard error event."""
    message = str(exc)
    low = message.lower()
    if "401" in low or "403" in low or "auth" in low or "api key" in low or "apikey" in low:
        code = AUTH_FAILED
        retryable = False
    elif "timeout" in low or "network" in low or "connection" in low:
        code = NETWORK_ERROR
        retryable = True
    else:
        code = ASR_PROTOCOL_ERROR
        retryable = True
    return RecognitionEvent(
        kind=RecognitionKind.ERROR.value,
        code=code,
        message=message,
        retryable=retryable,
    )


class _CallbackBridge:
    """Receives DashScope recognition callbacks on the SDK's thread."""

    def __init__(self, session: DashscopeRecognitionSession) -> None:
        self._session = session

    def on_open(self) -> None:
        logger.debug("Recognition stream opened")

    def on_close(self) -> None:
        logger.debug("Recognition stream closed")

    def on_complete(self) -> None:
        self._session._completed.set()

    def on_error(self, result: Any) -> None:
        message = getattr(result, "message", None) or str(result)
        self._session._fail(message)

    def on_event(self, result: Any) -> None:
        sentence = result.get_sentence()
        if isinstance(sentence, list):
            for item in sentence:
                self._session._on_sentence(item)
        elif isinstance(sentence, dict):
            self._session._on_sentence(sentence)


class DashscopeRecognitionSession:
    def __init__(
        self,
        language: str,
        on_event: EventCallback,
        queue_maxsize: int = 200,
    ) -> None:
        self.language = language
        self._on_event = on_event
        self._queue: Queue[AudioChunk] = Queue(maxsize=queue_maxsize)
        self._recognition: Any = None
        self._thread: Optional[threading.Thread] = None

        self._end_of_input = threading.Event()
        self._cancelled = threading.Event()
        self._completed = threading.Event()
        self._emit_lock = threading.Lock()
        self._terminal = False

        self._sentences: list[str] = []
        self._current = ""
        self.dropped_chunks = 0

    @property
    def transcript(self) -> str:
        separator = "" if self.language in _UNSPACED_LANGUAGES else " "
        parts = [text for text in (*self._sentences, self._current) if text]
        return separator.join(parts)

    def start(self, recognition: Any) -> None:
        self._recognition = recognition
        self._thread = threading.Thread(target=self._worker, daemon=True)
        self._thread.start()

    def feed(self, chunk: AudioChunk) -> None:
        if self._end_of_input.is_set() or self._cancelled.is_set():
            return
        try:
            self._queue.put_nowait(chunk)
        except Full:
            self.dropped_chunks += 1

    def signal_end_of_input(self) -> None:
        if not self._end_of_input.is_set():
            logger.debug("End of input signalled")
        self._end_of_input.set()

    def cancel(self) -> None:
        self._cancelled.set()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _worker(self) -> None:
        """Send queued audio until end of input, then wait for completion."""
        while not self._cancelled.is_set() and not self._terminal:
            try:
                chunk = self._queue.get(timeout=0.1)
            except Empty:
                if self._end_of_input.is_set():
                    break
                continue
            try:
                self._recognition.send_audio_frame(chunk.pcm16_bytes)
            except Exception as exc:
                self._fail(exc)
                break

        try:
            self._recognition.stop()
        except Exception as exc:
            if self._cancelled.is_set() or self._terminal:
                logger.debug("Ignoring stop failure on finished session: %s", exc)
            else:
                self._fail(exc)
            return

        if self._cancelled.is_set() or self._terminal:
            return
        if not self._completed.is_set():
            logger.warning("Recognition stopped without completion, using transcript so far")
        self._emit(RecognitionEvent(kind=RecognitionKind.FINAL.value, text=self.transcript))

    def _on_sentence(self, sentence: dict) -> None:
        text = str(sentence.get("text", ""))
        if _is_sentence_end(sentence):
            if text:
                self._sentences.append(text)
            self._current = ""
        else:
            self._current = text
        transcript = self.transcript
        if transcript:
            self._emit(RecognitionEvent(kind=RecognitionKind.PARTIAL.value, text=transcript))

    def _fail(self, exc: Exception | str) -> None:
        self._emit(to_error_event(exc))

    def _emit(self, event: RecognitionEvent) -> None:
        with self._emit_lock:
            if self._terminal or self._cancelled.is_set():
                return
            if event.is_terminal:
                self._terminal = True
            self._on_event(event)


class DashscopeRecognitionBackend:
    def __init__(
        self,
        api_key: str = "",
        model: str = "paraformer-realtime-v2",
        sample_rate: int = 16000,
        audio_format: str = "pcm",
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._sample_rate = sample_rate
        self._audio_format = audio_format

    def open(self, locale: str, on_event: EventCallback) -> DashscopeRecognitionSession:
        language = locale_to_language(locale)
        if dashscope is None or Recognition is None:
            raise BackendUnavailable("dashscope is not installed")
        if not self._api_key:
            raise BackendUnavailable("No API key configured")

        session = DashscopeRecognitionSession(language=language, on_event=on_event)
        dashscope.api_key = self._api_key
        try:
            recognition = Recognition(
                model=self._model,
                callback=_CallbackBridge(session),
                format=self._audio_format,
                sample_rate=self._sample_rate,
                language_hints=[language],
            )
            recognition.start()
        except Exception as exc:
            raise BackendUnavailable(f"recognition start failed: {exc}") from exc

        session.start(recognition)
        logger.info("Opened %s recognition for %s", self._model, locale)
        return session
