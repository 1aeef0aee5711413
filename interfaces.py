"""Protocol interfaces used by SessionController."""

from __future__ import annotations

from typing import Callable, Protocol

from models import AudioChunk, RecognitionEvent

ChunkCallback = Callable[[AudioChunk], None]
EventCallback = Callable[[RecognitionEvent], None]


class AudioSource(Protocol):
    def start(self, on_chunk: ChunkCallback) -> None: ...

    def stop(self) -> None: ...


class RecognitionSession(Protocol):
    def feed(self, chunk: AudioChunk) -> None: ...

    def signal_end_of_input(self) -> None: ...

    def cancel(self) -> None: ...


class RecognitionBackend(Protocol):
    def open(self, locale: str, on_event: EventCallback) -> RecognitionSession: ...

