"""Core data models for speech sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class SessionState(str, Enum):
    IDLE = "IDLE"
    STARTING = "STARTING"
    CAPTURING = "CAPTURING"
    FINALIZING = "FINALIZING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


ACTIVE_STATES = frozenset(
    {SessionState.STARTING, SessionState.CAPTURING, SessionState.FINALIZING}
)


class WatchdogState(str, Enum):
    UNARMED = "UNARMED"
    ARMED = "ARMED"
    FIRED = "FIRED"
    CANCELED = "CANCELED"


class RecognitionKind(str, Enum):
    PARTIAL = "partial"
    FINAL = "final"
    ERROR = "error"


@dataclass(frozen=True)
class AudioChunk:
    pcm16_bytes: bytes
    sample_rate: int = 16000
    channels: int = 1
    timestamp_ms: int = 0

    @property
    def n_samples(self) -> int:
        return len(self.pcm16_bytes) // (2 * self.channels)


@dataclass
class RecognitionEvent:
    kind: str
    text: str = ""
    code: str = ""
    message: str = ""
    retryable: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.kind in (RecognitionKind.FINAL.value, RecognitionKind.ERROR.value)


@dataclass
class Session:
    """One start-to-finish transcription attempt.

    ``final_text`` is write-once; the recognition ``request`` handle is owned
    by the session and dropped when the controller releases it.
    """

    session_id: int
    locale: str
    state: SessionState = SessionState.STARTING
    request: Optional[Any] = field(default=None, repr=False)
    partial_text: str = ""
    end_requested: bool = False
    _final_text: Optional[str] = field(default=None, repr=False)

    @property
    def final_text(self) -> Optional[str]:
        return self._final_text

    @final_text.setter
    def final_text(self, text: str) -> None:
        if self._final_text is not None:
            raise ValueError(f"session {self.session_id} already has a final transcript")
        self._final_text = text
