"""Microphone audio source."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Optional

from errors import DeviceUnavailable
from interfaces import ChunkCallback
from models import AudioChunk

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)


class SoundDeviceAudioSource:
    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        blocksize: int = 1024,
        device: Optional[int | str] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.blocksize = blocksize
        self.device = device
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self._on_chunk: Optional[ChunkCallback] = None
        self.chunk_count = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self, on_chunk: ChunkCallback) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None or np is None:
                raise DeviceUnavailable("sounddevice/numpy is not installed")
            self._on_chunk = on_chunk
            self.chunk_count = 0
            try:
                self._stream = sd.InputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="int16",
                    blocksize=self.blocksize,
                    device=self.device,
                    callback=self._on_audio,
                )
                self._stream.start()
            except Exception as exc:
                self._close_stream()
                self._on_chunk = None
                raise DeviceUnavailable(f"cannot open input device: {exc}") from exc
            self._running = True
            logger.debug(
                "Audio capture started (rate=%d, channels=%d, blocksize=%d)",
                self.sample_rate,
                self.channels,
                self.blocksize,
            )

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._on_chunk = None
            self._close_stream()
            logger.debug("Audio capture stopped after %d chunks", self.chunk_count)

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:
            logger.warning("Error closing input stream: %s", exc)

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        on_chunk = self._on_chunk
        if not self._running or on_chunk is None:
            return
        if status:
            logger.debug("Input stream status: %s", status)
        payload = np.asarray(indata, dtype=np.int16).tobytes()
        chunk = AudioChunk(
            pcm16_bytes=payload,
            sample_rate=self.sample_rate,
            channels=self.channels,
            timestamp_ms=int(time.time() * 1000),
        )
        self.chunk_count += 1
        on_chunk(chunk)
