"""Simple JSON-based config store."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_LOCALE = "zh-TW"
DEFAULT_MODEL = "paraformer-realtime-v2"
DEFAULT_SILENCE_TIMEOUT_S = 1.5
DEFAULT_HOTKEY = "Key.alt_l"
DEFAULT_LOG_LEVEL = "INFO"


@dataclass
class AppSettings:
    api_key: str = ""
    locale: str = DEFAULT_LOCALE
    model: str = DEFAULT_MODEL
    silence_timeout_s: float = DEFAULT_SILENCE_TIMEOUT_S
    hotkey: str = DEFAULT_HOTKEY
    log_level: str = DEFAULT_LOG_LEVEL


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "speech_session" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def get_api_key(self) -> str:
        data = self._read_all()
        return str(data.get("api_key", "")) or os.getenv("DASHSCOPE_API_KEY", "")

    def set_api_key(self, key: str) -> None:
        self._set("api_key", key)

    def get_locale(self) -> str:
        return str(self._read_all().get("locale", DEFAULT_LOCALE))

    def set_locale(self, locale: str) -> None:
        self._set("locale", locale)

    def get_hotkey(self) -> str:
        return str(self._read_all().get("hotkey", DEFAULT_HOTKEY))

    def set_hotkey(self, hotkey: str) -> None:
        self._set("hotkey", hotkey)

    def get_silence_timeout_s(self) -> float:
        value = self._read_all().get("silence_timeout_s", DEFAULT_SILENCE_TIMEOUT_S)
        try:
            timeout = float(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid silence_timeout_s=%r", value)
            return DEFAULT_SILENCE_TIMEOUT_S
        if timeout <= 0:
            logger.warning("Ignoring non-positive silence_timeout_s=%r", value)
            return DEFAULT_SILENCE_TIMEOUT_S
        return timeout

    def load_settings(self) -> AppSettings:
        data = self._read_all()
        return AppSettings(
            api_key=self.get_api_key(),
            locale=self.get_locale(),
            model=str(data.get("model", DEFAULT_MODEL)),
            silence_timeout_s=self.get_silence_timeout_s(),
            hotkey=self.get_hotkey(),
            log_level=str(data.get("log_level", DEFAULT_LOG_LEVEL)),
        )

    def _set(self, key: str, value: object) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Config file %s unreadable, using defaults: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
