"""Application entrypoint."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from config import AppSettings, JsonConfigStore
from errors import ERROR_MESSAGES, SESSION_CANCELLED, SetupError
from hotkey import GlobalHotkeyAdapter
from log_setup import setup_logging
from models import SessionState
from recognizer import DashscopeRecognitionBackend
from recorder import SoundDeviceAudioSource
from session_controller import SessionController

logger = logging.getLogger(__name__)


class App:
    def __init__(self, settings: AppSettings, once: bool = False) -> None:
        self.settings = settings
        self.once = once
        self.exit_code = 0
        self._quitting = False
        self._done = threading.Event()
        self.controller = SessionController(
            audio_source=SoundDeviceAudioSource(),
            backend=DashscopeRecognitionBackend(
                api_key=settings.api_key,
                model=settings.model,
            ),
            silence_timeout_s=settings.silence_timeout_s,
            default_locale=settings.locale,
            on_partial=self._on_partial,
            on_final=self._on_final,
            on_error=self._on_error,
            on_ready_changed=self._on_ready_changed,
        )
        self.hotkey = GlobalHotkeyAdapter(hotkey_name=settings.hotkey)

    # ------------------------------------------------------------------
    # Controller callbacks (called from audio/backend/timer threads)
    # ------------------------------------------------------------------

    def _on_partial(self, text: str) -> None:
        print(f"\r{text}", end="", flush=True)

    def _on_final(self, text: str) -> None:
        print(f"\r{text}", flush=True)
        if self.once:
            self._done.set()

    def _on_error(self, code: str, message: str) -> None:
        if code == SESSION_CANCELLED and self._quitting:
            return
        print(f"\n{ERROR_MESSAGES.get(code, code)} ({message})", file=sys.stderr, flush=True)
        self.exit_code = 1
        if self.once:
            self._done.set()

    def _on_ready_changed(self, ready: bool) -> None:
        if ready and not self.once:
            print(f"Ready. Press {self.settings.hotkey} to speak.", flush=True)

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    def _on_tap(self) -> None:
        state = self.controller.state
        if state == SessionState.CAPTURING:
            self.controller.request_stop()
        elif state == SessionState.IDLE:
            # begin() may block on device and network setup
            threading.Thread(target=self._begin, daemon=True).start()

    def _begin(self) -> bool:
        try:
            self.controller.begin()
        except SetupError as exc:
            logger.error("Cannot start session: %s", exc)
            print(ERROR_MESSAGES.get(exc.code, exc.message), file=sys.stderr, flush=True)
            self.exit_code = 1
            if self.once:
                self._done.set()
            return False
        print("Say something, I'm listening!", flush=True)
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        try:
            if self.once:
                if self._begin():
                    self._done.wait()
            else:
                self.hotkey.start(on_tap=self._on_tap)
                print(f"Ready. Press {self.settings.hotkey} to speak, Ctrl+C to quit.", flush=True)
                self._done.wait()
        except KeyboardInterrupt:
            print("", flush=True)
        except RuntimeError as exc:
            logger.error("Hotkey disabled: %s", exc)
            self.exit_code = 1
        finally:
            self.quit()
        return self.exit_code

    def quit(self) -> None:
        self._quitting = True
        self.hotkey.stop()
        self.controller.cancel("app quit")
        self._done.set()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="speech-session",
        description="Streaming speech transcription from the microphone.",
    )
    parser.add_argument("--locale", help="recognition locale, e.g. zh-TW or en-US")
    parser.add_argument("--api-key", help="DashScope API key (overrides config)")
    parser.add_argument("--config", type=Path, help="path to config.json")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--log-file", help="also write logs to this file")
    parser.add_argument(
        "--once",
        action="store_true",
        help="transcribe a single utterance immediately and exit",
    )
    return parser


def load_settings(args: argparse.Namespace) -> AppSettings:
    settings = JsonConfigStore(path=args.config).load_settings()
    if args.locale:
        settings.locale = args.locale
    if args.api_key:
        settings.api_key = args.api_key
    if args.log_level:
        settings.log_level = args.log_level
    return settings


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args)
    setup_logging(level=settings.log_level, log_file=args.log_file)
    logger.debug("Settings: locale=%s model=%s", settings.locale, settings.model)
    return App(settings, once=args.once).run()


if __name__ == "__main__":
    raise SystemExit(main())
