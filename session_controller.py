"""State-machine based session orchestration."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from errors import (
    SESSION_CANCELLED,
    BackendUnavailable,
    SessionCancelled,
    SetupError,
    SpeechSessionError,
)
from interfaces import AudioSource, RecognitionBackend
from models import (
    ACTIVE_STATES,
    AudioChunk,
    RecognitionEvent,
    RecognitionKind,
    Session,
    SessionState,
)
from silence_watchdog import SilenceWatchdog, TimerFactory

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
TextCallback = Callable[[str], None]
ErrorCallback = Callable[[str, str], None]
ReadyCallback = Callable[[bool], None]

_TERMINAL_STATES = (SessionState.COMPLETED, SessionState.FAILED)


class SessionController:
    """Runs one transcription session at a time.

    Recognition events and watchdog fires are serialized on a re-entrant lock
    and tagged with the id of the session they belong to; anything addressed
    to a session that is no longer current is dropped. Audio chunks bypass the
    lock and go straight to the current request's ``feed``.
    """

    def __init__(
        self,
        audio_source: AudioSource,
        backend: RecognitionBackend,
        silence_timeout_s: float = 1.5,
        default_locale: str = "zh-TW",
        on_state_change: Optional[StateCallback] = None,
        on_partial: Optional[TextCallback] = None,
        on_final: Optional[TextCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_ready_changed: Optional[ReadyCallback] = None,
        timer_factory: Optional[TimerFactory] = None,
    ) -> None:
        self._audio_source = audio_source
        self._backend = backend
        self._silence_timeout_s = silence_timeout_s
        self._default_locale = default_locale
        self._on_state_change = on_state_change
        self._on_partial = on_partial
        self._on_final = on_final
        self._on_error = on_error
        self._on_ready_changed = on_ready_changed
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._session_id = 0
        self._session: Optional[Session] = None
        self._last_session: Optional[Session] = None
        self._watchdog: Optional[SilenceWatchdog] = None
        self._available = True
        self._ready = True
        self._superseding = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def last_session(self) -> Optional[Session]:
        return self._last_session

    @property
    def watchdog(self) -> Optional[SilenceWatchdog]:
        return self._watchdog

    # ------------------------------------------------------------------
    # Caller API
    # ------------------------------------------------------------------

    def begin(self, locale: Optional[str] = None) -> None:
        """Start a new session, cancelling any session still in flight.

        Raises ``SetupError`` if the backend or the audio source cannot be
        opened; the audio source is left stopped in that case.
        """
        with self._lock:
            if self._session is not None:
                self._superseding = True
                try:
                    self.cancel("superseded by a new session")
                finally:
                    self._superseding = False

            locale = locale or self._default_locale
            self._session_id += 1
            session_id = self._session_id
            session = Session(session_id=session_id, locale=locale)
            self._session = session
            self._watchdog = SilenceWatchdog(
                self._silence_timeout_s,
                lambda: self._handle_watchdog_fired(session_id),
                timer_factory=self._timer_factory,
            )
            self._transition(SessionState.STARTING)
            logger.info("Session %d starting (locale=%s)", session_id, locale)

            audio_started = False
            try:
                self._check_current(session)
                self._set_ready(False)
                self._check_current(session)
                if not self._available:
                    raise BackendUnavailable("speech recognition is currently unavailable")
                session.request = self._backend.open(
                    locale,
                    lambda event: self._handle_recognition_event(session_id, event),
                )
                self._check_current(session)
                self._audio_source.start(self._handle_chunk)
                audio_started = True
                self._check_current(session)
            except Exception as exc:
                cause = exc if isinstance(exc, SpeechSessionError) else SpeechSessionError(str(exc))
                logger.warning("Session %d setup failed: %s", session_id, cause.message)
                if self._session is session:
                    self._transition(SessionState.FAILED)
                    self._teardown(session)
                    self._transition(SessionState.IDLE)
                else:
                    self._abandon(session, stop_audio=audio_started)
                raise SetupError(cause) from exc

            self._transition(SessionState.CAPTURING)

    def request_stop(self) -> None:
        """Ask the backend to finish; capture continues until a terminal event."""
        with self._lock:
            session = self._session
            if session is None or self._state != SessionState.CAPTURING:
                return
            self._signal_end_of_input(session, "stop requested")

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            session = self._session
            if session is None or self._state not in ACTIVE_STATES:
                return
            logger.info("Session %d cancelled: %s", session.session_id, reason)
            self._transition(SessionState.FAILED)
            self._teardown(session)
            self._emit_error(SESSION_CANCELLED, reason)
            self._finish()

    def set_available(self, available: bool) -> None:
        """Track backend availability; ready only while available and idle."""
        with self._lock:
            self._available = available
            if self._session is None:
                self._set_ready(available)

    # ------------------------------------------------------------------
    # Callback sources
    # ------------------------------------------------------------------

    def _handle_chunk(self, chunk: AudioChunk) -> None:
        session = self._session
        if session is None or session.state not in ACTIVE_STATES:
            return
        request = session.request
        if request is not None:
            request.feed(chunk)

    def _handle_watchdog_fired(self, session_id: int) -> None:
        with self._lock:
            session = self._session
            if session is None or session.session_id != session_id:
                return
            if self._state != SessionState.CAPTURING:
                return
            self._signal_end_of_input(session, "silence timeout")

    def _handle_recognition_event(self, session_id: int, event: RecognitionEvent) -> None:
        with self._lock:
            session = self._session
            if session is None or session.session_id != session_id:
                logger.debug("Dropping %s event for stale session %d", event.kind, session_id)
                return
            if self._state not in ACTIVE_STATES:
                return

            kind = event.kind
            if kind == RecognitionKind.PARTIAL.value:
                session.partial_text = event.text
                if self._watchdog is not None:
                    self._watchdog.arm()
                if self._on_partial:
                    self._invoke(self._on_partial, event.text)
            elif kind == RecognitionKind.FINAL.value:
                session.final_text = event.text
                self._transition(SessionState.FINALIZING)
                self._transition(SessionState.COMPLETED)
                logger.info("Session %d completed (%d chars)", session_id, len(event.text))
                self._teardown(session)
                if self._on_final:
                    self._invoke(self._on_final, event.text)
                self._finish()
            elif kind == RecognitionKind.ERROR.value:
                logger.warning("Session %d failed: %s %s", session_id, event.code, event.message)
                self._transition(SessionState.FAILED)
                self._teardown(session)
                self._emit_error(event.code, event.message)
                self._finish()
            else:
                logger.warning("Ignoring recognition event of unknown kind %r", kind)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _signal_end_of_input(self, session: Session, reason: str) -> None:
        if session.end_requested or session.request is None:
            return
        session.end_requested = True
        logger.info("Session %d end of input: %s", session.session_id, reason)
        session.request.signal_end_of_input()

    def _teardown(self, session: Session) -> None:
        """Release everything the session owns and free the session slot."""
        request, session.request = session.request, None
        if request is not None:
            try:
                request.cancel()
            except Exception as exc:
                logger.warning("Error cancelling recognition request: %s", exc)
        try:
            self._audio_source.stop()
        except Exception as exc:
            logger.warning("Error stopping audio source: %s", exc)
        if self._watchdog is not None:
            self._watchdog.cancel()
        self._watchdog = None
        self._last_session = session
        self._session = None

    def _check_current(self, session: Session) -> None:
        # A state or ready callback may have cancelled or replaced the session.
        if self._session is not session:
            raise SessionCancelled(f"session {session.session_id} cancelled during setup")

    def _abandon(self, session: Session, stop_audio: bool) -> None:
        """Release what a setup step acquired after the session was cancelled."""
        request, session.request = session.request, None
        if request is not None:
            try:
                request.cancel()
            except Exception as exc:
                logger.warning("Error cancelling recognition request: %s", exc)
        # A session started from a callback owns the audio source now.
        if stop_audio and self._session is None:
            try:
                self._audio_source.stop()
            except Exception as exc:
                logger.warning("Error stopping audio source: %s", exc)

    def _finish(self) -> None:
        # A callback may already have started the next session.
        if self._session is not None or self._state not in _TERMINAL_STATES:
            return
        self._transition(SessionState.IDLE)
        if not self._superseding:
            self._set_ready(self._available)

    def _emit_error(self, code: str, message: str) -> None:
        if self._on_error:
            self._invoke(self._on_error, code, message)

    def _set_ready(self, ready: bool) -> None:
        if self._ready == ready:
            return
        self._ready = ready
        if self._on_ready_changed:
            self._invoke(self._on_ready_changed, ready)

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        if self._session is not None and to_state != SessionState.IDLE:
            self._session.state = to_state
        logger.debug("State %s -> %s", from_state.value, to_state.value)
        if self._on_state_change:
            self._invoke(self._on_state_change, from_state, to_state)

    @staticmethod
    def _invoke(callback: Callable[..., None], *args: object) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("Session callback %r raised", callback)
