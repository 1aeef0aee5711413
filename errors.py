"""Shared error codes, user-facing messages and setup exceptions."""

from __future__ import annotations

PERMISSION_DENIED = "PERMISSION_DENIED"
NETWORK_ERROR = "NETWORK_ERROR"
AUTH_FAILED = "AUTH_FAILED"
ASR_PROTOCOL_ERROR = "ASR_PROTOCOL_ERROR"
DEVICE_UNAVAILABLE = "DEVICE_UNAVAILABLE"
LOCALE_UNSUPPORTED = "LOCALE_UNSUPPORTED"
BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"
SESSION_CANCELLED = "SESSION_CANCELLED"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone permission is required.",
    NETWORK_ERROR: "Network failed, please retry.",
    AUTH_FAILED: "API key is invalid.",
    ASR_PROTOCOL_ERROR: "ASR response format is invalid.",
    DEVICE_UNAVAILABLE: "No audio input device is available.",
    LOCALE_UNSUPPORTED: "Speech recognition is not available for this language.",
    BACKEND_UNAVAILABLE: "Speech recognition service is unavailable.",
    SESSION_CANCELLED: "Recognition was cancelled.",
}


class SpeechSessionError(Exception):
    code = ASR_PROTOCOL_ERROR

    def __init__(self, message: str = "") -> None:
        self.message = message or ERROR_MESSAGES.get(self.code, self.code)
        super().__init__(self.message)


class DeviceUnavailable(SpeechSessionError):
    code = DEVICE_UNAVAILABLE


class LocaleUnsupported(SpeechSessionError):
    code = LOCALE_UNSUPPORTED


class BackendUnavailable(SpeechSessionError):
    code = BACKEND_UNAVAILABLE


class SessionCancelled(SpeechSessionError):
    code = SESSION_CANCELLED


class SetupError(SpeechSessionError):
    """Raised by ``SessionController.begin`` when a session cannot start."""

    def __init__(self, cause: SpeechSessionError) -> None:
        self.cause = cause
        self.code = cause.code
        super().__init__(f"{cause.code}: {cause.message}")
