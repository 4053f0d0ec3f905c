"""Error taxonomy for the voice session pipeline.

Every failure that should move the session into its ``error`` state derives
from :class:`AssistantError`. The session controller surfaces ``str(exc)``
verbatim to collaborators, so messages are written for people.
"""

from __future__ import annotations


class AssistantError(Exception):
    """Base class for session-fatal failures."""


class MicrophonePermissionError(AssistantError, PermissionError):
    """Raised when the operating system denies microphone access."""


class DeviceError(AssistantError):
    """Raised when no usable audio input or output device is available."""


class ConfigurationError(AssistantError):
    """Raised for a missing credential or model resource."""


class EngineError(AssistantError):
    """Raised when the wake-word engine hits a fatal condition."""


class ServiceError(AssistantError):
    """Raised when an external HTTP service fails or returns a malformed body."""


class InvalidStateError(AssistantError):
    """Raised for an operation that is illegal in the current state."""
