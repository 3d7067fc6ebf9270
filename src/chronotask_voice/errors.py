"""Error taxonomy for the voice assistant."""


class VoiceError(Exception):
    """Base class for voice assistant errors."""


class PermissionDenied(VoiceError):
    """Microphone or recognition access was refused.

    Fatal: the user has to re-authorize before voice can be used again.
    """


class RecognitionUnavailable(VoiceError):
    """No speech recognition engine could be created."""


class SessionConnectionError(VoiceError):
    """The assistant session could not be opened or dropped unexpectedly."""


class DeviceUnavailable(VoiceError):
    """An audio device could not be opened."""


class DecodeError(VoiceError):
    """An audio payload could not be decoded."""


class ToolExecutionError(VoiceError):
    """A tool call failed while being applied to a snapshot."""


class SilenceTimeout(VoiceError):
    """No voiced audio was observed for the configured window."""


class InvalidTransition(VoiceError):
    """A mode change was requested that the transition table does not allow."""

    def __init__(self, current, target):
        super().__init__(f"Cannot transition from {current.value} to {target.value}")
        self.current = current
        self.target = target
