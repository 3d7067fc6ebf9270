"""Audio pipeline: codec, capture and playback scheduling.

The sounddevice-backed streams live in ``audio.devices`` and are imported
lazily so that the rest of the package works without PortAudio.
"""

from .capture import CaptureStream
from .codec import DecodedAudio, EncodedAudio, decode, encode
from .playback import PlaybackScheduler

__all__ = [
    "CaptureStream",
    "DecodedAudio",
    "EncodedAudio",
    "PlaybackScheduler",
    "decode",
    "encode",
]
