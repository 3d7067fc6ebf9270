"""PCM16 conversion between float sample buffers and the Live API transport.

Outbound audio is 16 kHz mono 16-bit little-endian PCM; inbound audio from
Gemini is 24 kHz PCM of the same sample format.
"""

import base64
import binascii
from dataclasses import dataclass

import numpy as np

from ..errors import DecodeError

INPUT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000

_PCM_DTYPE = np.dtype("<i2")


@dataclass(frozen=True)
class EncodedAudio:
    """PCM payload tagged with its MIME type."""

    pcm: bytes
    mime_type: str

    @property
    def base64(self) -> str:
        """Transport-safe text form of the payload."""
        return base64.b64encode(self.pcm).decode("ascii")


@dataclass(frozen=True)
class DecodedAudio:
    """Float samples shaped (frames, channels)."""

    samples: np.ndarray
    sample_rate: int

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate


def encode(samples, sample_rate: int = INPUT_SAMPLE_RATE) -> EncodedAudio:
    """Encode normalized float samples in [-1, 1] as 16-bit PCM.

    Args:
        samples: Sequence or array of mono float samples
        sample_rate: Rate to tag the payload with

    Returns:
        EncodedAudio with ``audio/pcm;rate=<sample_rate>`` MIME type
    """
    audio = np.clip(np.asarray(samples, dtype=np.float32).reshape(-1), -1.0, 1.0)
    pcm = (audio * 32767).astype(_PCM_DTYPE).tobytes()
    return EncodedAudio(pcm=pcm, mime_type=f"audio/pcm;rate={sample_rate}")


def decode(
    data: bytes | str,
    sample_rate: int = OUTPUT_SAMPLE_RATE,
    channels: int = 1,
) -> DecodedAudio:
    """Decode a PCM payload into float samples.

    Args:
        data: Raw PCM bytes, or base64 text of them
        sample_rate: Sample rate of the payload
        channels: Interleaved channel count

    Returns:
        DecodedAudio with samples in [-1, 1)

    Raises:
        DecodeError: If the payload is not valid base64 or not frame aligned
    """
    if isinstance(data, str):
        try:
            data = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"Invalid base64 audio payload: {e}") from e

    frame_bytes = _PCM_DTYPE.itemsize * channels
    if len(data) % frame_bytes:
        raise DecodeError(
            f"PCM payload of {len(data)} bytes is not aligned to {frame_bytes}-byte frames"
        )

    pcm = np.frombuffer(data, dtype=_PCM_DTYPE)
    samples = (pcm.astype(np.float32) / 32768.0).reshape(-1, channels)
    return DecodedAudio(samples=samples, sample_rate=sample_rate)


def rms(samples: np.ndarray) -> float:
    """Root-mean-square loudness of a float buffer."""
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
