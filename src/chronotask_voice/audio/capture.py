"""Microphone capture for live sessions."""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Protocol

import numpy as np

from ..models import AudioFrame
from .codec import INPUT_SAMPLE_RATE, EncodedAudio, encode, rms

logger = logging.getLogger(__name__)

FrameSink = Callable[[EncodedAudio], None]


class InputDevice(Protocol):
    """An open microphone stream."""

    def close(self) -> None:
        """Stop the stream and release the device."""
        ...


# (sample_rate, frame_size, on_frame) -> InputDevice; on_frame may be called from any thread
InputDeviceFactory = Callable[[int, int, Callable[[np.ndarray], None]], InputDevice]


class CaptureStream:
    """Delivers fixed-size microphone frames to the bound sink.

    Each frame is measured for loudness; frames above ``voiced_threshold``
    refresh ``last_voiced_at``, which the silence supervisor reads. Every
    frame, voiced or not, is encoded and forwarded so the assistant's own
    voice activity detection sees a continuous stream.
    """

    def __init__(
        self,
        open_device: InputDeviceFactory,
        sample_rate: int = INPUT_SAMPLE_RATE,
        frame_size: int = 4096,
        voiced_threshold: float = 0.01,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._open_device = open_device
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.voiced_threshold = voiced_threshold
        self._clock = clock

        self._device: InputDevice | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._sink: FrameSink | None = None
        self._closed = True
        self._frame_count = 0
        self.last_voiced_at: float = clock()

    @property
    def is_open(self) -> bool:
        return not self._closed

    def bind(self, sink: FrameSink | None) -> None:
        """Set the consumer for encoded frames (None discards them)."""
        self._sink = sink

    async def open(self) -> None:
        """Acquire the microphone and start delivering frames.

        Raises:
            PermissionDenied: If microphone access is refused
            DeviceUnavailable: If no usable input device exists
        """
        if not self._closed:
            return
        self._loop = asyncio.get_running_loop()
        self._frame_count = 0
        self.last_voiced_at = self._clock()
        self._closed = False
        try:
            self._device = await asyncio.to_thread(
                self._open_device, self.sample_rate, self.frame_size, self._on_device_frame
            )
        except BaseException:
            self._closed = True
            raise
        logger.info("Microphone open (%d Hz, %d-sample frames)", self.sample_rate, self.frame_size)

    def _on_device_frame(self, samples: np.ndarray) -> None:
        # Device thread: hand the frame to the event loop
        if self._closed or self._loop is None:
            return
        captured_at = self._clock()
        try:
            self._loop.call_soon_threadsafe(self._deliver, samples, captured_at)
        except RuntimeError:
            # Event loop already closed during shutdown
            pass

    def _deliver(self, samples: np.ndarray, captured_at: float) -> None:
        if self._closed:
            return
        self.process(samples, captured_at)

    def process(self, samples: np.ndarray, captured_at: float) -> AudioFrame:
        """Measure, encode and forward one frame."""
        level = rms(samples)
        frame = AudioFrame(
            samples=samples,
            captured_at=captured_at,
            rms=level,
            voiced=level > self.voiced_threshold,
            encoded=encode(samples, self.sample_rate),
        )
        if frame.voiced:
            self.last_voiced_at = captured_at

        self._frame_count += 1
        if self._frame_count % 50 == 0:
            logger.debug(
                "Audio #%d: %s (rms=%.4f)",
                self._frame_count,
                "voiced" if frame.voiced else "silence",
                level,
            )

        if self._sink is not None:
            self._sink(frame.encoded)
        return frame

    def seconds_since_voiced(self) -> float:
        return self._clock() - self.last_voiced_at

    def close(self) -> None:
        """Release the microphone. No frame is delivered after this returns."""
        self._closed = True
        self._sink = None
        device, self._device = self._device, None
        if device is not None:
            device.close()
            logger.info("Microphone closed")
