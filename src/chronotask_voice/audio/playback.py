"""Gapless playback scheduling for assistant audio."""

import asyncio
import logging
import threading

import numpy as np

from ..models import PlaybackChunk
from .codec import OUTPUT_SAMPLE_RATE, DecodedAudio

logger = logging.getLogger(__name__)


class PlaybackScheduler:
    """Places decoded chunks back-to-back on the output clock.

    The output clock is the number of frames the output device has pulled
    through ``render`` divided by the sample rate. Each chunk starts at
    ``max(next_start, now)`` so late chunks start immediately and early
    chunks queue up behind the previous one, without gaps or overlap.

    ``schedule`` is called from the event loop; ``render`` from the audio
    device callback thread.
    """

    def __init__(self, sample_rate: int = OUTPUT_SAMPLE_RATE, channels: int = 1):
        self.sample_rate = sample_rate
        self.channels = channels
        self._lock = threading.Lock()
        self._frames_rendered = 0
        self._next_start: float | None = None
        self._in_flight: list[PlaybackChunk] = []

    def now(self) -> float:
        """Current position of the output clock in seconds."""
        return self._frames_rendered / self.sample_rate

    @property
    def next_start(self) -> float | None:
        return self._next_start

    @property
    def is_idle(self) -> bool:
        """True when nothing is playing or scheduled."""
        with self._lock:
            return not self._in_flight

    def schedule(self, audio: DecodedAudio) -> PlaybackChunk:
        """Schedule a decoded chunk right after everything already queued.

        Args:
            audio: Decoded samples at this scheduler's sample rate

        Returns:
            The scheduled chunk with its start offset
        """
        with self._lock:
            now = self.now()
            if self._next_start is None:
                self._next_start = now
            start = max(self._next_start, now)
            chunk = PlaybackChunk(samples=audio.samples, start=start, duration=audio.duration)
            self._next_start = start + chunk.duration
            self._in_flight.append(chunk)
        return chunk

    def render(self, frames: int) -> np.ndarray:
        """Produce the next ``frames`` output samples and advance the clock.

        Returns:
            float32 array shaped (frames, channels); silence where nothing is scheduled
        """
        out = np.zeros((frames, self.channels), dtype=np.float32)
        with self._lock:
            first = self._frames_rendered
            for chunk in self._in_flight:
                offset = int(round(chunk.start * self.sample_rate)) - first
                src = max(0, -offset)
                dst = max(0, offset)
                count = min(frames - dst, chunk.samples.shape[0] - src)
                if count > 0:
                    out[dst:dst + count] += chunk.samples[src:src + count]
            self._frames_rendered += frames
            end = self._frames_rendered
            self._in_flight = [
                c for c in self._in_flight if int(round(c.end * self.sample_rate)) > end
            ]
        return out

    def stop(self) -> None:
        """Drop every playing or scheduled chunk immediately."""
        with self._lock:
            dropped = len(self._in_flight)
            self._in_flight.clear()
            self._next_start = None
        if dropped:
            logger.debug("Playback flushed (%d chunk(s) dropped)", dropped)

    async def wait_until_idle(self, timeout: float = 5.0) -> bool:
        """Wait for queued audio to finish playing.

        Args:
            timeout: Maximum time to wait in seconds

        Returns:
            True if playback drained, False on timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if self.is_idle:
                return True
            await asyncio.sleep(0.05)
        return self.is_idle
