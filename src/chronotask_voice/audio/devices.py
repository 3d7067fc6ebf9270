"""Local microphone and speaker via sounddevice (cross-platform audio).

These are the only classes that touch PortAudio. Both use non-blocking
callbacks; the input side hands frames to a CaptureStream and the output
side pulls mixed samples from a PlaybackScheduler.
"""

from collections.abc import Callable

import numpy as np
import sounddevice as sd

from ..errors import DeviceUnavailable, PermissionDenied
from .playback import PlaybackScheduler

_PERMISSION_HINTS = ("permission", "not allowed", "access denied", "unauthorized")


def is_permission_error(e: Exception) -> bool:
    message = str(e).lower()
    return any(hint in message for hint in _PERMISSION_HINTS)


def _device_error(e: Exception, what: str) -> Exception:
    message = str(e)
    if is_permission_error(e):
        return PermissionDenied(f"{what} access denied: {message}")
    return DeviceUnavailable(f"Could not open {what}: {message}")


class SoundDeviceInput:
    """Mono float32 input stream delivering ``frame_size`` samples per callback."""

    def __init__(
        self,
        sample_rate: int,
        frame_size: int,
        on_frame: Callable[[np.ndarray], None],
    ):
        def input_callback(indata, frames, time_info, status):
            on_frame(indata[:, 0].copy())

        try:
            self._stream = sd.InputStream(
                samplerate=sample_rate,
                channels=1,
                dtype=np.float32,
                blocksize=frame_size,
                callback=input_callback,
            )
            self._stream.start()
        except (sd.PortAudioError, OSError) as e:
            raise _device_error(e, "microphone") from e

    def close(self) -> None:
        self._stream.stop()
        self._stream.close()


class SoundDeviceOutput:
    """Output stream rendering whatever the scheduler has queued."""

    def __init__(self, scheduler: PlaybackScheduler, block_ms: int = 25):
        def output_callback(outdata, frames, time_info, status):
            outdata[:] = scheduler.render(frames)

        try:
            self._stream = sd.OutputStream(
                samplerate=scheduler.sample_rate,
                channels=scheduler.channels,
                dtype=np.float32,
                # Small blocks keep barge-in flushes responsive
                blocksize=int(scheduler.sample_rate * block_ms / 1000),
                callback=output_callback,
            )
            self._stream.start()
        except (sd.PortAudioError, OSError) as e:
            raise _device_error(e, "speaker") from e

    def close(self) -> None:
        self._stream.stop()
        self._stream.close()


def open_input(
    sample_rate: int, frame_size: int, on_frame: Callable[[np.ndarray], None]
) -> SoundDeviceInput:
    return SoundDeviceInput(sample_rate, frame_size, on_frame)


def open_output(scheduler: PlaybackScheduler) -> SoundDeviceOutput:
    return SoundDeviceOutput(scheduler)
