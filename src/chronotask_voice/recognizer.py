"""Continuous local speech recognition with faster-whisper.

Captures the microphone in short blocks, cuts utterances on energy and
trailing silence, and transcribes each utterance on a worker thread. The
engine ends on its own after ``max_session_seconds`` (like browser
recognizers do); ``WakeWordListener`` restarts it.
"""

import logging
import threading

import numpy as np
import sounddevice as sd
from faster_whisper import WhisperModel

from .audio.codec import INPUT_SAMPLE_RATE, rms
from .audio.devices import is_permission_error
from .errors import RecognitionUnavailable

logger = logging.getLogger(__name__)

_models: dict[str, WhisperModel] = {}
_models_lock = threading.Lock()


def load_model(name: str) -> WhisperModel:
    """Load (once per process) a Whisper model on CPU."""
    with _models_lock:
        model = _models.get(name)
        if model is None:
            try:
                model = WhisperModel(name, device="cpu", compute_type="int8")
            except Exception as e:
                raise RecognitionUnavailable(f"Could not load Whisper model {name!r}: {e}") from e
            _models[name] = model
        return model


class WhisperRecognizer:
    """Implements the ``SpeechRecognizer`` engine contract.

    Construction loads (and may download) the model and blocks; build it
    off the event loop.
    """

    def __init__(
        self,
        model_name: str = "tiny.en",
        sample_rate: int = INPUT_SAMPLE_RATE,
        block_ms: int = 100,
        energy_threshold: float = 0.01,
        trailing_silence: float = 0.6,
        max_utterance_seconds: float = 8.0,
        max_session_seconds: float = 60.0,
    ):
        self.model = load_model(model_name)
        self.sample_rate = sample_rate
        self.block_size = int(sample_rate * block_ms / 1000)
        self.energy_threshold = energy_threshold
        self.silence_blocks = max(1, int(trailing_silence * 1000 / block_ms))
        self.max_utterance_blocks = int(max_utterance_seconds * 1000 / block_ms)
        self.max_session_blocks = int(max_session_seconds * 1000 / block_ms)

        self.on_result = None
        self.on_error = None
        self.on_end = None

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="whisper-recognizer", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _emit(self, callback, *args) -> None:
        if callback is not None:
            callback(*args)

    def _run(self) -> None:
        try:
            with sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype=np.float32,
                blocksize=self.block_size,
            ) as stream:
                self._listen(stream)
        except (sd.PortAudioError, OSError) as e:
            kind = "not-allowed" if is_permission_error(e) else "audio-capture"
            logger.warning("Recognizer audio error (%s): %s", kind, e)
            self._emit(self.on_error, kind)
        except Exception:
            logger.exception("Recognizer failed")
            self._emit(self.on_error, "aborted")
        finally:
            # The stream context has exited, so the microphone is released
            self._emit(self.on_end)

    def _listen(self, stream: sd.InputStream) -> None:
        utterance: list[np.ndarray] = []
        quiet_blocks = 0
        blocks = 0

        while not self._stop_event.is_set() and blocks < self.max_session_blocks:
            data, overflowed = stream.read(self.block_size)
            if overflowed:
                logger.debug("Recognizer input overflow")
            block = data[:, 0].copy()
            blocks += 1

            if rms(block) > self.energy_threshold:
                utterance.append(block)
                quiet_blocks = 0
            elif utterance:
                utterance.append(block)
                quiet_blocks += 1

            if utterance and (
                quiet_blocks >= self.silence_blocks or len(utterance) >= self.max_utterance_blocks
            ):
                self._transcribe(np.concatenate(utterance))
                utterance = []
                quiet_blocks = 0

        if blocks >= self.max_session_blocks:
            logger.debug("Recognizer session limit reached")

    def _transcribe(self, samples: np.ndarray) -> None:
        if self._stop_event.is_set():
            return
        segments, _info = self.model.transcribe(
            samples,
            language="en",
            beam_size=1,
            condition_on_previous_text=False,
        )
        text = " ".join(s.text.strip() for s in segments if s.no_speech_prob < 0.6).strip()
        if not text:
            self._emit(self.on_error, "no-speech")
            return
        logger.debug("Transcribed: %s", text)
        self._emit(self.on_result, text, True)
