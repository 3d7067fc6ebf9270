"""ChronoTask voice configuration loader."""

from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class AudioConfig:
    """Microphone and speaker settings."""

    input_sample_rate: int = 16000
    output_sample_rate: int = 24000
    frame_size: int = 4096
    # RMS on normalized float samples above which a frame counts as voiced
    voiced_threshold: float = 0.01


@dataclass
class SessionConfig:
    """Live session lifecycle settings."""

    live_model: str = "gemini-2.5-flash-native-audio-preview-09-2025"
    voice_name: str = "Kore"
    silence_timeout: float = 10.0
    silence_check_interval: float = 1.0
    end_session_grace: float = 1.0
    playback_drain_timeout: float = 10.0


@dataclass
class WakeWordConfig:
    """Wake phrase recognition settings."""

    phrase: str = "hey kevin"
    whisper_model: str = "tiny.en"
    restart_delay: float = 0.25
    # Recognition engines end on their own after this long; the listener restarts them
    max_recognition_seconds: float = 60.0


@dataclass
class VoiceConfig:
    """Main configuration for ChronoTask voice."""

    data_file: str = ".chronotask/data.json"
    dashboard_port: int = 8080
    autostart: bool = True

    audio: AudioConfig = field(default_factory=AudioConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    wake_word: WakeWordConfig = field(default_factory=WakeWordConfig)

    @classmethod
    def load(cls, config_path: str = ".chronotask/config.yaml") -> "VoiceConfig":
        """Load config from YAML file.

        Args:
            config_path: Path to config file (relative or absolute)

        Returns:
            Loaded configuration, or defaults if the file does not exist
        """
        path = Path(config_path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        audio_data = data.get("audio", {})
        session_data = data.get("session", {})
        wake_data = data.get("voice", {})
        storage_data = data.get("storage", {})
        dashboard_data = data.get("dashboard", {})

        audio = AudioConfig(
            input_sample_rate=audio_data.get("input_sample_rate", 16000),
            output_sample_rate=audio_data.get("output_sample_rate", 24000),
            frame_size=audio_data.get("frame_size", 4096),
            voiced_threshold=audio_data.get("voiced_threshold", 0.01),
        )
        session = SessionConfig(
            live_model=session_data.get(
                "live_model", "gemini-2.5-flash-native-audio-preview-09-2025"
            ),
            voice_name=session_data.get("voice_name", "Kore"),
            silence_timeout=session_data.get("silence_timeout", 10.0),
            silence_check_interval=session_data.get("silence_check_interval", 1.0),
            end_session_grace=session_data.get("end_session_grace", 1.0),
            playback_drain_timeout=session_data.get("playback_drain_timeout", 10.0),
        )
        wake_word = WakeWordConfig(
            phrase=str(wake_data.get("wake_phrase", "hey kevin")).lower(),
            whisper_model=wake_data.get("whisper_model", "tiny.en"),
            restart_delay=wake_data.get("restart_delay", 0.25),
            max_recognition_seconds=wake_data.get("max_recognition_seconds", 60.0),
        )

        return cls(
            data_file=storage_data.get("data_file", ".chronotask/data.json"),
            dashboard_port=dashboard_data.get("port", 8080),
            autostart=wake_data.get("autostart", True),
            audio=audio,
            session=session,
            wake_word=wake_word,
        )
