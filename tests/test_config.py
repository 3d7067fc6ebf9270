"""Tests for YAML configuration loading."""

from chronotask_voice.config import VoiceConfig


class TestVoiceConfig:
    def test_missing_file_uses_defaults(self, tmp_path):
        config = VoiceConfig.load(str(tmp_path / "absent.yaml"))

        assert config.wake_word.phrase == "hey kevin"
        assert config.session.silence_timeout == 10.0
        assert config.audio.input_sample_rate == 16000
        assert config.audio.output_sample_rate == 24000
        assert config.dashboard_port == 8080
        assert config.autostart is True

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert VoiceConfig.load(str(path)) == VoiceConfig()

    def test_overrides(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            """
voice:
  wake_phrase: "Hey Chrono"
  autostart: false
  whisper_model: base.en
session:
  silence_timeout: 20
  voice_name: Puck
audio:
  voiced_threshold: 0.02
storage:
  data_file: /tmp/chronotask.json
dashboard:
  port: 9000
"""
        )

        config = VoiceConfig.load(str(path))

        assert config.wake_word.phrase == "hey chrono"
        assert config.wake_word.whisper_model == "base.en"
        assert config.autostart is False
        assert config.session.silence_timeout == 20
        assert config.session.voice_name == "Puck"
        assert config.session.end_session_grace == 1.0
        assert config.audio.voiced_threshold == 0.02
        assert config.data_file == "/tmp/chronotask.json"
        assert config.dashboard_port == 9000
