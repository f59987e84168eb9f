"""
Tests for ConfigManager and the configuration builders.
"""

import logging
import sys
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))
from meeting_copilot import utils
from meeting_copilot.capture import AudioCaptureSession
from meeting_copilot.logger import CopilotLogger
from meeting_copilot.utils import (
    ConfigManager,
    apply_runtime_settings,
    build_capture_session,
    build_provider_config,
    build_transcription_factory,
    get_meetings_path,
    get_transcription_credential,
    update_setting,
)

SCHEMA_PATH = Path(__file__).parent.parent.parent / "src" / "meeting_copilot" / "config_schema.yaml"


@pytest.fixture
def fresh_config(temp_dir, monkeypatch):
    """Initialize ConfigManager against a user config in temp_dir."""
    config_path = temp_dir / "config.yaml"
    monkeypatch.setenv("MEETING_COPILOT_CONFIG", str(config_path))
    ConfigManager.reset()

    def load(user_config=None):
        ConfigManager.reset()
        if user_config is not None:
            config_path.write_text(yaml.safe_dump(user_config))
        ConfigManager.initialize()
        return ConfigManager.get_instance()

    yield load
    ConfigManager.reset()


class TestConfigManager:
    """Tests for ConfigManager functionality."""

    def test_yaml_safe_load_used(self):
        """Verify yaml.safe_load is used (not yaml.load)."""
        content = Path(utils.__file__).read_text()

        assert "yaml.safe_load" in content
        # Ensure no unsafe yaml.load without Loader
        assert "yaml.load(" not in content or "Loader=" in content

    def test_config_validation_type_checking(self):
        """Config validation should check types."""
        manager = ConfigManager()

        # Valid types should pass
        assert manager._validate_config_value("test", {"type": "str", "value": ""}, "test.path")
        assert manager._validate_config_value(42, {"type": "int", "value": 0}, "test.path")
        assert manager._validate_config_value(True, {"type": "bool", "value": False}, "test.path")
        assert manager._validate_config_value(2.5, {"type": "float", "value": 1.0}, "test.path")

        # Ints are fine where floats are expected, bools are not numbers
        assert manager._validate_config_value(5, {"type": "float", "value": 1.0}, "test.path")
        assert not manager._validate_config_value(True, {"type": "int", "value": 0}, "test.path")
        assert not manager._validate_config_value("5", {"type": "int", "value": 0}, "test.path")

        # None should be allowed (optional values)
        assert manager._validate_config_value(None, {"type": "str", "value": ""}, "test.path")

    def test_config_validation_options_checking(self):
        """Config validation should check allowed options."""
        manager = ConfigManager()

        schema_item = {
            "type": "str",
            "value": "openai",
            "options": ["openai", "anthropic", "gemini"]
        }

        assert manager._validate_config_value("anthropic", schema_item, "insights.provider")
        assert not manager._validate_config_value("cohere", schema_item, "insights.provider")

    def test_defaults_loaded_from_schema(self, fresh_config):
        """Without a user file, values should come from the schema."""
        fresh_config()
        assert ConfigManager.get_config_value("insights", "provider") == "openai"
        assert ConfigManager.get_config_value("insights", "interval_seconds") == 5.0
        assert ConfigManager.get_config_value("transcription", "model") == "nova-2"
        assert ConfigManager.get_config_value("audio", "device_id") is None
        assert ConfigManager.get_config_section("insights", "models") == {
            "openai": None, "anthropic": None, "gemini": None
        }

    def test_user_config_merged(self, fresh_config):
        """User values should override defaults without dropping siblings."""
        fresh_config({"insights": {"provider": "gemini", "models": {"gemini": "gemini-pro"}}})
        assert ConfigManager.get_config_value("insights", "provider") == "gemini"
        assert ConfigManager.get_config_value("insights", "models", "gemini") == "gemini-pro"
        assert ConfigManager.get_config_value("insights", "mode") == "general"

    def test_invalid_user_values_reset(self, fresh_config):
        """Invalid values should fall back to the schema default."""
        fresh_config({"insights": {"mode": "therapy", "feed_limit": "lots"}})
        assert ConfigManager.get_config_value("insights", "mode") == "general"
        assert ConfigManager.get_config_value("insights", "feed_limit") == 20

    def test_broken_yaml_uses_defaults(self, fresh_config, temp_dir):
        """A syntactically broken user file should be ignored."""
        (temp_dir / "config.yaml").write_text("insights: [unclosed")
        fresh_config()
        assert ConfigManager.get_config_value("insights", "provider") == "openai"

    def test_save_and_reload(self, fresh_config, temp_dir):
        """save_config should write the current values atomically."""
        fresh_config()
        ConfigManager.set_config_value("sales", "insights", "mode")
        ConfigManager.save_config()

        saved = yaml.safe_load((temp_dir / "config.yaml").read_text())
        assert saved["insights"]["mode"] == "sales"
        assert not (temp_dir / "config.yaml.tmp").exists()

        fresh_config()
        assert ConfigManager.get_config_value("insights", "mode") == "sales"

    def test_get_config_value_nested_keys(self):
        """Should retrieve nested config values."""
        manager = ConfigManager()
        manager.config = {"level1": {"level2": {"value": "test"}}}

        original = ConfigManager._instance
        ConfigManager._instance = manager
        try:
            assert ConfigManager.get_config_value("level1", "level2", "value") == "test"
            assert ConfigManager.get_config_value("level1", "nonexistent") is None
        finally:
            ConfigManager._instance = original

    def test_set_config_value_creates_nested(self):
        """Should create nested structure if needed."""
        manager = ConfigManager()
        manager.config = {}

        original = ConfigManager._instance
        ConfigManager._instance = manager
        try:
            ConfigManager.set_config_value("new_value", "level1", "level2", "key")
            assert manager.config["level1"]["level2"]["key"] == "new_value"
        finally:
            ConfigManager._instance = original


class TestConfigSchema:
    """Tests for config schema compliance."""

    def test_schema_has_required_sections(self):
        """Config schema should have all required sections."""
        with open(SCHEMA_PATH) as f:
            schema = yaml.safe_load(f)

        for section in ["insights", "transcription", "audio", "storage", "misc"]:
            assert section in schema, f"Missing required section: {section}"

    def test_schema_defaults_pass_validation(self):
        """Every schema default should satisfy its own type and options."""
        manager = ConfigManager()
        manager.schema = manager.load_config_schema(str(SCHEMA_PATH))
        defaults = manager.load_default_config()
        # Validation resets invalid values; defaults must survive unchanged
        expected = yaml.safe_load(yaml.safe_dump(defaults))
        manager._validate_config_section(defaults, manager.schema)
        assert defaults == expected


class TestBuilders:
    """Tests for turning configuration into core parameters."""

    def test_provider_config_reads_env_keys(self, fresh_config, monkeypatch):
        """Keys should come from the environment, one per provider."""
        fresh_config({"insights": {"provider": "anthropic", "models": {"anthropic": "claude-x"}}})
        monkeypatch.setenv("ANTHROPIC_API_KEY", "ak")
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        config = build_provider_config()
        assert config.provider == "anthropic"
        assert config.key_for() == "ak"
        assert config.key_for("openai") == ""
        assert config.models == {"anthropic": "claude-x"}

    def test_provider_override(self, fresh_config):
        """An explicit provider should win over the config file."""
        fresh_config()
        assert build_provider_config("gemini").provider == "gemini"

    def test_transcription_credential(self, monkeypatch):
        """The Deepgram key should come from DEEPGRAM_API_KEY."""
        monkeypatch.setenv("DEEPGRAM_API_KEY", "dg")
        assert get_transcription_credential() == "dg"
        monkeypatch.setenv("DEEPGRAM_API_KEY", "")
        assert get_transcription_credential() is None

    def test_transcription_factory(self, fresh_config, monkeypatch):
        """Factory sessions should carry the transcription settings."""
        monkeypatch.delenv("DEEPGRAM_LISTEN_URL", raising=False)
        fresh_config({"transcription": {"model": "nova-3", "diarize": False, "url": "wss://proxy.local/listen"}})
        session = build_transcription_factory()()
        assert session.model == "nova-3"
        assert session.diarize is False
        assert session.url == "wss://proxy.local/listen"
        assert session.sample_rate == 16000

    def test_capture_session(self, fresh_config):
        """Capture settings should come from the audio section."""
        fresh_config({"audio": {"chunk_ms": 100, "max_pending_chunks": 4}})
        capture = build_capture_session()
        assert isinstance(capture, AudioCaptureSession)
        assert capture.chunk_frames == 1600
        assert capture.max_pending_chunks == 4

    def test_meetings_path(self, fresh_config, temp_dir):
        """Meetings file should follow storage.meetings_file."""
        fresh_config({"storage": {"meetings_file": str(temp_dir / "m.json")}})
        assert get_meetings_path() == temp_dir / "m.json"

    def test_runtime_settings(self, fresh_config):
        """misc.log_level should set the logger level."""
        fresh_config({"misc": {"log_level": "DEBUG", "print_to_terminal": False}})
        try:
            apply_runtime_settings()
            assert CopilotLogger.get_logger().level == logging.DEBUG
        finally:
            CopilotLogger.set_level("WARNING")
            utils.set_console_output(True)


class TestUpdateSetting:
    """Tests for changing one setting from the command line."""

    def test_typed_value_saved(self, fresh_config, temp_dir):
        """Numbers should be parsed and written to the user file."""
        fresh_config()
        assert update_setting("insights.interval_seconds", "10") == 10
        saved = yaml.safe_load((temp_dir / "config.yaml").read_text())
        assert saved["insights"]["interval_seconds"] == 10

        fresh_config()
        assert ConfigManager.get_config_value("insights", "interval_seconds") == 10

    def test_string_setting_kept_verbatim(self, fresh_config):
        """Device ids look numeric but are strings."""
        fresh_config()
        assert update_setting("audio.device_id", "2") == "2"
        assert update_setting("audio.device_id", "null") is None

    def test_option_checked(self, fresh_config, temp_dir):
        """Values outside the allowed options should be rejected and not saved."""
        fresh_config()
        with pytest.raises(ValueError):
            update_setting("insights.provider", "cohere")
        assert not (temp_dir / "config.yaml").exists()
        assert ConfigManager.get_config_value("insights", "provider") == "openai"

    def test_type_checked(self, fresh_config):
        """A bool where an int is expected should be rejected."""
        fresh_config()
        with pytest.raises(ValueError):
            update_setting("insights.feed_limit", "true")

    def test_unknown_key(self, fresh_config):
        """Sections and unknown names are not settings."""
        fresh_config()
        with pytest.raises(KeyError):
            update_setting("insights.models", "x")
        with pytest.raises(KeyError):
            update_setting("nope.nothing", "x")
