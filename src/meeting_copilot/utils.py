import os
import time
from functools import partial
from pathlib import Path
from typing import Callable, Optional

import yaml

from .capture import AudioCaptureSession
from .logger import CopilotLogger, log_info, log_warning, set_console_output
from .providers import ProviderConfig, get_available_providers
from .transcription_client import DEFAULT_LISTEN_URL, TranscriptionSession

CONFIG_ENV_VAR = "MEETING_COPILOT_CONFIG"
DEFAULT_CONFIG_PATH = "config.yaml"

# Secrets never live in config.yaml; they come from the environment (.env)
TRANSCRIPTION_KEY_ENV = "DEEPGRAM_API_KEY"
PROVIDER_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


def default_config_path() -> str:
    return os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH


class ConfigManager:
    """
    Process-wide configuration.

    Defaults come from config_schema.yaml, where every leaf is a mapping of
    value, type, optional options and description. The user file is
    validated leaf by leaf and merged over the defaults; a leaf that fails
    validation keeps its default.
    """
    _instance = None

    TYPES = {
        'str': (str,),
        'int': (int,),
        'float': (float, int),
        'bool': (bool,),
    }

    def __init__(self):
        self.config = None
        self.schema = None
        self.config_path = None

    @classmethod
    def initialize(cls, schema_path=None, config_path=None):
        """Load the schema defaults, then the user file, into a new singleton."""
        if cls._instance is not None:
            raise RuntimeError("ConfigManager is already initialized")
        manager = cls()
        manager.config_path = config_path or default_config_path()
        manager.schema = manager.load_config_schema(schema_path)
        manager.config = manager.load_default_config()
        manager.load_user_config(manager.config_path)
        cls._instance = manager

    @classmethod
    def reset(cls):
        """Forget the singleton; the next access reads the files again."""
        cls._instance = None

    @classmethod
    def get_instance(cls) -> 'ConfigManager':
        if cls._instance is None:
            cls.initialize()
        if cls._instance.config is None:  # type: ignore
            cls._instance.config = {}  # type: ignore
        return cls._instance  # type: ignore

    @classmethod
    def _lookup(cls, keys, missing):
        node = cls.get_instance().config
        if not node:
            return missing
        for key in keys:
            if not isinstance(node, dict) or key not in node:
                return missing
            node = node[key]
        return node

    @classmethod
    def get_config_section(cls, *keys):
        """Nested section by keys, or {} when any key is absent."""
        return cls._lookup(keys, {})

    @classmethod
    def get_config_value(cls, *keys):
        """Nested value by keys, or None when any key is absent."""
        return cls._lookup(keys, None)

    @classmethod
    def get_schema_item(cls, *keys):
        """Schema leaf for nested keys, or None when they do not name a setting."""
        node = cls.get_instance().schema
        for key in keys:
            if not isinstance(node, dict) or key not in node:
                return None
            node = node[key]
        return node if isinstance(node, dict) and 'type' in node else None

    @classmethod
    def set_config_value(cls, value, *keys):
        """Set a nested value, creating intermediate sections as needed."""
        node: dict = cls.get_instance().config
        *parents, leaf = keys
        for key in parents:
            if not isinstance(node.get(key), dict):
                node[key] = {}
            node = node[key]
        node[leaf] = value

    @staticmethod
    def load_config_schema(schema_path=None):
        if schema_path is None:
            schema_path = Path(__file__).with_name('config_schema.yaml')
        with open(schema_path, 'r', encoding='utf-8') as file:
            return yaml.safe_load(file)

    def load_default_config(self):
        """Strip the schema down to its default values."""
        def defaults(node):
            if not isinstance(node, dict):
                return node
            if 'value' in node:
                return node['value']
            return {key: defaults(child) for key, child in node.items()}

        return {section: defaults(node) for section, node in self.schema.items()}

    @classmethod
    def _leaf_problem(cls, value, leaf) -> Optional[str]:
        """Why value does not fit the schema leaf, or None if it does."""
        if value is None:
            return None
        expected = leaf['type']
        allowed = cls.TYPES.get(expected)
        # bool is an int subclass; only 'bool' leaves take it
        if allowed and (not isinstance(value, allowed) or (expected != 'bool' and isinstance(value, bool))):
            return f"should be {expected}, got {type(value).__name__}"
        options = leaf.get('options')
        if options and value not in options:
            return f"value '{value}' not in allowed options {options}"
        return None

    def _validate_config_value(self, value, schema_item, path):
        """True if value may replace the default at path; warns otherwise."""
        if not isinstance(schema_item, dict) or 'type' not in schema_item:
            return True
        problem = self._leaf_problem(value, schema_item)
        if problem is None:
            return True
        log_warning(f"Config '{path}' {problem}. Using default.")
        print(f"[!] Config validation warning: '{path}' {problem}. Using default.")
        return False

    def _validate_config_section(self, user_section, schema_section, path=""):
        """Reset every invalid leaf of user_section to its schema default, in place."""
        if not isinstance(user_section, dict) or not isinstance(schema_section, dict):
            return
        for key, node in schema_section.items():
            if key not in user_section or not isinstance(node, dict):
                continue
            where = f"{path}.{key}" if path else key
            if 'type' in node:
                if not self._validate_config_value(user_section[key], node, where):
                    user_section[key] = node.get('value')
            else:
                self._validate_config_section(user_section[key], node, where)

    def load_user_config(self, config_path=None):
        """Merge the user YAML file over the current values."""
        config_path = Path(config_path or self.config_path)
        if not config_path.is_file():
            return
        try:
            with open(config_path, 'r', encoding='utf-8') as file:
                user_config = yaml.safe_load(file) or {}
        except yaml.YAMLError as e:
            log_warning(f"Invalid YAML in {config_path}: {e}")
            user_config = None
        if not isinstance(user_config, dict):
            print(f"[!] Could not read {config_path}. Using default configuration.")
            return
        self._validate_config_section(user_config, self.schema)
        _merge(self.config, user_config)

    @classmethod
    def save_config(cls, config_path=None):
        """Write the current values to the user file, atomically."""
        manager = cls.get_instance()
        target = Path(config_path or manager.config_path or default_config_path())
        write_atomic(target, yaml.safe_dump(manager.config, default_flow_style=False))


def _merge(base: dict, overrides: dict):
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value


def write_atomic(path: Path, text: str, attempts: int = 3):
    """
    Replace path with text via a fsynced temp file.

    The final rename is retried with backoff because Windows refuses it while
    another process holds the file open.

    Raises:
        RuntimeError: If the file stays locked for every attempt
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + '.tmp')
    with open(temp_path, 'w', encoding='utf-8') as file:
        file.write(text)
        file.flush()
        os.fsync(file.fileno())

    delay = 0.1
    for attempt in range(1, attempts + 1):
        try:
            temp_path.replace(path)
            return
        except PermissionError as e:
            if attempt == attempts:
                temp_path.unlink(missing_ok=True)
                raise RuntimeError(f"Could not write {path}, file is locked: {e}") from e
            log_warning(f"{path} is locked, retrying in {delay}s")
            time.sleep(delay)
            delay *= 2


def update_setting(dotted_key: str, raw_value: str):
    """
    Validate one setting and save it to the user config file.

    Args:
        dotted_key: Setting path such as "insights.provider"
        raw_value: New value as typed; parsed as YAML except for str settings

    Returns:
        The stored value

    Raises:
        KeyError: If dotted_key is not a setting
        ValueError: If the value does not fit the setting
    """
    keys = dotted_key.split('.')
    leaf = ConfigManager.get_schema_item(*keys)
    if leaf is None:
        raise KeyError(dotted_key)

    if raw_value.strip().lower() in ('', 'null', 'none'):
        value = None
    elif leaf['type'] == 'str':
        value = raw_value
    else:
        try:
            value = yaml.safe_load(raw_value)
        except yaml.YAMLError as e:
            raise ValueError(f"Could not parse '{raw_value}': {e}") from e

    problem = ConfigManager._leaf_problem(value, leaf)
    if problem:
        raise ValueError(f"'{dotted_key}' {problem}")

    ConfigManager.set_config_value(value, *keys)
    ConfigManager.save_config()
    log_info(f"Setting {dotted_key} changed to {value!r}")
    return value


def apply_runtime_settings():
    """Push misc.* settings into the logger and console output."""
    set_console_output(ConfigManager.get_config_value('misc', 'print_to_terminal') is not False)
    level = ConfigManager.get_config_value('misc', 'log_level')
    if level:
        CopilotLogger.set_level(level)


def get_transcription_credential() -> Optional[str]:
    return os.environ.get(TRANSCRIPTION_KEY_ENV) or None


def build_provider_config(provider: Optional[str] = None) -> ProviderConfig:
    """
    Build the provider gateway configuration.

    Args:
        provider: Provider id overriding insights.provider

    Returns:
        ProviderConfig with keys read from the environment
    """
    models = ConfigManager.get_config_section('insights', 'models') or {}
    api_keys = {}
    for provider_id in get_available_providers():
        env_var = PROVIDER_KEY_ENV.get(provider_id, f"{provider_id.upper()}_API_KEY")
        api_keys[provider_id] = os.environ.get(env_var, "")
    return ProviderConfig(
        provider=provider or ConfigManager.get_config_value('insights', 'provider') or "openai",
        api_keys=api_keys,
        models={k: v for k, v in models.items() if v},
    )


def build_capture_session(**overrides) -> AudioCaptureSession:
    """AudioCaptureSession from the audio section; keyword arguments win."""
    audio = ConfigManager.get_config_section('audio')
    options = {
        'sample_rate': audio.get('sample_rate') or 16000,
        'chunk_ms': audio.get('chunk_ms') or 250,
        'max_pending_chunks': audio.get('max_pending_chunks') or 8,
    }
    options.update(overrides)
    return AudioCaptureSession(**options)


def build_transcription_factory(connector=None, sample_rate: Optional[int] = None) -> Callable[[], TranscriptionSession]:
    """
    Factory producing a configured TranscriptionSession per recording.

    Args:
        connector: Optional websocket connector (tests)
        sample_rate: Capture sample rate; defaults to audio.sample_rate
    """
    options = ConfigManager.get_config_section('transcription')
    return partial(
        TranscriptionSession,
        url=os.environ.get("DEEPGRAM_LISTEN_URL") or options.get('url') or DEFAULT_LISTEN_URL,
        model=options.get('model') or "nova-2",
        language=options.get('language') or "en-US",
        sample_rate=sample_rate or ConfigManager.get_config_value('audio', 'sample_rate') or 16000,
        smart_format=options.get('smart_format') is not False,
        diarize=options.get('diarize') is not False,
        keepalive_seconds=options.get('keepalive_seconds') or 8.0,
        connector=connector,
    )


def get_meetings_path() -> Path:
    return Path(ConfigManager.get_config_value('storage', 'meetings_file') or "meetings.json")
