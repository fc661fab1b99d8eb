"""
Tests for configuration loading and logging setup
"""

import logging
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import (
    ConfigManager, ConfigurationError, LoggingConfig, get_config
)
from logging_utils import configure_logging, sanitize_for_logging


@pytest.fixture
def write_config(tmp_path):
    def _write(text):
        path = tmp_path / "config.yaml"
        path.write_text(text, encoding="utf-8")
        return str(path)
    return _write


@pytest.fixture(autouse=True)
def reset_singleton():
    ConfigManager.reset_instance()
    yield
    ConfigManager.reset_instance()


class TestDefaults:

    def test_missing_file_uses_defaults(self, tmp_path):
        config = ConfigManager(str(tmp_path / "absent.yaml"))
        assert config.storage.backend == "memory"
        assert config.storage.seed_sample_data is True
        assert config.narrative.provider == "template"
        assert config.database.port == 5432
        assert config.logging.level == "INFO"

    def test_empty_file_uses_defaults(self, write_config):
        config = ConfigManager(write_config(""))
        assert config.narrative.model == "gpt-4o-mini"

    def test_config_path_from_environment(self, write_config, monkeypatch):
        monkeypatch.setenv("CONFIG_PATH", write_config("storage:\n  backend: database\n"))
        assert ConfigManager().storage.backend == "database"

    def test_bundled_config_is_valid(self):
        config = ConfigManager(str(Path(__file__).parent.parent / "config.yaml"))
        assert config.storage.backend == "memory"
        assert config.narrative.api_key_env == "OPENAI_API_KEY"


class TestParsing:

    def test_sections_are_parsed(self, write_config):
        config = ConfigManager(write_config(
            "storage:\n"
            "  backend: DATABASE\n"
            "  seed_sample_data: false\n"
            "database:\n"
            "  url: sqlite:///sar.db\n"
            "  pool_size: 2\n"
            "narrative:\n"
            "  provider: OpenAI\n"
            "  model: gpt-4o\n"
            "  transaction_sample_size: 3\n"
            "logging:\n"
            "  level: debug\n"
            "  console: false\n"
        ))
        assert config.storage.backend == "database"
        assert config.storage.seed_sample_data is False
        assert config.database.url == "sqlite:///sar.db"
        assert config.database.pool_size == 2
        assert config.database.host == "localhost"
        assert config.narrative.provider == "openai"
        assert config.narrative.model == "gpt-4o"
        assert config.narrative.transaction_sample_size == 3
        assert config.logging.level == "DEBUG"
        assert config.logging.console is False

    def test_to_dict_omits_secrets(self, write_config):
        config = ConfigManager(write_config("database:\n  password: hunter2\n"))
        exported = config.to_dict()
        assert "password" not in exported["database"]
        assert "hunter2" not in str(exported)


class TestValidation:

    @pytest.mark.parametrize("text, message", [
        ("storage:\n  backend: redis\n", "storage.backend"),
        ("narrative:\n  provider: bard\n", "narrative.provider"),
        ("narrative:\n  transaction_sample_size: 0\n", "transaction_sample_size"),
        ("narrative:\n  max_completion_tokens: -1\n", "max_completion_tokens"),
        ("narrative:\n  timeout_seconds: 0\n", "timeout_seconds"),
        ("database:\n  port: 70000\n", "database.port"),
        ("logging:\n  level: LOUD\n", "logging.level"),
        ("storage: memory\n", "must be a mapping"),
        ("- just\n- a list\n", "mapping at the top level"),
    ])
    def test_invalid_values(self, write_config, text, message):
        with pytest.raises(ConfigurationError, match=message):
            ConfigManager(write_config(text))

    def test_invalid_yaml(self, write_config):
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            ConfigManager(write_config("storage: [unclosed\n"))


class TestCredentials:

    def test_template_needs_no_key(self, write_config, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        ConfigManager(write_config("")).require_narrative_credentials()

    def test_openai_without_key(self, write_config, monkeypatch):
        monkeypatch.delenv("SARCHECK_TEST_KEY", raising=False)
        config = ConfigManager(write_config("narrative:\n  provider: openai\n  api_key_env: SARCHECK_TEST_KEY\n"))
        with pytest.raises(ConfigurationError, match="SARCHECK_TEST_KEY"):
            config.require_narrative_credentials()

    def test_openai_with_key(self, write_config, monkeypatch):
        monkeypatch.setenv("SARCHECK_TEST_KEY", "sk-test")
        config = ConfigManager(write_config("narrative:\n  provider: openai\n  api_key_env: SARCHECK_TEST_KEY\n"))
        config.require_narrative_credentials()
        assert config.narrative.api_key == "sk-test"


class TestSingleton:

    def test_get_config_is_cached(self, write_config):
        path = write_config("")
        assert get_config(path) is get_config()

    def test_reset_instance(self, write_config):
        first = get_config(write_config(""))
        ConfigManager.reset_instance()
        assert get_config() is not first


class TestLogging:

    @pytest.fixture
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield root
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in handlers:
            root.addHandler(handler)
        root.setLevel(level)

    def test_file_handler(self, tmp_path, restore_root):
        log_file = tmp_path / "logs" / "sarcheck.log"
        configure_logging(LoggingConfig(level="WARNING", file=str(log_file), console=False))

        logging.getLogger("sarcheck.test").warning("written to file")
        logging.getLogger("sarcheck.test").info("filtered out")
        for handler in restore_root.handlers:
            handler.flush()

        assert restore_root.level == logging.WARNING
        content = log_file.read_text(encoding="utf-8")
        assert "written to file" in content
        assert "filtered out" not in content

    def test_repeated_setup_does_not_duplicate_handlers(self, restore_root):
        configure_logging(LoggingConfig(console=True))
        configure_logging(LoggingConfig(console=True))
        assert len(restore_root.handlers) == 1


class TestSanitizeForLogging:

    def test_strips_control_characters(self):
        assert sanitize_for_logging("line1\nFAKE ENTRY\r\x00") == "line1 FAKE ENTRY"

    def test_truncates(self):
        assert len(sanitize_for_logging("x" * 2000)) == 500

    def test_empty(self):
        assert sanitize_for_logging("") == ""
        assert sanitize_for_logging(None) == ""
