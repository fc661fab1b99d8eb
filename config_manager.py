"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import os
import yaml
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

STORAGE_BACKENDS = ("memory", "database")
NARRATIVE_PROVIDERS = ("template", "openai")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class StorageConfig:
    """Storage backend selection"""
    backend: str = "memory"  # memory, database
    seed_sample_data: bool = True


@dataclass
class DatabaseConfig:
    """Database configuration"""
    url: Optional[str] = None
    host: str = "localhost"
    port: int = 5432
    user: str = "sar_user"
    password: str = "sar_password"
    name: str = "sar_database"
    pool_size: int = 5
    max_overflow: int = 10
    echo: bool = False


@dataclass
class NarrativeConfig:
    """Narrative generation configuration"""
    provider: str = "template"  # template, openai
    model: str = "gpt-4o-mini"
    api_key_env: str = "OPENAI_API_KEY"
    base_url: Optional[str] = None
    max_completion_tokens: int = 2048
    timeout_seconds: float = 60.0
    transaction_sample_size: int = 5

    @property
    def api_key(self) -> Optional[str]:
        """API key read from the configured environment variable"""
        return os.getenv(self.api_key_env) or None


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file (falls back to CONFIG_PATH env var)
        """
        config_path = config_path or os.getenv("CONFIG_PATH")
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.storage: StorageConfig = StorageConfig()
        self.database: DatabaseConfig = DatabaseConfig()
        self.narrative: NarrativeConfig = NarrativeConfig()
        self.logging: LoggingConfig = LoggingConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_storage()
        self._parse_database()
        self._parse_narrative()
        self._parse_logging()
        self._validate()

    def _section(self, name: str) -> Dict[str, Any]:
        cfg = self._raw_config.get(name) or {}
        if not isinstance(cfg, dict):
            raise ConfigurationError(f"Config section '{name}' must be a mapping")
        return cfg

    def _parse_storage(self) -> None:
        """Parse storage configuration"""
        cfg = self._section('storage')
        self.storage = StorageConfig(
            backend=str(cfg.get('backend', self.storage.backend)).lower(),
            seed_sample_data=bool(cfg.get('seed_sample_data', self.storage.seed_sample_data))
        )

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._section('database')
        self.database = DatabaseConfig(
            url=cfg.get('url', self.database.url),
            host=cfg.get('host', self.database.host),
            port=cfg.get('port', self.database.port),
            user=cfg.get('user', self.database.user),
            password=cfg.get('password', self.database.password),
            name=cfg.get('name', self.database.name),
            pool_size=cfg.get('pool_size', self.database.pool_size),
            max_overflow=cfg.get('max_overflow', self.database.max_overflow),
            echo=bool(cfg.get('echo', self.database.echo))
        )

    def _parse_narrative(self) -> None:
        """Parse narrative generation configuration"""
        cfg = self._section('narrative')
        self.narrative = NarrativeConfig(
            provider=str(cfg.get('provider', self.narrative.provider)).lower(),
            model=cfg.get('model', self.narrative.model),
            api_key_env=cfg.get('api_key_env', self.narrative.api_key_env),
            base_url=cfg.get('base_url', self.narrative.base_url),
            max_completion_tokens=cfg.get('max_completion_tokens', self.narrative.max_completion_tokens),
            timeout_seconds=cfg.get('timeout_seconds', self.narrative.timeout_seconds),
            transaction_sample_size=cfg.get('transaction_sample_size', self.narrative.transaction_sample_size)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._section('logging')
        self.logging = LoggingConfig(
            level=str(cfg.get('level', self.logging.level)).upper(),
            file=cfg.get('file', self.logging.file),
            console=bool(cfg.get('console', self.logging.console)),
            format=cfg.get('format', self.logging.format)
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (secrets omitted)"""
        return {
            'storage': {
                'backend': self.storage.backend,
                'seed_sample_data': self.storage.seed_sample_data
            },
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name,
                'pool_size': self.database.pool_size,
                'max_overflow': self.database.max_overflow
            },
            'narrative': {
                'provider': self.narrative.provider,
                'model': self.narrative.model,
                'api_key_env': self.narrative.api_key_env,
                'transaction_sample_size': self.narrative.transaction_sample_size
            },
            'logging': {
                'level': self.logging.level,
                'file': self.logging.file,
                'console': self.logging.console
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        if self.storage.backend not in STORAGE_BACKENDS:
            raise ConfigurationError(
                f"storage.backend must be one of {STORAGE_BACKENDS}, got '{self.storage.backend}'"
            )
        if self.narrative.provider not in NARRATIVE_PROVIDERS:
            raise ConfigurationError(
                f"narrative.provider must be one of {NARRATIVE_PROVIDERS}, got '{self.narrative.provider}'"
            )
        if not isinstance(self.narrative.transaction_sample_size, int) or self.narrative.transaction_sample_size < 1:
            raise ConfigurationError("narrative.transaction_sample_size must be a positive integer")
        if not isinstance(self.narrative.max_completion_tokens, int) or self.narrative.max_completion_tokens < 1:
            raise ConfigurationError("narrative.max_completion_tokens must be a positive integer")
        if not isinstance(self.narrative.timeout_seconds, (int, float)) or self.narrative.timeout_seconds <= 0:
            raise ConfigurationError("narrative.timeout_seconds must be positive")
        if not isinstance(self.database.port, int) or not 0 < self.database.port < 65536:
            raise ConfigurationError(f"database.port is out of range: {self.database.port}")
        if self.logging.level not in LOG_LEVELS:
            raise ConfigurationError(
                f"logging.level must be one of {LOG_LEVELS}, got '{self.logging.level}'"
            )

    def require_narrative_credentials(self) -> None:
        """Fail fast when the OpenAI provider is selected without a key"""
        if self.narrative.provider == "openai" and not self.narrative.api_key:
            raise ConfigurationError(
                f"narrative.provider is 'openai' but ${self.narrative.api_key_env} is not set"
            )


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
