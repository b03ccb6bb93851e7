"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import hashlib
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Largest UDP payload minus room for the JSON header
MAX_CHUNK_SIZE = 60 * 1024

ENV_PREFIX = 'CHUNKXFER_'


@dataclass
class Config:
    """
    Transfer node configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (CHUNKXFER_*)
    2. Config file (config.json)
    3. Default values
    """
    # Network
    host: str = '0.0.0.0'
    port: int = 5690
    api_port: int = 8080

    # Storage
    data_dir: Path = field(default_factory=lambda: Path('./xfer_data'))

    # Chunking
    chunk_size: int = 16 * 1024  # 16KB
    hash_algorithm: str = 'sha256'

    # Flow control
    window_size: int = 16
    retransmit_timeout: float = 0.5
    max_retries: int = 5
    backoff_factor: float = 1.0

    # Session timeouts (seconds)
    negotiation_timeout: float = 10.0
    inactivity_timeout: float = 30.0
    grace_period: float = 5.0
    retention_seconds: float = 24 * 3600.0

    # Receiver limits
    upload_slots: int = 32
    min_free_space: int = 0
    backup_suffix: Optional[str] = None

    # Logging
    log_level: str = 'INFO'

    @property
    def files_dir(self) -> Path:
        """Where completed files are promoted to."""
        return Path(self.data_dir) / 'files'

    def validate(self):
        """Raise ValueError if the settings cannot work together."""
        if not 0 < self.chunk_size <= MAX_CHUNK_SIZE:
            raise ValueError(
                f"chunk_size must be between 1 and {MAX_CHUNK_SIZE}, got {self.chunk_size}"
            )
        if self.window_size < 1:
            raise ValueError("window_size must be at least 1")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.backoff_factor < 1.0:
            raise ValueError("backoff_factor must be >= 1.0")
        for name in ('retransmit_timeout', 'negotiation_timeout',
                     'inactivity_timeout'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.hash_algorithm not in hashlib.algorithms_available:
            raise ValueError(f"Unsupported hash algorithm: {self.hash_algorithm}")
        return self

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        def env(name: str, default):
            return os.getenv(ENV_PREFIX + name, default)

        # Network
        config.host = env('HOST', config.host)
        config.port = int(env('PORT', config.port))
        config.api_port = int(env('API_PORT', config.api_port))

        # Storage
        data_dir = env('DATA_DIR', None)
        if data_dir:
            config.data_dir = Path(data_dir)

        # Chunking
        config.chunk_size = int(env('CHUNK_SIZE', config.chunk_size))
        config.hash_algorithm = env('HASH_ALGORITHM', config.hash_algorithm)

        # Flow control
        config.window_size = int(env('WINDOW_SIZE', config.window_size))
        config.retransmit_timeout = float(env('RETRANSMIT_TIMEOUT', config.retransmit_timeout))
        config.max_retries = int(env('MAX_RETRIES', config.max_retries))
        config.backoff_factor = float(env('BACKOFF_FACTOR', config.backoff_factor))

        # Timeouts
        config.negotiation_timeout = float(env('NEGOTIATION_TIMEOUT', config.negotiation_timeout))
        config.inactivity_timeout = float(env('INACTIVITY_TIMEOUT', config.inactivity_timeout))
        config.grace_period = float(env('GRACE_PERIOD', config.grace_period))
        config.retention_seconds = float(env('RETENTION_SECONDS', config.retention_seconds))

        # Receiver limits
        config.upload_slots = int(env('UPLOAD_SLOTS', config.upload_slots))
        config.min_free_space = int(env('MIN_FREE_SPACE', config.min_free_space))
        config.backup_suffix = env('BACKUP_SUFFIX', config.backup_suffix) or None

        # Logging
        config.log_level = env('LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()
        for key, value in data.items():
            if not hasattr(config, key):
                continue
            if key == 'data_dir':
                value = Path(value)
            setattr(config, key, value)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'port': self.port,
            'api_port': self.api_port,
            'data_dir': str(self.data_dir),
            'chunk_size': self.chunk_size,
            'hash_algorithm': self.hash_algorithm,
            'window_size': self.window_size,
            'retransmit_timeout': self.retransmit_timeout,
            'max_retries': self.max_retries,
            'backoff_factor': self.backoff_factor,
            'negotiation_timeout': self.negotiation_timeout,
            'inactivity_timeout': self.inactivity_timeout,
            'grace_period': self.grace_period,
            'retention_seconds': self.retention_seconds,
            'upload_slots': self.upload_slots,
            'min_free_space': self.min_free_space,
            'backup_suffix': self.backup_suffix,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and Path(config_path).exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in env_config.to_dict():
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "0.0.0.0",
  "port": 5690,
  "api_port": 8080,
  "data_dir": "./xfer_data",
  "chunk_size": 16384,
  "window_size": 16,
  "retransmit_timeout": 0.5,
  "max_retries": 5,
  "inactivity_timeout": 30.0,
  "upload_slots": 32,
  "log_level": "INFO"
}
"""
