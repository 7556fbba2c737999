"""
Manages loading, saving, and validating the account configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to read it from a YAML or JSON
file. One `Settings` value is scoped to one job run and passed explicitly to
the orchestrator.
"""

import base64
import binascii
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, validator, ValidationError

from .constants import (
    BASE_URL, JOBS_ENDPOINT, LOG_DIR, DEFAULT_OUTPUT_DIR, POLL_INTERVAL_SECONDS,
    SUBMIT_CONFIRM_SECONDS, SUBMIT_CONFIRM_ATTEMPTS, MAX_POLL_ERRORS, DEFAULT_CONCURRENCY_LIMIT, DEFAULT_BATCH_SIZE,
)
from .exceptions import ConfigurationError


class Settings(BaseModel):
    """
    Defines the account and run configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings.
    """
    account_name: str
    user_name: str
    password_encoded: str
    base_output_folder: Path = DEFAULT_OUTPUT_DIR
    friendly_folder_names: bool = False
    auto_accept: bool = True
    poll_interval_seconds: float = Field(default=POLL_INTERVAL_SECONDS, ge=1)
    submit_confirm_seconds: float = Field(default=SUBMIT_CONFIRM_SECONDS, ge=0)
    submit_confirm_attempts: int = Field(default=SUBMIT_CONFIRM_ATTEMPTS, ge=1)
    max_poll_errors: int = Field(default=MAX_POLL_ERRORS, ge=1)
    concurrency_limit: int = Field(default=DEFAULT_CONCURRENCY_LIMIT, ge=1, le=200)
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    retry_failed_downloads: bool = True
    decompress: bool = True
    log_level: str = 'INFO'
    log_dir: Path = LOG_DIR

    @validator('account_name', 'user_name')
    def validate_not_blank(cls, value: str) -> str:
        """Rejects empty account and user names, which would produce a broken URL."""
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @validator('password_encoded')
    def validate_password_encoded(cls, value: str) -> str:
        """Ensures the stored password is valid base64."""
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("password_encoded must be base64-encoded.")
        return value

    @validator('log_level')
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @property
    def password(self) -> str:
        """The decoded account password."""
        return base64.b64decode(self.password_encoded).decode('utf-8')

    @property
    def jobs_url(self) -> str:
        """The account's job list endpoint, also the job submission endpoint."""
        return f"{BASE_URL}{self.account_name}/{JOBS_ENDPOINT}"

    class Config:
        # Pydantic configuration to allow Path objects
        json_encoders = {Path: str}


def read_document(path: Path, fmt: Optional[str] = None) -> Any:
    """
    Parses a YAML or JSON document.

    The parser is `fmt` ('json' or 'yaml') when given, otherwise it is chosen
    by file suffix: `.json` is JSON, everything else is YAML.

    Raises:
        ConfigurationError: If the file is missing or cannot be parsed.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"File not found: {path}")
    fmt = fmt or ('json' if path.suffix.lower() == '.json' else 'yaml')
    try:
        text = path.read_text(encoding='utf-8')
        if fmt == 'json':
            return json.loads(text)
        return yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError, UnicodeDecodeError, IOError) as e:
        raise ConfigurationError(f"Could not parse {path}: {e}") from e


class ConfigManager:
    """Handles loading and saving the account configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = Path(config_path)
        self.logger = logging.getLogger(__name__)

    def load(self, overrides: Dict[str, Any] = None) -> Settings:
        """
        Loads the config file, applies overrides, validates, and returns it.

        Both the historical layout (settings nested under a top-level `config:`
        key) and a flat mapping are accepted.

        Args:
            overrides: Values that take precedence over the file, e.g. from the CLI.

        Returns:
            A validated Settings object.

        Raises:
            ConfigurationError: If the file is missing, unparseable or invalid.
        """
        data = read_document(self.config_path)
        if isinstance(data, dict) and isinstance(data.get('config'), dict):
            data = data['config']
        if not isinstance(data, dict):
            raise ConfigurationError(f"{self.config_path} does not contain a settings mapping.")

        merged = {**data, **{k: v for k, v in (overrides or {}).items() if v is not None}}
        try:
            settings = Settings.model_validate(merged)
        except ValidationError as e:
            error_details = e.errors()[0]
            field = '.'.join(str(part) for part in error_details['loc'])
            raise ConfigurationError(f"Error in field '{field}' of {self.config_path}: {error_details['msg']}") from e

        self.logger.info(f"Loaded configuration for account '{settings.account_name}' from {self.config_path}")
        return settings

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file as JSON.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except IOError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")
