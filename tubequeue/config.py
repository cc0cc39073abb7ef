"""
Manages loading, saving, and validating the application configuration using Pydantic.

This module defines the configuration schema as a pydantic-settings model
(`Settings`) and provides a manager class (`ConfigManager`) to handle persistence
to a JSON file. Individual fields can be overridden with `TUBEQUEUE_<FIELD>`
environment variables, which is how store credentials are normally supplied.
Environment values take precedence over the file.
"""

import json
import os
import time
import re
import logging
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Set

from pydantic import Field, field_validator, ValidationError
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .constants import (
    DATABASE_FILE, ARTIFACT_DIR, TEMP_DOWNLOAD_DIR, LOG_DIR,
    DEFAULT_SUBTITLE_LANGUAGES, DEFAULT_AUDIO_FORMAT, DEFAULT_AUDIO_BITRATE, DEFAULT_QUALITY, QUALITY_PATTERN,
)
from .jobs import MediaFormat

ENV_PREFIX = 'TUBEQUEUE_'


class Settings(BaseSettings):
    """
    Defines the application's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings. Constructing it reads `TUBEQUEUE_*` variables;
    `FileSettings` validates the config file alone.
    """
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        extra='ignore',
        validate_assignment=True,
    )

    # Extractor
    yt_dlp_path: Optional[Path] = None
    ffmpeg_path: Optional[Path] = None
    max_concurrent_downloads: int = Field(default=4, ge=1, le=20)
    default_quality: str = DEFAULT_QUALITY
    default_format: MediaFormat = MediaFormat.VIDEO
    subtitle_languages: Annotated[List[str], NoDecode] = Field(default_factory=lambda: list(DEFAULT_SUBTITLE_LANGUAGES))
    # The audio container is fixed; produced files are matched on its extension.
    audio_format: Literal['mp3'] = DEFAULT_AUDIO_FORMAT
    audio_bitrate: str = DEFAULT_AUDIO_BITRATE
    filename_template: str = '%(title)s.%(ext)s'
    probe_timeout: int = Field(default=60, ge=5)
    fetch_timeout: int = Field(default=3600, ge=30)
    pause_poll_interval: float = Field(default=1.0, gt=0)

    # Local state
    database_path: Path = DATABASE_FILE
    work_dir: Path = TEMP_DOWNLOAD_DIR
    log_dir: Path = LOG_DIR
    log_level: str = 'INFO'

    # Artifact storage
    storage_backend: Literal['local', 'http'] = 'local'
    artifact_dir: Path = ARTIFACT_DIR
    storage_url: str = ''
    storage_bucket: str = 'downloads'
    storage_key: str = ''
    public_base_url: str = ''
    remove_artifacts_with_job: bool = False

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings):
        # Environment first, then values read from the config file.
        return env_settings, init_settings

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('default_quality')
    @classmethod
    def validate_default_quality(cls, value: str) -> str:
        if not QUALITY_PATTERN.match(value.lower()):
            raise ValueError(f"'{value}' is not a valid quality. Use a tag like '720p' or 'best'.")
        return value.lower()

    @field_validator('subtitle_languages', mode='before')
    @classmethod
    def validate_subtitle_languages(cls, value: Any) -> List[str]:
        """Accepts a list or a comma-separated string of language codes."""
        if isinstance(value, str):
            value = value.split(',')
        if not isinstance(value, (list, tuple)):
            raise ValueError("subtitle_languages must be a list or a comma-separated string.")
        languages = [str(lang).strip() for lang in value if str(lang).strip()]
        if not languages:
            raise ValueError("At least one subtitle language is required.")
        return languages

    @field_validator('audio_bitrate')
    @classmethod
    def validate_audio_bitrate(cls, value: str) -> str:
        if not re.fullmatch(r'\d{2,3}[kK]', value):
            raise ValueError(f"'{value}' is not a valid bitrate. Use a value like '320K'.")
        return value.upper()

    @field_validator('filename_template')
    @classmethod
    def validate_filename_template(cls, value: str) -> str:
        """
        Validates the yt-dlp filename template.

        Raises:
            ValueError: If the template is invalid.
        """
        is_invalid = (
            not value or
            not re.search(r'%\((?:title|id)\)', value) or
            '/' in value or '\\' in value or '..' in value or
            Path(value).is_absolute()
        )
        if is_invalid:
            raise ValueError("Filename template is invalid. It must include %(title)s or %(id)s and cannot contain path separators.")
        return value

    @field_validator('storage_url', 'public_base_url')
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip('/')


class FileSettings(Settings):
    """Settings validated from config file values alone, ignoring the environment."""

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings):
        return (init_settings,)


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Collects `TUBEQUEUE_<FIELD>` variables that name a Settings field."""
    environ = os.environ if environ is None else environ
    overrides = {}
    for name in Settings.model_fields:
        env_name = f"{ENV_PREFIX}{name.upper()}"
        if env_name in environ:
            overrides[name] = environ[env_name]
    return overrides


class ConfigManager:
    """Handles loading and saving the application configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Loads config from file, merges with defaults and environment overrides,
        validates, and returns it.

        If the file doesn't exist, a default configuration is written. If it is
        invalid, it is backed up and defaults are used. Invalid environment
        overrides are logged and ignored; they never mark the file as corrupt.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            self.save(FileSettings(), exclude=set(env_overrides()))
            return self._with_environment({})

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            if not isinstance(config_data, dict):
                raise ValueError("top-level value is not a JSON object")
            FileSettings(**config_data)
        except (ValidationError, ValueError, IOError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            config_data = {}
        return self._with_environment(config_data)

    def _with_environment(self, config_data: Dict[str, Any]) -> Settings:
        try:
            return Settings(**config_data)
        except ValidationError as e:
            self.logger.error(f"Ignoring invalid environment overrides: {describe_validation_error(e)}")
        try:
            return FileSettings(**config_data)
        except ValidationError as e:
            self.logger.error(f"Ignoring invalid config values: {describe_validation_error(e)}")
            return FileSettings()

    def save(self, settings: Settings, exclude: Optional[Set[str]] = None):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
            exclude: Field names to leave out of the file.
        """
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4, exclude=exclude or None), encoding='utf-8')
        except IOError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")


def describe_validation_error(error: ValidationError) -> str:
    """Formats the first validation problem as "Error in field '<name>': <msg>"."""
    details = error.errors()[0]
    field_name = details['loc'][0] if details['loc'] else 'settings'
    return f"Error in field '{field_name}': {details['msg']}"
