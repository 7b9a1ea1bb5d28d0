"""
Manages loading, saving, and validating the application configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`),
the frozen per-batch snapshot handed to workers (`JobSettings`), and a manager
class (`ConfigManager`) to handle persistence to a JSON file.
"""

import json
import time
import logging
from enum import Enum
from pathlib import Path
from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator, ValidationError

from .constants import DEFAULT_MAX_CONCURRENT, DEFAULT_OUTPUT_DIR, MAX_CONCURRENT_LIMIT
from .exceptions import ConfigurationError


class DownloadMode(str, Enum):
    AUDIO_ONLY = 'audio_only'
    BOTH = 'both'


class VideoFormat(str, Enum):
    MOV = 'mov'


class VideoCodec(str, Enum):
    PRORES_PROXY = 'prores_proxy'
    PRORES_LT = 'prores_lt'
    PRORES_HQ = 'prores_hq'


class AudioFormat(str, Enum):
    MP3 = 'mp3'
    M4A = 'm4a'
    FLAC = 'flac'
    WAV = 'wav'
    OPUS = 'opus'
    OGG = 'ogg'

    @property
    def requires_conversion(self) -> bool:
        # yt-dlp cannot apply sample rate / bit depth; only ffmpeg can.
        return self is AudioFormat.WAV


class AudioSampleRate(int, Enum):
    RATE_44100 = 44100
    RATE_48000 = 48000
    RATE_96000 = 96000


class AudioBitDepth(int, Enum):
    BIT_16 = 16
    BIT_24 = 24
    BIT_32 = 32


class JobSettings(BaseModel):
    """Immutable settings snapshot captured once per batch and shared by its workers."""
    model_config = ConfigDict(frozen=True)

    output_directory: Path
    download_mode: DownloadMode
    video_format: VideoFormat
    video_codec: VideoCodec
    audio_format: AudioFormat
    audio_sample_rate: AudioSampleRate
    audio_bit_depth: AudioBitDepth
    auto_convert: bool
    preserve_original: bool
    max_concurrent_downloads: int

    @property
    def conversion_requested(self) -> bool:
        """True when a transcode step should follow the download (if ffmpeg exists)."""
        if self.auto_convert:
            return True
        return self.download_mode is DownloadMode.AUDIO_ONLY and self.audio_format.requires_conversion

    @property
    def output_extension(self) -> str:
        if self.download_mode is DownloadMode.AUDIO_ONLY:
            return self.audio_format.value
        return self.video_format.value


class Settings(BaseModel):
    """
    Defines the application's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings.
    """
    model_config = ConfigDict(validate_assignment=True)

    output_directory: Path = Field(default=DEFAULT_OUTPUT_DIR)
    download_mode: DownloadMode = DownloadMode.BOTH
    video_format: VideoFormat = VideoFormat.MOV
    video_codec: VideoCodec = VideoCodec.PRORES_HQ
    audio_format: AudioFormat = AudioFormat.MP3
    audio_sample_rate: AudioSampleRate = AudioSampleRate.RATE_48000
    audio_bit_depth: AudioBitDepth = AudioBitDepth.BIT_24
    auto_convert: bool = True
    preserve_original: bool = False
    max_concurrent_downloads: int = Field(default=DEFAULT_MAX_CONCURRENT, ge=1, le=MAX_CONCURRENT_LIMIT)
    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('output_directory', mode='before')
    @classmethod
    def validate_output_directory(cls, value) -> Path:
        """Expands '~' so the directory can be created later without surprises."""
        if value in (None, ''):
            return DEFAULT_OUTPUT_DIR
        return Path(value).expanduser()

    def snapshot(self) -> JobSettings:
        """Returns a frozen copy so a settings change cannot alter an in-flight batch."""
        return JobSettings(**self.model_dump(exclude={'log_level'}))


def apply_overrides(settings: Settings, changes: dict) -> Settings:
    """
    Returns a validated copy of `settings` with `changes` applied.

    Raises:
        ConfigurationError: If a value fails validation.
    """
    try:
        return Settings.model_validate({**settings.model_dump(), **changes})
    except ValidationError as e:
        error_details = e.errors()[0]
        field, msg = error_details['loc'][0], error_details['msg']
        raise ConfigurationError(f"Error in field '{field}': {msg}") from e


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
        # Ensure the configuration directory exists
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Loads config from file, merges with defaults, validates, and returns it.

        If the file doesn't exist, is invalid, or an error occurs, a default
        configuration is returned. Invalid files are backed up.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, OSError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except OSError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except OSError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")

    def update(self, settings: Settings, changes: dict) -> Settings:
        """
        Validates a partial update, persists it, and returns the new settings.

        Raises:
            ConfigurationError: If a value fails validation.
        """
        new_settings = apply_overrides(settings, changes)
        self.save(new_settings)
        return new_settings
