"""Application Settings.

This module provides application-wide settings that combine configuration
from the configuration manager with application-specific defaults.
"""

import os
from typing import Optional

from fhirgen import __version__
from fhirgen.infrastructure.config_manager import ConfigManager, GeneratorConfig

# Application metadata
APP_NAME = "fhirgen"
APP_VERSION = __version__

DEFAULT_MAX_WORKERS = 4
DEFAULT_REPORT_DIR = "reports"


class Settings:
    """Application settings loaded from configuration manager and environment.

    Values are read once at construction; the generator configuration is
    loaded lazily on first access.
    """

    def __init__(self):
        self._generator_config: Optional[GeneratorConfig] = None
        self._config_manager: Optional[ConfigManager] = None

        self.app_name = os.getenv("FHIRGEN_APP_NAME", APP_NAME)
        self.log_level = os.getenv("FHIRGEN_LOG_LEVEL", "INFO")
        self.json_logs = os.getenv("FHIRGEN_JSON_LOGS", "false").lower() == "true"
        self.max_workers = int(os.getenv("FHIRGEN_MAX_WORKERS", str(DEFAULT_MAX_WORKERS)))

        # Report settings
        self.save_generation_report = os.getenv("FHIRGEN_SAVE_REPORT", "false").lower() == "true"
        self.report_dir = os.getenv("FHIRGEN_REPORT_DIR", DEFAULT_REPORT_DIR)

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def generator_config(self) -> GeneratorConfig:
        """Generator configuration from the environment (validated on first access)."""
        if self._generator_config is None:
            self._generator_config = self.config_manager.get_generator_config()
        return self._generator_config


# Global settings instance
settings = Settings()
