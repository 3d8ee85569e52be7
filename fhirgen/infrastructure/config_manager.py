"""Configuration Manager for the generator.

This module loads generator settings (input and output locations, loader
strictness, worker counts, naming budget) from the environment or from a
JSON file, and validates them before a run starts.

Architecture:
    - Follows Hexagonal Architecture: Infrastructure layer isolated from domain
    - Type-safe configuration using Pydantic models
    - Fail-fast validation prevents runtime errors
    - Supports .env files via python-dotenv
"""

import json
import keyword
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from fhirgen.adapters.emitters.pydantic_emitter import DEFAULT_SPECIFICATION_BASE_URL
from fhirgen.domain.services.name_mapper import DEFAULT_SUFFIX_BUDGET

logger = logging.getLogger(__name__)

ENV_PREFIX = "FHIRGEN_"


def _env_flag(name: str) -> Optional[bool]:
    value = os.getenv(f"{ENV_PREFIX}{name}")
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


class GeneratorConfig(BaseModel):
    """Validated configuration of one generator run.

    Parameters:
        input_dir: Directory holding the specification bundles
        output_dir: Directory the generated package is written to
        strict: Treat unmodelled JSON keys as fatal
        package_name: Optional sub-directory (importable package) below output_dir
        parallel_load: Parse bundle files concurrently
        parallel_emit: Emit modules concurrently
        max_workers: Thread pool size
        name_suffix_budget: Collision suffixes allowed per naming scope
        specification_base_url: Base of the links written into module headers
        report_path: Optional path for the JSON generation report
    """

    input_dir: Optional[Path] = Field(None, description="Specification bundle directory")
    output_dir: Optional[Path] = Field(None, description="Output directory")
    strict: bool = Field(default=True, description="Fail on unknown JSON keys")
    package_name: Optional[str] = Field(None, description="Generated package name")
    parallel_load: bool = Field(default=True, description="Load bundles in parallel")
    parallel_emit: bool = Field(default=False, description="Emit modules in parallel")
    max_workers: int = Field(default=4, description="Thread pool size")
    name_suffix_budget: int = Field(default=DEFAULT_SUFFIX_BUDGET, description="Collision suffix budget")
    specification_base_url: str = Field(default=DEFAULT_SPECIFICATION_BASE_URL,
                                        description="Base URL of the specification pages")
    report_path: Optional[Path] = Field(None, description="JSON report output path")

    @field_validator("max_workers")
    @classmethod
    def validate_max_workers(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_workers must be at least 1, got {v}")
        return v

    @field_validator("name_suffix_budget")
    @classmethod
    def validate_name_suffix_budget(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"name_suffix_budget must be at least 1, got {v}")
        return v

    @field_validator("package_name")
    @classmethod
    def validate_package_name(cls, v: Optional[str]) -> Optional[str]:
        """Package names must be importable identifiers."""
        if v is None or v == "":
            return None
        if not v.isidentifier() or keyword.iskeyword(v):
            raise ValueError(f"Package name is not a valid Python identifier: {v}")
        return v

    @field_validator("specification_base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"specification_base_url must be an http(s) URL: {v}")
        return v.rstrip("/")

    @field_validator("input_dir")
    @classmethod
    def validate_input_dir(cls, v: Optional[Path]) -> Optional[Path]:
        if v is not None and not Path(v).is_dir():
            raise ValueError(f"Input directory does not exist: {v}")
        return v


class ConfigManager:
    """Configuration manager for generator settings.

    Example Usage:
        ```python
        config = ConfigManager.from_environment()
        generator_config = config.get_generator_config(input_dir="spec", output_dir="out")

        config = ConfigManager.from_file("fhirgen.json")
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        self._config_data = config_data

    @classmethod
    def from_environment(cls, env_file: Optional[Path] = None) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - FHIRGEN_INPUT_DIR: Specification bundle directory
            - FHIRGEN_OUTPUT_DIR: Output directory
            - FHIRGEN_STRICT: true/false
            - FHIRGEN_PACKAGE_NAME: Generated package name
            - FHIRGEN_PARALLEL_LOAD / FHIRGEN_PARALLEL_EMIT: true/false
            - FHIRGEN_MAX_WORKERS: Thread pool size
            - FHIRGEN_NAME_SUFFIX_BUDGET: Collision suffix budget
            - FHIRGEN_SPECIFICATION_BASE_URL: Header link base
            - FHIRGEN_REPORT_PATH: JSON report path

        A ``.env`` file in the working directory (or ``env_file``) is loaded
        first; variables already set take precedence.
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        raw = {
            "input_dir": os.getenv(f"{ENV_PREFIX}INPUT_DIR"),
            "output_dir": os.getenv(f"{ENV_PREFIX}OUTPUT_DIR"),
            "strict": _env_flag("STRICT"),
            "package_name": os.getenv(f"{ENV_PREFIX}PACKAGE_NAME"),
            "parallel_load": _env_flag("PARALLEL_LOAD"),
            "parallel_emit": _env_flag("PARALLEL_EMIT"),
            "max_workers": os.getenv(f"{ENV_PREFIX}MAX_WORKERS"),
            "name_suffix_budget": os.getenv(f"{ENV_PREFIX}NAME_SUFFIX_BUDGET"),
            "specification_base_url": os.getenv(f"{ENV_PREFIX}SPECIFICATION_BASE_URL"),
            "report_path": os.getenv(f"{ENV_PREFIX}REPORT_PATH"),
        }
        return cls({"generator": {k: v for k, v in raw.items() if v is not None}})

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        The file holds either the generator keys at top level or under a
        ``"generator"`` object.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        if not isinstance(config_data, dict):
            raise ValueError("Configuration file must contain a JSON object")
        if "generator" not in config_data:
            config_data = {"generator": config_data}
        return cls(config_data)

    def get_generator_config(self, **overrides: Any) -> GeneratorConfig:
        """Build a validated GeneratorConfig.

        Parameters:
            **overrides: Values that win over the loaded configuration;
                         ``None`` values are ignored

        Raises:
            pydantic.ValidationError: If the merged configuration is invalid
        """
        data = dict(self._config_data.get("generator", {}))
        data.update({k: v for k, v in overrides.items() if v is not None})
        return GeneratorConfig(**data)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Parameters:
            key: Configuration key (supports dot notation, e.g., "generator.strict")
            default: Default value if key not found
        """
        keys = key.split(".")
        value = self._config_data

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default


def get_generator_config(**overrides: Any) -> GeneratorConfig:
    """Convenience function: environment configuration plus overrides."""
    return ConfigManager.from_environment().get_generator_config(**overrides)
