from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LaunchConfig(BaseModel):
    headless: bool = True
    startup_timeout: float = 15.0
    extra_args: list[str] = Field(default_factory=list)


class ExtractConfig(BaseModel):
    timeout: float = 10.0
    max_bytes: int = 50 * 1024


class BBConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BB_",
        env_nested_delimiter="__",
    )

    timeout: float = 30.0
    chrome_bin: str | None = None
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    launch: LaunchConfig = Field(default_factory=LaunchConfig)
    extract: ExtractConfig = Field(default_factory=ExtractConfig)

    @field_validator("timeout")
    @classmethod
    def check_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"BB_TIMEOUT must be a positive number of seconds, got {v}")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        if isinstance(v, str):
            return v.upper()
        return v

    @property
    def timeout_ms(self) -> float:
        """The per-operation ceiling in milliseconds, as patchright expects it."""
        return self.timeout * 1000


def get_version() -> str:
    """Return the package version string."""
    try:
        from importlib.metadata import version

        return version("bb-cli")
    except Exception:
        return "0.1.0"


def load_config(
    config_path: str | None = None, timeout: float | None = None
) -> BBConfig:
    """Load configuration from a JSON file, ``BB_*`` environment variables and flags.

    Priority (highest to lowest):
        1. The ``--timeout`` flag, when given and positive
        2. Explicitly provided config_path JSON file
        3. Default config file at ``~/.bb/config.json``
        4. ``BB_*`` environment variables (via pydantic-settings)
        5. Built-in defaults

    Args:
        config_path: Optional path to a JSON configuration file. If not
            provided, the function looks for ``~/.bb/config.json``.
        timeout: Per-invocation timeout override in seconds.

    Returns:
        A fully resolved ``BBConfig`` instance.
    """
    file_values: dict = {}

    if config_path is not None:
        config_file = Path(config_path)
        if config_file.is_file():
            file_values = json.loads(config_file.read_text(encoding="utf-8"))
    else:
        default_config = Path.home() / ".bb" / "config.json"
        if default_config.is_file():
            file_values = json.loads(default_config.read_text(encoding="utf-8"))

    # Init values take priority over the environment in pydantic-settings
    config = BBConfig(**file_values)

    # Non-positive values are ignored
    if timeout is not None and timeout > 0:
        config.timeout = timeout

    return config
