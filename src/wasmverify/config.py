"""
Configuration for wasmverify.

Loads settings from, highest priority first:
1. Explicit overrides (command line flags)
2. A YAML file (optional, ``wasmverify.yaml`` or an explicit path)
3. Environment variables prefixed with ``WASMVERIFY_``
4. Default values
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from wasmverify._internal.io.ledger import WASM_METADATA_URL

DEFAULT_CONFIG_PATH = Path("wasmverify.yaml")


class Settings(BaseSettings):
    """wasmverify settings."""

    # Storage
    records_dir: Path = Field(default=Path("verified"), description="Directory of record files")
    work_dir: Optional[Path] = Field(default=None, description="Parent directory for build sandboxes")
    build_logs_dir: Optional[Path] = Field(default=None, description="Keep build logs here, one per request")

    # Ledger
    ledger_source: Optional[str] = Field(default=None, description="Ledger snapshot JSON path or URL")
    ledger_max_age_seconds: Optional[float] = None
    wasm_metadata_url: str = WASM_METADATA_URL

    # Network
    http_timeout: float = 60.0
    max_archive_bytes: int = 512 * 1024 * 1024

    # Build
    build_timeout: float = 1800.0
    determinism_runs: int = 2
    install_toolchain: bool = True
    max_workers: int = 2

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(
        env_prefix="WASMVERIFY_",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("determinism_runs", "max_workers")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @classmethod
    def from_yaml(cls, yaml_path: Union[str, Path, None] = None, **overrides: Any) -> "Settings":
        """Load settings from a YAML file; a missing default file is not an error."""
        path = Path(yaml_path) if yaml_path is not None else DEFAULT_CONFIG_PATH
        data: Dict[str, Any] = {}
        if path.exists():
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"Configuration file must contain a mapping: {path}")
        elif yaml_path is not None:
            raise FileNotFoundError(f"Configuration file not found: {path}")
        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**data)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.from_yaml()
    return _settings


def reload_settings(yaml_path: Union[str, Path, None] = None, **overrides: Any) -> Settings:
    """Reload settings from file."""
    global _settings
    _settings = Settings.from_yaml(yaml_path, **overrides)
    return _settings
