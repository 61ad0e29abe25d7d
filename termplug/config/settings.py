"""termplug configuration via environment / .env file."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from termplug.plugin import Backend


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TERMPLUG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Host identity ---
    APP_NAME: str = "tui-app"
    APP_VERSION: str = "0.1.0"

    # --- Sandbox ---
    SANDBOX_PRESET: Literal["default", "permissive", "restrictive"] = "default"
    GRANT_MANIFEST_PERMISSIONS: bool = True

    # --- Plugins ---
    ENABLED_BACKENDS: list[str] = ["script"]
    DISABLED_PLUGINS: list[str] = []
    MAX_CONSECUTIVE_FAILURES: int = 0

    # --- Directories (platform defaults when unset) ---
    DATA_DIR: Path | None = None
    CONFIG_DIR: Path | None = None

    @field_validator("SANDBOX_PRESET", mode="before")
    @classmethod
    def _lower_preset(cls, v: str) -> str:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("ENABLED_BACKENDS")
    @classmethod
    def _canonical_backends(cls, v: list[str]) -> list[str]:
        backends: list[str] = []
        for name in v:
            canonical = Backend.parse(name).value
            if canonical not in backends:
                backends.append(canonical)
        return backends

    @field_validator("MAX_CONSECUTIVE_FAILURES")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("MAX_CONSECUTIVE_FAILURES must be >= 0")
        return v


settings = Settings()
