"""Generation settings: connection profiles, sampler, lore, name-hijack policy.

Stored as a JSON file; `get_config` returns defaults merged with the stored
values, `update_config` merges new fields in and persists. `load_settings`
additionally applies environment overrides (process environment plus an
optional .env file) and validates the result into a `Settings` model.
"""

import json
import os
from pathlib import Path
from typing import Any, Literal

from dotenv import dotenv_values
from pydantic import BaseModel, Field, ValidationError

from tavern_gen.errors import ConfigurationError
from tavern_gen.models import (
    ConnectionProfile,
    LoreSettings,
    ReasoningTemplate,
    SamplerSettings,
)

DEFAULT_PROFILE = "default"

NameHijackPolicy = Literal["all", "group", "single", "none"]

# env var -> ConnectionProfile field on the default profile
_ENV_OVERRIDES = {
    "TAVERN_PROVIDER_URL": "provider_url",
    "TAVERN_API_KEY": "api_key",
    "TAVERN_MODEL": "model",
    "TAVERN_PROVIDER_FORMAT": "provider_format",
}

_CONFIG_DEFAULTS: dict[str, Any] = {
    "connection_profiles": [],
    "active_profile": DEFAULT_PROFILE,
    "sampler": SamplerSettings().model_dump(),
    "lore": LoreSettings().model_dump(),
    "lore_books": [],
    "stop_on_name_hijack": "all",
    "reasoning_template": None,
}


class Settings(BaseModel):
    connection_profiles: list[ConnectionProfile] = Field(default_factory=list)
    active_profile: str = DEFAULT_PROFILE
    sampler: SamplerSettings = Field(default_factory=SamplerSettings)
    lore: LoreSettings = Field(default_factory=LoreSettings)
    lore_books: list[str] = Field(default_factory=list)  # global books, always scanned
    stop_on_name_hijack: NameHijackPolicy = "all"
    reasoning_template: ReasoningTemplate | None = None

    def profile(self, name: str | None = None) -> ConnectionProfile | None:
        wanted = name or self.active_profile
        return next((p for p in self.connection_profiles if p.name == wanted), None)


def get_config(path: Path) -> dict[str, Any]:
    """Read config, returning defaults merged with stored values."""
    config: dict[str, Any] = json.loads(json.dumps(_CONFIG_DEFAULTS))
    if path.is_file():
        stored = json.loads(path.read_text())
        _merge(config, stored)
    return config


def update_config(path: Path, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into config and persist. Returns full config."""
    config = get_config(path)
    _merge(config, fields)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config, indent=2))
    return config


def _merge(config: dict[str, Any], fields: dict[str, Any]) -> None:
    # lists (profiles, books) are replaced wholesale, sections key by key
    for key, value in fields.items():
        if key not in _CONFIG_DEFAULTS:
            continue
        if isinstance(config.get(key), dict) and isinstance(value, dict):
            config[key].update(value)
        else:
            config[key] = value


def apply_env_overrides(config: dict[str, Any], env: dict[str, str | None]) -> dict[str, Any]:
    """Patch the default connection profile from TAVERN_* variables."""
    patch = {field: env[var] for var, field in _ENV_OVERRIDES.items() if env.get(var)}
    if not patch:
        return config

    profiles = config["connection_profiles"]
    profile = next((p for p in profiles if p.get("name") == DEFAULT_PROFILE), None)
    if profile is None:
        profile = {"name": DEFAULT_PROFILE}
        profiles.append(profile)
    profile.update(patch)
    return config


def load_settings(path: Path, env_file: Path | None = None) -> Settings:
    """Config file + .env + process environment, validated.

    Raises ConfigurationError when the merged config does not validate.
    """
    env: dict[str, str | None] = {}
    if env_file is not None and env_file.is_file():
        env.update(dotenv_values(env_file))
    env.update(os.environ)

    config = apply_env_overrides(get_config(path), env)
    try:
        return Settings.model_validate(config)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings in {path}: {e}") from e
