from __future__ import annotations

import json
import os
from pathlib import Path

import yaml
from jsonschema import Draft202012Validator
from pydantic import ValidationError

from oi_tracker.models import ProviderCredentials, TrackerConfig

DEFAULT_CONFIG_PATH = Path("config/tracker.yaml")
DEFAULT_SCHEMA_PATH = Path("config/tracker.schema.json")

_CREDENTIAL_FIELDS = ("client_id", "api_key", "api_secret", "pin", "totp_seed", "access_token")


class ConfigError(ValueError):
    pass


def load_tracker_config(
    config_path: Path | str = DEFAULT_CONFIG_PATH,
    schema_path: Path | str = DEFAULT_SCHEMA_PATH,
) -> TrackerConfig:
    config_path = Path(config_path)
    schema_path = Path(schema_path)

    if not config_path.exists():
        raise ConfigError(f"Missing config file: {config_path}")
    if not schema_path.exists():
        raise ConfigError(f"Missing schema file: {schema_path}")

    with config_path.open("r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)

    if not isinstance(cfg, dict):
        raise ConfigError("Tracker config is empty or invalid.")

    with schema_path.open("r", encoding="utf-8") as f:
        schema = json.load(f)

    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(cfg), key=lambda e: list(e.path))
    if errors:
        messages = []
        for err in errors[:10]:
            loc = ".".join(str(p) for p in err.path) or "<root>"
            messages.append(f"{loc}: {err.message}")
        raise ConfigError("Tracker config schema validation failed: " + "; ".join(messages))

    try:
        return TrackerConfig.model_validate(cfg)
    except ValidationError as exc:
        raise ConfigError(f"Tracker config is invalid: {exc}") from exc


def _env_key(source_name: str, field: str) -> str:
    cleaned = "".join(ch if ch.isalnum() else "_" for ch in source_name.strip().upper())
    return f"OI_TRACKER_{cleaned}_{field.upper()}"


def credentials_from_env(source_name: str, environ: dict[str, str] | None = None) -> ProviderCredentials:
    """Read e.g. OI_TRACKER_ANGEL_ONE_API_KEY for source `angel-one`."""
    env = os.environ if environ is None else environ
    values = {}
    for field in _CREDENTIAL_FIELDS:
        raw = env.get(_env_key(source_name, field))
        if raw is not None and raw.strip():
            values[field] = raw.strip()
    return ProviderCredentials(**values)
