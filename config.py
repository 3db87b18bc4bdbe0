import os
from typing import Optional

import yaml

from settings_schema import TrackerSettings, validate_settings

APP_VERSION = "1.0.0"

ENV_OVERRIDES = {
    "TRACKER_DB_PATH": "db_path",
    "TRACKER_LOG_LEVEL": "log_level",
}


class YamlConfig:
    """Load and save settings to a YAML file."""

    def __init__(self, path: str = "settings.yaml") -> None:
        self.path = path

    def load(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must contain a mapping")
        return data

    def save(self, data: dict) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(dict(data), f)


def load_settings(path: Optional[str] = None) -> TrackerSettings:
    """Settings from ``path`` (when given) with environment overrides applied."""
    data = YamlConfig(path).load() if path else {}
    for env, key in ENV_OVERRIDES.items():
        value = os.environ.get(env)
        if value:
            data[key] = value.upper() if key == "log_level" else value
    return validate_settings(data)
