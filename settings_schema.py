from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError


class TrackerSettings(BaseModel):
    db_path: str = "exercise_tracker.db"
    cache_ttl_seconds: float = Field(default=300.0, gt=0)
    cleanup_interval_seconds: float = Field(default=600.0, gt=0)
    dedupe_fetches: bool = False
    seed_defaults: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_file: Optional[str] = None
    backup_dir: str = "backups"


def validate_settings(data: dict) -> TrackerSettings:
    try:
        return TrackerSettings(**data)
    except ValidationError as e:
        raise ValueError(str(e))
