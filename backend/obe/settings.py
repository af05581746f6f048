from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_SETTINGS_PATH = Path(__file__).resolve().parents[1] / "config" / "settings.yaml"


class AppConfig(BaseModel):
    name: str = "OBE Attainment Engine"
    environment: str = "development"


class AuthConfig(BaseModel):
    session_secret: str = "change-me"
    admin_role: str = "ADMIN"


class DBConfig(BaseModel):
    url: str = "sqlite:///./obe.db"
    timeout_seconds: float = Field(default=5.0, gt=0)


class ThresholdConfig(BaseModel):
    allow_touching_boundaries: bool = True
    contiguity_step: float = Field(default=1.0, ge=0)


class AttainmentConfig(BaseModel):
    direct_weight: float = Field(default=0.8, ge=0)
    indirect_weight: float = Field(default=0.2, ge=0)
    default_mapping_level: int = Field(default=2, ge=1, le=3)
    unclassified_label: str = "Unclassified"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(BaseModel):
    app: AppConfig = Field(default_factory=AppConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    db: DBConfig = Field(default_factory=DBConfig)
    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    attainment: AttainmentConfig = Field(default_factory=AttainmentConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_settings(path: Optional[str | Path] = None) -> Settings:
    """Read settings from YAML. Sections left out of the file keep their defaults.

    ``OBE_SETTINGS`` points at an alternative file and ``OBE_DATABASE_URL``
    replaces ``db.url``.
    """
    if path is None:
        path = os.environ.get("OBE_SETTINGS") or DEFAULT_SETTINGS_PATH
    path = Path(path)
    data: dict = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    settings = Settings(**data)
    db_url = os.environ.get("OBE_DATABASE_URL")
    if db_url:
        settings.db.url = db_url
    return settings
