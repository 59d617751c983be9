"""Validated runtime settings loaded from ``config/settings.toml``."""
from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Mapping

from pydantic import BaseModel, Field, ValidationError

from placemark.fetch.geocoder import NOMINATIM_REVERSE_URL

CONTACT_EMAIL_ENV = "PLACEMARK_CONTACT_EMAIL"


class AppSettings(BaseModel):
    cache_dir: Path = Path("data/placemarks")
    metrics_dir: Path = Path("data/metrics")


class QueueSettings(BaseModel):
    pace_count: int = Field(default=5, ge=1)
    pacing_delay_seconds: float = Field(default=5.0, ge=0)


class RetrySettings(BaseModel):
    max_retries: int = Field(default=4, ge=1)
    base_delay_seconds: float = Field(default=0.1, ge=0)


class GeocoderSettings(BaseModel):
    base_url: str = NOMINATIM_REVERSE_URL
    user_agent: str = Field(default="placemark/0.1", min_length=1)
    email: str = ""
    timeout_seconds: float = Field(default=10.0, gt=0)
    language: str = Field(default="en", min_length=2)
    default_locale: str = Field(default="en_US", pattern=r"^[a-z]{2,3}_[A-Z]{2}$")


class Settings(BaseModel):
    """Top-level settings; every section falls back to its defaults."""

    app: AppSettings = Field(default_factory=AppSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    geocoder: GeocoderSettings = Field(default_factory=GeocoderSettings)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Settings":
        try:
            settings = cls.model_validate(dict(payload))
        except ValidationError as exc:
            raise ValueError(f"Invalid settings: {exc}") from exc
        if not settings.geocoder.email:
            settings.geocoder.email = os.environ.get(CONTACT_EMAIL_ENV, "")
        return settings


def load_settings(path: Path) -> Settings:
    """Read the TOML configuration file; a missing file yields the defaults."""
    payload: Dict[str, Any] = {}
    if path.exists():
        with path.open("rb") as handle:
            payload = tomllib.load(handle)
    return Settings.from_mapping(payload)
