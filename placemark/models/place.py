"""Coordinate keys and resolved place records."""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Dict, Optional, Sequence

PLACE_FIELDS = (
    "name",
    "thoroughfare",
    "sub_locality",
    "locality",
    "sub_administrative_area",
    "administrative_area",
    "postal_code",
    "country",
    "iso_country_code",
    "street_address",
)


@dataclass(frozen=True, slots=True)
class Coordinate:
    """Latitude/longitude pair used verbatim as cache key and job identity.

    Altitude, accuracy and timestamp travel with the coordinate for callers that
    have them but take no part in equality or cache lookups.
    """

    latitude: float
    longitude: float
    altitude: Optional[float] = field(default=None, compare=False)
    horizontal_accuracy: Optional[float] = field(default=None, compare=False)
    vertical_accuracy: Optional[float] = field(default=None, compare=False)
    timestamp: Optional[datetime] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        lat = float(self.latitude)
        lon = float(self.longitude)
        if not (math.isfinite(lat) and math.isfinite(lon)):
            raise ValueError(f"Coordinate must be finite, got ({self.latitude}, {self.longitude})")
        if abs(lat) > 90.0 or abs(lon) > 180.0:
            raise ValueError(f"Coordinate out of range: ({lat}, {lon})")
        object.__setattr__(self, "latitude", lat)
        object.__setattr__(self, "longitude", lon)

    @property
    def key(self) -> str:
        """Stable textual key; repr() round-trips floats exactly."""
        return f"{self.latitude!r}_{self.longitude!r}"

    @classmethod
    def parse(cls, text: str) -> "Coordinate":
        """Build a coordinate from a ``"lat,lon"`` string."""
        parts = [part.strip() for part in text.split(",")]
        if len(parts) != 2:
            raise ValueError(f"Expected 'lat,lon', got {text!r}")
        return cls(float(parts[0]), float(parts[1]))

    def __str__(self) -> str:
        return f"{self.latitude!r},{self.longitude!r}"


@dataclass(frozen=True, slots=True)
class PlaceRecord:
    """Structured address fields for a resolved coordinate.

    Unknown fields are empty strings; ``None`` passed to the constructor is
    coerced so that every field is always a ``str``.
    """

    name: str = ""
    thoroughfare: str = ""
    sub_locality: str = ""
    locality: str = ""
    sub_administrative_area: str = ""
    administrative_area: str = ""
    postal_code: str = ""
    country: str = ""
    iso_country_code: str = ""
    street_address: str = ""

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if value is None:
                object.__setattr__(self, item.name, "")
            elif not isinstance(value, str):
                object.__setattr__(self, item.name, str(value))

    @classmethod
    def from_strings(cls, values: Sequence[Optional[str]]) -> "PlaceRecord":
        """Map a positional sequence onto the fields, padding missing ones."""
        return cls(**dict(zip(PLACE_FIELDS, values)))

    @classmethod
    def from_mapping(cls, payload: Dict[str, object]) -> "PlaceRecord":
        """Build a record from a mapping, ignoring unknown keys."""
        return cls(**{key: payload.get(key) for key in PLACE_FIELDS})  # type: ignore[arg-type]

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @property
    def formatted_address(self) -> str:
        """Thoroughfare, locality and region followed by postal and ISO codes."""
        return _assemble(self.thoroughfare, self)

    @property
    def formatted_street_address(self) -> str:
        """Like :attr:`formatted_address` but led by the full street line."""
        return _assemble(self.street_address or self.thoroughfare, self)


def _assemble(lead: str, record: PlaceRecord) -> str:
    parts = [part for part in (lead, record.locality, record.administrative_area) if part]
    address = ", ".join(parts)
    if record.postal_code:
        address += f" {record.postal_code}"
    if record.iso_country_code:
        address += f" {record.iso_country_code}"
    return address
