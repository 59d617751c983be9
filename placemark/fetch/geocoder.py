"""Reverse-geocoding providers."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from placemark.errors import TerminalResolutionError, TransientNetworkError
from placemark.models.place import Coordinate, PlaceRecord

NOMINATIM_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"


class ReverseGeocoder(ABC):
    """Resolve a coordinate into an ordered list of candidate places.

    Implementations must raise :class:`TransientNetworkError` when the service
    could not be reached and :class:`TerminalResolutionError` for anything else.
    An empty list means the service answered but knows no place there.
    """

    @abstractmethod
    async def reverse(self, coordinate: Coordinate, *, language: str) -> List[PlaceRecord]:
        """Look up candidate places for ``coordinate``."""

    @abstractmethod
    def get_source_name(self) -> str:
        """Provider name used in logs and metrics."""

    async def aclose(self) -> None:
        """Release network resources held by the provider."""


def _first(address: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = address.get(key)
        if value:
            return str(value)
    return ""


class NominatimGeocoder(ReverseGeocoder):
    """Reverse geocoding against an OpenStreetMap Nominatim instance."""

    def __init__(
        self,
        *,
        email: str = "",
        user_agent: str = "placemark/0.1",
        base_url: str = NOMINATIM_REVERSE_URL,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.email = email
        self.user_agent = user_agent
        self.base_url = base_url
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self, language: str) -> Dict[str, str]:
        agent = f"{self.user_agent} (+{self.email})" if self.email else self.user_agent
        return {
            "User-Agent": agent,
            "Accept-Language": language,
            "Accept": "application/json",
        }

    async def reverse(self, coordinate: Coordinate, *, language: str) -> List[PlaceRecord]:
        params = {
            "lat": repr(coordinate.latitude),
            "lon": repr(coordinate.longitude),
            "format": "jsonv2",
            "addressdetails": 1,
        }
        try:
            response = await self._client.get(
                self.base_url,
                params=params,
                headers=self._headers(language),
                timeout=self.timeout,
            )
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"Nominatim unreachable: {exc}") from exc

        if response.status_code != httpx.codes.OK:
            raise TerminalResolutionError(f"Nominatim HTTP {response.status_code}: {response.text[:120]}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise TerminalResolutionError(f"Nominatim parse error: {exc}") from exc

        if isinstance(payload, list):
            items = payload
        elif isinstance(payload, dict):
            if "error" in payload:
                return []
            items = [payload]
        else:
            raise TerminalResolutionError(f"Unexpected Nominatim payload: {type(payload).__name__}")
        return [self._to_place(item) for item in items if isinstance(item, dict)]

    @staticmethod
    def _to_place(item: Dict[str, Any]) -> PlaceRecord:
        address = item.get("address") or {}
        road = _first(address, "road", "pedestrian", "highway")
        house_number = _first(address, "house_number")
        name = item.get("name") or str(item.get("display_name", "")).split(",", 1)[0].strip()
        return PlaceRecord(
            name=name,
            thoroughfare=road,
            sub_locality=_first(address, "suburb", "neighbourhood", "quarter"),
            locality=_first(address, "city", "town", "village", "hamlet", "municipality"),
            sub_administrative_area=_first(address, "county"),
            administrative_area=_first(address, "state", "province", "region"),
            postal_code=_first(address, "postcode"),
            country=_first(address, "country"),
            iso_country_code=_first(address, "country_code").upper(),
            street_address=" ".join(part for part in (house_number, road) if part),
        )

    def get_source_name(self) -> str:
        return "nominatim"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
