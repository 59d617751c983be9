"""Disk-backed cache of resolved places keyed by coordinate."""
from __future__ import annotations

import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

import orjson
import structlog

from placemark.errors import CacheIOError
from placemark.models.place import PLACE_FIELDS, Coordinate, PlaceRecord

LOGGER = structlog.get_logger(__name__)

_CACHE_SCHEMA_VERSION = 1
_ENTRY_PREFIX = "pm_"
_ENTRY_SUFFIX = ".json"


class PlacemarkCache:
    """Persist one JSON document per coordinate under ``cache_dir``.

    Every failure degrades to a cache miss: reads of missing or corrupt entries
    return ``None`` and write errors are logged and swallowed. Each entry lives
    in its own file and is replaced atomically, so different keys never contend
    and concurrent writes to the same key leave the last complete document.
    """

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir
        self._enabled = True
        try:
            cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.error("cache_dir_unavailable", path=str(cache_dir), error=str(exc))
            self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def entry_path(self, coordinate: Coordinate) -> Path:
        """Return the file that holds the entry for ``coordinate``."""
        return self.cache_dir / f"{_ENTRY_PREFIX}{coordinate.key}{_ENTRY_SUFFIX}"

    def get(self, coordinate: Coordinate) -> Optional[PlaceRecord]:
        """Return the cached record or ``None`` when absent or unreadable."""
        if not self._enabled:
            return None
        path = self.entry_path(coordinate)
        try:
            return self._read(path)
        except FileNotFoundError:
            return None
        except CacheIOError as exc:
            LOGGER.warning("cache_entry_unreadable", path=str(path), error=str(exc))
            return None
        except OSError as exc:
            LOGGER.warning("cache_read_failed", path=str(path), error=str(exc))
            return None

    def put(self, coordinate: Coordinate, record: PlaceRecord) -> bool:
        """Store ``record``; returns False when the write failed."""
        if not self._enabled:
            return False
        path = self.entry_path(coordinate)
        payload = {
            "version": _CACHE_SCHEMA_VERSION,
            "latitude": coordinate.latitude,
            "longitude": coordinate.longitude,
            "resolved_at": datetime.now(timezone.utc).isoformat(),
            "place": record.to_dict(),
        }
        tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp_path.write_bytes(orjson.dumps(payload))
            os.replace(tmp_path, path)
        except OSError as exc:
            LOGGER.warning("cache_write_failed", path=str(path), error=str(exc))
            try:
                tmp_path.unlink()
            except OSError:
                pass
            return False
        return True

    def reset(self, coordinate: Coordinate) -> bool:
        """Remove a single entry; a missing entry is not an error."""
        if not self._enabled:
            return False
        path = self.entry_path(coordinate)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            LOGGER.warning("cache_reset_failed", path=str(path), error=str(exc))
            return False
        return True

    def delete_cache(self) -> int:
        """Remove every entry, returning how many files were deleted."""
        if not self._enabled:
            return 0
        removed = 0
        try:
            items = list(self.cache_dir.iterdir())
        except OSError as exc:
            LOGGER.warning("cache_list_failed", path=str(self.cache_dir), error=str(exc))
            return 0
        for item in items:
            if not item.name.startswith(_ENTRY_PREFIX):
                continue
            try:
                item.unlink()
                removed += 1
            except OSError as exc:
                LOGGER.debug("cache_delete_skipped", path=str(item), error=str(exc))
        LOGGER.info("cache_deleted", path=str(self.cache_dir), removed=removed)
        return removed

    def stats(self) -> Dict[str, int]:
        """Count cached entries and their total size on disk."""
        entries = 0
        total_bytes = 0
        if self._enabled:
            for path in self.cache_dir.glob(f"{_ENTRY_PREFIX}*{_ENTRY_SUFFIX}"):
                try:
                    total_bytes += path.stat().st_size
                except OSError:
                    continue
                entries += 1
        return {"entries": entries, "bytes": total_bytes}

    def _read(self, path: Path) -> PlaceRecord:
        raw = path.read_bytes()
        try:
            payload = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise CacheIOError(f"corrupt entry: {exc}") from exc
        if not isinstance(payload, dict) or payload.get("version") != _CACHE_SCHEMA_VERSION:
            raise CacheIOError("unsupported schema version")
        place = payload.get("place")
        if not isinstance(place, dict) or not all(isinstance(place.get(key, ""), str) for key in PLACE_FIELDS):
            raise CacheIOError("malformed place payload")
        return PlaceRecord.from_mapping(place)
