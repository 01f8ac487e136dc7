"""
Learned-location cache.

Human-confirmed coordinates keyed by learning key. A present entry is
consulted before any geocoding call and always wins over the spreadsheet and
the provider.
"""

import json
import logging
import os
import sqlite3
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from stop_pipeline.cache.models import LearnedLocationEntry
from stop_pipeline.core.coordinates import is_valid_coordinate, normalize_coordinate

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS learned_locations (
    learning_key TEXT PRIMARY KEY,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    updated_at INTEGER NOT NULL
);
"""


class LearnedLocationRepository(ABC):
    """Storage backend for learned locations."""

    @abstractmethod
    def get(self, key: str) -> Optional[LearnedLocationEntry]:
        """Return the entry stored under key, or None."""
        pass

    @abstractmethod
    def put(self, key: str, entry: LearnedLocationEntry) -> None:
        """Store entry under key, replacing any previous one."""
        pass

    @abstractmethod
    def all(self) -> Dict[str, LearnedLocationEntry]:
        """Return every stored entry."""
        pass


class InMemoryLearnedLocationStore(LearnedLocationRepository):
    """Dict-backed store for tests and dry runs."""

    def __init__(self, entries: Optional[Dict[str, LearnedLocationEntry]] = None):
        self._entries: Dict[str, LearnedLocationEntry] = dict(entries or {})

    def get(self, key: str) -> Optional[LearnedLocationEntry]:
        return self._entries.get(key)

    def put(self, key: str, entry: LearnedLocationEntry) -> None:
        self._entries[key] = entry

    def all(self) -> Dict[str, LearnedLocationEntry]:
        return dict(self._entries)


class JsonFileLearnedLocationStore(LearnedLocationRepository):
    """JSON file holding {key: {lat, lng, updatedAt}}.

    The whole mapping is read and rewritten on every operation. A missing
    file is an empty store; a corrupt one is logged and treated as empty.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            logger.warning(f"Learned location store {self.path} is unreadable, treating as empty: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Learned location store {self.path} is not a mapping, treating as empty")
            return {}

        return data

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self.path)
        except Exception:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    @staticmethod
    def _parse_entry(key: str, raw: Any) -> Optional[LearnedLocationEntry]:
        try:
            return LearnedLocationEntry.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed learned location '{key}': {e.error_count()} error(s)")
            return None

    def get(self, key: str) -> Optional[LearnedLocationEntry]:
        raw = self._read().get(key)
        if raw is None:
            return None
        return self._parse_entry(key, raw)

    def put(self, key: str, entry: LearnedLocationEntry) -> None:
        data = self._read()
        data[key] = entry.to_json_dict()
        self._write(data)

    def all(self) -> Dict[str, LearnedLocationEntry]:
        entries = {}
        for key, raw in self._read().items():
            entry = self._parse_entry(key, raw)
            if entry is not None:
                entries[key] = entry
        return entries


class SqliteLearnedLocationStore(LearnedLocationRepository):
    """One row per learning key in a SQLite database."""

    def __init__(self, db_path: Union[str, Path]):
        """Initialize store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._get_connection() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _get_connection(self):
        """Get database connection with proper error handling."""
        conn = sqlite3.connect(
            self.db_path,
            timeout=30.0,
            isolation_level="DEFERRED"
        )
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _from_row(row: sqlite3.Row) -> LearnedLocationEntry:
        return LearnedLocationEntry(
            lat=row["latitude"],
            lng=row["longitude"],
            updated_at=row["updated_at"],
        )

    def get(self, key: str) -> Optional[LearnedLocationEntry]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM learned_locations WHERE learning_key = ?",
                (key,)
            ).fetchone()

            return self._from_row(row) if row else None

    def put(self, key: str, entry: LearnedLocationEntry) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO learned_locations (
                    learning_key, latitude, longitude, updated_at
                ) VALUES (?, ?, ?, ?)""",
                (key, entry.lat, entry.lng, entry.updated_at)
            )

    def all(self) -> Dict[str, LearnedLocationEntry]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM learned_locations ORDER BY learning_key"
            ).fetchall()

            return {row["learning_key"]: self._from_row(row) for row in rows}

    def get_statistics(self) -> Dict[str, Any]:
        """Get store statistics.

        Returns:
            Dict with statistics
        """
        with self._get_connection() as conn:
            row = conn.execute(
                """SELECT COUNT(*), MIN(updated_at), MAX(updated_at)
                   FROM learned_locations"""
            ).fetchone()

            return {
                "total_entries": row[0],
                "oldest_updated_at": row[1],
                "newest_updated_at": row[2],
            }


def create_learned_location_store(
    backend: str = "json",
    path: Optional[Union[str, Path]] = None,
) -> LearnedLocationRepository:
    """Build a repository for the configured backend.

    Args:
        backend: "json", "sqlite" or "memory"
        path: File path for the json and sqlite backends

    Returns:
        LearnedLocationRepository instance
    """
    if backend == "memory":
        return InMemoryLearnedLocationStore()

    if path is None:
        raise ValueError(f"Learned location backend '{backend}' requires a path")

    if backend == "json":
        return JsonFileLearnedLocationStore(path)
    if backend == "sqlite":
        return SqliteLearnedLocationStore(path)

    raise ValueError(f"Unknown learned location backend: {backend}")


class LearnedLocationCache:
    """Reads and records human-confirmed coordinates."""

    def __init__(self, repository: LearnedLocationRepository):
        self.repository = repository

    def save_learned_location(self, key: str, lat: Any, lng: Any) -> LearnedLocationEntry:
        """Record a coordinate for a learning key, overwriting any previous one.

        Args:
            key: Learning key of the address
            lat: Latitude (number or loosely formatted text)
            lng: Longitude (number or loosely formatted text)

        Returns:
            The stored entry

        Raises:
            ValueError: If the key is empty or the coordinate is out of range
        """
        if not key:
            raise ValueError("Cannot save a learned location without a learning key")

        lat_value = normalize_coordinate(lat)
        lng_value = normalize_coordinate(lng)
        if not is_valid_coordinate(lat_value, lng_value):
            raise ValueError(f"Invalid coordinate for '{key}': ({lat}, {lng})")

        entry = LearnedLocationEntry(lat=lat_value, lng=lng_value)
        self.repository.put(key, entry)
        logger.info(f"Learned location saved: {key} -> ({lat_value:.6f}, {lng_value:.6f})")
        return entry

    def load_learned_location(self, key: str) -> Optional[LearnedLocationEntry]:
        """Look up a learned location. Backend errors are logged, never raised."""
        if not key:
            return None

        try:
            entry = self.repository.get(key)
        except Exception as e:
            logger.warning(f"Learned location lookup failed for '{key}': {e}")
            return None

        if entry is None:
            return None

        if not is_valid_coordinate(entry.lat, entry.lng):
            logger.warning(f"Ignoring out-of-range learned location for '{key}'")
            return None

        return entry
