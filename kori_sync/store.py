"""
Entity storage for the Kori sync service.

This module provides the state store shared by the connection hub and the
poller. Every entity is kept as a JSON document keyed by ``(kind, pet_id)``,
so backends only need to load and save documents: the merge, validation and
timestamp rules live once in ``StateStore``. Two backends are included, an
in-memory store and an embedded SQLite file.
"""

import copy
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

import aiosqlite
from pydantic import BaseModel

from .errors import StoreError, ValidationError
from .models import (
    ANIMATION_STATES,
    IntegrationTokens,
    PetPatch,
    PetState,
    Preferences,
    PreferencesPatch,
    Stats,
    StatsPatch,
    is_animation_state,
)

logger = logging.getLogger(__name__)

EntityT = TypeVar("EntityT", bound=BaseModel)

PET = "pet"
PREFERENCES = "preferences"
STATS = "stats"
CONFIDENCE = "confidence"
TOKENS = "integration_tokens"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateStore(ABC):
    """
    Base class for entity stores.

    Entities are created lazily with their defaults on first read and are
    never deleted. Updates are last-writer-wins: the patch fields a client
    supplied are merged over the current document and ``last_updated`` is
    stamped. The stamp strictly increases between two mutations of the same
    entity even when the clock does not move.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    # MARK: - Lifecycle

    async def open(self) -> None:
        """Acquire the backing storage. Raises StoreError when unavailable."""

    async def close(self) -> None:
        """Release the backing storage."""

    # MARK: - Backend

    @abstractmethod
    async def _load(self, kind: str, pet_id: str) -> dict[str, Any] | None:
        """Return the stored document, or None when absent."""

    @abstractmethod
    async def _save(self, kind: str, pet_id: str, data: dict[str, Any]) -> None:
        """Persist a document, replacing any previous one."""

    # MARK: - Pet State

    async def get_pet(self, pet_id: str) -> PetState:
        return await self._get(PetState, PET, pet_id)

    async def update_pet(self, pet_id: str, patch: PetPatch) -> PetState:
        """
        Apply a pet patch.

        Args:
            pet_id: Tenant key of the pet
            patch: The fields to change

        Returns:
            The full updated pet state

        Raises:
            ValidationError: If ``mood`` is not a known animation state. The
                stored state is left untouched.
        """
        changes = patch.changes()
        if "mood" in changes and not is_animation_state(changes["mood"]):
            raise ValidationError(
                f'Invalid cat state "{changes["mood"]}". '
                f"Expected one of: {', '.join(ANIMATION_STATES)}"
            )
        return await self._update(PetState, PET, pet_id, changes)

    # MARK: - Preferences

    async def get_preferences(self, pet_id: str) -> Preferences:
        return await self._get(Preferences, PREFERENCES, pet_id)

    async def update_preferences(
        self, pet_id: str, patch: PreferencesPatch
    ) -> Preferences:
        return await self._update(Preferences, PREFERENCES, pet_id, patch.changes())

    # MARK: - Stats

    async def get_stats(self, pet_id: str) -> Stats:
        return await self._get(Stats, STATS, pet_id)

    async def update_stats(self, pet_id: str, patch: StatsPatch) -> Stats:
        """
        Apply a stats patch.

        Stats are not validated. When the patch carries both a ``mood`` that
        is an animation state and a ``confidence``, that score is also
        recorded in the mood confidence map.
        """
        changes = patch.changes()
        stats = await self._update(Stats, STATS, pet_id, changes)

        mood = changes.get("mood")
        confidence = changes.get("confidence")
        if confidence is not None and is_animation_state(mood):
            confidence_map = await self.get_confidence_map(pet_id)
            confidence_map[mood] = confidence
            await self._save(CONFIDENCE, pet_id, confidence_map)

        return stats

    async def get_confidence_map(self, pet_id: str) -> dict[str, float]:
        """Return the last seen confidence for every animation state."""
        stored = await self._load(CONFIDENCE, pet_id)
        confidence_map = {state: 0.0 for state in ANIMATION_STATES}
        if stored is None:
            await self._save(CONFIDENCE, pet_id, confidence_map)
            return confidence_map

        for state, value in stored.items():
            if state in confidence_map and value is not None:
                confidence_map[state] = float(value)
        return confidence_map

    async def set_daily_tip(
        self, pet_id: str, tip: str, generated_at: datetime
    ) -> Stats:
        """Store a new daily tip. Does not stamp ``last_updated``."""
        stats = await self.get_stats(pet_id)
        stats = stats.model_copy(
            update={"daily_tip": tip, "tip_generated_at": generated_at}
        )
        await self._save(STATS, pet_id, stats.model_dump(mode="json"))
        return stats

    async def set_music_playback(
        self, pet_id: str, is_playing: bool, track: str | None
    ) -> Stats:
        return await self._update(
            Stats,
            STATS,
            pet_id,
            {"music_is_playing": is_playing, "music_track": track},
        )

    # MARK: - Integration Tokens

    async def get_integration_tokens(self, pet_id: str) -> IntegrationTokens:
        data = await self._load(TOKENS, pet_id)
        if data is None:
            return IntegrationTokens()
        return IntegrationTokens.model_validate(data)

    async def set_integration_tokens(
        self, pet_id: str, **fields: Any
    ) -> IntegrationTokens:
        """Merge the given token fields over the stored ones."""
        current = await self.get_integration_tokens(pet_id)
        tokens = current.model_copy(update={**fields, "updated_at": self._clock()})
        tokens = IntegrationTokens.model_validate(tokens.model_dump())
        await self._save(TOKENS, pet_id, tokens.model_dump(mode="json"))
        return tokens

    async def clear_integration_tokens(self, pet_id: str) -> IntegrationTokens:
        tokens = IntegrationTokens(updated_at=self._clock())
        await self._save(TOKENS, pet_id, tokens.model_dump(mode="json"))
        return tokens

    # MARK: - Private Helpers

    async def _get(
        self, model: type[EntityT], kind: str, pet_id: str
    ) -> EntityT:
        data = await self._load(kind, pet_id)
        if data is not None:
            return model.model_validate(data)

        entity = model(last_updated=self._clock())
        await self._save(kind, pet_id, entity.model_dump(mode="json"))
        logger.debug("Created default %s for pet %s", kind, pet_id)
        return entity

    async def _update(
        self,
        model: type[EntityT],
        kind: str,
        pet_id: str,
        changes: dict[str, Any],
    ) -> EntityT:
        current = await self._get(model, kind, pet_id)

        data = current.model_dump()
        for name, value in changes.items():
            # None only clears fields whose default is None
            if value is None and model.model_fields[name].default is not None:
                continue
            data[name] = value
        data["last_updated"] = self._stamp(current.last_updated)

        entity = model.model_validate(data)
        await self._save(kind, pet_id, entity.model_dump(mode="json"))
        return entity

    def _stamp(self, previous: datetime) -> datetime:
        now = self._clock()
        if now <= previous:
            now = previous + timedelta(microseconds=1)
        return now


class MemoryStateStore(StateStore):
    """
    In-memory entity storage.

    Documents live for the lifetime of the process. Useful for tests and for
    running the service without a data directory.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(clock)
        self._documents: dict[tuple[str, str], dict[str, Any]] = {}

    async def _load(self, kind: str, pet_id: str) -> dict[str, Any] | None:
        data = self._documents.get((kind, pet_id))
        return copy.deepcopy(data) if data is not None else None

    async def _save(self, kind: str, pet_id: str, data: dict[str, Any]) -> None:
        self._documents[(kind, pet_id)] = copy.deepcopy(data)


class SQLiteStateStore(StateStore):
    """
    Entity storage in an embedded SQLite file.

    All entities share a single key/value table. The database is opened in
    WAL mode through ``aiosqlite``, which runs every statement on its own
    worker thread off the event loop. ``open()``
    creates the parent directory and the schema and fails fast when the
    file cannot be used.
    """

    def __init__(
        self, path: str | Path, clock: Callable[[], datetime] = utcnow
    ) -> None:
        super().__init__(clock)
        self._path = str(path)
        self._conn: aiosqlite.Connection | None = None

    async def open(self) -> None:
        if self._conn is not None:
            return
        conn = None
        try:
            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(self._path, isolation_level=None)
            await conn.execute("PRAGMA journal_mode = WAL")
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS entities (
                    kind TEXT NOT NULL,
                    pet_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
                    PRIMARY KEY (kind, pet_id)
                )
                """
            )
        except (sqlite3.Error, OSError) as e:
            if conn is not None:
                await conn.close()
            raise StoreError(f"Could not open store at {self._path}: {e}") from e

        self._conn = conn
        logger.info("Opened SQLite store at %s", self._path)

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await conn.close()
        logger.info("Closed SQLite store at %s", self._path)

    async def _load(self, kind: str, pet_id: str) -> dict[str, Any] | None:
        conn = self._connection()
        try:
            async with conn.execute(
                "SELECT data FROM entities WHERE kind = ? AND pet_id = ?",
                (kind, pet_id),
            ) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read {kind} for {pet_id}: {e}") from e
        return json.loads(row[0]) if row else None

    async def _save(self, kind: str, pet_id: str, data: dict[str, Any]) -> None:
        conn = self._connection()
        try:
            await conn.execute(
                """
                INSERT INTO entities (kind, pet_id, data, updated_at)
                VALUES (?, ?, ?, datetime('now'))
                ON CONFLICT(kind, pet_id) DO UPDATE
                SET data = excluded.data, updated_at = excluded.updated_at
                """,
                (kind, pet_id, json.dumps(data)),
            )
        except sqlite3.Error as e:
            raise StoreError(f"Failed to write {kind} for {pet_id}: {e}") from e

    def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("Store is not open")
        return self._conn


def create_store(backend: str, database_path: str | Path) -> StateStore:
    """Build the store selected by configuration."""
    if backend == "memory":
        return MemoryStateStore()
    if backend == "sqlite":
        return SQLiteStateStore(database_path)
    raise StoreError(f"Unknown store backend: {backend}")
