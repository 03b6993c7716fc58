import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

STORAGE_KEYS = {
    "DEFAULT_ASSISTANT_ID": "lang-lens/default_assistant_id",
}

#########################################################################
## Preference stores ####################################################
#########################################################################

class PreferenceStore(ABC):
    """Small string key/value store for UI preferences; failures are logged, never raised."""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def remove_item(self, key: str) -> None:
        ...


class InMemoryPreferenceStore(PreferenceStore):
    def __init__(self):
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


PREFERENCES_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS preferences (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqlitePreferenceStore(PreferenceStore):
    """Preferences persisted in a SQLite key/value table."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        try:
            with sqlite3.connect(db_path, timeout=5) as conn:
                conn.execute(PREFERENCES_TABLE_SQL)
                conn.commit()
        except sqlite3.Error as exc:
            logger.warning("Could not create preferences table in %s: %s", db_path, exc)

    def get_item(self, key: str) -> Optional[str]:
        try:
            with sqlite3.connect(self.db_path, timeout=5) as conn:
                row = conn.execute(
                    "SELECT value FROM preferences WHERE key=?",
                    (key,),
                ).fetchone()
        except sqlite3.Error as exc:
            logger.warning("Failed to read preference %s: %s", key, exc)
            return None
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        try:
            with sqlite3.connect(self.db_path, timeout=5) as conn:
                conn.execute(
                    "INSERT INTO preferences (key, value, updated_at) "
                    "VALUES (?, ?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
                    (key, value, _utcnow_iso()),
                )
                conn.commit()
        except sqlite3.Error as exc:
            logger.warning("Failed to save preference %s: %s", key, exc)

    def remove_item(self, key: str) -> None:
        try:
            with sqlite3.connect(self.db_path, timeout=5) as conn:
                conn.execute("DELETE FROM preferences WHERE key=?", (key,))
                conn.commit()
        except sqlite3.Error as exc:
            logger.warning("Failed to remove preference %s: %s", key, exc)


def open_preference_store(db_path: Optional[str]) -> PreferenceStore:
    if db_path:
        return SqlitePreferenceStore(db_path)
    return InMemoryPreferenceStore()

#########################################################################
## Assistant memory #####################################################
#########################################################################

class AssistantMemory:
    """Remembers which assistant new threads should start with."""

    def __init__(self, store: PreferenceStore):
        self.store = store

    @property
    def remembered(self) -> Optional[str]:
        return self.store.get_item(STORAGE_KEYS["DEFAULT_ASSISTANT_ID"])

    def remember(self, assistant_id: str) -> None:
        self.store.set_item(STORAGE_KEYS["DEFAULT_ASSISTANT_ID"], assistant_id)

    def forget(self) -> None:
        self.store.remove_item(STORAGE_KEYS["DEFAULT_ASSISTANT_ID"])

    def resolve(
        self,
        assistants: Sequence[dict],
        requested: Optional[str] = None,
    ) -> Optional[str]:
        """
        Pick the assistant for a new thread.

        An explicit request wins; then the remembered assistant if the server
        still lists it; then the first listed assistant.
        """
        if requested:
            return requested
        known = [a.get("assistant_id") for a in assistants if a.get("assistant_id")]
        remembered = self.remembered
        if remembered and remembered in known:
            return remembered
        if remembered:
            logger.info("Remembered assistant %s is no longer available", remembered)
        return known[0] if known else None
