"""Resumable cursors for registry syncs, one per distinct search configuration."""

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from sqlalchemy import select

from billinglead_common.database import SyncProgress
from billinglead_common.models import SearchParams
from billinglead_common.storage import StorageClient

DEFAULT_KEY = "default"
KEY_SEPARATOR = "|"

# (key label, search field) in the order they appear in a key
KEY_FIELDS = (
    ("taxonomy", "taxonomy_description"),
    ("state", "state"),
    ("city", "city"),
    ("last_name", "last_name"),
    ("enumeration_type", "enumeration_type"),
)


@dataclass(frozen=True)
class SyncCursor:
    search_key: str
    last_skip: int
    total_fetched: int
    total_available: int


def build_progress_key(params: Union[SearchParams, Mapping[str, Any]]) -> str:
    """Deterministic key from the present search fields, e.g. ``taxonomy:Cardiology|state:TX``."""
    if isinstance(params, SearchParams):
        params = params.model_dump()
    parts = []
    for label, field in KEY_FIELDS:
        value = params.get(field)
        if value is None or str(value).strip() == "":
            continue
        parts.append(f"{label}:{str(value).strip()}")
    return KEY_SEPARATOR.join(parts) if parts else DEFAULT_KEY


class SyncProgressTracker:
    def __init__(self, storage: StorageClient):
        self.storage = storage

    async def load(self, key: str) -> Optional[SyncCursor]:
        async with self.storage.session() as session:
            row = await session.scalar(select(SyncProgress).where(SyncProgress.search_key == key))
        if row is None:
            return None
        return SyncCursor(
            search_key=row.search_key,
            last_skip=row.last_fetched_skip,
            total_fetched=row.total_fetched,
            total_available=row.total_available,
        )

    async def save(self, key: str, last_skip: int, total_fetched: int, total_available: int) -> None:
        """Create the cursor on first sync of ``key``, overwrite it afterwards."""
        async with self.storage.transaction() as session:
            row = await session.scalar(select(SyncProgress).where(SyncProgress.search_key == key))
            if row is None:
                row = SyncProgress(search_key=key)
                session.add(row)
            row.last_fetched_skip = last_skip
            row.total_fetched = total_fetched
            row.total_available = total_available
