"""Application data store.

``JsonDataStore`` persists snapshots to a JSON file in the same
``{projects, calendar}`` layout the ChronoTask web app keeps in local
storage. ``AppStore`` is the single writer: every mutation, whether from the
dashboard or a voice tool-call batch, is a read-modify-replace of the whole
snapshot under one lock, followed by a save.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import date
from pathlib import Path
from typing import Any, Protocol, TypeVar

import aiofiles
import aiofiles.os

from .models import DataSnapshot, Project, Task

logger = logging.getLogger(__name__)

T = TypeVar("T")

Mutation = Callable[[DataSnapshot], tuple[DataSnapshot, T]]


def default_snapshot() -> DataSnapshot:
    """Demo data used when nothing has been saved yet."""
    website = Project(
        id="p1",
        name="Website Redesign",
        color="#3b82f6",
        details="Overhaul the corporate website with modern UI.",
        tasks=(
            Task(id="t1", project_id="p1", title="Design Mockups",
                 description="Create Figma designs for homepage."),
            Task(id="t2", project_id="p1", title="Frontend Dev",
                 description="Implement React components."),
        ),
    )
    marketing = Project(
        id="p2",
        name="Marketing Campaign",
        color="#10b981",
        details="Q1 2025 Social Media push.",
        tasks=(
            Task(id="t3", project_id="p2", title="Write Copy",
                 description="Draft posts for Instagram."),
            Task(id="t4", project_id="p2", title="Ad Budget",
                 description="Finalize budget allocation."),
        ),
    )
    return DataSnapshot(
        projects=(website, marketing),
        calendar={date.today().isoformat(): ("t1",)},
        selected_project_id="p1",
    )


class DataPersistence(Protocol):
    """Where snapshots are loaded from and saved to."""

    async def load(self) -> DataSnapshot: ...

    async def save(self, snapshot: DataSnapshot) -> None: ...


def export_json(snapshot: DataSnapshot) -> str:
    """Pretty-printed backup of a snapshot."""
    return json.dumps(snapshot.to_dict(), indent=2)


class JsonDataStore:
    """Snapshot persistence in a single JSON file."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    async def load(self) -> DataSnapshot:
        """Load the saved snapshot, falling back to demo data."""
        if not self.path.exists():
            return default_snapshot()
        try:
            async with aiofiles.open(self.path) as f:
                data = json.loads(await f.read())
            return DataSnapshot.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("Failed to load data from %s: %s", self.path, e)
            return default_snapshot()

    async def save(self, snapshot: DataSnapshot) -> None:
        """Write the snapshot atomically (temp file + rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(snapshot.to_dict()))
        await aiofiles.os.replace(tmp_path, self.path)


class AppStore:
    """Single-writer holder of the current DataSnapshot."""

    def __init__(self, persistence: DataPersistence | None = None, initial: DataSnapshot | None = None):
        self._persistence = persistence
        self._snapshot = initial if initial is not None else DataSnapshot()
        self._lock = asyncio.Lock()
        self._listeners: list[Callable[[DataSnapshot], Any]] = []

    @classmethod
    async def open(cls, persistence: DataPersistence) -> "AppStore":
        """Create a store primed with the persisted snapshot."""
        return cls(persistence, await persistence.load())

    @property
    def snapshot(self) -> DataSnapshot:
        """The last committed snapshot (safe to read at any time)."""
        return self._snapshot

    def add_listener(self, callback: Callable[[DataSnapshot], Any]) -> None:
        """Add a callback (sync or async) notified after every commit."""
        self._listeners.append(callback)

    async def update(self, mutate: Mutation[T]) -> T:
        """Apply ``mutate`` to the current snapshot as one atomic commit.

        ``mutate`` receives the current snapshot and returns the replacement
        plus any value to hand back to the caller. Returning the same
        snapshot object means "no change" and skips the commit.

        A commit that has begun is saved and broadcast even if the caller
        is cancelled; the cancellation is re-raised afterwards.
        """
        async with self._lock:
            current = self._snapshot
            new_snapshot, value = mutate(current)
            if new_snapshot is not current:
                commit = asyncio.create_task(self._commit(new_snapshot))
                try:
                    await asyncio.shield(commit)
                except asyncio.CancelledError:
                    # Hold the lock until the commit lands
                    await asyncio.wait([commit])
                    raise
            return value

    async def replace(self, snapshot: DataSnapshot) -> None:
        """Replace all data (import)."""
        await self.update(lambda _: (snapshot, None))

    async def _commit(self, snapshot: DataSnapshot) -> None:
        self._snapshot = snapshot
        if self._persistence is not None:
            try:
                await self._persistence.save(snapshot)
            except OSError:
                # Keep the in-memory commit; the next save retries the whole snapshot
                logger.exception("Failed to save data")
        for listener in self._listeners:
            try:
                result = listener(snapshot)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Data listener failed")
