"""Prayer-domain connectors: contracts for the external collaborators.

The domain logic only talks to these protocols. Concrete implementations
live alongside: an HTTP time-table client, static and cached time-tables,
clocks, and (in ``mihrab.core.storage``) the SQLite record store and the
on-device snapshot store.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from mihrab.core.storage.document_store import Filter, StoredDocument, WriteOp


@runtime_checkable
class TimetableProvider(Protocol):
    """Daily prayer clock-times for a coordinate."""

    async def get_timings(
        self, latitude: float, longitude: float, timestamp: int
    ) -> dict[str, str]:
        """Return ``{"Fajr": "HH:MM", ..., "Isha": "HH:MM"}`` (24h) for the day
        containing ``timestamp``.

        Raises:
            TimetableError: If the provider is unreachable or rate-limited.
        """
        ...

    @property
    def source(self) -> str:
        """Label for the active time-table source."""
        ...


@runtime_checkable
class RecordStore(Protocol):
    """Document store holding prayer records and excused periods."""

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        ...

    async def set(
        self, collection: str, key: str, fields: dict[str, Any], *, merge: bool = False
    ) -> None:
        ...

    async def query(
        self,
        collection: str,
        filters: list[Filter] | None = None,
        order_by: list[str] | None = None,
    ) -> list[StoredDocument]:
        ...

    async def batch_write(self, ops: list[WriteOp]) -> list[str]:
        """Apply ops atomically and return the keys that were applied."""
        ...


@runtime_checkable
class SnapshotStore(Protocol):
    """Best-effort key-value blob storage on the device."""

    async def read(self, key: str) -> dict[str, Any] | None:
        ...

    async def write(self, key: str, payload: dict[str, Any]) -> bool:
        ...

    async def delete(self, key: str) -> None:
        ...


@runtime_checkable
class Clock(Protocol):
    """Current time and the device's current UTC offset."""

    def now(self) -> datetime:
        """Current aware local datetime."""
        ...

    def utc_offset_minutes(self) -> int:
        """Minutes east of UTC in effect right now."""
        ...
