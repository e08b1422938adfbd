"""Document-style record store backed by SQLite.

Documents are JSON bodies addressed by ``(collection, key)``. The store offers
the small surface the prayer domain needs from a managed document database:
point reads, merge writes, filtered queries, atomic batches, and a
conditional update used to keep automatic writes from clobbering
user-confirmed state.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from mihrab.core.storage.database import RecordDatabase

logger = logging.getLogger(__name__)

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_SQL_OPS = {
    "==": "=",
    "!=": "!=",
    "<": "<",
    "<=": "<=",
    ">": ">",
    ">=": ">=",
}


class RecordStoreError(Exception):
    """Raised when a record store read or write fails."""


@dataclass(frozen=True)
class Filter:
    """A single ``field op value`` query predicate."""

    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class StoredDocument:
    """A document body together with its key."""

    key: str
    data: dict[str, Any]


@dataclass(frozen=True)
class WriteOp:
    """One operation inside a batch write.

    ``kind`` is one of:

    * ``set`` -- write ``fields`` (overlaying the existing body when ``merge``).
    * ``create`` -- write ``fields`` only if the key does not exist yet.
    * ``update_if`` -- merge ``fields`` only if the document exists and every
      ``conditions`` field currently holds one of the allowed values.
    """

    kind: str
    collection: str
    key: str
    fields: dict[str, Any]
    merge: bool = False
    conditions: dict[str, list[Any]] = field(default_factory=dict)

    @classmethod
    def set(
        cls, collection: str, key: str, fields: dict[str, Any], *, merge: bool = False
    ) -> WriteOp:
        return cls("set", collection, key, fields, merge=merge)

    @classmethod
    def create(cls, collection: str, key: str, fields: dict[str, Any]) -> WriteOp:
        return cls("create", collection, key, fields)

    @classmethod
    def update_if(
        cls,
        collection: str,
        key: str,
        fields: dict[str, Any],
        conditions: dict[str, list[Any]],
    ) -> WriteOp:
        return cls("update_if", collection, key, fields, merge=True, conditions=conditions)


def _check_field(name: str) -> str:
    if not _FIELD_RE.match(name):
        raise ValueError(f"Invalid document field name: {name!r}")
    return name


def _conditions_hold(data: dict[str, Any], conditions: dict[str, list[Any]]) -> bool:
    return all(data.get(name) in allowed for name, allowed in conditions.items())


class DocumentStore:
    """SQLite implementation of the record store contract.

    All public methods are coroutines so callers can swap in a remote
    document database without changing call sites. The SQLite work itself is
    short and runs inline on the event loop.

    Usage::

        db = RecordDatabase(":memory:")
        db.initialize()
        store = DocumentStore(db)

        await store.set("prayer_history", "u1:2024-03-01:fajr", {...})
        docs = await store.query(
            "prayer_history",
            [Filter("user_id", "==", "u1"), Filter("date", ">=", "2024-03-01")],
            order_by=["date"],
        )
    """

    def __init__(self, database: RecordDatabase) -> None:
        self._db = database

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        """Return the document body for ``key``, or None if absent."""
        try:
            return self._read(self._db.connection, collection, key)
        except sqlite3.Error as exc:
            raise RecordStoreError(f"Failed to read {collection}/{key}: {exc}") from exc

    async def query(
        self,
        collection: str,
        filters: list[Filter] | None = None,
        order_by: list[str] | None = None,
    ) -> list[StoredDocument]:
        """Return documents matching every filter.

        Args:
            collection: Collection to search.
            filters: Predicates on top-level body fields. Supported ops are
                ``== != < <= > >= in``.
            order_by: Field names; prefix with ``-`` for descending order.
                The document key is the final tie-breaker.
        """
        conditions = ["collection = ?"]
        params: list[Any] = [collection]

        for flt in filters or []:
            path = f"json_extract(data_json, '$.{_check_field(flt.field)}')"
            if flt.op == "in":
                values = list(flt.value)
                if not values:
                    return []
                conditions.append(f"{path} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            elif flt.op in _SQL_OPS:
                conditions.append(f"{path} {_SQL_OPS[flt.op]} ?")
                params.append(flt.value)
            else:
                raise ValueError(f"Unsupported filter operator: {flt.op!r}")

        ordering = []
        for name in order_by or []:
            direction = "DESC" if name.startswith("-") else "ASC"
            ordering.append(
                f"json_extract(data_json, '$.{_check_field(name.lstrip('-'))}') {direction}"
            )
        ordering.append("doc_key ASC")

        sql = (
            "SELECT doc_key, data_json FROM documents WHERE "
            + " AND ".join(conditions)
            + " ORDER BY "
            + ", ".join(ordering)
        )
        try:
            rows = self._db.connection.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise RecordStoreError(f"Query on {collection} failed: {exc}") from exc

        return [StoredDocument(row["doc_key"], json.loads(row["data_json"])) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set(
        self,
        collection: str,
        key: str,
        fields: dict[str, Any],
        *,
        merge: bool = False,
    ) -> None:
        """Write a document, overlaying the existing body when ``merge``."""
        await self.batch_write([WriteOp.set(collection, key, fields, merge=merge)])

    async def update_if(
        self,
        collection: str,
        key: str,
        fields: dict[str, Any],
        conditions: dict[str, list[Any]],
    ) -> bool:
        """Merge ``fields`` only if every condition holds. Returns True if applied."""
        applied = await self.batch_write(
            [WriteOp.update_if(collection, key, fields, conditions)]
        )
        return bool(applied)

    async def batch_write(self, ops: list[WriteOp]) -> list[str]:
        """Apply ``ops`` in a single transaction.

        Conditional and create-only ops that do not apply are skipped, not
        treated as failures.

        Returns:
            Keys of the operations that were applied, in op order.

        Raises:
            RecordStoreError: On any storage failure. Nothing from the batch
                is committed in that case.
        """
        if not ops:
            return []

        conn = self._db.connection
        applied: list[str] = []
        try:
            with conn:
                conn.execute("BEGIN IMMEDIATE")
                for op in ops:
                    if self._apply(conn, op):
                        applied.append(op.key)
        except sqlite3.Error as exc:
            logger.error("Batch of %d writes rolled back: %s", len(ops), exc)
            raise RecordStoreError(f"Batch write failed: {exc}") from exc

        logger.debug("Batch applied %d of %d writes", len(applied), len(ops))
        return applied

    async def count(self, collection: str) -> int:
        """Count documents in a collection."""
        try:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM documents WHERE collection = ?", (collection,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise RecordStoreError(f"Count on {collection} failed: {exc}") from exc
        return row[0]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _read(conn: sqlite3.Connection, collection: str, key: str) -> dict[str, Any] | None:
        row = conn.execute(
            "SELECT data_json FROM documents WHERE collection = ? AND doc_key = ?",
            (collection, key),
        ).fetchone()
        if row is None:
            return None
        return json.loads(row["data_json"])

    def _apply(self, conn: sqlite3.Connection, op: WriteOp) -> bool:
        existing = self._read(conn, op.collection, op.key)

        if op.kind == "create":
            if existing is not None:
                return False
            body = dict(op.fields)
        elif op.kind == "update_if":
            if existing is None or not _conditions_hold(existing, op.conditions):
                return False
            body = {**existing, **op.fields}
        elif op.kind == "set":
            body = {**existing, **op.fields} if (op.merge and existing) else dict(op.fields)
        else:
            raise ValueError(f"Unknown write op kind: {op.kind!r}")

        conn.execute(
            """INSERT INTO documents (collection, doc_key, data_json)
               VALUES (?, ?, ?)
               ON CONFLICT(collection, doc_key) DO UPDATE SET
                   data_json = excluded.data_json,
                   updated_at = datetime('now')""",
            (op.collection, op.key, json.dumps(body, sort_keys=True)),
        )
        return True
