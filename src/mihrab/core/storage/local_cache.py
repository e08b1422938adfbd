"""On-device key-value snapshot store.

Best-effort persistence for the last known history snapshot: one JSON file
per key under the cache directory. Nothing here is a source of truth, so
every read failure degrades to ``None`` and every write failure is logged.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from mihrab.core.storage.encryption import BlobEncryptor, EncryptionError

logger = logging.getLogger(__name__)


class LocalSnapshotStore:
    """File-backed blob storage with optional encryption at rest.

    Usage::

        store = LocalSnapshotStore("~/.mihrab/cache")
        await store.write("prayer_history:u1", {"timestamp": 0, "data": {}})
        payload = await store.read("prayer_history:u1")
    """

    def __init__(self, cache_dir: str | Path, encryptor: BlobEncryptor | None = None) -> None:
        self._dir = Path(cache_dir).expanduser()
        self._encryptor = encryptor

    @property
    def directory(self) -> Path:
        return self._dir

    def _path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        return self._dir / f"{digest}.json"

    async def read(self, key: str) -> dict[str, Any] | None:
        """Return the stored payload, or None if missing or unreadable."""
        return await asyncio.to_thread(self._read_sync, key)

    async def write(self, key: str, payload: dict[str, Any]) -> bool:
        """Persist ``payload`` atomically. Returns False if the write failed."""
        return await asyncio.to_thread(self._write_sync, key, payload)

    async def delete(self, key: str) -> None:
        """Remove the blob for ``key`` if present."""
        await asyncio.to_thread(self._delete_sync, key)

    def _read_sync(self, key: str) -> dict[str, Any] | None:
        path = self._path_for(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Could not read cache blob %s: %s", path.name, exc)
            return None

        try:
            if self._encryptor is not None:
                payload = self._encryptor.decrypt(raw)
            else:
                payload = json.loads(raw)
        except (EncryptionError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache blob %s: %s", path.name, exc)
            return None

        if not isinstance(payload, dict):
            logger.warning("Ignoring cache blob %s: expected an object", path.name)
            return None
        return payload

    def _write_sync(self, key: str, payload: dict[str, Any]) -> bool:
        path = self._path_for(key)
        try:
            if self._encryptor is not None:
                content = self._encryptor.encrypt(payload)
            else:
                content = json.dumps(payload, separators=(",", ":"))
        except (EncryptionError, TypeError, ValueError) as exc:
            logger.error("Could not serialize cache blob for %s: %s", key, exc)
            return False

        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._dir, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_name, path)
        except OSError as exc:
            logger.warning("Could not write cache blob %s: %s", path.name, exc)
            return False
        return True

    def _delete_sync(self, key: str) -> None:
        try:
            self._path_for(key).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not delete cache blob for %s: %s", key, exc)
