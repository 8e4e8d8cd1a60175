"""JSON-file record collection with lost-update protection.

All records live in one file shaped ``{"records": {record_id: {...}}}``.
Every mutation is a read-modify-write serialized per record through a
``WriteQueue`` and, because records share the file, also under a store-wide
lock. File IO uses ``aiofiles``; writes go to a temp file that then replaces
the original.
"""

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import aiofiles
import aiofiles.os

from quotaflow.core.exceptions import QuotaflowError
from quotaflow.domain.models.common import EntityId
from quotaflow.infrastructure.persistence.write_queue import WriteQueue

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Mutator = Callable[[Record], Optional[Record]]


class JsonRecordStore:
    """Small document store backed by a single JSON file."""

    def __init__(self, path: Union[str, Path], write_queue: Optional[WriteQueue] = None):
        self.path = Path(path)
        self.write_queue = write_queue or WriteQueue()
        self._file_lock = asyncio.Lock()
        logger.info(f"JsonRecordStore initialized at {self.path}")

    # --- File IO (caller holds the file lock) ---

    async def _read(self) -> Dict[str, Any]:
        if not await aiofiles.os.path.exists(self.path):
            return {"records": {}}
        async with aiofiles.open(self.path, mode="r", encoding="utf-8") as f:
            content = await f.read()
        try:
            data = json.loads(content) if content.strip() else {}
        except json.JSONDecodeError as e:
            raise QuotaflowError(f"Record file {self.path} is not valid JSON: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("records", {}), dict):
            raise QuotaflowError(f"Record file {self.path} has an unexpected layout")
        data.setdefault("records", {})
        return data

    async def _write(self, data: Dict[str, Any]) -> None:
        await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex}.tmp")
        try:
            async with aiofiles.open(tmp_path, mode="w", encoding="utf-8") as f:
                await f.write(json.dumps(data, indent=2, ensure_ascii=False))
            await aiofiles.os.replace(tmp_path, self.path)
        except OSError:
            if await aiofiles.os.path.exists(tmp_path):
                await aiofiles.os.remove(tmp_path)
            raise

    # --- Public API ---

    async def get(self, record_id: str) -> Optional[Record]:
        async with self._file_lock:
            data = await self._read()
        return data["records"].get(record_id)

    async def all(self) -> Dict[str, Record]:
        async with self._file_lock:
            data = await self._read()
        return data["records"]

    async def update(self, record_id: str, mutator: Mutator) -> Record:
        """Applies ``mutator`` to the current version of a record and saves it.

        Args:
            record_id: Record to create or modify.
            mutator: Receives a copy of the stored record (``{}`` if new). It
                may modify it in place and return None, or return a new dict.

        Returns:
            The record as written.
        """
        async def _apply() -> Record:
            async with self._file_lock:
                data = await self._read()
                current = dict(data["records"].get(record_id) or {})
                updated = mutator(current)
                if updated is None:
                    updated = current
                data["records"][record_id] = updated
                await self._write(data)
            logger.debug(f"Record '{record_id}' updated")
            return updated

        return await self.write_queue.run_serialized(EntityId(record_id), _apply)

    async def delete(self, record_id: str) -> bool:
        """Removes a record. Returns False if it did not exist."""
        async def _remove() -> bool:
            async with self._file_lock:
                data = await self._read()
                if record_id not in data["records"]:
                    return False
                del data["records"][record_id]
                await self._write(data)
            logger.info(f"Record '{record_id}' deleted")
            return True

        return await self.write_queue.run_serialized(EntityId(record_id), _remove)
