from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass, field
from typing import Any, final

from ..base import BaseKVStorage
from ..exceptions import StorageNotInitializedError
from ..utils import load_json, logger, write_json


@final
@dataclass
class JsonKVStorage(BaseKVStorage):
    """Key-value store held in memory and written to a JSON file on index_done_callback."""

    _data: dict[str, dict[str, Any]] | None = field(default=None, init=False, repr=False)
    _storage_lock: asyncio.Lock | None = field(default=None, init=False, repr=False)
    _dirty: bool = field(default=False, init=False, repr=False)

    def __post_init__(self):
        working_dir = self.global_config["working_dir"]
        # 有 workspace 时放到子目录中
        if self.workspace:
            workspace_dir = os.path.join(working_dir, self.workspace)
        else:
            workspace_dir = working_dir
        self._file_name = os.path.join(workspace_dir, f"kv_store_{self.namespace}.json")

    async def initialize(self):
        if self._data is not None:
            return
        self._storage_lock = asyncio.Lock()
        loaded = load_json(self._file_name) or {}
        self._data = loaded
        logger.info(
            f"[{self.workspace or '_'}] Process {os.getpid()} KV load {self.namespace} with {len(loaded)} records"
        )

    def _require_data(self) -> dict[str, dict[str, Any]]:
        if self._data is None:
            raise StorageNotInitializedError(f"JsonKVStorage({self.namespace})")
        return self._data

    async def index_done_callback(self) -> None:
        data = self._require_data()
        async with self._storage_lock:
            if not self._dirty:
                return
            logger.debug(
                f"[{self.workspace or '_'}] Writing {len(data)} records to {self.namespace}"
            )
            write_json(data, self._file_name)
            self._dirty = False

    async def get_by_id(self, id: str) -> dict[str, Any] | None:
        record = self._require_data().get(id)
        return dict(record) if record is not None else None

    async def get_by_ids(self, ids: list[str]) -> list[dict[str, Any] | None]:
        data = self._require_data()
        return [dict(data[i]) if i in data else None for i in ids]

    async def filter_keys(self, keys: set[str]) -> set[str]:
        data = self._require_data()
        return {k for k in keys if k not in data}

    async def upsert(self, data: dict[str, dict[str, Any]]) -> None:
        if not data:
            return
        store = self._require_data()
        now = int(time.time())
        async with self._storage_lock:
            for key, value in data.items():
                record = dict(value)
                existing = store.get(key)
                record["create_time"] = (
                    existing.get("create_time", now) if existing else now
                )
                record["update_time"] = now
                record["_id"] = key
                store[key] = record
            self._dirty = True

    async def delete(self, ids: list[str]) -> None:
        store = self._require_data()
        async with self._storage_lock:
            removed = False
            for key in ids:
                if store.pop(key, None) is not None:
                    removed = True
            if removed:
                self._dirty = True

    async def is_empty(self) -> bool:
        return not self._require_data()

    async def drop(self) -> dict[str, str]:
        store = self._require_data()
        try:
            async with self._storage_lock:
                store.clear()
                if os.path.exists(self._file_name):
                    os.remove(self._file_name)
                self._dirty = False
        except OSError as e:
            logger.error(f"Error dropping {self.namespace}: {e}")
            return {"status": "error", "message": str(e)}
        logger.info(f"[{self.workspace or '_'}] Dropped {self.namespace}")
        return {"status": "success", "message": "data dropped"}

    async def finalize(self):
        if self._data is not None:
            await self.index_done_callback()
