from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Iterable

from ..utils import logger


@dataclass
class _KeyedLockEntry:
    lock: asyncio.Lock
    # 持有者 + 等待者数量，归零时删除
    refcount: int = 0


class KeyedLockManager:
    """Map of per-key asyncio locks.

    A lock is created the first time a key is requested and removed once no
    holder or waiter remains, so the map only ever contains keys that are in use.
    Multi-key acquisition always happens in sorted order to avoid deadlock
    between tasks that lock overlapping key sets.
    """

    def __init__(self, name: str = "default"):
        self.name = name
        self._locks: dict[str, _KeyedLockEntry] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    def _retain(self, key: str) -> asyncio.Lock:
        entry = self._locks.get(key)
        if entry is None:
            entry = _KeyedLockEntry(lock=asyncio.Lock())
            self._locks[key] = entry
        entry.refcount += 1
        return entry.lock

    def _release(self, key: str) -> None:
        entry = self._locks.get(key)
        if entry is None:
            return
        entry.refcount -= 1
        if entry.refcount <= 0:
            del self._locks[key]

    @asynccontextmanager
    async def acquire(
        self, keys: str | Iterable[str], enable_logging: bool = False
    ) -> AsyncIterator[None]:
        # 去重并排序
        if isinstance(keys, str):
            keys = [keys]
        ordered_keys = sorted(set(keys))
        acquired: list[str] = []
        retained: list[str] = []
        try:
            for key in ordered_keys:
                lock = self._retain(key)
                retained.append(key)
                await lock.acquire()
                acquired.append(key)
                if enable_logging:
                    logger.debug(f"[{self.name}] acquired lock for {key}")
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].lock.release()
                if enable_logging:
                    logger.debug(f"[{self.name}] released lock for {key}")
            for key in reversed(retained):
                self._release(key)


# 每个命名空间一个锁管理器
_keyed_lock_managers: dict[str, KeyedLockManager] = {}


def get_keyed_lock_manager(namespace: str) -> KeyedLockManager:
    manager = _keyed_lock_managers.get(namespace)
    if manager is None:
        manager = KeyedLockManager(namespace)
        _keyed_lock_managers[namespace] = manager
    return manager


def get_storage_keyed_lock(
    keys: str | list[str], namespace: str = "default", enable_logging: bool = False
):
    """Async context manager locking ``keys`` inside ``namespace``.

    Usage:
        async with get_storage_keyed_lock([entity_key], namespace="GraphDB"):
            ...
    """
    return get_keyed_lock_manager(namespace).acquire(keys, enable_logging=enable_logging)
