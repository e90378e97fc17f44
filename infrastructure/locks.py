"""
按 key 串行化的独占作用域实现

- InProcessLockManager: 单进程内的 asyncio.Lock 注册表（默认，测试使用）
- RedisLockManager: 基于 redis.asyncio 的分布式锁，多实例部署时使用
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from redis import asyncio as aioredis
from redis.exceptions import LockError, RedisError

from core.logging_config import get_logger
from domain.common.exceptions import LockTimeoutException


logger = get_logger(__name__)


class _Entry:
    __slots__ = ("lock", "waiters")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.waiters = 0


class InProcessLockManager:
    """进程内的按 key 锁；无人持有或等待的 key 会被回收"""

    def __init__(self, default_timeout: Optional[float] = 10.0) -> None:
        self._entries: Dict[str, _Entry] = {}
        self._default_timeout = default_timeout

    @asynccontextmanager
    async def hold(self, key: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.waiters += 1
        wait = timeout if timeout is not None else self._default_timeout
        try:
            try:
                if wait is None:
                    await entry.lock.acquire()
                else:
                    await asyncio.wait_for(entry.lock.acquire(), timeout=wait)
            except asyncio.TimeoutError:
                logger.warning("lock_acquire_timeout", key=key, timeout=wait)
                raise LockTimeoutException(key, wait)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.waiters -= 1
            if entry.waiters == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def active_keys(self) -> list[str]:
        return list(self._entries)


class RedisLockManager:
    """
    Redis 分布式锁

    ttl 为锁自动过期时间，需大于单个事务的最长耗时。
    """

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        namespace: str = "",
        ttl: float = 30.0,
        default_timeout: float = 10.0,
    ) -> None:
        self._client = client
        self._namespace = namespace.strip(":")
        self._ttl = ttl
        self._default_timeout = default_timeout

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisLockManager":
        client = aioredis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, **kwargs)

    def _format_key(self, key: str) -> str:
        if not self._namespace:
            return f"lock:{key}"
        return f"lock:{self._namespace}:{key}"

    @asynccontextmanager
    async def hold(self, key: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        lock_key = self._format_key(key)
        wait = timeout if timeout is not None else self._default_timeout
        lock = self._client.lock(lock_key, timeout=self._ttl, blocking_timeout=wait)
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            logger.error("lock_acquire_failed", key=lock_key, error=str(e))
            raise
        if not acquired:
            logger.warning("lock_acquire_timeout", key=lock_key, timeout=wait)
            raise LockTimeoutException(key, wait)
        try:
            yield
        finally:
            try:
                await lock.release()
            except (LockError, RedisError) as e:
                logger.error("lock_release_failed", key=lock_key, error=str(e))

    async def close(self) -> None:
        await self._client.aclose()


_default_manager: Optional[InProcessLockManager] = None


def get_default_lock_manager() -> InProcessLockManager:
    """进程级共享的默认锁管理器"""
    global _default_manager
    if _default_manager is None:
        _default_manager = InProcessLockManager()
    return _default_manager
