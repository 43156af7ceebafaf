from __future__ import annotations

import logging
from typing import Any, Protocol

from nixpackpy.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_SCAN_COUNT = 100


class KeyValueStore(Protocol):
    """Minimal async key-value backend used to persist file contents."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def scan_prefix(self, prefix: str) -> list[str]: ...


def _escape_glob(s: str) -> str:
    out = []
    for ch in s:
        if ch in "*?[]\\":
            out.append("\\")
        out.append(ch)
    return "".join(out)


class RedisKeyValueStore:
    """KeyValueStore over a redis-py asyncio client.

    Values are stored as raw strings, so keys written by other clients of the
    same database stay readable.
    """

    def __init__(self, client: Any) -> None:
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> RedisKeyValueStore:
        import redis.asyncio as aioredis  # type: ignore
        from redis.asyncio.retry import Retry  # type: ignore
        from redis.backoff import ExponentialBackoff  # type: ignore
        from redis.exceptions import ConnectionError as RedisConnectionError  # type: ignore
        from redis.exceptions import TimeoutError as RedisTimeoutError  # type: ignore

        client = aioredis.from_url(
            url,
            decode_responses=True,
            retry=Retry(ExponentialBackoff(cap=2.0, base=0.05), 3),
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
        )
        logger.info("Using redis file store at %s", url)
        return cls(client)

    async def get(self, key: str) -> str | None:
        return await self._redis.get(key)

    async def set(self, key: str, value: str) -> None:
        await self._redis.set(key, value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def scan_prefix(self, prefix: str) -> list[str]:
        pattern = _escape_glob(prefix) + "*"
        keys: list[str] = []
        cursor = 0
        while True:
            cursor, batch = await self._redis.scan(
                cursor=cursor, match=pattern, count=_SCAN_COUNT
            )
            keys.extend(k for k in batch if k.startswith(prefix))
            if int(cursor) == 0:
                break
        return keys

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryKeyValueStore:
    """Process-local KeyValueStore for development and tests."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._d: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._d.get(key)

    async def set(self, key: str, value: str) -> None:
        self._d[key] = value

    async def delete(self, key: str) -> None:
        self._d.pop(key, None)

    async def scan_prefix(self, prefix: str) -> list[str]:
        return [k for k in self._d if k.startswith(prefix)]

    async def close(self) -> None:
        return None


def file_key(environment_id: str, file_name: str) -> str:
    return f"{environment_id}_{file_name}"


def duplicate_name(file_name: str) -> str:
    # "a.py" -> "a_copy.py"; dotfiles and extensionless names get a plain suffix.
    ext_index = file_name.rfind(".")
    if ext_index > 0:
        return file_name[:ext_index] + "_copy" + file_name[ext_index:]
    return file_name + "_copy"


class FileStore:
    """Environment-scoped file operations on top of a KeyValueStore."""

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv

    @property
    def kv(self) -> KeyValueStore:
        return self._kv

    async def read(self, environment_id: str, file_name: str) -> str | None:
        return await self._kv.get(file_key(environment_id, file_name))

    async def write(self, environment_id: str, file_name: str, content: str) -> None:
        await self._kv.set(file_key(environment_id, file_name), content)

    async def remove(self, environment_id: str, file_name: str) -> None:
        await self._kv.delete(file_key(environment_id, file_name))

    async def list_files(self, environment_id: str) -> dict[str, str]:
        prefix = file_key(environment_id, "")
        files: dict[str, str] = {}
        for key in await self._kv.scan_prefix(prefix):
            value = await self._kv.get(key)
            if value is None:
                # Deleted between the scan and the read.
                continue
            files[key[len(prefix) :]] = value
        return files

    async def rename(self, environment_id: str, old_name: str, new_name: str) -> None:
        if not new_name:
            raise ValidationError("newName must not be empty")
        content = await self.read(environment_id, old_name)
        if content is None:
            raise NotFoundError("File does not exist")
        if old_name == new_name:
            return
        await self.write(environment_id, new_name, content)
        await self.remove(environment_id, old_name)
        logger.info(
            "Renamed %s -> %s (environment=%s)", old_name, new_name, environment_id
        )

    async def duplicate(self, environment_id: str, file_name: str) -> str:
        content = await self.read(environment_id, file_name)
        if content is None:
            raise NotFoundError("File does not exist")
        new_name = duplicate_name(file_name)
        await self.write(environment_id, new_name, content)
        return new_name


def store_from_env() -> FileStore:
    from nixpackpy import config

    if config.store_backend() == "memory":
        logger.warning("Using in-memory file store; contents are lost on restart")
        return FileStore(InMemoryKeyValueStore())
    return FileStore(RedisKeyValueStore.from_url(config.redis_url()))
