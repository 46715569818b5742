"""Durable key/value store for small flags and legacy form storage."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from sqlalchemy import select, delete
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fieldsync.core.errors import CacheError
from fieldsync.models.database import KVEntry

logger = logging.getLogger(__name__)


class KVStore(ABC):
    """String-keyed persistent map with typed accessors."""

    @abstractmethod
    async def _get(self, key: str) -> Any: ...

    @abstractmethod
    async def _set(self, key: str, value: Any) -> None: ...

    @abstractmethod
    async def remove(self, key: str) -> None: ...

    @abstractmethod
    async def keys(self) -> set[str]: ...

    async def contains(self, key: str) -> bool:
        return key in await self.keys()

    async def get_string(self, key: str) -> Optional[str]:
        value = await self._get(key)
        return value if isinstance(value, str) else None

    async def set_string(self, key: str, value: str) -> None:
        await self._set(key, str(value))

    async def get_bool(self, key: str) -> Optional[bool]:
        value = await self._get(key)
        return value if isinstance(value, bool) else None

    async def set_bool(self, key: str, value: bool) -> None:
        await self._set(key, bool(value))

    async def get_int(self, key: str) -> Optional[int]:
        value = await self._get(key)
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value

    async def set_int(self, key: str, value: int) -> None:
        await self._set(key, int(value))

    async def get_string_list(self, key: str) -> Optional[list[str]]:
        value = await self._get(key)
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return value
        return None

    async def set_string_list(self, key: str, value: list[str]) -> None:
        await self._set(key, [str(v) for v in value])


class SqlKVStore(KVStore):
    """KV store persisted in the kv_entries table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def _get(self, key: str) -> Any:
        try:
            async with self.session_maker() as session:
                result = await session.execute(select(KVEntry.value).where(KVEntry.key == key))
                raw = result.scalar_one_or_none()
        except Exception as e:
            logger.error(f"KV read failed for {key}: {e}")
            raise CacheError(f"Failed to read key {key}: {e}")

        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"KV value for {key} is not valid JSON, returning raw string")
            return raw

    async def _set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value)
        stmt = insert(KVEntry.__table__).values(key=key, value=encoded)
        stmt = stmt.on_conflict_do_update(index_elements=["key"], set_={"value": encoded})
        try:
            async with self.session_maker() as session:
                await session.execute(stmt)
                await session.commit()
        except Exception as e:
            logger.error(f"KV write failed for {key}: {e}")
            raise CacheError(f"Failed to write key {key}: {e}")

    async def remove(self, key: str) -> None:
        try:
            async with self.session_maker() as session:
                await session.execute(delete(KVEntry).where(KVEntry.key == key))
                await session.commit()
        except Exception as e:
            logger.error(f"KV delete failed for {key}: {e}")
            raise CacheError(f"Failed to remove key {key}: {e}")

    async def keys(self) -> set[str]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(select(KVEntry.key))
                return set(result.scalars().all())
        except Exception as e:
            logger.error(f"KV key scan failed: {e}")
            raise CacheError(f"Failed to enumerate keys: {e}")
