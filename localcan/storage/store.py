"""
Durable key/value state for domains, certificates and service metadata.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

import redis.asyncio as redis

logger = logging.getLogger("localcan.storage")


class StateStore:
    """
    Collection-scoped record store.

    Uses Redis when a URL is configured, with a JSON state file as the
    fallback so records survive a restart either way.
    """

    FILENAME = "state.json"

    def __init__(
        self,
        data_dir: str,
        redis_url: str = "",
        key_prefix: str = "localcan:"
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.path = Path(data_dir) / self.FILENAME
        self._redis: Optional[redis.Redis] = None
        self._use_redis = bool(redis_url)
        self._data: Optional[Dict[str, Dict[str, dict]]] = None
        self._file_lock = asyncio.Lock()

    async def _get_redis(self) -> Optional[redis.Redis]:
        """Get Redis connection."""
        if not self._use_redis:
            return None

        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True
                )
                # Test connection
                await self._redis.ping()
                logger.info("Connected to Redis")
            except Exception as e:
                logger.warning(f"Redis unavailable, using state file {self.path}: {e}")
                self._redis = None
                self._use_redis = False
                return None

        return self._redis

    def _key(self, collection: str, key: str) -> str:
        return f"{self.key_prefix}{collection}:{key}"

    def _index_key(self, collection: str) -> str:
        return f"{self.key_prefix}{collection}"

    def _load_file(self) -> Dict[str, Dict[str, dict]]:
        if self._data is None:
            if self.path.exists():
                with open(self.path, "r", encoding="utf-8") as f:
                    self._data = json.load(f)
                logger.info(f"Loaded state from {self.path}")
            else:
                self._data = {}
        return self._data

    def _flush_file(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    async def put(self, collection: str, key: str, record: dict) -> None:
        """Insert or replace a record."""
        r = await self._get_redis()
        if r:
            await r.set(self._key(collection, key), json.dumps(record))
            await r.sadd(self._index_key(collection), key)
            return

        async with self._file_lock:
            data = self._load_file()
            previous = data.get(collection, {}).get(key)
            data.setdefault(collection, {})[key] = record
            try:
                self._flush_file()
            except OSError:
                # Keep memory and disk in agreement
                if previous is None:
                    data[collection].pop(key, None)
                else:
                    data[collection][key] = previous
                raise

    async def get(self, collection: str, key: str) -> Optional[dict]:
        """Get a record, or None."""
        r = await self._get_redis()
        if r:
            raw = await r.get(self._key(collection, key))
            if not raw:
                return None
            return json.loads(raw) if isinstance(raw, str) else raw

        async with self._file_lock:
            record = self._load_file().get(collection, {}).get(key)
            return dict(record) if record is not None else None

    async def delete(self, collection: str, key: str) -> bool:
        """Delete a record. Returns False if it did not exist."""
        r = await self._get_redis()
        if r:
            removed = await r.delete(self._key(collection, key))
            await r.srem(self._index_key(collection), key)
            return removed > 0

        async with self._file_lock:
            data = self._load_file()
            records = data.get(collection, {})
            if key not in records:
                return False
            previous = records.pop(key)
            try:
                self._flush_file()
            except OSError:
                records[key] = previous
                raise
            return True

    async def list(self, collection: str) -> List[dict]:
        """List all records in a collection."""
        r = await self._get_redis()
        if r:
            records = []
            for key in sorted(await r.smembers(self._index_key(collection))):
                record = await self.get(collection, key)
                if record is not None:
                    records.append(record)
            return records

        async with self._file_lock:
            records = self._load_file().get(collection, {})
            return [dict(records[k]) for k in sorted(records)]

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None
            logger.info("Redis connection closed")
