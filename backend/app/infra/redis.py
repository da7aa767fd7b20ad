"""Redis client for ephemeral messaging signals.

Redis only carries short-lived flags (typing indicators); messages and read
state live in the backing store. Modules hold the `redis_client` proxy and the
client underneath can be swapped, e.g. for fakeredis in tests.
"""

from __future__ import annotations

import redis.asyncio as redis

from app.settings import settings


class RedisProxy:
	"""Forwards to the current client and adds the flag helpers messaging needs."""

	def __init__(self, client: redis.Redis):
		self._client: redis.Redis = client

	@property
	def client(self) -> redis.Redis:
		return self._client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	async def set_flag(self, key: str, *, ttl_seconds: float) -> None:
		"""Set `key` so that it expires on its own after `ttl_seconds`."""
		await self._client.set(key, "1", px=max(1, int(ttl_seconds * 1000)))

	async def clear_flag(self, key: str) -> None:
		await self._client.delete(key)

	async def scan_keys(self, pattern: str, *, count: int = 100) -> list[str]:
		"""Collect every key matching `pattern` using SCAN rather than KEYS."""
		keys: list[str] = []
		async for key in self._client.scan_iter(match=pattern, count=count):
			keys.append(str(key))
		return keys

	async def close(self) -> None:
		await self._client.aclose()

	def __getattr__(self, item):
		return getattr(self._client, item)


def _build_client() -> redis.Redis:
	return redis.from_url(
		settings.redis_url,
		decode_responses=True,
		socket_connect_timeout=settings.redis_connect_timeout_seconds,
	)


redis_client: RedisProxy = RedisProxy(_build_client())


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)
