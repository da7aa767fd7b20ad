"""Shared asyncpg pool for the messaging store and readiness probes."""

from __future__ import annotations

from typing import Optional

import asyncpg

from app.settings import settings

_pool: Optional[asyncpg.pool.Pool] = None


async def _check_reachable(pool: asyncpg.pool.Pool) -> None:
	# With min_size=0 the pool opens no connection on creation, so reachability
	# is only known after one round trip.
	async with pool.acquire(timeout=settings.postgres_connect_timeout_seconds) as conn:
		await conn.execute("SELECT 1")


async def init_pool() -> asyncpg.pool.Pool:
	"""Create the pool once and fail fast when Postgres cannot be reached."""
	global _pool
	if _pool is not None:
		return _pool
	pool = await asyncpg.create_pool(
		dsn=settings.postgres_url,
		min_size=settings.postgres_min_pool_size,
		max_size=settings.postgres_max_pool_size,
		timeout=settings.postgres_connect_timeout_seconds,
		server_settings={"application_name": settings.service_name},
	)
	try:
		await _check_reachable(pool)
	except Exception:
		pool.terminate()
		raise
	_pool = pool
	return _pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		await init_pool()
	assert _pool is not None
	return _pool


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None
