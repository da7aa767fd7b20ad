"""Backing store clients for conversations, messages and participant profiles.

Two implementations share the `BackingStore` protocol:

- `PostgresBackingStore` runs row-level SQL through the asyncpg pool and turns
  every message write into a `pg_notify` on a single channel whose payload is
  the conversation id. One listener connection fans signals out per
  conversation.
- `InMemoryBackingStore` keeps rows in dicts behind an asyncio lock and is used
  by tests and local development when Postgres is unavailable.

Change signals are content free: subscribers receive the conversation id and
are expected to re-query.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import asyncpg
import ulid

from app.infra.postgres import get_pool
from app.settings import settings

from .exceptions import ConversationConflictError, MessagingError, NotFoundError, RepositoryError, SubscriptionError
from .models import ConversationStatus, now_utc

_LOG = logging.getLogger(__name__)

ChangeCallback = Callable[[str], None]
Unsubscribe = Callable[[], None]

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
	id TEXT PRIMARY KEY,
	buyer_id TEXT NOT NULL,
	seller_id TEXT NOT NULL,
	product_id TEXT,
	offer_id TEXT,
	status TEXT NOT NULL DEFAULT 'active',
	last_message JSONB,
	created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
	updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
	last_message_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS conversations_buyer_idx ON conversations (buyer_id, status, updated_at DESC);
CREATE INDEX IF NOT EXISTS conversations_seller_idx ON conversations (seller_id, status, updated_at DESC);
CREATE TABLE IF NOT EXISTS messages (
	id TEXT PRIMARY KEY,
	conversation_id TEXT NOT NULL REFERENCES conversations (id),
	sender_id TEXT NOT NULL,
	content TEXT NOT NULL DEFAULT '',
	message_type TEXT NOT NULL DEFAULT 'text',
	metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
	is_read BOOLEAN NOT NULL DEFAULT FALSE,
	is_edited BOOLEAN NOT NULL DEFAULT FALSE,
	is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
	created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
	updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS messages_conversation_idx ON messages (conversation_id, created_at DESC, id DESC);
"""

# Optional: enforces at-most-one active conversation per pair at the database level.
UNIQUE_ACTIVE_PAIR_SQL = """
CREATE UNIQUE INDEX IF NOT EXISTS conversations_active_pair_uidx
	ON conversations (buyer_id, seller_id) WHERE status = 'active';
"""

_CONVERSATION_COLUMNS = frozenset({"status", "product_id", "offer_id", "last_message", "last_message_at", "updated_at"})
_MESSAGE_COLUMNS = frozenset({"content", "metadata", "is_read", "is_edited", "is_deleted"})

_PROFILE_QUERIES = {
	"user_profiles": "SELECT id, display_name, profile_image, user_type FROM user_profiles WHERE id = ANY($1::text[])",
	"buyer_users": "SELECT id, display_name, profile_image, 'buyer' AS user_type FROM buyer_users WHERE id = ANY($1::text[])",
}


class BackingStore(Protocol):
	async def insert_conversation(self, row: Mapping[str, Any]) -> dict:
		...

	async def get_conversation(self, conversation_id: str) -> Optional[dict]:
		...

	async def find_active_conversation(self, buyer_id: str, seller_id: str) -> Optional[dict]:
		...

	async def list_conversations(self, user_id: str, *, limit: int) -> List[dict]:
		...

	async def update_conversation(self, conversation_id: str, fields: Mapping[str, Any]) -> dict:
		...

	async def insert_message(self, row: Mapping[str, Any]) -> dict:
		...

	async def get_message(self, message_id: str) -> Optional[dict]:
		...

	async def list_messages(self, conversation_id: str, *, limit: int) -> List[dict]:
		...

	async def update_message(self, message_id: str, fields: Mapping[str, Any]) -> dict:
		...

	async def mark_read(self, conversation_id: str, reader_id: str) -> int:
		...

	async def count_unread(self, conversation_ids: Sequence[str], user_id: str) -> Dict[str, int]:
		...

	async def fetch_profiles(self, partition: str, user_ids: Sequence[str]) -> List[dict]:
		...

	async def subscribe(self, conversation_id: str, callback: ChangeCallback) -> Unsubscribe:
		...


class _ListenerRegistry:
	"""Per-conversation callback bookkeeping shared by both stores."""

	def __init__(self) -> None:
		self._callbacks: Dict[str, List[ChangeCallback]] = {}

	def add(self, conversation_id: str, callback: ChangeCallback) -> Unsubscribe:
		self._callbacks.setdefault(conversation_id, []).append(callback)

		def unsubscribe() -> None:
			callbacks = self._callbacks.get(conversation_id)
			if callbacks and callback in callbacks:
				callbacks.remove(callback)
				if not callbacks:
					self._callbacks.pop(conversation_id, None)

		return unsubscribe

	def targets(self, conversation_id: str) -> List[ChangeCallback]:
		return list(self._callbacks.get(conversation_id, ()))

	def count(self, conversation_id: str) -> int:
		return len(self._callbacks.get(conversation_id, ()))


class InMemoryBackingStore:
	"""Fallback store used in tests and local development when Postgres is unavailable.

	`unique_active_pair` emulates the optional partial unique index. Flip
	`offline` to make every call fail the way a dropped connection would.
	"""

	def __init__(
		self,
		*,
		unique_active_pair: bool = False,
		profiles: Mapping[str, Iterable[Mapping[str, Any]]] | None = None,
	) -> None:
		self._lock = asyncio.Lock()
		self._conversations: Dict[str, dict] = {}
		self._messages: Dict[str, dict] = {}
		self._profiles: Dict[str, Dict[str, dict]] = {}
		self._listeners = _ListenerRegistry()
		self._last_ts: Optional[datetime] = None
		self.unique_active_pair = unique_active_pair
		self.offline = False
		for partition, rows in (profiles or {}).items():
			for row in rows:
				self.add_profile(partition, row)

	def add_profile(self, partition: str, row: Mapping[str, Any]) -> None:
		self._profiles.setdefault(partition, {})[str(row["id"])] = dict(row)

	def listener_count(self, conversation_id: str) -> int:
		return self._listeners.count(conversation_id)

	def _check_online(self) -> None:
		if self.offline:
			raise RepositoryError("store_unavailable")

	def _next_timestamp(self) -> datetime:
		# Strictly increasing so insertion order and created_at agree.
		ts = now_utc()
		if self._last_ts is not None and ts <= self._last_ts:
			ts = self._last_ts + timedelta(microseconds=1)
		self._last_ts = ts
		return ts

	def _notify(self, conversation_id: str) -> None:
		targets = self._listeners.targets(conversation_id)
		if not targets:
			return
		loop = asyncio.get_running_loop()
		for callback in targets:
			loop.call_soon(callback, conversation_id)

	async def insert_conversation(self, row: Mapping[str, Any]) -> dict:
		async with self._lock:
			self._check_online()
			status = row.get("status") or ConversationStatus.ACTIVE.value
			if self.unique_active_pair and status == ConversationStatus.ACTIVE.value:
				for existing in self._conversations.values():
					if (
						existing["buyer_id"] == row["buyer_id"]
						and existing["seller_id"] == row["seller_id"]
						and existing["status"] == ConversationStatus.ACTIVE.value
					):
						raise ConversationConflictError()
			ts = self._next_timestamp()
			stored = {
				"id": str(row.get("id") or ulid.new()),
				"buyer_id": row["buyer_id"],
				"seller_id": row["seller_id"],
				"product_id": row.get("product_id"),
				"offer_id": row.get("offer_id"),
				"status": status,
				"last_message": None,
				"created_at": ts,
				"updated_at": ts,
				"last_message_at": None,
			}
			self._conversations[stored["id"]] = stored
			return dict(stored)

	async def get_conversation(self, conversation_id: str) -> Optional[dict]:
		async with self._lock:
			self._check_online()
			row = self._conversations.get(conversation_id)
			return dict(row) if row else None

	async def find_active_conversation(self, buyer_id: str, seller_id: str) -> Optional[dict]:
		async with self._lock:
			self._check_online()
			matches = [
				row
				for row in self._conversations.values()
				if row["buyer_id"] == buyer_id
				and row["seller_id"] == seller_id
				and row["status"] == ConversationStatus.ACTIVE.value
			]
			if not matches:
				return None
			matches.sort(key=lambda row: (row["created_at"], row["id"]), reverse=True)
			return dict(matches[0])

	async def list_conversations(self, user_id: str, *, limit: int) -> List[dict]:
		async with self._lock:
			self._check_online()
			rows = [
				row
				for row in self._conversations.values()
				if user_id in (row["buyer_id"], row["seller_id"])
				and row["status"] == ConversationStatus.ACTIVE.value
			]
			rows.sort(key=lambda row: (row["updated_at"], row["id"]), reverse=True)
			return [dict(row) for row in rows[:limit]]

	async def update_conversation(self, conversation_id: str, fields: Mapping[str, Any]) -> dict:
		async with self._lock:
			self._check_online()
			row = self._conversations.get(conversation_id)
			if row is None:
				raise NotFoundError()
			for key, value in fields.items():
				if key not in _CONVERSATION_COLUMNS:
					raise RepositoryError(f"unknown_column:{key}")
				row[key] = value
			return dict(row)

	async def insert_message(self, row: Mapping[str, Any]) -> dict:
		async with self._lock:
			self._check_online()
			if row["conversation_id"] not in self._conversations:
				raise NotFoundError()
			ts = self._next_timestamp()
			stored = {
				"id": str(row.get("id") or ulid.new()),
				"conversation_id": row["conversation_id"],
				"sender_id": row["sender_id"],
				"content": row.get("content") or "",
				"message_type": row.get("message_type") or "text",
				"metadata": dict(row.get("metadata") or {}),
				"is_read": False,
				"is_edited": False,
				"is_deleted": False,
				"created_at": ts,
				"updated_at": ts,
			}
			self._messages[stored["id"]] = stored
			self._notify(stored["conversation_id"])
			return dict(stored)

	async def get_message(self, message_id: str) -> Optional[dict]:
		async with self._lock:
			self._check_online()
			row = self._messages.get(message_id)
			return dict(row) if row else None

	async def list_messages(self, conversation_id: str, *, limit: int) -> List[dict]:
		async with self._lock:
			self._check_online()
			rows = [row for row in self._messages.values() if row["conversation_id"] == conversation_id]
			rows.sort(key=lambda row: (row["created_at"], row["id"]), reverse=True)
			return [dict(row) for row in rows[:limit]]

	async def update_message(self, message_id: str, fields: Mapping[str, Any]) -> dict:
		async with self._lock:
			self._check_online()
			row = self._messages.get(message_id)
			if row is None:
				raise NotFoundError()
			for key, value in fields.items():
				if key not in _MESSAGE_COLUMNS:
					raise RepositoryError(f"unknown_column:{key}")
				row[key] = value
			row["updated_at"] = self._next_timestamp()
			self._notify(row["conversation_id"])
			return dict(row)

	async def mark_read(self, conversation_id: str, reader_id: str) -> int:
		async with self._lock:
			self._check_online()
			updated = 0
			for row in self._messages.values():
				if row["conversation_id"] == conversation_id and row["sender_id"] != reader_id and not row["is_read"]:
					row["is_read"] = True
					updated += 1
			if updated:
				self._notify(conversation_id)
			return updated

	async def count_unread(self, conversation_ids: Sequence[str], user_id: str) -> Dict[str, int]:
		async with self._lock:
			self._check_online()
			wanted = set(conversation_ids)
			counts = {conversation_id: 0 for conversation_id in conversation_ids}
			for row in self._messages.values():
				if (
					row["conversation_id"] in wanted
					and row["sender_id"] != user_id
					and not row["is_read"]
					and not row["is_deleted"]
				):
					counts[row["conversation_id"]] += 1
			return counts

	async def fetch_profiles(self, partition: str, user_ids: Sequence[str]) -> List[dict]:
		async with self._lock:
			self._check_online()
			table = self._profiles.get(partition, {})
			return [dict(table[user_id]) for user_id in user_ids if user_id in table]

	async def subscribe(self, conversation_id: str, callback: ChangeCallback) -> Unsubscribe:
		self._check_online()
		return self._listeners.add(conversation_id, callback)


class PostgresBackingStore:
	"""Backing store running against Postgres through the shared asyncpg pool."""

	def __init__(self, pool: asyncpg.pool.Pool | None = None, *, channel: str | None = None) -> None:
		self._pool = pool
		self._channel = channel or settings.messaging_notify_channel
		self._listeners = _ListenerRegistry()
		self._listener_conn: asyncpg.Connection | None = None
		self._listener_lock = asyncio.Lock()
		self._release_task: asyncio.Task | None = None

	async def _get_pool(self) -> asyncpg.pool.Pool:
		if self._pool is None:
			self._pool = await get_pool()
		return self._pool

	@asynccontextmanager
	async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
		try:
			pool = await self._get_pool()
			async with pool.acquire() as conn:
				yield conn
		except MessagingError:
			raise
		except asyncpg.UniqueViolationError as exc:
			raise ConversationConflictError() from exc
		except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
			_LOG.warning("messaging.store_error", extra={"error": type(exc).__name__})
			raise RepositoryError() from exc

	async def ensure_schema(self, *, unique_active_pair: bool = False) -> None:
		async with self._connection() as conn:
			await conn.execute(SCHEMA_SQL)
			if unique_active_pair:
				await conn.execute(UNIQUE_ACTIVE_PAIR_SQL)

	async def insert_conversation(self, row: Mapping[str, Any]) -> dict:
		async with self._connection() as conn:
			record = await conn.fetchrow(
				"""
				INSERT INTO conversations (id, buyer_id, seller_id, product_id, offer_id, status)
				VALUES ($1, $2, $3, $4, $5, $6)
				RETURNING *
				""",
				str(row.get("id") or ulid.new()),
				row["buyer_id"],
				row["seller_id"],
				row.get("product_id"),
				row.get("offer_id"),
				row.get("status") or ConversationStatus.ACTIVE.value,
			)
			return dict(record)

	async def get_conversation(self, conversation_id: str) -> Optional[dict]:
		async with self._connection() as conn:
			record = await conn.fetchrow("SELECT * FROM conversations WHERE id = $1", conversation_id)
			return dict(record) if record else None

	async def find_active_conversation(self, buyer_id: str, seller_id: str) -> Optional[dict]:
		async with self._connection() as conn:
			record = await conn.fetchrow(
				"""
				SELECT * FROM conversations
				WHERE buyer_id = $1 AND seller_id = $2 AND status = 'active'
				ORDER BY created_at DESC, id DESC
				LIMIT 1
				""",
				buyer_id,
				seller_id,
			)
			return dict(record) if record else None

	async def list_conversations(self, user_id: str, *, limit: int) -> List[dict]:
		async with self._connection() as conn:
			records = await conn.fetch(
				"""
				SELECT * FROM conversations
				WHERE (buyer_id = $1 OR seller_id = $1) AND status = 'active'
				ORDER BY updated_at DESC, id DESC
				LIMIT $2
				""",
				user_id,
				limit,
			)
			return [dict(record) for record in records]

	async def update_conversation(self, conversation_id: str, fields: Mapping[str, Any]) -> dict:
		assignments, params = _assignments(fields, _CONVERSATION_COLUMNS, json_columns=("last_message",))
		params.append(conversation_id)
		async with self._connection() as conn:
			record = await conn.fetchrow(
				f"UPDATE conversations SET {assignments} WHERE id = ${len(params)} RETURNING *",
				*params,
			)
			if record is None:
				raise NotFoundError()
			return dict(record)

	async def insert_message(self, row: Mapping[str, Any]) -> dict:
		async with self._connection() as conn:
			async with conn.transaction():
				record = await conn.fetchrow(
					"""
					INSERT INTO messages (id, conversation_id, sender_id, content, message_type, metadata)
					VALUES ($1, $2, $3, $4, $5, $6::jsonb)
					RETURNING *
					""",
					str(row.get("id") or ulid.new()),
					row["conversation_id"],
					row["sender_id"],
					row.get("content") or "",
					row.get("message_type") or "text",
					json.dumps(row.get("metadata") or {}),
				)
				await conn.execute("SELECT pg_notify($1, $2)", self._channel, row["conversation_id"])
			return dict(record)

	async def get_message(self, message_id: str) -> Optional[dict]:
		async with self._connection() as conn:
			record = await conn.fetchrow("SELECT * FROM messages WHERE id = $1", message_id)
			return dict(record) if record else None

	async def list_messages(self, conversation_id: str, *, limit: int) -> List[dict]:
		async with self._connection() as conn:
			records = await conn.fetch(
				"""
				SELECT * FROM messages
				WHERE conversation_id = $1
				ORDER BY created_at DESC, id DESC
				LIMIT $2
				""",
				conversation_id,
				limit,
			)
			return [dict(record) for record in records]

	async def update_message(self, message_id: str, fields: Mapping[str, Any]) -> dict:
		assignments, params = _assignments(fields, _MESSAGE_COLUMNS, json_columns=("metadata",))
		params.append(message_id)
		async with self._connection() as conn:
			async with conn.transaction():
				record = await conn.fetchrow(
					f"UPDATE messages SET {assignments}, updated_at = NOW() WHERE id = ${len(params)} RETURNING *",
					*params,
				)
				if record is None:
					raise NotFoundError()
				await conn.execute("SELECT pg_notify($1, $2)", self._channel, record["conversation_id"])
			return dict(record)

	async def mark_read(self, conversation_id: str, reader_id: str) -> int:
		async with self._connection() as conn:
			async with conn.transaction():
				status = await conn.execute(
					"""
					UPDATE messages SET is_read = TRUE, updated_at = NOW()
					WHERE conversation_id = $1 AND sender_id <> $2 AND is_read = FALSE
					""",
					conversation_id,
					reader_id,
				)
				updated = int(status.split()[-1]) if status else 0
				if updated:
					await conn.execute("SELECT pg_notify($1, $2)", self._channel, conversation_id)
			return updated

	async def count_unread(self, conversation_ids: Sequence[str], user_id: str) -> Dict[str, int]:
		counts = {conversation_id: 0 for conversation_id in conversation_ids}
		if not counts:
			return counts
		async with self._connection() as conn:
			records = await conn.fetch(
				"""
				SELECT conversation_id, COUNT(*) AS unread
				FROM messages
				WHERE conversation_id = ANY($1::text[])
					AND sender_id <> $2
					AND is_read = FALSE
					AND is_deleted = FALSE
				GROUP BY conversation_id
				""",
				list(counts),
				user_id,
			)
		for record in records:
			counts[str(record["conversation_id"])] = int(record["unread"])
		return counts

	async def fetch_profiles(self, partition: str, user_ids: Sequence[str]) -> List[dict]:
		query = _PROFILE_QUERIES.get(partition)
		if query is None:
			raise RepositoryError(f"unknown_partition:{partition}")
		if not user_ids:
			return []
		async with self._connection() as conn:
			records = await conn.fetch(query, list(user_ids))
			return [dict(record) for record in records]

	async def subscribe(self, conversation_id: str, callback: ChangeCallback) -> Unsubscribe:
		await self._ensure_listener()
		return self._listeners.add(conversation_id, callback)

	async def _ensure_listener(self) -> None:
		async with self._listener_lock:
			if self._listener_conn is not None and not self._listener_conn.is_closed():
				return
			try:
				pool = await self._get_pool()
				conn = await pool.acquire()
			except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
				raise SubscriptionError("listen_failed") from exc
			try:
				await conn.add_listener(self._channel, self._dispatch)
			except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
				await pool.release(conn)
				raise SubscriptionError("listen_failed") from exc
			conn.add_termination_listener(self._listener_terminated)
			self._listener_conn = conn

	def _listener_terminated(self, connection) -> None:
		# Existing subscriptions go quiet until the next subscribe re-opens LISTEN.
		if self._listener_conn is connection:
			self._listener_conn = None
			_LOG.warning("messaging.listener_lost", extra={"channel": self._channel})
			self._release_task = asyncio.get_running_loop().create_task(self._release_lost(connection))

	async def _release_lost(self, connection) -> None:
		try:
			pool = await self._get_pool()
			await pool.release(connection)
		except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError):
			_LOG.warning("messaging.listener_release_failed", exc_info=True)

	def _dispatch(self, connection, pid, channel, payload) -> None:  # noqa: ARG002 (asyncpg listener signature)
		for callback in self._listeners.targets(str(payload)):
			callback(str(payload))

	async def close(self) -> None:
		conn = self._listener_conn
		self._listener_conn = None
		if conn is None or conn.is_closed():
			return
		try:
			conn.remove_termination_listener(self._listener_terminated)
			await conn.remove_listener(self._channel, self._dispatch)
		finally:
			pool = await self._get_pool()
			await pool.release(conn)


def _assignments(
	fields: Mapping[str, Any],
	allowed: frozenset[str],
	*,
	json_columns: Sequence[str] = (),
) -> tuple[str, List[Any]]:
	if not fields:
		raise RepositoryError("empty_update")
	clauses: List[str] = []
	params: List[Any] = []
	for key, value in fields.items():
		if key not in allowed:
			raise RepositoryError(f"unknown_column:{key}")
		params.append(json.dumps(value) if key in json_columns and value is not None else value)
		cast = "::jsonb" if key in json_columns else ""
		clauses.append(f"{key} = ${len(params)}{cast}")
	return ", ".join(clauses), params


async def create_backing_store() -> BackingStore:
	"""Return a Postgres-backed store, or the in-memory store when no pool is reachable."""
	try:
		pool = await get_pool()
	except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError, AssertionError):
		_LOG.warning("messaging.store_fallback", extra={"store": "memory"})
		return InMemoryBackingStore(unique_active_pair=settings.messaging_unique_active_pair)
	return PostgresBackingStore(pool)


_backing_store: Optional[BackingStore] = None


def set_backing_store(store: Optional[BackingStore]) -> None:
	global _backing_store
	_backing_store = store


def get_backing_store() -> BackingStore:
	global _backing_store
	if _backing_store is None:
		_LOG.warning("messaging.store_unconfigured", extra={"store": "memory"})
		_backing_store = InMemoryBackingStore()
	return _backing_store
