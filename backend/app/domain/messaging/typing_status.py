"""Best-effort typing indicator: local self-clearing flags plus a shared Redis signal."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from redis.exceptions import RedisError

from app.infra.redis import RedisProxy, redis_client
from app.settings import settings

_LOG = logging.getLogger(__name__)

TypingCallback = Callable[[str, bool], None]


def typing_key(conversation_id: str, user_id: str) -> str:
	return f"typing:{conversation_id}:{user_id}"


class TypingIndicator:
	"""Tracks whether ``user_id`` is typing in each conversation.

	Every ``set_typing(..., True)`` restarts a loop timer; if no further
	keystroke arrives within the timeout the flag clears itself. The Redis key
	carries the same TTL so peers in other processes see it expire too.
	"""

	def __init__(
		self,
		user_id: str,
		*,
		timeout: Optional[float] = None,
		on_change: Optional[TypingCallback] = None,
		redis: Optional[RedisProxy] = None,
	) -> None:
		self._user_id = user_id
		self._timeout = timeout if timeout is not None else settings.messaging_typing_timeout_seconds
		self._on_change = on_change
		self._redis = redis if redis is not None else redis_client
		self._flags: Dict[str, bool] = {}
		self._timers: Dict[str, asyncio.TimerHandle] = {}

	@property
	def active(self) -> Dict[str, bool]:
		return dict(self._flags)

	def is_typing(self, conversation_id: str) -> bool:
		return self._flags.get(conversation_id, False)

	async def set_typing(self, conversation_id: str, is_typing: bool) -> None:
		self._cancel_timer(conversation_id)
		was_typing = self.is_typing(conversation_id)
		if is_typing:
			self._flags[conversation_id] = True
			loop = asyncio.get_running_loop()
			self._timers[conversation_id] = loop.call_later(self._timeout, self._expire, conversation_id)
		else:
			self._flags.pop(conversation_id, None)
		if was_typing != is_typing:
			self._notify(conversation_id, is_typing)
		await self._publish(conversation_id, is_typing)

	async def typing_users(self, conversation_id: str) -> List[str]:
		"""Other users whose typing key for the conversation is still alive."""
		prefix = typing_key(conversation_id, "")
		try:
			keys = await self._redis.scan_keys(f"{prefix}*")
		except (RedisError, OSError):
			_LOG.warning("messaging.typing_read_failed", extra={"conversation_id": conversation_id})
			return []
		users = sorted({key[len(prefix):] for key in keys})
		return [user_id for user_id in users if user_id and user_id != self._user_id]

	def close(self) -> None:
		for handle in self._timers.values():
			handle.cancel()
		self._timers.clear()
		self._flags.clear()

	def _expire(self, conversation_id: str) -> None:
		self._timers.pop(conversation_id, None)
		if self._flags.pop(conversation_id, False):
			self._notify(conversation_id, False)

	def _cancel_timer(self, conversation_id: str) -> None:
		handle = self._timers.pop(conversation_id, None)
		if handle is not None:
			handle.cancel()

	def _notify(self, conversation_id: str, is_typing: bool) -> None:
		if self._on_change is not None:
			self._on_change(conversation_id, is_typing)

	async def _publish(self, conversation_id: str, is_typing: bool) -> None:
		key = typing_key(conversation_id, self._user_id)
		try:
			if is_typing:
				await self._redis.set_flag(key, ttl_seconds=self._timeout)
			else:
				await self._redis.clear_flag(key)
		except (RedisError, OSError):
			_LOG.warning("messaging.typing_publish_failed", extra={"conversation_id": conversation_id})
