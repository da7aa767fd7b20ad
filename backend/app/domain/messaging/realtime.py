"""Per-conversation realtime subscriptions driven by content-free change signals.

A signal only says "something changed in conversation X". The manager reacts
by re-fetching the whole message list and handing it to ``on_refresh``, which
replaces the in-memory slice. No deltas are merged. Signals that arrive while a
refetch is running collapse into a single follow-up refetch.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, FrozenSet, List, Optional, Union

from app.obs import metrics as obs_metrics
from app.obs.tracing import get_tracer

from .exceptions import MessagingError, SubscriptionError
from .messages import MessageRepository
from .models import Message
from .store import BackingStore, Unsubscribe

_LOG = logging.getLogger(__name__)
_TRACER = get_tracer(__name__)

RefreshCallback = Callable[[str, List[Message]], Union[Awaitable[None], None]]


class Subscription:
	"""Handle for one live conversation channel; ``close`` is synchronous and idempotent."""

	__slots__ = ("conversation_id", "_manager", "_unsubscribe", "_task", "_dirty", "closed")

	def __init__(self, conversation_id: str, manager: "RealtimeSubscriptionManager") -> None:
		self.conversation_id = conversation_id
		self._manager = manager
		self._unsubscribe: Optional[Unsubscribe] = None
		self._task: Optional[asyncio.Task] = None
		self._dirty = False
		self.closed = False

	@property
	def refreshing(self) -> bool:
		return self._task is not None and not self._task.done()

	def close(self) -> None:
		if self.closed:
			return
		self.closed = True
		unsubscribe, self._unsubscribe = self._unsubscribe, None
		if unsubscribe is not None:
			unsubscribe()
			obs_metrics.subscription_closed()
		if self._task is not None and not self._task.done():
			self._task.cancel()
		self._task = None
		self._manager._release(self)


class RealtimeSubscriptionManager:
	def __init__(
		self,
		store: BackingStore,
		messages: MessageRepository,
		on_refresh: RefreshCallback,
		*,
		limit: Optional[int] = None,
	) -> None:
		self._store = store
		self._messages = messages
		self._on_refresh = on_refresh
		self._limit = limit
		self._subscriptions: Dict[str, Subscription] = {}

	@property
	def active_ids(self) -> FrozenSet[str]:
		return frozenset(self._subscriptions)

	def is_subscribed(self, conversation_id: str) -> bool:
		return conversation_id in self._subscriptions

	async def subscribe(self, conversation_id: str) -> Subscription:
		if conversation_id in self._subscriptions:
			raise SubscriptionError("already_subscribed")
		handle = Subscription(conversation_id, self)
		# Claim the slot before awaiting so a concurrent subscribe is rejected.
		self._subscriptions[conversation_id] = handle
		try:
			unsubscribe = await self._store.subscribe(conversation_id, self._signal_handler(handle))
		except MessagingError as exc:
			self._release(handle)
			handle.closed = True
			if isinstance(exc, SubscriptionError):
				raise
			raise SubscriptionError(exc.reason) from exc
		except BaseException:
			self._release(handle)
			handle.closed = True
			raise
		if handle.closed:
			unsubscribe()
			return handle
		handle._unsubscribe = unsubscribe
		obs_metrics.subscription_opened()
		_LOG.debug("messaging.subscribed", extra={"conversation_id": conversation_id})
		return handle

	@asynccontextmanager
	async def subscription(self, conversation_id: str) -> AsyncIterator[Subscription]:
		handle = await self.subscribe(conversation_id)
		try:
			yield handle
		finally:
			handle.close()

	def request_refresh(self, conversation_id: str) -> None:
		handle = self._subscriptions.get(conversation_id)
		if handle is not None:
			self._schedule(handle)

	def close(self, conversation_id: str) -> None:
		handle = self._subscriptions.get(conversation_id)
		if handle is not None:
			handle.close()

	def close_all(self) -> None:
		for handle in list(self._subscriptions.values()):
			handle.close()

	def _release(self, handle: Subscription) -> None:
		if self._subscriptions.get(handle.conversation_id) is handle:
			del self._subscriptions[handle.conversation_id]

	def _signal_handler(self, handle: Subscription) -> Callable[[str], None]:
		def on_signal(_conversation_id: str) -> None:
			if not handle.closed:
				self._schedule(handle)

		return on_signal

	def _schedule(self, handle: Subscription) -> None:
		if handle.refreshing:
			handle._dirty = True
			return
		handle._task = asyncio.get_running_loop().create_task(self._refetch(handle))

	async def _refetch(self, handle: Subscription) -> None:
		while not handle.closed:
			handle._dirty = False
			try:
				with _TRACER.start_as_current_span("messaging.refetch", attributes={"conversation_id": handle.conversation_id}):
					messages = await self._messages.list(handle.conversation_id, limit=self._limit)
			except MessagingError as exc:
				obs_metrics.inc_refetch("error")
				_LOG.warning(
					"messaging.refetch_failed",
					extra={"conversation_id": handle.conversation_id, "reason": exc.reason},
				)
			else:
				if handle.closed:
					return
				obs_metrics.inc_refetch("ok")
				try:
					result = self._on_refresh(handle.conversation_id, messages)
					if inspect.isawaitable(result):
						await result
				except asyncio.CancelledError:
					raise
				except Exception:
					_LOG.exception("messaging.refresh_callback_failed", extra={"conversation_id": handle.conversation_id})
			if not handle._dirty:
				return
