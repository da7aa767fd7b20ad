"""Optimistic sends with an explicit per-conversation reconciliation state."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, MutableMapping, Optional, Set

import ulid

from app.obs import metrics as obs_metrics
from app.obs.tracing import get_tracer

from .exceptions import ReconciliationError, RepositoryError
from .messages import MessageRepository, coerce_type, validate
from .models import Message, MessageType, now_utc, sort_messages

_LOG = logging.getLogger(__name__)
_TRACER = get_tracer(__name__)

TEMP_PREFIX = "temp_"


def is_temporary(message_id: str) -> bool:
	return message_id.startswith(TEMP_PREFIX)


class SendState(str, Enum):
	CLEAN = "clean"
	PENDING_SEND = "pending_send"
	ROLLED_BACK = "rolled_back"


class OptimisticWriteCoordinator:
	"""Applies sends to the local message slices before the durable write confirms.

	``slices`` is the caller's ``conversation_id -> [Message]`` map and is
	mutated in place. A conversation stays ``PENDING_SEND`` while any send is in
	flight; when the last one settles it becomes ``CLEAN``, or ``ROLLED_BACK``
	if any send in that batch failed.
	"""

	def __init__(
		self,
		messages: MessageRepository,
		slices: MutableMapping[str, List[Message]],
		*,
		on_change: Optional[Callable[[str], None]] = None,
	) -> None:
		self._messages = messages
		self._slices = slices
		self._on_change = on_change
		self._pending: Dict[str, Set[str]] = {}
		self._failed: Set[str] = set()
		self._states: Dict[str, SendState] = {}

	def state(self, conversation_id: str) -> SendState:
		return self._states.get(conversation_id, SendState.CLEAN)

	def pending_ids(self, conversation_id: str) -> Set[str]:
		return set(self._pending.get(conversation_id, ()))

	async def send(
		self,
		conversation_id: str,
		sender_id: str,
		content: str,
		message_type: MessageType | str = MessageType.TEXT,
		metadata: Optional[Dict[str, Any]] = None,
	) -> Message:
		kind = coerce_type(message_type)
		payload = validate(content, kind, metadata)
		temp = Message(
			id=f"{TEMP_PREFIX}{ulid.new()}",
			conversation_id=conversation_id,
			sender_id=sender_id,
			content=content,
			type=kind,
			created_at=now_utc(),
			metadata=payload,
			pending=True,
		)
		self._begin(conversation_id, temp)
		try:
			with _TRACER.start_as_current_span("messaging.send", attributes={"conversation_id": conversation_id, "type": kind.value}):
				durable = await self._messages.append(conversation_id, sender_id, content, kind, payload)
		except RepositoryError as exc:
			self._rollback(conversation_id, temp.id)
			_LOG.warning(
				"messaging.send_rolled_back",
				extra={"conversation_id": conversation_id, "reason": exc.reason},
			)
			raise ReconciliationError() from exc
		except BaseException:
			self._rollback(conversation_id, temp.id)
			raise
		self._confirm(conversation_id, temp.id, durable)
		return durable

	def merge_refresh(self, conversation_id: str, fetched: List[Message]) -> List[Message]:
		"""Replace a slice with ``fetched`` while keeping still-pending temporaries."""
		pending = self._pending.get(conversation_id, set())
		kept = [message for message in self._slices.get(conversation_id, []) if message.id in pending]
		merged = sort_messages(list(fetched)) + sort_messages(kept)
		self._slices[conversation_id] = merged
		return merged

	def _begin(self, conversation_id: str, temp: Message) -> None:
		pending = self._pending.setdefault(conversation_id, set())
		if not pending:
			self._failed.discard(conversation_id)
		pending.add(temp.id)
		self._slices.setdefault(conversation_id, []).append(temp)
		self._states[conversation_id] = SendState.PENDING_SEND
		self._changed(conversation_id)

	def _confirm(self, conversation_id: str, temp_id: str, durable: Message) -> None:
		self._settle(conversation_id, temp_id)
		current = self._slices.setdefault(conversation_id, [])
		if any(message.id == durable.id for message in current):
			self._slices[conversation_id] = [message for message in current if message.id != temp_id]
		else:
			replaced = [durable if message.id == temp_id else message for message in current]
			if durable not in replaced:
				replaced.append(durable)
			self._slices[conversation_id] = _ordered(replaced)
		self._finish(conversation_id)

	def _rollback(self, conversation_id: str, temp_id: str) -> None:
		self._settle(conversation_id, temp_id)
		current = self._slices.get(conversation_id)
		if current is not None:
			self._slices[conversation_id] = [message for message in current if message.id != temp_id]
		self._failed.add(conversation_id)
		obs_metrics.inc_send_rollback()
		self._finish(conversation_id)

	def _settle(self, conversation_id: str, temp_id: str) -> None:
		pending = self._pending.get(conversation_id)
		if pending is not None:
			pending.discard(temp_id)

	def _finish(self, conversation_id: str) -> None:
		if self._pending.get(conversation_id):
			self._states[conversation_id] = SendState.PENDING_SEND
		elif conversation_id in self._failed:
			self._states[conversation_id] = SendState.ROLLED_BACK
		else:
			self._states[conversation_id] = SendState.CLEAN
		self._changed(conversation_id)

	def _changed(self, conversation_id: str) -> None:
		if self._on_change is not None:
			self._on_change(conversation_id)


def _ordered(messages: List[Message]) -> List[Message]:
	# Confirmed messages sort by time; unconfirmed temporaries stay at the tail.
	durable = [message for message in messages if not message.pending]
	pending = [message for message in messages if message.pending]
	return sort_messages(durable) + sort_messages(pending)
