"""Conversation repository: lookup, idempotent creation and summary upkeep."""

from __future__ import annotations

import logging
from typing import List, Optional

from app.obs import metrics as obs_metrics
from app.settings import settings

from .exceptions import ConversationConflictError, NotFoundError, RepositoryError, ValidationError
from .models import Conversation, ConversationStatus, MessageSummary, now_utc
from .store import BackingStore

_LOG = logging.getLogger(__name__)

_INVALID_IDS = frozenset({"", "undefined", "null", "none"})


def _require_id(value: Optional[str], field: str) -> str:
	cleaned = (value or "").strip()
	if cleaned.lower() in _INVALID_IDS:
		raise ValidationError(f"{field}_invalid")
	return cleaned


class ConversationRepository:
	def __init__(self, store: BackingStore) -> None:
		self._store = store

	async def find_or_create(
		self,
		buyer_id: str,
		seller_id: str,
		product_id: Optional[str] = None,
		*,
		offer_id: Optional[str] = None,
	) -> Conversation:
		"""Return the active conversation for the pair, creating it if needed.

		The lookup ignores ``product_id``: one thread per buyer/seller
		relationship. When the store enforces uniqueness a lost insert race
		resolves to the winner's row; without a constraint a concurrent
		duplicate can exist and the newest active row is what later lookups see.
		"""
		buyer_id = _require_id(buyer_id, "buyer_id")
		seller_id = _require_id(seller_id, "seller_id")
		if buyer_id == seller_id:
			raise ValidationError("self_conversation")

		existing = await self._store.find_active_conversation(buyer_id, seller_id)
		if existing is not None:
			obs_metrics.inc_conversation("reused")
			return Conversation.from_row(existing)

		try:
			row = await self._store.insert_conversation(
				{
					"buyer_id": buyer_id,
					"seller_id": seller_id,
					"product_id": product_id or None,
					"offer_id": offer_id,
					"status": ConversationStatus.ACTIVE.value,
				}
			)
		except ConversationConflictError:
			winner = await self._store.find_active_conversation(buyer_id, seller_id)
			if winner is None:
				raise RepositoryError("conflict_without_row") from None
			obs_metrics.inc_conversation("conflict")
			return Conversation.from_row(winner)

		conversation = Conversation.from_row(row)
		obs_metrics.inc_conversation("created")
		_LOG.info(
			"messaging.conversation_created",
			extra={"conversation_id": conversation.id, "product_id": conversation.product_id},
		)
		return conversation

	async def get(self, conversation_id: str) -> Conversation:
		row = await self._store.get_conversation(conversation_id)
		if row is None:
			raise NotFoundError()
		return Conversation.from_row(row)

	async def list_for_user(self, user_id: str, *, limit: Optional[int] = None) -> List[Conversation]:
		user_id = _require_id(user_id, "user_id")
		rows = await self._store.list_conversations(user_id, limit=limit or settings.messaging_conversation_limit)
		conversations = [Conversation.from_row(row) for row in rows]
		# Stores order already; re-sort so callers never depend on that.
		conversations.sort(key=lambda conversation: (conversation.updated_at, conversation.id), reverse=True)
		return conversations

	async def touch_last_message(self, conversation_id: str, summary: MessageSummary) -> Conversation:
		row = await self._store.update_conversation(
			conversation_id,
			{
				"last_message": summary.to_dict(),
				"last_message_at": summary.created_at,
				"updated_at": summary.created_at,
			},
		)
		return Conversation.from_row(row)

	async def archive(self, conversation_id: str) -> Conversation:
		row = await self._store.update_conversation(
			conversation_id,
			{"status": ConversationStatus.ARCHIVED.value, "updated_at": now_utc()},
		)
		return Conversation.from_row(row)
