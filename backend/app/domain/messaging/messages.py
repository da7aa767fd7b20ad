"""Message repository: append, ordered listing, read state and sender edits."""

from __future__ import annotations

import json
import logging
from typing import Any, List, Mapping, Optional

from app.obs import metrics as obs_metrics
from app.settings import settings

from . import offers
from .conversations import ConversationRepository
from .exceptions import ForbiddenError, NotFoundError, RepositoryError, ValidationError
from .models import Message, MessageType, sort_messages
from .store import BackingStore

_LOG = logging.getLogger(__name__)


def coerce_type(value: MessageType | str) -> MessageType:
	try:
		return MessageType(value)
	except ValueError as exc:
		raise ValidationError("message_type_invalid") from exc


def validate(content: str, message_type: MessageType | str, metadata: Optional[Mapping[str, Any]] = None) -> dict:
	"""Check a message before it is applied anywhere; returns a plain metadata dict."""
	kind = coerce_type(message_type)
	if not isinstance(content, str):
		raise ValidationError("content_invalid")
	if kind.requires_content and not content.strip():
		raise ValidationError("content_required")
	if metadata is not None and not isinstance(metadata, Mapping):
		raise ValidationError("metadata_invalid")
	payload = dict(metadata or {})
	try:
		json.dumps(payload)
	except (TypeError, ValueError) as exc:
		raise ValidationError("metadata_not_serializable") from exc
	return payload


class MessageRepository:
	def __init__(self, store: BackingStore, conversations: ConversationRepository) -> None:
		self._store = store
		self._conversations = conversations

	async def append(
		self,
		conversation_id: str,
		sender_id: str,
		content: str,
		message_type: MessageType | str = MessageType.TEXT,
		metadata: Optional[Mapping[str, Any]] = None,
	) -> Message:
		kind = coerce_type(message_type)
		payload = validate(content, kind, metadata)
		try:
			row = await self._store.insert_message(
				{
					"conversation_id": conversation_id,
					"sender_id": sender_id,
					"content": content,
					"message_type": kind.value,
					"metadata": payload,
				}
			)
		except Exception:
			obs_metrics.inc_message_sent(kind.value, result="error")
			raise
		message = Message.from_row(row)
		obs_metrics.inc_message_sent(kind.value)
		# The row is already stored; a failed touch only leaves the list preview stale.
		try:
			await self._conversations.touch_last_message(conversation_id, message.summary(offers.describe(message)))
		except RepositoryError:
			_LOG.warning(
				"messaging.summary_update_failed",
				extra={"conversation_id": conversation_id, "message_id": message.id},
			)
		return message

	async def list(self, conversation_id: str, *, limit: Optional[int] = None) -> List[Message]:
		rows = await self._store.list_messages(conversation_id, limit=limit or settings.messaging_message_limit)
		return sort_messages([Message.from_row(row) for row in rows])

	async def get(self, message_id: str) -> Message:
		row = await self._store.get_message(message_id)
		if row is None:
			raise NotFoundError()
		return Message.from_row(row)

	async def get_owned(self, message_id: str, user_id: str) -> Message:
		"""Fetch a message the caller is about to change; only its sender may."""
		message = await self.get(message_id)
		if message.sender_id != user_id:
			raise ForbiddenError("not_sender")
		return message

	async def mark_read(self, conversation_id: str, reader_id: str) -> int:
		updated = await self._store.mark_read(conversation_id, reader_id)
		obs_metrics.inc_read_updates(updated)
		return updated

	async def edit(self, message_id: str, new_content: str) -> Message:
		message = await self.get(message_id)
		if message.is_deleted:
			raise ValidationError("message_deleted")
		validate(new_content, message.type, message.metadata)
		row = await self._store.update_message(message_id, {"content": new_content, "is_edited": True})
		return Message.from_row(row)

	async def delete(self, message_id: str) -> Message:
		message = await self.get(message_id)
		if message.is_deleted:
			raise ValidationError("message_deleted")
		row = await self._store.update_message(message_id, {"content": "", "is_deleted": True})
		_LOG.info("messaging.message_deleted", extra={"message_id": message_id})
		return Message.from_row(row)
