"""Messaging orchestrator: one explicit service object per signed-in user.

``MessagingStore`` owns the user's in-memory view (conversation list, message
slices, unread counts, participant descriptors, typing flags) and drives the
repositories, realtime manager and optimistic writer. Every public operation
returns an ``Outcome``; messaging errors never cross this boundary as
exceptions.
"""

from __future__ import annotations

import asyncio
import logging
from types import ModuleType
from typing import Any, Callable, Dict, List, Optional

from app.settings import settings

from . import offers
from .attachments import AttachmentStorage, LocalAttachmentStorage, message_type_for
from .conversations import ConversationRepository
from .exceptions import (
	ForbiddenError,
	MessagingError,
	NotFoundError,
	ReconciliationError,
	RepositoryError,
	SubscriptionError,
	ValidationError,
)
from .messages import MessageRepository
from .models import (
	Conversation,
	Message,
	MessageType,
	OfferPayload,
	OfferStatus,
	Outcome,
	ParticipantDescriptor,
)
from .optimistic import OptimisticWriteCoordinator, SendState
from .participants import ParticipantCache
from .realtime import RealtimeSubscriptionManager, Subscription
from .store import BackingStore
from .typing_status import TypingIndicator
from .unread import UnreadCounter

_LOG = logging.getLogger(__name__)

Listener = Callable[[str, Any], None]

EVENT_CONVERSATIONS = "conversations"
EVENT_MESSAGES = "messages"
EVENT_UNREAD = "unread"
EVENT_TYPING = "typing"

_ERROR_MESSAGES = {
	ReconciliationError: "Message could not be sent",
	ValidationError: "Invalid request",
	ForbiddenError: "Not allowed",
	NotFoundError: "Not found",
	SubscriptionError: "Live updates unavailable",
	RepositoryError: "Messaging is temporarily unavailable",
}


def _error_message(exc: MessagingError) -> str:
	for error_type in type(exc).__mro__:
		if error_type in _ERROR_MESSAGES:
			return _ERROR_MESSAGES[error_type]
	return "Messaging error"


class MessagingStore:
	def __init__(
		self,
		user_id: str,
		*,
		store: BackingStore,
		participants: Optional[ParticipantCache] = None,
		codec: ModuleType = offers,
		attachments: Optional[AttachmentStorage] = None,
		typing: Optional[TypingIndicator] = None,
		load_timeout: Optional[float] = None,
	) -> None:
		self.user_id = user_id
		self.codec = codec
		self.conversation_repo = ConversationRepository(store)
		self.message_repo = MessageRepository(store, self.conversation_repo)
		self.participant_cache = participants or ParticipantCache(store)
		self.attachments = attachments or LocalAttachmentStorage()
		self.typing_indicator = typing or TypingIndicator(user_id, on_change=self._typing_changed)
		self.unread = UnreadCounter(store, user_id)
		self._load_timeout = load_timeout if load_timeout is not None else settings.messaging_load_timeout_seconds

		self.conversations: List[Conversation] = []
		self.messages: Dict[str, List[Message]] = {}
		self.participants: Dict[str, ParticipantDescriptor] = {}
		self.active_conversation_id: Optional[str] = None
		self.error: Optional[str] = None
		self.is_loading = False

		self._writer = OptimisticWriteCoordinator(self.message_repo, self.messages, on_change=self._slice_changed)
		self._realtime = RealtimeSubscriptionManager(store, self.message_repo, self._apply_refresh)
		self._active_subscription: Optional[Subscription] = None
		self._listeners: List[Listener] = []
		self._disposed = False

	# -- state -----------------------------------------------------------

	@property
	def unread_total(self) -> int:
		return self.unread.total()

	@property
	def typing(self) -> Dict[str, bool]:
		return self.typing_indicator.active

	@property
	def subscribed_ids(self):
		return self._realtime.active_ids

	def send_state(self, conversation_id: str) -> SendState:
		return self._writer.state(conversation_id)

	def conversation(self, conversation_id: str) -> Optional[Conversation]:
		for conversation in self.conversations:
			if conversation.id == conversation_id:
				return conversation
		return None

	def peer_descriptor(self, conversation: Conversation) -> ParticipantDescriptor:
		peer_id = conversation.peer_of(self.user_id)
		return self.participants.get(peer_id) or ParticipantDescriptor(
			user_id=peer_id, display_name=settings.messaging_placeholder_name
		)

	def add_listener(self, callback: Listener) -> Callable[[], None]:
		self._listeners.append(callback)

		def remove() -> None:
			if callback in self._listeners:
				self._listeners.remove(callback)

		return remove

	# -- lifecycle -------------------------------------------------------

	async def init(self) -> Outcome[List[Conversation]]:
		"""Initial load; on failure or timeout the list is empty but usable."""
		outcome = await self.refresh_conversations()
		if not outcome.success:
			self.conversations = []
			self._emit(EVENT_CONVERSATIONS, [])
		return outcome

	async def dispose(self) -> None:
		if self._disposed:
			return
		self._disposed = True
		self._active_subscription = None
		self._realtime.close_all()
		self.typing_indicator.close()
		self._listeners.clear()

	# -- operations ------------------------------------------------------

	async def refresh_conversations(self) -> Outcome[List[Conversation]]:
		self.is_loading = True
		try:
			conversations = await asyncio.wait_for(self._load_conversations(), self._load_timeout)
		except asyncio.TimeoutError:
			_LOG.warning("messaging.load_timeout", extra={"timeout": self._load_timeout})
			self.error = "Loading timed out"
			return Outcome.fail(self.error, reason="timeout")
		except MessagingError as exc:
			return self._failed("refresh_conversations", exc)
		finally:
			self.is_loading = False
		self.error = None
		return Outcome.ok(conversations)

	async def create_conversation(
		self,
		peer_id: str,
		product_id: Optional[str] = None,
		initial_message: Optional[str] = None,
		*,
		as_buyer: bool = True,
	) -> Outcome[Conversation]:
		buyer_id, seller_id = (self.user_id, peer_id) if as_buyer else (peer_id, self.user_id)
		try:
			conversation = await self.conversation_repo.find_or_create(buyer_id, seller_id, product_id)
			if initial_message and initial_message.strip():
				await self._writer.send(conversation.id, self.user_id, initial_message)
		except MessagingError as exc:
			return self._failed("create_conversation", exc)
		await self._reload_quietly()
		return Outcome.ok(self.conversation(conversation.id) or conversation)

	async def set_active_conversation(self, conversation_id: Optional[str]) -> Outcome[List[Message]]:
		previous, self._active_subscription = self._active_subscription, None
		if previous is not None:
			previous.close()
		self.active_conversation_id = conversation_id
		if conversation_id is None:
			return Outcome.ok([])
		try:
			messages = await asyncio.wait_for(self._activate(conversation_id), self._load_timeout)
		except asyncio.TimeoutError:
			_LOG.warning("messaging.activation_timeout", extra={"conversation_id": conversation_id})
			self.messages.setdefault(conversation_id, [])
			self.error = "Loading timed out"
			return Outcome.fail(self.error, reason="timeout")
		except MessagingError as exc:
			self.messages.setdefault(conversation_id, [])
			return self._failed("set_active_conversation", exc)
		return Outcome.ok(messages)

	async def load_messages(self, conversation_id: str, *, limit: Optional[int] = None) -> Outcome[List[Message]]:
		try:
			fetched = await self.message_repo.list(conversation_id, limit=limit)
		except MessagingError as exc:
			return self._failed("load_messages", exc)
		return Outcome.ok(self._writer.merge_refresh(conversation_id, fetched))

	async def send_message(
		self,
		conversation_id: str,
		content: str,
		message_type: MessageType | str = MessageType.TEXT,
		metadata: Optional[Dict[str, Any]] = None,
	) -> Outcome[Message]:
		try:
			message = await self._writer.send(conversation_id, self.user_id, content, message_type, metadata)
		except MessagingError as exc:
			return self._failed("send_message", exc)
		self._message_written(message)
		return Outcome.ok(message)

	async def send_attachment(
		self,
		conversation_id: str,
		file_name: str,
		media_type: str,
		data: bytes,
		*,
		caption: str = "",
	) -> Outcome[Message]:
		try:
			stored = await self.attachments.upload(self.user_id, file_name, media_type, data)
		except MessagingError as exc:
			return self._failed("send_attachment", exc)
		except OSError:
			_LOG.exception("messaging.attachment_upload_failed", extra={"conversation_id": conversation_id})
			self.error = "Attachment upload failed"
			return Outcome.fail(self.error, reason="upload_failed")
		return await self.send_message(
			conversation_id,
			caption,
			message_type_for(stored.media_type),
			stored.to_metadata(),
		)

	async def send_offer(
		self,
		offer: OfferPayload,
		*,
		conversation_id: Optional[str] = None,
		seller_id: Optional[str] = None,
	) -> Outcome[Message]:
		"""Send ``offer`` into ``conversation_id``, or into the buyer/seller thread for ``seller_id``."""
		try:
			encoded = self.codec.encode(offer)
			if conversation_id is None:
				if not seller_id:
					raise ValidationError("seller_required")
				conversation = await self.conversation_repo.find_or_create(self.user_id, seller_id, offer.product_id)
				conversation_id = conversation.id
		except MessagingError as exc:
			return self._failed("send_offer", exc)
		outcome = await self.send_message(conversation_id, encoded.content, MessageType.OFFER, encoded.metadata)
		if outcome.success and self.conversation(conversation_id) is None:
			await self._reload_quietly()
		return outcome

	async def respond_to_offer(self, conversation_id: str, message_id: str, status: OfferStatus | str) -> Outcome[Message]:
		"""Accept or reject an offer; the new status travels as a new offer message."""
		try:
			carrier = await self._find_message(conversation_id, message_id)
			history = await self.message_repo.list(conversation_id)
			encoded = self.codec.respond(carrier, history, self.user_id, status)
		except MessagingError as exc:
			return self._failed("respond_to_offer", exc)
		return await self.send_message(conversation_id, encoded.content, MessageType.OFFER, encoded.metadata)

	async def edit_message(self, message_id: str, new_content: str) -> Outcome[Message]:
		try:
			await self.message_repo.get_owned(message_id, self.user_id)
			updated = await self.message_repo.edit(message_id, new_content)
		except MessagingError as exc:
			return self._failed("edit_message", exc)
		self._replace_local(updated)
		return Outcome.ok(updated)

	async def delete_message(self, message_id: str) -> Outcome[Message]:
		try:
			await self.message_repo.get_owned(message_id, self.user_id)
			deleted = await self.message_repo.delete(message_id)
		except MessagingError as exc:
			return self._failed("delete_message", exc)
		self._replace_local(deleted)
		return Outcome.ok(deleted)

	async def mark_read(self, conversation_id: str) -> Outcome[int]:
		try:
			updated = await self.message_repo.mark_read(conversation_id, self.user_id)
		except MessagingError as exc:
			return self._failed("mark_read", exc)
		self.unread.on_mark_read(conversation_id)
		local = self.messages.get(conversation_id)
		if local:
			self.messages[conversation_id] = [
				message if message.sender_id == self.user_id or message.pending else message.mark_read()
				for message in local
			]
		self._sync_unread_fields()
		self._emit_unread()
		return Outcome.ok(updated)

	async def archive_conversation(self, conversation_id: str) -> Outcome[Conversation]:
		try:
			conversation = await self.conversation_repo.get(conversation_id)
			if not conversation.is_participant(self.user_id):
				raise ForbiddenError()
			archived = await self.conversation_repo.archive(conversation_id)
		except MessagingError as exc:
			return self._failed("archive_conversation", exc)
		if self.active_conversation_id == conversation_id:
			await self.set_active_conversation(None)
		self._realtime.close(conversation_id)
		self.conversations = [item for item in self.conversations if item.id != conversation_id]
		self.messages.pop(conversation_id, None)
		self.unread.forget(conversation_id)
		self._emit(EVENT_CONVERSATIONS, [item.to_dict() for item in self.conversations])
		self._emit_unread()
		return Outcome.ok(archived)

	async def set_typing(self, conversation_id: str, is_typing: bool) -> Outcome[None]:
		await self.typing_indicator.set_typing(conversation_id, is_typing)
		return Outcome.ok()

	async def refresh_unread(self) -> Outcome[int]:
		try:
			await self.unread.refresh(item.id for item in self.conversations)
		except MessagingError as exc:
			return self._failed("refresh_unread", exc)
		self._sync_unread_fields()
		self._emit_unread()
		return Outcome.ok(self.unread.total())

	# -- internals -------------------------------------------------------

	async def _load_conversations(self) -> List[Conversation]:
		conversations = await self.conversation_repo.list_for_user(self.user_id)
		peers = [conversation.peer_of(self.user_id) for conversation in conversations]
		self.participants.update(await self.participant_cache.resolve_many(peers))
		stale = set(self.unread.counts) - {conversation.id for conversation in conversations}
		for conversation_id in stale:
			self.unread.forget(conversation_id)
		await self.unread.refresh(conversation.id for conversation in conversations)
		self.conversations = conversations
		self._sync_unread_fields()
		self._emit(EVENT_CONVERSATIONS, [conversation.to_dict() for conversation in conversations])
		self._emit_unread()
		return conversations

	async def _reload_quietly(self) -> None:
		outcome = await self.refresh_conversations()
		if not outcome.success:
			_LOG.info("messaging.reload_skipped", extra={"reason": outcome.reason})

	async def _activate(self, conversation_id: str) -> List[Message]:
		handle = await self._realtime.subscribe(conversation_id)
		if self.active_conversation_id != conversation_id or self._disposed:
			# Switched away while the channel was opening.
			handle.close()
			return self.messages.get(conversation_id, [])
		self._active_subscription = handle
		fetched = await self.message_repo.list(conversation_id)
		await self._apply_refresh(conversation_id, fetched)
		return self.messages.get(conversation_id, [])

	async def _apply_refresh(self, conversation_id: str, fetched: List[Message]) -> None:
		self._writer.merge_refresh(conversation_id, fetched)
		self._slice_changed(conversation_id)
		try:
			await self.unread.refresh_one(conversation_id)
		except MessagingError as exc:
			_LOG.warning("messaging.unread_refresh_failed", extra={"conversation_id": conversation_id, "reason": exc.reason})
			return
		self._sync_unread_fields()
		self._emit_unread()

	async def _find_message(self, conversation_id: str, message_id: str) -> Message:
		for message in self.messages.get(conversation_id, []):
			if message.id == message_id:
				return message
		message = await self.message_repo.get(message_id)
		if message.conversation_id != conversation_id:
			raise NotFoundError()
		return message

	def _message_written(self, message: Message) -> None:
		conversation = self.conversation(message.conversation_id)
		if conversation is None:
			return
		conversation.last_message = message.summary(self.codec.describe(message))
		conversation.last_message_at = message.created_at
		conversation.updated_at = message.created_at
		self.conversations.sort(key=lambda item: (item.updated_at, item.id), reverse=True)
		self._emit(EVENT_CONVERSATIONS, [item.to_dict() for item in self.conversations])

	def _replace_local(self, message: Message) -> None:
		local = self.messages.get(message.conversation_id)
		if local is None:
			return
		self.messages[message.conversation_id] = [message if item.id == message.id else item for item in local]
		self._slice_changed(message.conversation_id)

	def _sync_unread_fields(self) -> None:
		for conversation in self.conversations:
			conversation.unread_count = {self.user_id: self.unread.get(conversation.id)}

	def _failed(self, operation: str, exc: MessagingError) -> Outcome:
		self.error = _error_message(exc)
		_LOG.info("messaging.operation_failed", extra={"operation": operation, "reason": exc.reason})
		return Outcome.fail(self.error, reason=exc.reason)

	def _slice_changed(self, conversation_id: str) -> None:
		self._emit(
			EVENT_MESSAGES,
			{
				"conversation_id": conversation_id,
				"messages": [message.to_dict() for message in self.messages.get(conversation_id, [])],
			},
		)

	def _typing_changed(self, conversation_id: str, is_typing: bool) -> None:
		self._emit(EVENT_TYPING, {"conversation_id": conversation_id, "user_id": self.user_id, "is_typing": is_typing})

	def _emit_unread(self) -> None:
		self._emit(EVENT_UNREAD, {"counts": dict(self.unread.counts), "total": self.unread.total()})

	def _emit(self, event: str, payload: Any) -> None:
		for callback in list(self._listeners):
			try:
				callback(event, payload)
			except Exception:
				_LOG.exception("messaging.listener_failed", extra={"event": event})
