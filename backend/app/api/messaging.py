"""FastAPI endpoints for marketplace messaging."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status

from app.api.request_id import get_request_id
from app.domain.messaging import offers
from app.domain.messaging.attachments import LocalAttachmentStorage, message_type_for
from app.domain.messaging.conversations import ConversationRepository
from app.domain.messaging.exceptions import (
	ConversationConflictError,
	ForbiddenError,
	MessagingError,
	NotFoundError,
	ValidationError,
)
from app.domain.messaging.messages import MessageRepository
from app.domain.messaging.models import Conversation, MessageType
from app.domain.messaging.participants import ParticipantCache
from app.domain.messaging.schemas import (
	ConversationListResponse,
	ConversationResponse,
	CreateConversationRequest,
	EditMessageRequest,
	MessageListResponse,
	MessageResponse,
	OfferRequest,
	OfferResponseRequest,
	ReadResponse,
	SendMessageRequest,
	UnreadSummaryResponse,
)
from app.domain.messaging.store import BackingStore, get_backing_store
from app.domain.messaging.unread import UnreadCounter
from app.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/messaging", tags=["messaging"])


def _http_error(exc: MessagingError) -> HTTPException:
	if isinstance(exc, NotFoundError):
		code = status.HTTP_404_NOT_FOUND
	elif isinstance(exc, ForbiddenError):
		code = status.HTTP_403_FORBIDDEN
	elif isinstance(exc, ValidationError):
		code = status.HTTP_400_BAD_REQUEST
	elif isinstance(exc, ConversationConflictError):
		code = status.HTTP_409_CONFLICT
	else:
		code = status.HTTP_503_SERVICE_UNAVAILABLE
	return HTTPException(code, detail=exc.reason, headers={"X-Request-Id": get_request_id()})


async def _participant_conversation(
	conversations: ConversationRepository,
	conversation_id: str,
	user: AuthenticatedUser,
) -> Conversation:
	conversation = await conversations.get(conversation_id)
	if not conversation.is_participant(user.id):
		raise ForbiddenError("not_participant")
	return conversation


@router.post("/conversations", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def create_conversation_endpoint(
	payload: CreateConversationRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	store: BackingStore = Depends(get_backing_store),
) -> ConversationResponse:
	conversations = ConversationRepository(store)
	buyer_id, seller_id = (auth_user.id, payload.peer_id) if payload.as_buyer else (payload.peer_id, auth_user.id)
	try:
		conversation = await conversations.find_or_create(buyer_id, seller_id, payload.product_id)
		if payload.initial_message and payload.initial_message.strip():
			await MessageRepository(store, conversations).append(conversation.id, auth_user.id, payload.initial_message)
			conversation = await conversations.get(conversation.id)
		peer = await ParticipantCache(store).resolve(conversation.peer_of(auth_user.id))
	except MessagingError as exc:
		raise _http_error(exc) from exc
	return ConversationResponse.from_model(conversation, peer=peer)


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations_endpoint(
	limit: int = Query(default=20, ge=1, le=100),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	store: BackingStore = Depends(get_backing_store),
) -> ConversationListResponse:
	try:
		items = await ConversationRepository(store).list_for_user(auth_user.id, limit=limit)
		unread = UnreadCounter(store, auth_user.id)
		await unread.refresh(item.id for item in items)
		peers = await ParticipantCache(store).resolve_many(item.peer_of(auth_user.id) for item in items)
	except MessagingError as exc:
		raise _http_error(exc) from exc
	return ConversationListResponse(
		items=[
			ConversationResponse.from_model(
				item,
				unread=unread.get(item.id),
				peer=peers.get(item.peer_of(auth_user.id)),
			)
			for item in items
		],
		unread_total=unread.total(),
	)


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def list_messages_endpoint(
	conversation_id: str,
	limit: int = Query(default=50, ge=1, le=200),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	store: BackingStore = Depends(get_backing_store),
) -> MessageListResponse:
	conversations = ConversationRepository(store)
	try:
		await _participant_conversation(conversations, conversation_id, auth_user)
		messages = await MessageRepository(store, conversations).list(conversation_id, limit=limit)
	except MessagingError as exc:
		raise _http_error(exc) from exc
	return MessageListResponse(items=[MessageResponse.from_model(message) for message in messages])


@router.post(
	"/conversations/{conversation_id}/messages",
	response_model=MessageResponse,
	status_code=status.HTTP_201_CREATED,
)
async def send_message_endpoint(
	conversation_id: str,
	payload: SendMessageRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	store: BackingStore = Depends(get_backing_store),
) -> MessageResponse:
	conversations = ConversationRepository(store)
	try:
		conversation = await _participant_conversation(conversations, conversation_id, auth_user)
		if not conversation.is_active:
			raise ValidationError("conversation_archived")
		message = await MessageRepository(store, conversations).append(
			conversation_id, auth_user.id, payload.content, payload.type, payload.metadata
		)
	except MessagingError as exc:
		raise _http_error(exc) from exc
	return MessageResponse.from_model(message)


@router.post(
	"/conversations/{conversation_id}/attachments",
	response_model=MessageResponse,
	status_code=status.HTTP_201_CREATED,
)
async def send_attachment_endpoint(
	conversation_id: str,
	file: UploadFile = File(...),
	caption: Optional[str] = Form(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	store: BackingStore = Depends(get_backing_store),
) -> MessageResponse:
	conversations = ConversationRepository(store)
	data = await file.read()
	try:
		await _participant_conversation(conversations, conversation_id, auth_user)
		stored = await LocalAttachmentStorage().upload(
			auth_user.id,
			file.filename or "attachment",
			file.content_type or "",
			data,
		)
		message = await MessageRepository(store, conversations).append(
			conversation_id,
			auth_user.id,
			caption or "",
			message_type_for(stored.media_type),
			stored.to_metadata(),
		)
	except MessagingError as exc:
		raise _http_error(exc) from exc
	return MessageResponse.from_model(message)


@router.post("/offers", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_offer_endpoint(
	payload: OfferRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	store: BackingStore = Depends(get_backing_store),
) -> MessageResponse:
	conversations = ConversationRepository(store)
	try:
		encoded = offers.encode(payload.to_payload())
		if payload.conversation_id:
			conversation = await _participant_conversation(conversations, payload.conversation_id, auth_user)
		else:
			conversation = await conversations.find_or_create(auth_user.id, payload.seller_id or "", payload.product_id)
		message = await MessageRepository(store, conversations).append(
			conversation.id, auth_user.id, encoded.content, MessageType.OFFER, encoded.metadata
		)
	except MessagingError as exc:
		raise _http_error(exc) from exc
	return MessageResponse.from_model(message)


@router.post(
	"/conversations/{conversation_id}/offers/{message_id}/respond",
	response_model=MessageResponse,
	status_code=status.HTTP_201_CREATED,
)
async def respond_to_offer_endpoint(
	conversation_id: str,
	message_id: str,
	payload: OfferResponseRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	store: BackingStore = Depends(get_backing_store),
) -> MessageResponse:
	conversations = ConversationRepository(store)
	messages = MessageRepository(store, conversations)
	try:
		await _participant_conversation(conversations, conversation_id, auth_user)
		carrier = await messages.get(message_id)
		if carrier.conversation_id != conversation_id:
			raise NotFoundError()
		history = await messages.list(conversation_id)
		encoded = offers.respond(carrier, history, auth_user.id, payload.offer_status)
		message = await messages.append(conversation_id, auth_user.id, encoded.content, MessageType.OFFER, encoded.metadata)
	except MessagingError as exc:
		raise _http_error(exc) from exc
	return MessageResponse.from_model(message)


@router.patch("/messages/{message_id}", response_model=MessageResponse)
async def edit_message_endpoint(
	message_id: str,
	payload: EditMessageRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	store: BackingStore = Depends(get_backing_store),
) -> MessageResponse:
	messages = MessageRepository(store, ConversationRepository(store))
	try:
		await messages.get_owned(message_id, auth_user.id)
		message = await messages.edit(message_id, payload.content)
	except MessagingError as exc:
		raise _http_error(exc) from exc
	return MessageResponse.from_model(message)


@router.delete("/messages/{message_id}", response_model=MessageResponse)
async def delete_message_endpoint(
	message_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	store: BackingStore = Depends(get_backing_store),
) -> MessageResponse:
	messages = MessageRepository(store, ConversationRepository(store))
	try:
		await messages.get_owned(message_id, auth_user.id)
		message = await messages.delete(message_id)
	except MessagingError as exc:
		raise _http_error(exc) from exc
	return MessageResponse.from_model(message)


@router.post("/conversations/{conversation_id}/read", response_model=ReadResponse)
async def mark_read_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	store: BackingStore = Depends(get_backing_store),
) -> ReadResponse:
	conversations = ConversationRepository(store)
	try:
		await _participant_conversation(conversations, conversation_id, auth_user)
		updated = await MessageRepository(store, conversations).mark_read(conversation_id, auth_user.id)
		active = await conversations.list_for_user(auth_user.id)
		unread = UnreadCounter(store, auth_user.id)
		await unread.refresh(item.id for item in active)
	except MessagingError as exc:
		raise _http_error(exc) from exc
	return ReadResponse(conversation_id=conversation_id, updated=updated, unread_total=unread.total())


@router.get("/unread", response_model=UnreadSummaryResponse)
async def unread_summary_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	store: BackingStore = Depends(get_backing_store),
) -> UnreadSummaryResponse:
	try:
		active = await ConversationRepository(store).list_for_user(auth_user.id)
		unread = UnreadCounter(store, auth_user.id)
		await unread.refresh(item.id for item in active)
	except MessagingError as exc:
		raise _http_error(exc) from exc
	return UnreadSummaryResponse(counts=dict(unread.counts), total=unread.total())


@router.post("/conversations/{conversation_id}/archive", response_model=ConversationResponse)
async def archive_conversation_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	store: BackingStore = Depends(get_backing_store),
) -> ConversationResponse:
	conversations = ConversationRepository(store)
	try:
		await _participant_conversation(conversations, conversation_id, auth_user)
		conversation = await conversations.archive(conversation_id)
	except MessagingError as exc:
		raise _http_error(exc) from exc
	return ConversationResponse.from_model(conversation)
