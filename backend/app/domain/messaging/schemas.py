"""Pydantic schemas for the messaging HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .models import Conversation, Message, OfferPayload, OfferStatus, OfferType, ParticipantDescriptor


class ParticipantResponse(BaseModel):
	user_id: str
	display_name: str
	avatar_url: Optional[str] = None
	role: str = "unknown"

	@classmethod
	def from_model(cls, descriptor: ParticipantDescriptor) -> "ParticipantResponse":
		return cls(**descriptor.to_dict())


class MessageSummaryResponse(BaseModel):
	content: str
	type: str
	sender_id: str
	created_at: datetime


class ConversationResponse(BaseModel):
	id: str
	buyer_id: str
	seller_id: str
	product_id: Optional[str] = None
	offer_id: Optional[str] = None
	status: str
	created_at: datetime
	updated_at: datetime
	last_message_at: Optional[datetime] = None
	last_message: Optional[MessageSummaryResponse] = None
	unread_count: int = 0
	peer: Optional[ParticipantResponse] = None

	@classmethod
	def from_model(
		cls,
		conversation: Conversation,
		*,
		unread: int = 0,
		peer: ParticipantDescriptor | None = None,
	) -> "ConversationResponse":
		summary = conversation.last_message
		return cls(
			id=conversation.id,
			buyer_id=conversation.buyer_id,
			seller_id=conversation.seller_id,
			product_id=conversation.product_id,
			offer_id=conversation.offer_id,
			status=conversation.status.value,
			created_at=conversation.created_at,
			updated_at=conversation.updated_at,
			last_message_at=conversation.last_message_at,
			last_message=MessageSummaryResponse(**summary.to_dict()) if summary else None,
			unread_count=unread,
			peer=ParticipantResponse.from_model(peer) if peer else None,
		)


class ConversationListResponse(BaseModel):
	items: List[ConversationResponse]
	unread_total: int = 0


class CreateConversationRequest(BaseModel):
	peer_id: str = Field(..., min_length=1, description="The other participant")
	product_id: Optional[str] = None
	as_buyer: bool = True
	initial_message: Optional[str] = Field(default=None, max_length=4000)


class MessageResponse(BaseModel):
	id: str
	conversation_id: str
	sender_id: str
	content: str
	type: str
	metadata: Dict[str, Any] = Field(default_factory=dict)
	created_at: datetime
	updated_at: Optional[datetime] = None
	is_read: bool = False
	is_edited: bool = False
	is_deleted: bool = False

	@classmethod
	def from_model(cls, message: Message) -> "MessageResponse":
		return cls(
			id=message.id,
			conversation_id=message.conversation_id,
			sender_id=message.sender_id,
			content=message.content,
			type=message.type.value,
			metadata=dict(message.metadata),
			created_at=message.created_at,
			updated_at=message.updated_at,
			is_read=message.is_read,
			is_edited=message.is_edited,
			is_deleted=message.is_deleted,
		)


class MessageListResponse(BaseModel):
	items: List[MessageResponse]


class SendMessageRequest(BaseModel):
	content: str = Field(default="", max_length=4000)
	type: Literal["text", "image", "file", "system"] = "text"
	metadata: Dict[str, Any] = Field(default_factory=dict)


class EditMessageRequest(BaseModel):
	content: str = Field(..., min_length=1, max_length=4000)


class OfferRequest(BaseModel):
	offer_type: OfferType
	offer_description: str = Field(..., min_length=1, max_length=2000)
	product_id: str = Field(..., min_length=1)
	product_name: str = Field(..., min_length=1)
	offer_value: Optional[float] = Field(default=None, gt=0)
	offer_items: Optional[str] = None
	product_image_url: Optional[str] = None
	product_price: Optional[float] = Field(default=None, ge=0)
	message: Optional[str] = Field(default=None, max_length=2000)
	conversation_id: Optional[str] = None
	seller_id: Optional[str] = None

	@model_validator(mode="after")
	def _target_required(self) -> "OfferRequest":
		if not self.conversation_id and not self.seller_id:
			raise ValueError("conversation_id or seller_id is required")
		return self

	def to_payload(self) -> OfferPayload:
		return OfferPayload(
			offer_type=self.offer_type,
			offer_description=self.offer_description,
			product_id=self.product_id,
			product_name=self.product_name,
			offer_value=self.offer_value,
			offer_items=self.offer_items,
			product_image_url=self.product_image_url,
			product_price=self.product_price,
			message=self.message,
		)


class OfferResponseRequest(BaseModel):
	status: Literal["accepted", "rejected"]

	@property
	def offer_status(self) -> OfferStatus:
		return OfferStatus(self.status)


class ReadResponse(BaseModel):
	conversation_id: str
	updated: int
	unread_total: int


class UnreadSummaryResponse(BaseModel):
	counts: Dict[str, int]
	total: int
