"""Domain models for marketplace messaging."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Mapping, Optional, Tuple, TypeVar

T = TypeVar("T")


def now_utc() -> datetime:
	return datetime.now(timezone.utc)


def _as_datetime(value: Any) -> Optional[datetime]:
	if value is None or value == "":
		return None
	if isinstance(value, datetime):
		return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
	parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
	return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _as_mapping(value: Any) -> dict:
	if value is None or value == "":
		return {}
	if isinstance(value, str):
		loaded = json.loads(value)
		return dict(loaded) if isinstance(loaded, dict) else {}
	return dict(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
	return value.isoformat() if value is not None else None


class ConversationStatus(str, Enum):
	ACTIVE = "active"
	ARCHIVED = "archived"


class MessageType(str, Enum):
	TEXT = "text"
	IMAGE = "image"
	FILE = "file"
	OFFER = "offer"
	SYSTEM = "system"

	@property
	def requires_content(self) -> bool:
		# Attachments may travel without a caption.
		return self in (MessageType.TEXT, MessageType.OFFER)

	@property
	def is_attachment(self) -> bool:
		return self in (MessageType.IMAGE, MessageType.FILE)


class OfferType(str, Enum):
	CASH = "cash"
	BARTER = "barter"


class OfferStatus(str, Enum):
	PENDING = "pending"
	ACCEPTED = "accepted"
	REJECTED = "rejected"


@dataclass(slots=True)
class MessageSummary:
	content: str
	type: MessageType
	sender_id: str
	created_at: datetime

	def to_dict(self) -> dict:
		return {
			"content": self.content,
			"type": self.type.value,
			"sender_id": self.sender_id,
			"created_at": self.created_at.isoformat(),
		}

	@classmethod
	def from_dict(cls, data: Mapping[str, Any]) -> "MessageSummary":
		return cls(
			content=str(data.get("content") or ""),
			type=MessageType(data.get("type") or MessageType.TEXT.value),
			sender_id=str(data.get("sender_id") or ""),
			created_at=_as_datetime(data.get("created_at")) or now_utc(),
		)


@dataclass(slots=True)
class Conversation:
	"""A thread between exactly one buyer and one seller."""

	id: str
	buyer_id: str
	seller_id: str
	status: ConversationStatus
	created_at: datetime
	updated_at: datetime
	product_id: Optional[str] = None
	offer_id: Optional[str] = None
	last_message_at: Optional[datetime] = None
	last_message: Optional[MessageSummary] = None
	unread_count: dict[str, int] = field(default_factory=dict)

	@property
	def is_active(self) -> bool:
		return self.status is ConversationStatus.ACTIVE

	def participants(self) -> Tuple[str, str]:
		return (self.buyer_id, self.seller_id)

	def is_participant(self, user_id: str) -> bool:
		return user_id in self.participants()

	def peer_of(self, user_id: str) -> str:
		if user_id == self.buyer_id:
			return self.seller_id
		if user_id == self.seller_id:
			return self.buyer_id
		raise ValueError("not_a_participant")

	@classmethod
	def from_row(cls, row: Mapping[str, Any]) -> "Conversation":
		last_message_raw = _as_mapping(row.get("last_message"))
		created_at = _as_datetime(row.get("created_at")) or now_utc()
		return cls(
			id=str(row["id"]),
			buyer_id=str(row["buyer_id"]),
			seller_id=str(row["seller_id"]),
			status=ConversationStatus(row.get("status") or ConversationStatus.ACTIVE.value),
			created_at=created_at,
			updated_at=_as_datetime(row.get("updated_at")) or created_at,
			product_id=str(row["product_id"]) if row.get("product_id") else None,
			offer_id=str(row["offer_id"]) if row.get("offer_id") else None,
			last_message_at=_as_datetime(row.get("last_message_at")),
			last_message=MessageSummary.from_dict(last_message_raw) if last_message_raw else None,
		)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"buyer_id": self.buyer_id,
			"seller_id": self.seller_id,
			"product_id": self.product_id,
			"offer_id": self.offer_id,
			"status": self.status.value,
			"created_at": self.created_at.isoformat(),
			"updated_at": self.updated_at.isoformat(),
			"last_message_at": _iso(self.last_message_at),
			"last_message": self.last_message.to_dict() if self.last_message else None,
			"unread_count": dict(self.unread_count),
		}


@dataclass(slots=True)
class Message:
	"""A message tagged by `type`; `pending` marks an unconfirmed optimistic entry."""

	id: str
	conversation_id: str
	sender_id: str
	content: str
	type: MessageType
	created_at: datetime
	metadata: dict[str, Any] = field(default_factory=dict)
	updated_at: Optional[datetime] = None
	is_read: bool = False
	is_edited: bool = False
	is_deleted: bool = False
	pending: bool = False

	@property
	def sort_key(self) -> Tuple[datetime, str]:
		return (self.created_at, self.id)

	def summary(self, content: str | None = None) -> MessageSummary:
		return MessageSummary(
			content=self.content if content is None else content,
			type=self.type,
			sender_id=self.sender_id,
			created_at=self.created_at,
		)

	def mark_read(self) -> "Message":
		return replace(self, is_read=True)

	@classmethod
	def from_row(cls, row: Mapping[str, Any]) -> "Message":
		return cls(
			id=str(row["id"]),
			conversation_id=str(row["conversation_id"]),
			sender_id=str(row["sender_id"]),
			content=row.get("content") or "",
			type=MessageType(row.get("message_type") or MessageType.TEXT.value),
			created_at=_as_datetime(row.get("created_at")) or now_utc(),
			metadata=_as_mapping(row.get("metadata")),
			updated_at=_as_datetime(row.get("updated_at")),
			is_read=bool(row.get("is_read")),
			is_edited=bool(row.get("is_edited")),
			is_deleted=bool(row.get("is_deleted")),
		)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"conversation_id": self.conversation_id,
			"sender_id": self.sender_id,
			"content": self.content,
			"type": self.type.value,
			"metadata": dict(self.metadata),
			"created_at": self.created_at.isoformat(),
			"updated_at": _iso(self.updated_at),
			"is_read": self.is_read,
			"is_edited": self.is_edited,
			"is_deleted": self.is_deleted,
			"pending": self.pending,
		}


def sort_messages(messages: list[Message]) -> list[Message]:
	"""Ascending by creation time, ties broken by id."""
	return sorted(messages, key=lambda message: message.sort_key)


@dataclass(slots=True)
class ParticipantDescriptor:
	user_id: str
	display_name: str
	avatar_url: Optional[str] = None
	role: str = "unknown"

	def to_dict(self) -> dict:
		return {
			"user_id": self.user_id,
			"display_name": self.display_name,
			"avatar_url": self.avatar_url,
			"role": self.role,
		}


@dataclass(slots=True)
class OfferPayload:
	"""Structured cash or barter proposal carried by an `offer` message."""

	offer_type: OfferType
	offer_description: str
	product_id: str
	product_name: str
	offer_value: Optional[float] = None
	offer_items: Optional[str] = None
	product_image_url: Optional[str] = None
	product_price: Optional[float] = None
	status: OfferStatus = OfferStatus.PENDING
	message: Optional[str] = None


@dataclass(slots=True)
class Outcome(Generic[T]):
	"""Result object returned across the store boundary instead of raising."""

	success: bool
	data: Optional[T] = None
	error: Optional[str] = None
	reason: Optional[str] = None

	@classmethod
	def ok(cls, data: Optional[T] = None) -> "Outcome[T]":
		return cls(success=True, data=data)

	@classmethod
	def fail(cls, error: str, *, reason: str | None = None) -> "Outcome[T]":
		return cls(success=False, error=error, reason=reason)
