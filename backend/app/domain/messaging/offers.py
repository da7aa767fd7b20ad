"""Offer sub-protocol: encode structured offers into carrier messages and back.

An offer travels as an ordinary message with ``type=offer``. ``content`` holds a
fixed-order human readable template for clients that render it verbatim;
``metadata`` holds the structured form and is what ``decode`` prefers.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, Mapping, Optional

from app.settings import settings

from .exceptions import ForbiddenError, ValidationError
from .models import Message, MessageType, OfferPayload, OfferStatus, OfferType, sort_messages

_LOG = logging.getLogger(__name__)

HEADER = "🛍️ **MAKE OFFER REQUEST**"
NO_IMAGE = "No image available"

_LINE_RE = re.compile(r"^\*\*(?P<label>[^*]+):\*\*\s*(?P<value>.*)$")

_LABEL_FIELDS = {
	"Product": "product_name",
	"Price": "product_price",
	"Product ID": "product_id",
	"Product Image": "product_image_url",
	"Offer Type": "offer_type",
	"Offer Value": "offer_value",
	"Items Offered": "offer_items",
	"Description": "offer_description",
	"Additional Message": "message",
	"Status": "status",
}


@dataclass(slots=True, frozen=True)
class EncodedOffer:
	content: str
	metadata: Dict[str, Any]


def _money(value: Optional[float]) -> str:
	symbol = settings.messaging_currency_symbol
	if value is None:
		return f"{symbol}0"
	number = float(value)
	return f"{symbol}{int(number)}" if number.is_integer() else f"{symbol}{number:.2f}"


def _parse_money(raw: str) -> Optional[float]:
	cleaned = raw.replace(settings.messaging_currency_symbol, "").replace(",", "").strip()
	if not cleaned:
		return None
	return float(cleaned)


def _coerced(offer: OfferPayload) -> OfferPayload:
	"""Accept plain-string offer types and statuses as well as the enums."""
	try:
		offer_type = OfferType(offer.offer_type)
	except ValueError as exc:
		raise ValidationError("offer_type_invalid") from exc
	try:
		status = OfferStatus(offer.status)
	except ValueError as exc:
		raise ValidationError("offer_status_invalid") from exc
	return replace(offer, offer_type=offer_type, status=status)


def _validate(offer: OfferPayload) -> None:
	if not offer.product_id or not offer.product_id.strip():
		raise ValidationError("offer_product_required")
	if not offer.product_name or not offer.product_name.strip():
		raise ValidationError("offer_product_name_required")
	if not offer.offer_description or not offer.offer_description.strip():
		raise ValidationError("offer_description_required")
	if offer.offer_type is OfferType.CASH:
		if offer.offer_value is None or offer.offer_value <= 0:
			raise ValidationError("offer_value_required")
	elif offer.offer_type is OfferType.BARTER:
		if not offer.offer_items or not offer.offer_items.strip():
			raise ValidationError("offer_items_required")
	else:
		raise ValidationError("offer_type_invalid")


def to_metadata(offer: OfferPayload) -> Dict[str, Any]:
	return {
		"offerType": offer.offer_type.value,
		"offerValue": offer.offer_value,
		"offerItems": offer.offer_items,
		"offerDescription": offer.offer_description,
		"productId": offer.product_id,
		"productName": offer.product_name,
		"productImage": offer.product_image_url,
		"productPrice": offer.product_price,
		"status": offer.status.value,
		"message": offer.message,
	}


def render(offer: OfferPayload) -> str:
	lines = [
		HEADER,
		"",
		f"**Product:** {offer.product_name}",
		f"**Price:** {_money(offer.product_price)}",
		f"**Product ID:** {offer.product_id}",
		f"**Product Image:** {offer.product_image_url or NO_IMAGE}",
		"",
		f"**Offer Type:** {offer.offer_type.value}",
	]
	if offer.offer_type is OfferType.CASH:
		lines.append(f"**Offer Value:** {_money(offer.offer_value)}")
	if offer.offer_type is OfferType.BARTER:
		lines.append(f"**Items Offered:** {offer.offer_items}")
	lines.append(f"**Description:** {offer.offer_description}")
	if offer.message:
		lines.append(f"**Additional Message:** {offer.message}")
	lines.extend(["", f"**Status:** {offer.status.value}"])
	return "\n".join(lines)


def encode(offer: OfferPayload) -> EncodedOffer:
	"""Validate ``offer`` and produce its carrier content and metadata."""
	offer = _coerced(offer)
	_validate(offer)
	return EncodedOffer(content=render(offer), metadata=to_metadata(offer))


def _optional_float(value: Any) -> Optional[float]:
	if value is None or value == "":
		return None
	return float(value)


def _optional_str(value: Any) -> Optional[str]:
	if value is None:
		return None
	text = str(value)
	return text if text else None


def from_metadata(metadata: Mapping[str, Any]) -> OfferPayload:
	return OfferPayload(
		offer_type=OfferType(str(metadata["offerType"]).lower()),
		offer_description=str(metadata.get("offerDescription") or ""),
		product_id=str(metadata.get("productId") or ""),
		product_name=str(metadata.get("productName") or ""),
		offer_value=_optional_float(metadata.get("offerValue")),
		offer_items=_optional_str(metadata.get("offerItems")),
		product_image_url=_optional_str(metadata.get("productImage")),
		product_price=_optional_float(metadata.get("productPrice")),
		status=OfferStatus(str(metadata.get("status") or OfferStatus.PENDING.value).lower()),
		message=_optional_str(metadata.get("message")),
	)


def parse_content(content: str) -> Optional[OfferPayload]:
	"""Loose parser for legacy carriers that only have the rendered template."""
	if "MAKE OFFER REQUEST" not in content:
		return None
	fields: Dict[str, str] = {}
	for raw_line in content.splitlines():
		match = _LINE_RE.match(raw_line.strip())
		if not match:
			continue
		name = _LABEL_FIELDS.get(match.group("label").strip())
		if name:
			fields[name] = match.group("value").strip()
	if "offer_type" not in fields:
		return None
	image = fields.get("product_image_url")
	return OfferPayload(
		offer_type=OfferType(fields["offer_type"].lower()),
		offer_description=fields.get("offer_description", ""),
		product_id=fields.get("product_id", ""),
		product_name=fields.get("product_name", ""),
		offer_value=_parse_money(fields["offer_value"]) if "offer_value" in fields else None,
		offer_items=fields.get("offer_items") or None,
		product_image_url=None if not image or image == NO_IMAGE else image,
		product_price=_parse_money(fields["product_price"]) if "product_price" in fields else None,
		status=OfferStatus(fields.get("status", OfferStatus.PENDING.value).lower()),
		message=fields.get("message") or None,
	)


def decode(message: Message) -> Optional[OfferPayload]:
	"""Return the offer carried by ``message``, or None when it is not an offer.

	Malformed carriers are logged and reported as None; this never raises.
	"""
	if message.type is not MessageType.OFFER or message.is_deleted:
		return None
	try:
		if message.metadata.get("offerType"):
			return from_metadata(message.metadata)
		return parse_content(message.content)
	except (KeyError, TypeError, ValueError):
		_LOG.warning("messaging.offer_decode_failed", extra={"message_id": message.id})
		return None


def with_status(offer: OfferPayload, status: OfferStatus) -> OfferPayload:
	"""Next offer in the pending -> accepted|rejected chain; sent as a new message."""
	offer = _coerced(offer)
	if offer.status is not OfferStatus.PENDING:
		raise ValidationError("offer_already_settled")
	if status is OfferStatus.PENDING:
		raise ValidationError("offer_status_invalid")
	return replace(offer, status=status)


def latest_offer(messages: Iterable[Message], product_id: str) -> Optional[OfferPayload]:
	latest: Optional[OfferPayload] = None
	for message in sort_messages(list(messages)):
		offer = decode(message)
		if offer is not None and offer.product_id == product_id:
			latest = offer
	return latest


def describe(message: Message) -> str:
	"""One-line preview of ``message`` used for conversation summaries."""
	if message.is_deleted:
		return "Message deleted"
	kind = message.type
	if kind is MessageType.TEXT:
		return message.content
	if kind is MessageType.IMAGE:
		return message.content or "📷 Photo"
	if kind is MessageType.FILE:
		return message.content or f"📎 {message.metadata.get('file_name') or 'Attachment'}"
	if kind is MessageType.OFFER:
		offer = decode(message)
		if offer is None:
			return "Offer"
		if offer.offer_type is OfferType.CASH:
			return f"Offer ({offer.status.value}): {_money(offer.offer_value)} for {offer.product_name}"
		return f"Barter offer ({offer.status.value}) for {offer.product_name}"
	if kind is MessageType.SYSTEM:
		return message.content
	raise AssertionError(f"unhandled message type: {kind!r}")


def respond(carrier: Message, history: Iterable[Message], responder_id: str, status: OfferStatus | str) -> EncodedOffer:
	"""Encode the reply to the offer carried by ``carrier``.

	Only the receiving side may answer, and only while the latest offer for the
	product is still pending.
	"""
	try:
		next_status = OfferStatus(status)
	except ValueError as exc:
		raise ValidationError("offer_status_invalid") from exc
	offer = decode(carrier)
	if offer is None:
		raise ValidationError("not_an_offer")
	if carrier.sender_id == responder_id:
		raise ForbiddenError("own_offer")
	current = latest_offer(history, offer.product_id) or offer
	return encode(with_status(current, next_status))
