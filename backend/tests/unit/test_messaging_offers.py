from datetime import datetime, timedelta, timezone

import pytest

from app.domain.messaging import offers
from app.domain.messaging.exceptions import ForbiddenError, ValidationError
from app.domain.messaging.models import Message, MessageType, OfferPayload, OfferStatus, OfferType

BASE_TS = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _cash_offer(**overrides) -> OfferPayload:
	fields = dict(
		offer_type=OfferType.CASH,
		offer_description="Can pick up today",
		product_id="prod-1",
		product_name="Desk Lamp",
		offer_value=500,
		product_price=1200,
	)
	fields.update(overrides)
	return OfferPayload(**fields)


def _carrier(encoded, *, message_id="m-1", sender_id="buyer-1", offset=0, metadata=None) -> Message:
	return Message(
		id=message_id,
		conversation_id="conv-1",
		sender_id=sender_id,
		content=encoded.content,
		type=MessageType.OFFER,
		created_at=BASE_TS + timedelta(seconds=offset),
		metadata=encoded.metadata if metadata is None else metadata,
	)


def test_encode_renders_template_and_metadata():
	encoded = offers.encode(_cash_offer(message="Is it still available?"))

	lines = encoded.content.splitlines()
	assert lines[0] == offers.HEADER
	assert "**Product:** Desk Lamp" in lines
	assert "**Price:** ₱1200" in lines
	assert "**Product Image:** No image available" in lines
	assert "**Offer Value:** ₱500" in lines
	assert "**Additional Message:** Is it still available?" in lines
	assert lines[-1] == "**Status:** pending"
	assert encoded.metadata["offerType"] == "cash"
	assert encoded.metadata["offerValue"] == 500
	assert encoded.metadata["productId"] == "prod-1"
	assert encoded.metadata["status"] == "pending"


def test_render_uses_two_decimals_for_fractional_amounts():
	content = offers.render(_cash_offer(offer_value=499.5))
	assert "**Offer Value:** ₱499.50" in content


def test_barter_offer_lists_items_instead_of_value():
	offer = _cash_offer(offer_type=OfferType.BARTER, offer_value=None, offer_items="Two textbooks")
	encoded = offers.encode(offer)

	assert "**Items Offered:** Two textbooks" in encoded.content
	assert "Offer Value" not in encoded.content


@pytest.mark.parametrize(
	"overrides, reason",
	[
		({"offer_value": None}, "offer_value_required"),
		({"offer_value": 0}, "offer_value_required"),
		({"offer_type": OfferType.BARTER, "offer_value": None, "offer_items": "  "}, "offer_items_required"),
		({"offer_description": " "}, "offer_description_required"),
		({"product_id": ""}, "offer_product_required"),
	],
)
def test_encode_rejects_incomplete_offers(overrides, reason):
	with pytest.raises(ValidationError) as excinfo:
		offers.encode(_cash_offer(**overrides))
	assert excinfo.value.reason == reason


def test_plain_string_offer_fields_encode_and_decode():
	offer = OfferPayload(
		offer_type="cash",
		offer_value=500,
		offer_description="final price",
		product_id="item-42",
		product_name="Lamp",
		status="pending",
	)

	encoded = offers.encode(offer)
	decoded = offers.decode(_carrier(encoded))

	assert encoded.metadata["offerType"] == "cash"
	assert encoded.metadata["status"] == "pending"
	assert "**Offer Type:** cash" in encoded.content
	assert decoded.offer_type is OfferType.CASH
	assert decoded.status is OfferStatus.PENDING
	assert (decoded.offer_value, decoded.offer_description, decoded.product_id, decoded.product_name) == (
		500,
		"final price",
		"item-42",
		"Lamp",
	)


@pytest.mark.parametrize(
	"overrides, reason",
	[
		({"offer_type": "trade"}, "offer_type_invalid"),
		({"status": "maybe"}, "offer_status_invalid"),
	],
)
def test_unknown_string_offer_fields_are_validation_errors(overrides, reason):
	with pytest.raises(ValidationError) as excinfo:
		offers.encode(_cash_offer(**overrides))
	assert excinfo.value.reason == reason


def test_decode_prefers_metadata():
	offer = _cash_offer()
	message = _carrier(offers.encode(offer))
	assert offers.decode(message) == offer


def test_decode_parses_legacy_content_without_metadata():
	offer = _cash_offer(product_image_url="https://cdn.example/lamp.png")
	message = _carrier(offers.encode(offer), metadata={})

	decoded = offers.decode(message)

	assert decoded == offer


def test_decode_returns_none_for_non_offers_and_malformed_carriers():
	text = Message(
		id="m-2",
		conversation_id="conv-1",
		sender_id="buyer-1",
		content=offers.HEADER,
		type=MessageType.TEXT,
		created_at=BASE_TS,
	)
	broken = _carrier(offers.encode(_cash_offer()), metadata={"offerType": "trade-in"})
	deleted = _carrier(offers.encode(_cash_offer()))
	deleted.is_deleted = True

	assert offers.decode(text) is None
	assert offers.decode(broken) is None
	assert offers.decode(deleted) is None


def test_with_status_only_moves_forward_from_pending():
	offer = _cash_offer()
	accepted = offers.with_status(offer, OfferStatus.ACCEPTED)

	assert accepted.status is OfferStatus.ACCEPTED
	assert offer.status is OfferStatus.PENDING
	with pytest.raises(ValidationError) as excinfo:
		offers.with_status(accepted, OfferStatus.REJECTED)
	assert excinfo.value.reason == "offer_already_settled"
	with pytest.raises(ValidationError):
		offers.with_status(offer, OfferStatus.PENDING)


def test_latest_offer_tracks_product_history():
	first = _carrier(offers.encode(_cash_offer()), message_id="m-1", offset=0)
	other_product = _carrier(offers.encode(_cash_offer(product_id="prod-2")), message_id="m-2", offset=1)
	rejected = _carrier(
		offers.encode(_cash_offer(status=OfferStatus.REJECTED)),
		message_id="m-3",
		sender_id="seller-1",
		offset=2,
	)

	latest = offers.latest_offer([rejected, other_product, first], "prod-1")

	assert latest is not None
	assert latest.status is OfferStatus.REJECTED


def test_respond_builds_next_offer_for_receiver():
	carrier = _carrier(offers.encode(_cash_offer()))

	encoded = offers.respond(carrier, [carrier], "seller-1", "accepted")

	assert encoded.metadata["status"] == "accepted"
	assert encoded.content.endswith("**Status:** accepted")


def test_respond_rejects_own_offer_and_settled_history():
	carrier = _carrier(offers.encode(_cash_offer()))
	reply = _carrier(
		offers.respond(carrier, [carrier], "seller-1", OfferStatus.REJECTED),
		message_id="m-2",
		sender_id="seller-1",
		offset=1,
	)

	with pytest.raises(ForbiddenError):
		offers.respond(carrier, [carrier], "buyer-1", "accepted")
	with pytest.raises(ValidationError) as excinfo:
		offers.respond(carrier, [carrier, reply], "seller-1", "accepted")
	assert excinfo.value.reason == "offer_already_settled"
	with pytest.raises(ValidationError) as excinfo:
		offers.respond(carrier, [carrier], "seller-1", "maybe")
	assert excinfo.value.reason == "offer_status_invalid"


def test_describe_covers_every_message_type():
	def message(kind, content="", metadata=None):
		return Message(
			id="m-x",
			conversation_id="conv-1",
			sender_id="buyer-1",
			content=content,
			type=kind,
			created_at=BASE_TS,
			metadata=metadata or {},
		)

	cash = offers.encode(_cash_offer())
	barter = offers.encode(_cash_offer(offer_type=OfferType.BARTER, offer_value=None, offer_items="Bike"))

	assert offers.describe(message(MessageType.TEXT, "hello")) == "hello"
	assert offers.describe(message(MessageType.IMAGE)) == "📷 Photo"
	assert offers.describe(message(MessageType.FILE, metadata={"file_name": "specs.pdf"})) == "📎 specs.pdf"
	assert offers.describe(message(MessageType.SYSTEM, "Conversation archived")) == "Conversation archived"
	assert offers.describe(message(MessageType.OFFER, cash.content, cash.metadata)) == "Offer (pending): ₱500 for Desk Lamp"
	assert offers.describe(message(MessageType.OFFER, barter.content, barter.metadata)) == "Barter offer (pending) for Desk Lamp"

	deleted = message(MessageType.TEXT, "gone")
	deleted.is_deleted = True
	assert offers.describe(deleted) == "Message deleted"
