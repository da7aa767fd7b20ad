import pytest

from app.infra.jwt import encode_access
from app.settings import settings

BUYER = "buyer-1"
SELLER = "seller-1"


def _as(user_id: str) -> dict:
	return {"X-User-Id": user_id}


def _offer_body(**overrides) -> dict:
	body = {
		"offer_type": "cash",
		"offer_description": "Cash on pickup",
		"product_id": "prod-1",
		"product_name": "Desk Lamp",
		"offer_value": 500,
		"product_price": 1200,
		"seller_id": SELLER,
	}
	body.update(overrides)
	return body


async def _create_conversation(api_client, **overrides) -> dict:
	payload = {"peer_id": SELLER, "product_id": "prod-1"}
	payload.update(overrides)
	response = await api_client.post("/messaging/conversations", json=payload, headers=_as(BUYER))
	assert response.status_code == 201, response.text
	return response.json()


@pytest.mark.asyncio
async def test_requires_authentication(api_client):
	response = await api_client.get("/messaging/conversations")

	assert response.status_code == 401
	assert response.json()["detail"] == "invalid_token"


@pytest.mark.asyncio
async def test_header_identity_is_rejected_outside_dev(api_client, monkeypatch):
	monkeypatch.setattr(settings, "environment", "production")

	header_only = await api_client.get("/messaging/conversations", headers=_as(BUYER))
	token = encode_access({"sub": BUYER, "user_type": "buyer"})
	with_token = await api_client.get("/messaging/conversations", headers={"Authorization": f"Bearer {token}"})

	assert header_only.status_code == 401
	assert with_token.status_code == 200


@pytest.mark.asyncio
async def test_create_conversation_is_find_or_create(api_client):
	first = await _create_conversation(api_client, initial_message="Hi, is the lamp available?")
	second = await _create_conversation(api_client, product_id="prod-2")

	assert first["id"] == second["id"]
	assert first["buyer_id"] == BUYER
	assert first["seller_id"] == SELLER
	assert first["peer"]["display_name"] == "Sam Seller"
	assert first["last_message"]["content"] == "Hi, is the lamp available?"


@pytest.mark.asyncio
async def test_create_conversation_rejects_self_and_blank_peers(api_client):
	self_chat = await api_client.post("/messaging/conversations", json={"peer_id": BUYER}, headers=_as(BUYER))
	blank = await api_client.post("/messaging/conversations", json={"peer_id": "undefined"}, headers=_as(BUYER))

	assert self_chat.status_code == 400
	assert self_chat.json()["detail"] == "self_conversation"
	assert blank.status_code == 400


@pytest.mark.asyncio
async def test_list_conversations_includes_unread_and_peer(api_client):
	conversation = await _create_conversation(api_client)
	await api_client.post(
		f"/messaging/conversations/{conversation['id']}/messages",
		json={"content": "Yes, still available"},
		headers=_as(SELLER),
	)

	buyer_view = await api_client.get("/messaging/conversations", headers=_as(BUYER))
	seller_view = await api_client.get("/messaging/conversations", headers=_as(SELLER))

	assert buyer_view.status_code == 200
	body = buyer_view.json()
	assert body["unread_total"] == 1
	assert body["items"][0]["unread_count"] == 1
	assert body["items"][0]["peer"]["user_id"] == SELLER
	seller_body = seller_view.json()
	assert seller_body["unread_total"] == 0
	assert seller_body["items"][0]["peer"]["display_name"] == "Bea Buyer"


@pytest.mark.asyncio
async def test_messages_round_trip_in_order(api_client):
	conversation = await _create_conversation(api_client)
	path = f"/messaging/conversations/{conversation['id']}/messages"
	for user_id, content in ((BUYER, "one"), (SELLER, "two"), (BUYER, "three")):
		response = await api_client.post(path, json={"content": content}, headers=_as(user_id))
		assert response.status_code == 201

	listed = await api_client.get(path, headers=_as(SELLER))

	assert listed.status_code == 200
	assert [item["content"] for item in listed.json()["items"]] == ["one", "two", "three"]


@pytest.mark.asyncio
async def test_send_message_errors_map_to_status_codes(api_client):
	conversation = await _create_conversation(api_client)
	path = f"/messaging/conversations/{conversation['id']}/messages"

	empty = await api_client.post(path, json={"content": "   "}, headers=_as(BUYER))
	stranger = await api_client.post(path, json={"content": "hi"}, headers=_as("stranger-1"))
	missing = await api_client.post("/messaging/conversations/nope/messages", json={"content": "hi"}, headers=_as(BUYER))
	bad_type = await api_client.post(path, json={"content": "hi", "type": "sticker"}, headers=_as(BUYER))

	assert empty.status_code == 400
	assert empty.json()["detail"] == "content_required"
	assert stranger.status_code == 403
	assert stranger.json()["detail"] == "not_participant"
	assert missing.status_code == 404
	assert bad_type.status_code == 422
	assert bad_type.json()["detail"] == "validation_error"


@pytest.mark.asyncio
async def test_offer_and_response_flow(api_client):
	created = await api_client.post("/messaging/offers", json=_offer_body(), headers=_as(BUYER))
	assert created.status_code == 201, created.text
	offer = created.json()
	respond_path = f"/messaging/conversations/{offer['conversation_id']}/offers/{offer['id']}/respond"

	own = await api_client.post(respond_path, json={"status": "accepted"}, headers=_as(BUYER))
	accepted = await api_client.post(respond_path, json={"status": "accepted"}, headers=_as(SELLER))
	settled = await api_client.post(respond_path, json={"status": "rejected"}, headers=_as(SELLER))

	assert offer["type"] == "offer"
	assert offer["metadata"]["offerValue"] == 500
	assert offer["content"].startswith("🛍️ **MAKE OFFER REQUEST**")
	assert own.status_code == 403
	assert accepted.status_code == 201
	assert accepted.json()["metadata"]["status"] == "accepted"
	assert settled.status_code == 400
	assert settled.json()["detail"] == "offer_already_settled"


@pytest.mark.asyncio
async def test_offer_request_validation(api_client):
	no_target = await api_client.post(
		"/messaging/offers", json=_offer_body(seller_id=None), headers=_as(BUYER)
	)
	barter_without_items = await api_client.post(
		"/messaging/offers",
		json=_offer_body(offer_type="barter", offer_value=None),
		headers=_as(BUYER),
	)

	assert no_target.status_code == 422
	assert barter_without_items.status_code == 400
	assert barter_without_items.json()["detail"] == "offer_items_required"


@pytest.mark.asyncio
async def test_only_sender_can_edit_or_delete(api_client):
	conversation = await _create_conversation(api_client)
	sent = await api_client.post(
		f"/messaging/conversations/{conversation['id']}/messages",
		json={"content": "helo"},
		headers=_as(BUYER),
	)
	message_id = sent.json()["id"]

	forbidden = await api_client.patch(f"/messaging/messages/{message_id}", json={"content": "x"}, headers=_as(SELLER))
	edited = await api_client.patch(f"/messaging/messages/{message_id}", json={"content": "hello"}, headers=_as(BUYER))
	deleted = await api_client.delete(f"/messaging/messages/{message_id}", headers=_as(BUYER))

	assert forbidden.status_code == 403
	assert forbidden.json()["detail"] == "not_sender"
	assert edited.json()["is_edited"] is True
	assert edited.json()["content"] == "hello"
	assert deleted.json()["is_deleted"] is True


@pytest.mark.asyncio
async def test_mark_read_and_unread_summary(api_client):
	conversation = await _create_conversation(api_client)
	path = f"/messaging/conversations/{conversation['id']}/messages"
	for content in ("a", "b"):
		await api_client.post(path, json={"content": content}, headers=_as(SELLER))

	before = await api_client.get("/messaging/unread", headers=_as(BUYER))
	first = await api_client.post(f"/messaging/conversations/{conversation['id']}/read", headers=_as(BUYER))
	second = await api_client.post(f"/messaging/conversations/{conversation['id']}/read", headers=_as(BUYER))

	assert before.json() == {"counts": {conversation["id"]: 2}, "total": 2}
	assert first.json() == {"conversation_id": conversation["id"], "updated": 2, "unread_total": 0}
	assert second.json()["updated"] == 0


@pytest.mark.asyncio
async def test_archive_blocks_new_messages(api_client):
	conversation = await _create_conversation(api_client)

	archived = await api_client.post(f"/messaging/conversations/{conversation['id']}/archive", headers=_as(SELLER))
	blocked = await api_client.post(
		f"/messaging/conversations/{conversation['id']}/messages",
		json={"content": "hello?"},
		headers=_as(BUYER),
	)
	listed = await api_client.get("/messaging/conversations", headers=_as(BUYER))

	assert archived.json()["status"] == "archived"
	assert blocked.status_code == 400
	assert blocked.json()["detail"] == "conversation_archived"
	assert listed.json()["items"] == []


@pytest.mark.asyncio
async def test_attachment_upload_creates_image_message(api_client):
	conversation = await _create_conversation(api_client)

	response = await api_client.post(
		f"/messaging/conversations/{conversation['id']}/attachments",
		files={"file": ("lamp.png", b"\x89PNG\r\n\x1a\n", "image/png")},
		data={"caption": "Here it is"},
		headers=_as(SELLER),
	)
	rejected = await api_client.post(
		f"/messaging/conversations/{conversation['id']}/attachments",
		files={"file": ("notes.txt", b"plain", "text/plain")},
		headers=_as(SELLER),
	)

	assert response.status_code == 201, response.text
	body = response.json()
	assert body["type"] == "image"
	assert body["content"] == "Here it is"
	assert body["metadata"]["file_name"] == "lamp.png"
	assert body["metadata"]["url"].startswith(settings.upload_base_url)
	assert rejected.status_code == 400
	assert rejected.json()["detail"] == "unsupported_media_type"


@pytest.mark.asyncio
async def test_store_outage_maps_to_service_unavailable(api_client, memory_store):
	memory_store.offline = True

	response = await api_client.get("/messaging/conversations", headers=_as(BUYER))

	assert response.status_code == 503
	assert response.json()["detail"] == "store_unavailable"
	assert "request_id" in response.json()
