import asyncio

import pytest

from app.domain.messaging.conversations import ConversationRepository
from app.domain.messaging.exceptions import ConversationConflictError, ForbiddenError, NotFoundError, ValidationError
from app.domain.messaging.messages import MessageRepository
from app.domain.messaging.models import ConversationStatus, MessageType
from app.domain.messaging.store import InMemoryBackingStore


class SlowLookupStore(InMemoryBackingStore):
	"""Yields inside the active-pair lookup so concurrent creators interleave."""

	async def find_active_conversation(self, buyer_id, seller_id):
		row = await super().find_active_conversation(buyer_id, seller_id)
		await asyncio.sleep(0)
		return row


def _repos(store):
	conversations = ConversationRepository(store)
	return conversations, MessageRepository(store, conversations)


@pytest.mark.asyncio
async def test_find_or_create_reuses_pair_regardless_of_product():
	conversations, _ = _repos(InMemoryBackingStore())

	first = await conversations.find_or_create("buyer-1", "seller-1", "prod-1")
	second = await conversations.find_or_create("buyer-1", "seller-1", "prod-2")

	assert second.id == first.id
	assert second.product_id == "prod-1"
	assert second.status is ConversationStatus.ACTIVE


@pytest.mark.asyncio
@pytest.mark.parametrize(
	"buyer_id, seller_id",
	[("", "seller-1"), ("buyer-1", "undefined"), ("null", "seller-1"), ("buyer-1", "buyer-1")],
)
async def test_find_or_create_rejects_invalid_pairs(buyer_id, seller_id):
	conversations, _ = _repos(InMemoryBackingStore())

	with pytest.raises(ValidationError):
		await conversations.find_or_create(buyer_id, seller_id)


@pytest.mark.asyncio
async def test_concurrent_create_resolves_to_single_row_with_unique_index():
	store = SlowLookupStore(unique_active_pair=True)
	conversations, _ = _repos(store)

	results = await asyncio.gather(
		conversations.find_or_create("buyer-1", "seller-1"),
		conversations.find_or_create("buyer-1", "seller-1"),
	)

	assert results[0].id == results[1].id
	rows = await store.list_conversations("buyer-1", limit=10)
	assert len(rows) == 1


@pytest.mark.asyncio
async def test_concurrent_create_without_index_converges_on_newest():
	store = SlowLookupStore()
	conversations, _ = _repos(store)

	await asyncio.gather(
		conversations.find_or_create("buyer-1", "seller-1"),
		conversations.find_or_create("buyer-1", "seller-1"),
	)
	rows = await store.list_conversations("buyer-1", limit=10)
	newest = max(rows, key=lambda row: (row["created_at"], row["id"]))

	again = await conversations.find_or_create("buyer-1", "seller-1")

	assert len(rows) == 2
	assert again.id == newest["id"]


@pytest.mark.asyncio
async def test_store_rejects_second_active_pair_when_unique():
	store = InMemoryBackingStore(unique_active_pair=True)
	await store.insert_conversation({"buyer_id": "buyer-1", "seller_id": "seller-1"})

	with pytest.raises(ConversationConflictError):
		await store.insert_conversation({"buyer_id": "buyer-1", "seller_id": "seller-1"})


@pytest.mark.asyncio
async def test_list_for_user_orders_by_latest_activity():
	conversations, messages = _repos(InMemoryBackingStore())
	older = await conversations.find_or_create("buyer-1", "seller-1")
	newer = await conversations.find_or_create("buyer-1", "seller-2")
	await conversations.find_or_create("buyer-9", "seller-9")

	await messages.append(older.id, "buyer-1", "bump")
	listed = await conversations.list_for_user("buyer-1")

	assert [item.id for item in listed] == [older.id, newer.id]
	assert listed[0].last_message is not None
	assert listed[0].last_message.content == "bump"


@pytest.mark.asyncio
async def test_archive_hides_conversation_and_allows_a_fresh_one():
	conversations, _ = _repos(InMemoryBackingStore(unique_active_pair=True))
	original = await conversations.find_or_create("buyer-1", "seller-1")

	archived = await conversations.archive(original.id)
	listed = await conversations.list_for_user("buyer-1")
	fresh = await conversations.find_or_create("buyer-1", "seller-1")

	assert archived.status is ConversationStatus.ARCHIVED
	assert listed == []
	assert fresh.id != original.id


@pytest.mark.asyncio
async def test_messages_list_in_ascending_order_with_limit():
	conversations, messages = _repos(InMemoryBackingStore())
	conversation = await conversations.find_or_create("buyer-1", "seller-1")
	for index in range(5):
		await messages.append(conversation.id, "buyer-1", f"msg-{index}")

	listed = await messages.list(conversation.id, limit=3)

	assert [item.content for item in listed] == ["msg-2", "msg-3", "msg-4"]
	assert listed[0].created_at < listed[1].created_at < listed[2].created_at


@pytest.mark.asyncio
async def test_append_validates_before_writing():
	store = InMemoryBackingStore()
	conversations, messages = _repos(store)
	conversation = await conversations.find_or_create("buyer-1", "seller-1")

	with pytest.raises(ValidationError) as excinfo:
		await messages.append(conversation.id, "buyer-1", "   ")
	assert excinfo.value.reason == "content_required"
	with pytest.raises(ValidationError):
		await messages.append(conversation.id, "buyer-1", "hi", "sticker")
	with pytest.raises(ValidationError):
		await messages.append(conversation.id, "buyer-1", "hi", metadata={"bad": object()})

	assert await messages.list(conversation.id) == []


@pytest.mark.asyncio
async def test_attachment_messages_may_omit_caption():
	conversations, messages = _repos(InMemoryBackingStore())
	conversation = await conversations.find_or_create("buyer-1", "seller-1")

	message = await messages.append(
		conversation.id, "buyer-1", "", MessageType.IMAGE, {"url": "https://cdn.example/a.png"}
	)
	refreshed = await conversations.get(conversation.id)

	assert message.type is MessageType.IMAGE
	assert refreshed.last_message.content == "📷 Photo"


@pytest.mark.asyncio
async def test_append_to_missing_conversation_raises_not_found():
	_, messages = _repos(InMemoryBackingStore())

	with pytest.raises(NotFoundError):
		await messages.append("missing", "buyer-1", "hello")


@pytest.mark.asyncio
async def test_mark_read_skips_own_messages_and_is_idempotent():
	store = InMemoryBackingStore()
	conversations, messages = _repos(store)
	conversation = await conversations.find_or_create("buyer-1", "seller-1")
	await messages.append(conversation.id, "seller-1", "hi")
	await messages.append(conversation.id, "seller-1", "still there?")
	await messages.append(conversation.id, "buyer-1", "yes")

	first = await messages.mark_read(conversation.id, "buyer-1")
	second = await messages.mark_read(conversation.id, "buyer-1")
	listed = await messages.list(conversation.id)

	assert first == 2
	assert second == 0
	assert [item.is_read for item in listed] == [True, True, False]


@pytest.mark.asyncio
async def test_edit_and_soft_delete():
	conversations, messages = _repos(InMemoryBackingStore())
	conversation = await conversations.find_or_create("buyer-1", "seller-1")
	message = await messages.append(conversation.id, "buyer-1", "helo")

	edited = await messages.edit(message.id, "hello")
	deleted = await messages.delete(message.id)

	assert edited.content == "hello"
	assert edited.is_edited is True
	assert deleted.is_deleted is True
	assert deleted.content == ""
	with pytest.raises(ValidationError):
		await messages.edit(message.id, "again")
	with pytest.raises(ValidationError):
		await messages.delete(message.id)


@pytest.mark.asyncio
async def test_get_owned_checks_sender():
	conversations, messages = _repos(InMemoryBackingStore())
	conversation = await conversations.find_or_create("buyer-1", "seller-1")
	message = await messages.append(conversation.id, "buyer-1", "mine")

	owned = await messages.get_owned(message.id, "buyer-1")

	assert owned.id == message.id
	with pytest.raises(ForbiddenError) as excinfo:
		await messages.get_owned(message.id, "seller-1")
	assert excinfo.value.reason == "not_sender"
