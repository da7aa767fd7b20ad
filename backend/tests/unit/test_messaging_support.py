import asyncio

import pytest

from app.domain.messaging.attachments import LocalAttachmentStorage, message_type_for, validate_attachment
from app.domain.messaging.exceptions import ValidationError
from app.domain.messaging.models import MessageType
from app.domain.messaging.participants import ParticipantCache
from app.domain.messaging.store import InMemoryBackingStore
from app.domain.messaging.typing_status import TypingIndicator, typing_key
from app.domain.messaging.unread import UnreadCounter
from app.settings import settings


class CountingStore(InMemoryBackingStore):
	def __init__(self, **kwargs) -> None:
		super().__init__(**kwargs)
		self.profile_calls = []

	async def fetch_profiles(self, partition, user_ids):
		self.profile_calls.append((partition, list(user_ids)))
		await asyncio.sleep(0)
		return await super().fetch_profiles(partition, user_ids)


def _profiles_store(**kwargs):
	return CountingStore(
		profiles={
			"user_profiles": [
				{"id": "seller-1", "display_name": "Sam Seller", "profile_image": "https://cdn.example/sam.png", "user_type": "seller"},
				{"id": "both-1", "display_name": "Seller Side", "profile_image": None, "user_type": "seller"},
			],
			"buyer_users": [
				{"id": "buyer-1", "display_name": "Bea Buyer", "profile_image": None, "user_type": "buyer"},
				{"id": "both-1", "display_name": "Buyer Side", "profile_image": None, "user_type": "buyer"},
			],
		},
		**kwargs,
	)


@pytest.mark.asyncio
async def test_participants_resolve_in_partition_priority_order():
	store = _profiles_store()
	cache = ParticipantCache(store)

	resolved = await cache.resolve_many(["seller-1", "buyer-1", "both-1"])

	assert resolved["seller-1"].display_name == "Sam Seller"
	assert resolved["seller-1"].avatar_url == "https://cdn.example/sam.png"
	assert resolved["seller-1"].role == "seller"
	assert resolved["buyer-1"].role == "buyer"
	assert resolved["both-1"].display_name == "Seller Side"
	assert [partition for partition, _ in store.profile_calls] == ["user_profiles", "buyer_users"]
	assert store.profile_calls[1][1] == ["buyer-1"]


@pytest.mark.asyncio
async def test_unknown_participant_gets_cached_placeholder():
	store = _profiles_store()
	cache = ParticipantCache(store)

	first = await cache.resolve("ghost-1")
	calls = len(store.profile_calls)
	second = await cache.resolve("ghost-1")

	assert first.display_name == settings.messaging_placeholder_name
	assert second == first
	assert len(store.profile_calls) == calls
	assert "ghost-1" in cache


@pytest.mark.asyncio
async def test_concurrent_resolves_share_one_lookup():
	store = _profiles_store()
	cache = ParticipantCache(store)

	first, second = await asyncio.gather(cache.resolve("seller-1"), cache.resolve("seller-1"))

	assert first.display_name == second.display_name == "Sam Seller"
	assert store.profile_calls == [("user_profiles", ["seller-1"])]


@pytest.mark.asyncio
async def test_lookup_failure_returns_uncached_placeholder():
	store = _profiles_store()
	cache = ParticipantCache(store)
	store.offline = True

	degraded = await cache.resolve("seller-1")
	store.offline = False
	recovered = await cache.resolve("seller-1")

	assert degraded.display_name == settings.messaging_placeholder_name
	assert recovered.display_name == "Sam Seller"


@pytest.mark.asyncio
async def test_unread_counts_recompute_from_store():
	store = InMemoryBackingStore()
	first = await store.insert_conversation({"buyer_id": "buyer-1", "seller_id": "seller-1"})
	second = await store.insert_conversation({"buyer_id": "buyer-1", "seller_id": "seller-2"})
	for content in ("a", "b"):
		await store.insert_message({"conversation_id": first["id"], "sender_id": "seller-1", "content": content})
	await store.insert_message({"conversation_id": first["id"], "sender_id": "buyer-1", "content": "mine"})
	deleted = await store.insert_message({"conversation_id": second["id"], "sender_id": "seller-2", "content": "x"})
	await store.update_message(deleted["id"], {"is_deleted": True})
	counter = UnreadCounter(store, "buyer-1")

	counts = await counter.refresh([first["id"], second["id"]])

	assert counts == {first["id"]: 2, second["id"]: 0}
	assert counter.total() == 2

	await store.mark_read(first["id"], "buyer-1")
	counter.on_mark_read(first["id"])
	assert counter.total() == 0
	assert await counter.refresh_one(first["id"]) == 0

	counter.forget(first["id"])
	assert counter.get(first["id"]) == 0


@pytest.mark.asyncio
async def test_typing_flag_self_clears_after_timeout(fake_redis):
	changes = []
	indicator = TypingIndicator("buyer-1", timeout=0.05, on_change=lambda cid, flag: changes.append((cid, flag)))

	await indicator.set_typing("conv-1", True)
	await indicator.set_typing("conv-1", True)

	assert indicator.is_typing("conv-1")
	assert await fake_redis.get(typing_key("conv-1", "buyer-1")) == "1"

	await asyncio.sleep(0.1)

	assert not indicator.is_typing("conv-1")
	assert indicator.active == {}
	assert changes == [("conv-1", True), ("conv-1", False)]


@pytest.mark.asyncio
async def test_typing_stop_clears_shared_key_and_lists_peers(fake_redis):
	mine = TypingIndicator("buyer-1", timeout=5)
	peer = TypingIndicator("seller-1", timeout=5)

	await mine.set_typing("conv-1", True)
	await peer.set_typing("conv-1", True)
	assert await mine.typing_users("conv-1") == ["seller-1"]

	await peer.set_typing("conv-1", False)

	assert await mine.typing_users("conv-1") == []
	assert await fake_redis.exists(typing_key("conv-1", "seller-1")) == 0
	mine.close()
	peer.close()
	assert mine.active == {}


@pytest.mark.parametrize(
	"file_name, media_type, size, reason",
	[
		("run.sh", "application/x-sh", 10, "unsupported_media_type"),
		("empty.png", "image/png", 0, "attachment_empty"),
		("huge.png", "image/png", 10 * 1024 * 1024 + 1, "attachment_too_large"),
		("  ", "image/png", 10, "file_name_required"),
	],
)
def test_validate_attachment_rejects(file_name, media_type, size, reason):
	with pytest.raises(ValidationError) as excinfo:
		validate_attachment(file_name, media_type, size)
	assert excinfo.value.reason == reason


def test_message_type_for_media():
	assert message_type_for("image/jpeg") is MessageType.IMAGE
	assert message_type_for("application/pdf") is MessageType.FILE


@pytest.mark.asyncio
async def test_local_storage_writes_under_owner_prefix(tmp_path):
	storage = LocalAttachmentStorage(tmp_path, base_url="https://files.example/uploads/")

	stored = await storage.upload("buyer-1", "photos/Lamp.PNG", "image/png", b"\x89PNG....")

	assert stored.key.startswith("messages/buyer-1/")
	assert stored.key.endswith(".png")
	assert stored.url == f"https://files.example/uploads/{stored.key}"
	assert stored.file_name == "Lamp.PNG"
	assert (tmp_path / stored.key).read_bytes() == b"\x89PNG...."
	assert stored.to_metadata()["size_bytes"] == 8


@pytest.mark.asyncio
@pytest.mark.parametrize("owner_id", ["../../x", "..", "a/b", "a\\b", ""])
async def test_local_storage_rejects_owner_ids_that_escape_the_prefix(tmp_path, owner_id):
	storage = LocalAttachmentStorage(tmp_path / "uploads")

	with pytest.raises(ValidationError) as excinfo:
		await storage.upload(owner_id, "lamp.png", "image/png", b"\x89PNG....")

	assert excinfo.value.reason == "invalid_owner"
	assert list(tmp_path.rglob("*.png")) == []
