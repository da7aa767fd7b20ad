import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from app.domain.messaging import store as store_module
from app.domain.messaging.store import InMemoryBackingStore
from app.infra import postgres
from app.main import app
from app.settings import settings

BUYER = "buyer-1"
SELLER = "seller-1"


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from app.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings(tmp_path):
	"""Ensure a consistent test environment.

	API and socket tests authenticate via the X-User-Id header, which is only
	accepted in dev mode.
	"""
	original_env = settings.environment
	original_upload_dir = settings.upload_dir
	settings.environment = "dev"
	settings.upload_dir = str(tmp_path / "uploads")
	try:
		yield
	finally:
		settings.environment = original_env
		settings.upload_dir = original_upload_dir


@pytest.fixture
def memory_store():
	store = InMemoryBackingStore(
		profiles={
			"user_profiles": [
				{"id": SELLER, "display_name": "Sam Seller", "profile_image": "https://cdn.example/sam.png", "user_type": "seller"},
			],
			"buyer_users": [
				{"id": BUYER, "display_name": "Bea Buyer", "profile_image": None, "user_type": "buyer"},
			],
		}
	)
	store_module.set_backing_store(store)
	try:
		yield store
	finally:
		store_module.set_backing_store(None)


@pytest_asyncio.fixture
async def api_client(memory_store):
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
