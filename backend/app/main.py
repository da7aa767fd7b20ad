"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.staticfiles import StaticFiles

from app.api import messaging, ops
from app.api.errors import install_error_handlers
from app.domain.messaging.sockets import MessagingNamespace
from app.domain.messaging.store import PostgresBackingStore, create_backing_store, set_backing_store
from app.infra import postgres
from app.infra.redis import redis_client
from app.obs import init as obs_init
from app.obs.tracing import shutdown_tracing
from app.settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
	# Falls back to the in-memory store when Postgres is unreachable.
	store = await create_backing_store()
	if isinstance(store, PostgresBackingStore) and settings.is_dev():
		await store.ensure_schema(unique_active_pair=settings.messaging_unique_active_pair)
	set_backing_store(store)
	app.state.messaging_store = store
	try:
		yield
	finally:
		if isinstance(store, PostgresBackingStore):
			await store.close()
		set_backing_store(None)
		await postgres.close_pool()
		await redis_client.close()
		shutdown_tracing()


app = FastAPI(title="Marketplace Messaging", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(getattr(settings, "cors_allow_origins", []))
if not allow_origins:
	allow_origins = ["http://localhost:5173", "http://localhost:3000"] if settings.is_dev() else []

# Starlette disallows wildcard '*' with allow_credentials=True. Replace '*' with explicit origins.
if "*" in allow_origins:
	allow_origins = ["http://localhost:5173", "http://localhost:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

# Static serving for message attachments in dev
if settings.is_dev():
	upload_root = Path(settings.upload_dir).resolve()
	upload_root.mkdir(parents=True, exist_ok=True)
	app.mount("/uploads", StaticFiles(directory=str(upload_root), check_dir=True), name="uploads")

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
messaging_namespace = MessagingNamespace()
sio.register_namespace(messaging_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.include_router(messaging.router)
app.include_router(ops.router)
