"""Socket.IO namespace driving one MessagingStore per connected client."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

import socketio

from app.infra.auth import AuthenticatedUser, authenticate_socket
from app.obs import logging as obs_logging
from app.obs import metrics as obs_metrics

from .models import Outcome
from .service import MessagingStore
from .store import BackingStore, get_backing_store

_LOG = logging.getLogger(__name__)


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


def _ack(outcome: Outcome, data: Any = None) -> dict:
	if outcome.success:
		return {"ok": True, "data": data}
	return {"ok": False, "error": outcome.error, "reason": outcome.reason}


@dataclass(slots=True)
class _Session:
	user: AuthenticatedUser
	store: MessagingStore
	remove_listener: Callable[[], None]


class MessagingNamespace(socketio.AsyncNamespace):
	"""Each sid gets its own store; store change events are pushed back to that sid."""

	def __init__(self, store_factory: Optional[Callable[[], BackingStore]] = None) -> None:
		super().__init__("/messaging")
		self._store_factory = store_factory or get_backing_store
		self._sessions: Dict[str, _Session] = {}
		self._pushes: Set[asyncio.Task] = set()

	def session(self, sid: str) -> Optional[_Session]:
		return self._sessions.get(sid)

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		scope = environ.get("asgi.scope", environ)
		user = authenticate_socket(auth or environ.get("auth"), _header(scope, "x-user-id"))
		obs_metrics.socket_connected(self.namespace)
		store = MessagingStore(user.id, store=self._store_factory())
		remove = store.add_listener(lambda event, payload: self._schedule_push(sid, event, payload))
		self._sessions[sid] = _Session(user=user, store=store, remove_listener=remove)
		await self.enter_room(sid, self.user_room(user.id))
		tokens = obs_logging.bind_context(user_id=user.id)
		try:
			outcome = await store.init()
		finally:
			obs_logging.reset_context(tokens)
		await self.emit(
			"messaging:ready",
			{
				"ok": outcome.success,
				"error": outcome.error,
				"conversations": [conversation.to_dict() for conversation in store.conversations],
				"unread_total": store.unread_total,
			},
			room=sid,
		)

	async def on_disconnect(self, sid: str, reason: Any = None) -> None:
		session = self._sessions.pop(sid, None)
		if session is None:
			return
		obs_metrics.socket_disconnected(self.namespace)
		session.remove_listener()
		await session.store.dispose()
		await self.leave_room(sid, self.user_room(session.user.id))

	async def on_open(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "open")
		session = self._require(sid)
		conversation_id = (payload or {}).get("conversation_id")
		tokens = obs_logging.bind_context(user_id=session.user.id, conversation_id=conversation_id or None)
		try:
			outcome = await session.store.set_active_conversation(conversation_id or None)
		finally:
			obs_logging.reset_context(tokens)
		return _ack(outcome, [message.to_dict() for message in outcome.data or []])

	async def on_send(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "send")
		session = self._require(sid)
		payload = payload or {}
		conversation_id = str(payload.get("conversation_id") or "")
		tokens = obs_logging.bind_context(user_id=session.user.id, conversation_id=conversation_id or None)
		try:
			outcome = await session.store.send_message(
				conversation_id,
				str(payload.get("content") or ""),
				payload.get("type") or "text",
				payload.get("metadata") or None,
			)
		finally:
			obs_logging.reset_context(tokens)
		return _ack(outcome, outcome.data.to_dict() if outcome.data else None)

	async def on_read(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "read")
		session = self._require(sid)
		outcome = await session.store.mark_read(str((payload or {}).get("conversation_id") or ""))
		return _ack(outcome, {"updated": outcome.data, "unread_total": session.store.unread_total})

	async def on_typing(self, sid: str, payload: dict) -> None:
		obs_metrics.socket_event(self.namespace, "typing")
		session = self._require(sid)
		payload = payload or {}
		conversation_id = str(payload.get("conversation_id") or "")
		is_typing = bool(payload.get("is_typing", True))
		conversation = session.store.conversation(conversation_id)
		if conversation is None or not conversation.is_participant(session.user.id):
			return
		await session.store.set_typing(conversation_id, is_typing)
		await self.emit(
			"messaging:typing",
			{"conversation_id": conversation_id, "user_id": session.user.id, "is_typing": is_typing},
			room=self.user_room(conversation.peer_of(session.user.id)),
		)

	def _require(self, sid: str) -> _Session:
		session = self._sessions.get(sid)
		if session is None:
			raise ConnectionRefusedError("unauthenticated")
		return session

	def _schedule_push(self, sid: str, event: str, payload: Any) -> None:
		task = asyncio.get_running_loop().create_task(self._push(sid, event, payload))
		self._pushes.add(task)
		task.add_done_callback(self._pushes.discard)

	async def _push(self, sid: str, event: str, payload: Any) -> None:
		if sid not in self._sessions:
			return
		obs_metrics.socket_event(self.namespace, f"messaging:{event}")
		try:
			await self.emit(f"messaging:{event}", payload, room=sid)
		except Exception:
			_LOG.exception("messaging.socket_push_failed", extra={"event": event})

	@staticmethod
	def user_room(user_id: str) -> str:
		return f"user:{user_id}"
