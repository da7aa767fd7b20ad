"""Pull-based unread counters for one user."""

from __future__ import annotations

from typing import Dict, Iterable

from .store import BackingStore


class UnreadCounter:
	"""Per-conversation unread counts for ``user_id``.

	Counts are always recomputed from the store (messages not sent by the user
	and not yet read); they are never incremented locally, so a missed signal
	cannot make them drift.
	"""

	def __init__(self, store: BackingStore, user_id: str) -> None:
		self._store = store
		self._user_id = user_id
		self.counts: Dict[str, int] = {}

	async def refresh(self, conversation_ids: Iterable[str]) -> Dict[str, int]:
		ids = list(dict.fromkeys(conversation_ids))
		if not ids:
			return {}
		fresh = await self._store.count_unread(ids, self._user_id)
		for conversation_id in ids:
			self.counts[conversation_id] = int(fresh.get(conversation_id, 0))
		return {conversation_id: self.counts[conversation_id] for conversation_id in ids}

	async def refresh_one(self, conversation_id: str) -> int:
		fresh = await self.refresh([conversation_id])
		return fresh.get(conversation_id, 0)

	def on_mark_read(self, conversation_id: str) -> None:
		self.counts[conversation_id] = 0

	def forget(self, conversation_id: str) -> None:
		self.counts.pop(conversation_id, None)

	def get(self, conversation_id: str) -> int:
		return self.counts.get(conversation_id, 0)

	def total(self) -> int:
		return sum(self.counts.values())
