"""Session-lifetime cache of counterparty display descriptors."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Sequence

from app.obs import metrics as obs_metrics
from app.settings import settings

from .exceptions import MessagingError
from .models import ParticipantDescriptor
from .store import BackingStore

_LOG = logging.getLogger(__name__)


def placeholder(user_id: str) -> ParticipantDescriptor:
	return ParticipantDescriptor(user_id=user_id, display_name=settings.messaging_placeholder_name)


def _descriptor(row: dict) -> ParticipantDescriptor:
	name = (row.get("display_name") or "").strip()
	return ParticipantDescriptor(
		user_id=str(row["id"]),
		display_name=name or settings.messaging_placeholder_name,
		avatar_url=row.get("profile_image") or None,
		role=str(row.get("user_type") or "unknown"),
	)


class ParticipantCache:
	"""Additive cache; partitions are searched in priority order and misses get a placeholder.

	Lookup failures never propagate. They return an uncached placeholder so the
	next resolve tries again.
	"""

	def __init__(self, store: BackingStore, *, partitions: Optional[Sequence[str]] = None) -> None:
		self._store = store
		self._partitions = tuple(partitions or settings.messaging_profile_partitions)
		self._cache: Dict[str, ParticipantDescriptor] = {}
		self._inflight: Dict[str, asyncio.Future] = {}

	def __contains__(self, user_id: str) -> bool:
		return user_id in self._cache

	def cached(self, user_id: str) -> Optional[ParticipantDescriptor]:
		return self._cache.get(user_id)

	async def resolve(self, user_id: str) -> ParticipantDescriptor:
		resolved = await self.resolve_many([user_id])
		return resolved[user_id]

	async def resolve_many(self, user_ids: Iterable[str]) -> Dict[str, ParticipantDescriptor]:
		wanted = [user_id for user_id in dict.fromkeys(user_ids) if user_id]
		result: Dict[str, ParticipantDescriptor] = {}
		waiting: Dict[str, asyncio.Future] = {}
		missing: List[str] = []
		for user_id in wanted:
			if user_id in self._cache:
				obs_metrics.inc_participant_lookup("hit")
				result[user_id] = self._cache[user_id]
			elif user_id in self._inflight:
				waiting[user_id] = self._inflight[user_id]
			else:
				missing.append(user_id)

		if missing:
			loop = asyncio.get_running_loop()
			futures = {user_id: loop.create_future() for user_id in missing}
			self._inflight.update(futures)
			fetched: Dict[str, ParticipantDescriptor] = {}
			try:
				fetched = await self._fetch(missing)
			finally:
				# Settle every future, even when the fetch itself was cancelled.
				for user_id in missing:
					self._inflight.pop(user_id, None)
					future = futures[user_id]
					if not future.done():
						future.set_result(fetched.get(user_id) or placeholder(user_id))
			for user_id in missing:
				result[user_id] = fetched.get(user_id) or placeholder(user_id)

		for user_id, future in waiting.items():
			result[user_id] = await future
		return result

	async def _fetch(self, user_ids: List[str]) -> Dict[str, ParticipantDescriptor]:
		found: Dict[str, ParticipantDescriptor] = {}
		remaining = list(user_ids)
		try:
			for partition in self._partitions:
				if not remaining:
					break
				rows = await self._store.fetch_profiles(partition, remaining)
				for row in rows:
					descriptor = _descriptor(row)
					if descriptor.user_id in remaining:
						found[descriptor.user_id] = descriptor
				remaining = [user_id for user_id in remaining if user_id not in found]
		except MessagingError as exc:
			obs_metrics.inc_participant_lookup("error")
			_LOG.warning("messaging.participant_lookup_failed", extra={"reason": exc.reason, "count": len(user_ids)})
			return found

		self._cache.update(found)
		for user_id in remaining:
			# Not found anywhere: the placeholder is a stable answer, cache it.
			self._cache[user_id] = placeholder(user_id)
			obs_metrics.inc_participant_lookup("placeholder")
		for _ in found:
			obs_metrics.inc_participant_lookup("found")
		return {user_id: self._cache[user_id] for user_id in user_ids if user_id in self._cache}
