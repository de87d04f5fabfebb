"""Pool of users waiting to be matched."""

from __future__ import annotations

import logging
import time
from typing import Callable, List

from gigglo.domain.identity import PublicInfo
from gigglo.infra.store import Store
from gigglo.obs import metrics as obs_metrics

from .models import QUEUE_COLLECTION, QueueEntry, queue_key

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 30.0


def _now_ms() -> int:
	return int(time.time() * 1000)


class QueueManager:
	"""Queue of waiting users keyed by uid.

	``scan`` returns candidates in snapshot iteration order. Nothing here is
	fair or FIFO: two searchers can pick the same candidate, and the oldest
	waiter is not preferred.
	"""

	def __init__(self, store: Store, *, clock: Callable[[], int] = _now_ms) -> None:
		self._store = store
		self._clock = clock

	async def join(self, uid: str, info: PublicInfo) -> QueueEntry:
		entry = QueueEntry(
			uid=uid,
			display_name=info.display_name,
			group_attributes=dict(info.group_attributes),
			joined_at=self._clock(),
		)
		# Upsert: a second join replaces the first entry
		await self._store.upsert(queue_key(uid), entry.to_dict())
		obs_metrics.inc_queue_join()
		logger.debug("queue join uid=%s", uid)
		return entry

	async def leave(self, uid: str) -> None:
		await self._store.delete(queue_key(uid))

	async def scan(self, exclude_uid: str, max_age: float = DEFAULT_MAX_AGE_SECONDS) -> List[QueueEntry]:
		snapshot = await self._store.get_children(QUEUE_COLLECTION)
		now = self._clock()
		max_age_ms = int(max_age * 1000)
		candidates: List[QueueEntry] = []
		for uid, row in snapshot.items():
			if uid == exclude_uid:
				continue
			try:
				entry = QueueEntry.from_dict(row)
			except (KeyError, TypeError, ValueError):
				logger.warning("skipping malformed queue entry uid=%s", uid)
				continue
			if entry.uid == exclude_uid:
				continue
			if now - entry.joined_at >= max_age_ms:
				continue
			candidates.append(entry)
		obs_metrics.observe_queue_scan(len(candidates))
		return candidates
