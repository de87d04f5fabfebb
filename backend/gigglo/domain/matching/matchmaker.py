"""Pairing of searching users.

There is no arbiter. A searcher scans the queue, picks the first fresh
candidate and writes both match records itself. The three writes are
independent, so two searchers that pick the same candidate both "succeed";
whoever writes ``matches/<candidate>`` last wins and the other is left in a
ghost match. The losing side finds out through its partner watch
(``NotificationBridge``) and goes back to searching.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from gigglo.domain.identity import Profile, PublicInfo
from gigglo.infra.store import Store
from gigglo.obs import metrics as obs_metrics

from .exceptions import AlreadyActive, PartialWriteFailure, VerificationRequired
from .models import MatchRecord, SessionState, match_key, new_room_id, queue_key
from .queue import DEFAULT_MAX_AGE_SECONDS, QueueManager

logger = logging.getLogger(__name__)


def _now_ms() -> int:
	return int(time.time() * 1000)


class Matchmaker:
	def __init__(
		self,
		store: Store,
		queue: QueueManager,
		*,
		max_age: float = DEFAULT_MAX_AGE_SECONDS,
		room_id_factory: Callable[[], str] = new_room_id,
		clock: Callable[[], int] = _now_ms,
	) -> None:
		self._store = store
		self._queue = queue
		self._max_age = max_age
		self._room_id_factory = room_id_factory
		self._clock = clock

	async def start_match(self, profile: Profile, state: SessionState) -> Optional[MatchRecord]:
		"""Pair with the first fresh candidate, or join the queue.

		Returns the caller's match record when a candidate was taken and
		``None`` when the caller was queued and must wait for someone else to
		pair with it.
		"""
		self.check_eligible(profile, state)
		return await self.find_or_queue(profile)

	def check_eligible(self, profile: Profile, state: SessionState) -> None:
		if not profile.is_verified:
			raise VerificationRequired()
		if state is not SessionState.IDLE:
			raise AlreadyActive()

	async def find_or_queue(self, profile: Profile) -> Optional[MatchRecord]:
		candidates = await self._queue.scan(profile.uid, self._max_age)
		if candidates:
			partner = candidates[0]
			return await self.create_match(profile.public_info(), partner.info)
		await self._queue.join(profile.uid, profile.public_info())
		return None

	async def create_match(self, self_info: PublicInfo, partner_info: PublicInfo) -> MatchRecord:
		room_id = self._room_id_factory()
		created_at = self._clock()
		own = MatchRecord(room_id=room_id, partner=partner_info, created_at=created_at)
		mirror = MatchRecord(room_id=room_id, partner=self_info, created_at=created_at)
		logger.info("creating match room=%s", room_id, extra={"peer_uid": partner_info.uid})

		results = await asyncio.gather(
			self._store.upsert(match_key(self_info.uid), own.to_dict()),
			self._store.upsert(match_key(partner_info.uid), mirror.to_dict()),
			self._store.delete(queue_key(partner_info.uid)),
			return_exceptions=True,
		)
		own_result, partner_result, queue_result = results
		for result in results:
			if isinstance(result, asyncio.CancelledError):
				raise result
		# No rollback: the peer heals through its own watch and timeouts
		if isinstance(partner_result, BaseException):
			obs_metrics.inc_match_write_failure("partner_record")
			logger.warning("partner match record write failed room=%s: %s", room_id, partner_result)
		if isinstance(queue_result, BaseException):
			obs_metrics.inc_match_write_failure("queue_entry")
			logger.warning("partner queue removal failed room=%s: %s", room_id, queue_result)
		if isinstance(own_result, BaseException):
			obs_metrics.inc_match_write_failure("own_record")
			raise PartialWriteFailure("own_record") from own_result
		obs_metrics.inc_match_created()
		return own
