"""Partner presence detection for matched sessions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from gigglo.infra.store import ErrorCallback, Store, Subscription

from .models import MatchRecord, match_key

logger = logging.getLogger(__name__)

VANISH_LEFT = "left"
VANISH_GHOST = "ghost"

VanishCallback = Callable[[str], Awaitable[None]]


class NotificationBridge:
	"""Watch the partner's match record.

	A partner that ends, skips or disconnects deletes its record
	(``"left"``). A record that still exists but names another partner or
	room means a concurrent searcher overwrote it (``"ghost"``). Each watch
	reports at most once.

	The two match records of a pairing are written independently, so the
	partner record may not exist yet when the watch starts. Absence before the
	record was ever seen is re-checked after ``confirm_absent_seconds``.
	"""

	def __init__(self, store: Store, *, confirm_absent_seconds: float = 1.0) -> None:
		self._store = store
		self._confirm_absent = max(0.0, confirm_absent_seconds)

	async def watch(
		self,
		self_uid: str,
		partner_uid: str,
		room_id: str,
		on_vanish: VanishCallback,
		*,
		on_error: Optional[ErrorCallback] = None,
	) -> Subscription:
		key = match_key(partner_uid)
		fired = False
		seen = False

		async def _on_change(value: Any) -> None:
			nonlocal fired, seen
			if fired:
				return
			reason = _classify(value, self_uid, room_id)
			if reason == VANISH_LEFT and not seen:
				await asyncio.sleep(self._confirm_absent)
				reason = _classify(await self._store.get(key), self_uid, room_id)
			if fired:
				return
			if reason is None:
				seen = True
				return
			fired = True
			logger.info("partner vanished reason=%s room=%s", reason, room_id)
			await on_vanish(reason)

		return await self._store.subscribe(key, _on_change, on_error=on_error)


def _classify(value: Any, self_uid: str, room_id: str) -> Optional[str]:
	if not value:
		return VANISH_LEFT
	try:
		record = MatchRecord.from_dict(value)
	except (KeyError, TypeError, ValueError):
		return VANISH_GHOST
	if record.points_to(self_uid, room_id):
		return None
	return VANISH_GHOST
