"""Session countdown."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

DEFAULT_DURATION_SECONDS = 300
DEFAULT_EXTEND_SECONDS = 300
DEFAULT_LOW_TIME_SECONDS = 60


class Countdown:
	"""Whole-second countdown for one matched session.

	``extend`` is allowed at any time; callers are expected to offer it only
	while ``low_time`` is true.
	"""

	def __init__(
		self,
		duration: int = DEFAULT_DURATION_SECONDS,
		*,
		tick_seconds: float = 1.0,
		low_time_threshold: int = DEFAULT_LOW_TIME_SECONDS,
	) -> None:
		self.remaining = max(0, int(duration))
		self._tick_seconds = tick_seconds
		self._low_time_threshold = low_time_threshold

	@property
	def low_time(self) -> bool:
		return 0 < self.remaining < self._low_time_threshold

	@property
	def expired(self) -> bool:
		return self.remaining <= 0

	def extend(self, seconds: int = DEFAULT_EXTEND_SECONDS) -> int:
		self.remaining += max(0, int(seconds))
		return self.remaining

	def tick(self) -> int:
		if self.remaining > 0:
			self.remaining -= 1
		return self.remaining

	async def run(self, on_tick: Callable[[int], None], on_expire: Callable[[], Awaitable[None]]) -> None:
		# on_tick is synchronous so nothing can interleave between the last
		# tick and on_expire claiming the session exit
		while self.remaining > 0:
			await asyncio.sleep(self._tick_seconds)
			on_tick(self.tick())
		await on_expire()
