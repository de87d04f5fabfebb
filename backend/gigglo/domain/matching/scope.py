"""Session-generation scoping for tasks and subscriptions."""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, List, Optional, Set

from gigglo.infra.store import Subscription
from gigglo.obs import logging as obs_logging

logger = logging.getLogger(__name__)


class SessionScope:
	"""Everything started during one run through searching/matched.

	Tasks and subscriptions are registered here and released together by
	``close()``. ``claim_exit`` is the once-per-generation guard taken by
	whichever terminal event (end, skip, timeout, partner vanish, cancel)
	gets there first.
	"""

	def __init__(self, generation: int) -> None:
		self.generation = generation
		self._tasks: Set[asyncio.Task] = set()
		self._subscriptions: List[Subscription] = []
		self._closed = False
		self._exiting = False

	@property
	def closed(self) -> bool:
		return self._closed

	@property
	def exiting(self) -> bool:
		return self._exiting or self._closed

	def claim_exit(self) -> bool:
		if self.exiting:
			return False
		self._exiting = True
		return True

	def spawn(self, coro: Coroutine, *, name: str) -> Optional[asyncio.Task]:
		if self._closed:
			coro.close()
			return None
		tokens = obs_logging.bind_context(session_gen=self.generation)
		try:
			task = asyncio.create_task(coro, name=f"{name}:{self.generation}")
		finally:
			obs_logging.reset_context(tokens)
		self._tasks.add(task)
		task.add_done_callback(self._task_done)
		return task

	async def track(self, subscription: Subscription) -> Subscription:
		if self._closed:
			await subscription.close()
		else:
			self._subscriptions.append(subscription)
		return subscription

	async def release(self, subscription: Subscription) -> None:
		if subscription in self._subscriptions:
			self._subscriptions.remove(subscription)
		await subscription.close()

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		current = asyncio.current_task()
		tasks = [task for task in self._tasks if task is not current and not task.done()]
		for task in tasks:
			task.cancel()
		if tasks:
			await asyncio.gather(*tasks, return_exceptions=True)
		subscriptions, self._subscriptions = self._subscriptions, []
		for subscription in subscriptions:
			await subscription.close()

	def _task_done(self, task: asyncio.Task) -> None:
		self._tasks.discard(task)
		if task.cancelled():
			return
		exc = task.exception()
		if exc is not None:
			logger.error("session task %s failed", task.get_name(), exc_info=exc)
