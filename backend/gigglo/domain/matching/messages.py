"""Room message channel."""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from gigglo.infra.store import ErrorCallback, Store, Subscription
from gigglo.obs import metrics as obs_metrics

from .models import SYSTEM_SENDER, ChatMessage, MessageFlags, room_messages_key

logger = logging.getLogger(__name__)

MessagesCallback = Callable[[List[ChatMessage]], Awaitable[None]]

DEFAULT_MAX_TEXT_LENGTH = 200
DEFAULT_MAX_REACTION_LENGTH = 8


def _now_ms() -> int:
	return int(time.time() * 1000)


def sort_messages(room_id: str, items: Iterable[Tuple[str, dict]]) -> List[ChatMessage]:
	"""Order a room by message timestamp.

	``items`` arrive in insertion order and ``sorted`` is stable, so equal
	timestamps keep the order the store accepted them in.
	"""
	messages = [ChatMessage.from_store(item_id, room_id, data) for item_id, data in items]
	return sorted(messages, key=lambda message: message.timestamp)


class MessageChannel:
	"""Append to and watch the ordered message list of a room.

	Subscribers always receive the full room, so a subscriber that was
	detached for a while sees whatever is still stored when it reattaches;
	nothing replays individual missed deliveries.
	"""

	def __init__(
		self,
		store: Store,
		*,
		max_text_length: int = DEFAULT_MAX_TEXT_LENGTH,
		max_reaction_length: int = DEFAULT_MAX_REACTION_LENGTH,
		clock: Callable[[], int] = _now_ms,
	) -> None:
		self._store = store
		self._max_text_length = max_text_length
		self._max_reaction_length = max_reaction_length
		self._clock = clock

	async def append(
		self,
		room_id: str,
		sender: str,
		text: str,
		*,
		is_reaction: bool = False,
		is_system: bool = False,
		is_skip_action: bool = False,
		timestamp: Optional[int] = None,
	) -> ChatMessage:
		text = (text or "").strip()
		if not text:
			raise ValueError("message text is empty")
		limit = self._max_reaction_length if is_reaction else self._max_text_length
		if not is_system:
			text = text[:limit]
		message = ChatMessage(
			id="",
			room_id=room_id,
			sender=sender,
			text=text,
			timestamp=self._clock() if timestamp is None else int(timestamp),
			flags=MessageFlags(is_reaction=is_reaction, is_system=is_system, is_skip_action=is_skip_action),
		)
		item_id = await self._store.append_to_list(room_messages_key(room_id), message.to_store())
		obs_metrics.inc_message_sent("system" if is_system else "reaction" if is_reaction else "text")
		return ChatMessage(
			id=item_id,
			room_id=room_id,
			sender=message.sender,
			text=message.text,
			timestamp=message.timestamp,
			flags=message.flags,
		)

	async def append_system(self, room_id: str, text: str, *, is_skip_action: bool = False) -> ChatMessage:
		return await self.append(
			room_id,
			SYSTEM_SENDER,
			text,
			is_system=True,
			is_skip_action=is_skip_action,
		)

	async def history(self, room_id: str) -> List[ChatMessage]:
		return sort_messages(room_id, await self._store.read_list(room_messages_key(room_id)))

	async def last_message(self, room_id: str) -> Optional[ChatMessage]:
		messages = await self.history(room_id)
		return messages[-1] if messages else None

	async def subscribe(
		self,
		room_id: str,
		on_change: MessagesCallback,
		*,
		on_error: Optional[ErrorCallback] = None,
	) -> Subscription:
		async def _deliver(items) -> None:
			await on_change(sort_messages(room_id, items or []))

		return await self._store.subscribe_list(room_messages_key(room_id), _deliver, on_error=on_error)
