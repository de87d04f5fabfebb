"""Per-client roulette session state machine.

A controller loops idle -> searching -> matched -> idle. Each pass through
searching/matched is one generation with its own ``SessionScope``; every
task and subscription of the pass lives in that scope and callbacks from a
superseded generation are ignored.

Terminal events (cancel, search timeout, end, skip, countdown expiry, partner
vanish) all go through ``SessionScope.claim_exit`` so exactly one of them
wins per generation. Store writes during teardown are best effort; the peer
recovers through its own watch and timeouts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, List, Optional, Set

from gigglo.domain.identity import ProfileDirectory, PublicInfo
from gigglo.infra.store import Store, StoreError, Subscription
from gigglo.obs import metrics as obs_metrics
from gigglo.settings import Settings, settings

from .exceptions import AlreadyActive, GhostMatch, MatchingError, SearchTimeout, SubscriptionError, VerificationRequired
from .matchmaker import Matchmaker
from .messages import MessageChannel
from .models import ChatMessage, MatchRecord, Notice, SessionSnapshot, SessionState, match_key
from .notifications import VANISH_GHOST, NotificationBridge
from .queue import QueueManager
from .scope import SessionScope
from .timers import Countdown

logger = logging.getLogger(__name__)

END_TEXT = "Your chat partner has ended the chat."
SKIP_TEXT = "Your chat partner skipped to the next chat."
TIMES_UP_TEXT = "Time's up! This chat has ended."
START_FAILED_TEXT = "Failed to start matching. Please try again."

STATUS_DISCONNECTED = "disconnected"
STATUS_SEARCHING = "searching"
STATUS_CONNECTED = "connected"
STATUS_RECONNECTING = "reconnecting"
STATUS_DEGRADED = "degraded"

Listener = Callable[[SessionSnapshot], None]


@dataclass(frozen=True)
class SessionConfig:
	search_timeout_seconds: float = 30.0
	queue_stale_seconds: float = 30.0
	session_duration_seconds: int = 300
	session_extend_seconds: int = 300
	low_time_threshold_seconds: int = 60
	timer_tick_seconds: float = 1.0
	skip_rematch_delay_seconds: float = 1.0
	partner_skip_grace_seconds: float = 2.0
	partner_left_grace_seconds: float = 3.0
	partner_confirm_absent_seconds: float = 1.0
	message_max_length: int = 200
	reaction_max_length: int = 8

	@classmethod
	def from_settings(cls, source: Settings = settings) -> "SessionConfig":
		return cls(
			search_timeout_seconds=source.search_timeout_seconds,
			queue_stale_seconds=source.queue_stale_seconds,
			session_duration_seconds=source.session_duration_seconds,
			session_extend_seconds=source.session_extend_seconds,
			low_time_threshold_seconds=source.low_time_threshold_seconds,
			timer_tick_seconds=source.timer_tick_seconds,
			skip_rematch_delay_seconds=source.skip_rematch_delay_seconds,
			partner_skip_grace_seconds=source.partner_skip_grace_seconds,
			partner_left_grace_seconds=source.partner_left_grace_seconds,
			partner_confirm_absent_seconds=source.partner_confirm_absent_seconds,
			message_max_length=source.message_max_length,
			reaction_max_length=source.reaction_max_length,
		)


class SessionController:
	def __init__(
		self,
		uid: str,
		*,
		store: Store,
		profiles: ProfileDirectory,
		config: Optional[SessionConfig] = None,
	) -> None:
		self.uid = uid
		self._store = store
		self._profiles = profiles
		self._config = config or SessionConfig.from_settings()
		self._queue = QueueManager(store)
		self._matchmaker = Matchmaker(store, self._queue, max_age=self._config.queue_stale_seconds)
		self._channel = MessageChannel(
			store,
			max_text_length=self._config.message_max_length,
			max_reaction_length=self._config.reaction_max_length,
		)
		self._bridge = NotificationBridge(store, confirm_absent_seconds=self._config.partner_confirm_absent_seconds)

		self._state = SessionState.IDLE
		self._generation = 0
		self._scope: Optional[SessionScope] = None
		self._notice: Optional[Notice] = None
		self._connection_status = STATUS_DISCONNECTED
		self._partner: Optional[PublicInfo] = None
		self._room_id: Optional[str] = None
		self._messages: List[ChatMessage] = []
		self._room_watches: List[Subscription] = []
		self._countdown: Optional[Countdown] = None
		self._listeners: List[Listener] = []
		self._background: Set[asyncio.Task] = set()
		self._closed = False
		obs_metrics.controller_state_changed(None, self._state.value)

	# -- read side -----------------------------------------------------

	@property
	def state(self) -> SessionState:
		return self._state

	@property
	def generation(self) -> int:
		return self._generation

	@property
	def notice(self) -> Optional[Notice]:
		return self._notice

	@property
	def partner(self) -> Optional[PublicInfo]:
		return self._partner

	@property
	def room_id(self) -> Optional[str]:
		return self._room_id

	@property
	def messages(self) -> List[ChatMessage]:
		return list(self._messages)

	@property
	def time_left(self) -> int:
		if self._countdown is None:
			return self._config.session_duration_seconds
		return self._countdown.remaining

	@property
	def connection_status(self) -> str:
		return self._connection_status

	def snapshot(self) -> SessionSnapshot:
		return SessionSnapshot(
			uid=self.uid,
			state=self._state,
			generation=self._generation,
			connection_status=self._connection_status,
			time_left=self.time_left,
			can_extend=self._countdown is not None and self._countdown.low_time,
			notice=self._notice,
			partner=self._partner,
			room_id=self._room_id,
			messages=tuple(self._messages),
		)

	def add_listener(self, listener: Listener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _remove() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _remove

	# -- caller operations --------------------------------------------

	async def start_matching(self) -> bool:
		"""Enter searching. Returns False when a search or chat is already active."""
		if self._closed:
			return False
		try:
			profile = await self._profiles.get_profile(self.uid)
		except StoreError:
			logger.warning("profile lookup failed", exc_info=True)
			self._notice = Notice(code="start_failed", message=START_FAILED_TEXT)
			self._publish()
			return False
		if self._closed:
			return False
		try:
			self._matchmaker.check_eligible(profile, self._state)
		except AlreadyActive:
			logger.debug("start_matching ignored, state=%s", self._state.value)
			return False
		except VerificationRequired as exc:
			self._notice = exc.to_notice()
			self._publish()
			raise

		scope = self._begin_generation()
		self._set_state(SessionState.SEARCHING)
		self._notice = None
		self._connection_status = STATUS_SEARCHING
		self._publish()
		logger.info("match search started generation=%s", scope.generation)

		try:
			record = await self._matchmaker.find_or_queue(profile)
		except MatchingError as exc:
			await self._abort_search(scope, exc.to_notice())
			return True
		except StoreError:
			logger.warning("match search failed to start", exc_info=True)
			await self._abort_search(
				scope,
				Notice(code="start_failed", message=START_FAILED_TEXT),
			)
			return True

		if scope is not self._scope or scope.exiting:
			# Cancelled while the scan/queue write was in flight
			await self._release_records()
			return True
		if record is not None:
			await self._enter_matched(scope, record, from_queue=False)
			return True
		try:
			await self._await_partner(scope)
		except StoreError:
			logger.warning("could not watch for a partner", exc_info=True)
			await self._abort_search(scope, Notice(code="start_failed", message=START_FAILED_TEXT))
		return True

	async def cancel_search(self) -> bool:
		scope = self._scope
		if self._state is not SessionState.SEARCHING or scope is None or not scope.claim_exit():
			return False
		await self._stop_searching(scope, None)
		return True

	async def send_message(self, text: str) -> Optional[ChatMessage]:
		return await self._send(text, is_reaction=False)

	async def send_reaction(self, emoji: str) -> Optional[ChatMessage]:
		return await self._send(emoji, is_reaction=True)

	async def end_chat(self) -> bool:
		scope = self._scope
		if self._state is not SessionState.MATCHED or scope is None or not scope.claim_exit():
			return False
		await self._finish(scope, reason="ended", text=END_TEXT, is_skip=False)
		return True

	async def skip_chat(self) -> bool:
		scope = self._scope
		if self._state is not SessionState.MATCHED or scope is None or not scope.claim_exit():
			return False
		await self._finish(scope, reason="skipped", text=SKIP_TEXT, is_skip=True)
		self._spawn_background(self._rematch_after(self._config.skip_rematch_delay_seconds), name="skip-rematch")
		return True

	def extend(self) -> int:
		"""Add extension time to the running countdown and return what is left."""
		if self._state is not SessionState.MATCHED or self._countdown is None:
			return self.time_left
		remaining = self._countdown.extend(self._config.session_extend_seconds)
		logger.info("chat extended remaining=%s", remaining)
		self._publish()
		return remaining

	async def close(self) -> None:
		"""Tear the controller down for good (client disconnected)."""
		if self._closed:
			return
		self._closed = True
		current = asyncio.current_task()
		pending = [task for task in self._background if task is not current and not task.done()]
		for task in pending:
			task.cancel()
		if pending:
			await asyncio.gather(*pending, return_exceptions=True)
		scope = self._scope
		if scope is not None:
			await scope.close()
		await self._release_records()
		self._reset_session()
		self._set_state(SessionState.IDLE)
		obs_metrics.controller_state_changed(self._state.value, None)
		self._listeners.clear()

	# -- searching -----------------------------------------------------

	async def _await_partner(self, scope: SessionScope) -> None:
		await self._watch_own_record(scope)
		scope.spawn(self._search_deadline(scope), name=f"search-deadline:{self.uid}")

	async def _watch_own_record(self, scope: SessionScope) -> None:
		"""Follow ``matches/<uid>`` for the whole generation.

		While searching, the first record means someone paired with us. While
		matched, a record naming another room means a later searcher overwrote
		it; the last writer wins, so the session moves over to that room. A
		deletion is never acted on here; only our own teardown deletes it.
		"""

		async def _on_own_record(value: Any) -> None:
			if value is None or scope is not self._scope or scope.exiting:
				return
			try:
				record = MatchRecord.from_dict(value)
			except (KeyError, TypeError, ValueError):
				logger.warning("ignoring malformed match record")
				return
			if self._state is SessionState.SEARCHING:
				await self._enter_matched(scope, record, from_queue=True)
			elif self._state is SessionState.MATCHED:
				await self._follow_record(scope, record)

		subscription = await self._store.subscribe(
			match_key(self.uid),
			_on_own_record,
			on_error=self._watch_error(scope, "own_record"),
		)
		await scope.track(subscription)

	async def _search_deadline(self, scope: SessionScope) -> None:
		await asyncio.sleep(self._config.search_timeout_seconds)
		if scope is not self._scope or self._state is not SessionState.SEARCHING:
			return
		if not scope.claim_exit():
			return
		obs_metrics.inc_search_timeout()
		logger.info("match search timed out")
		self._spawn_background(self._stop_searching(scope, SearchTimeout().to_notice()), name="search-timeout")

	async def _stop_searching(self, scope: SessionScope, notice: Optional[Notice]) -> None:
		await self._teardown(scope)
		self._reset_session()
		self._set_state(SessionState.IDLE)
		self._notice = notice
		self._connection_status = STATUS_DISCONNECTED
		self._publish()

	async def _abort_search(self, scope: SessionScope, notice: Notice) -> None:
		if not scope.claim_exit():
			return
		await self._stop_searching(scope, notice)

	# -- matched -------------------------------------------------------

	async def _enter_matched(self, scope: SessionScope, record: MatchRecord, *, from_queue: bool) -> None:
		if scope is not self._scope or scope.exiting or self._state is not SessionState.SEARCHING:
			return
		countdown = Countdown(
			self._config.session_duration_seconds,
			tick_seconds=self._config.timer_tick_seconds,
			low_time_threshold=self._config.low_time_threshold_seconds,
		)
		self._set_state(SessionState.MATCHED)
		self._partner = record.partner
		self._room_id = record.room_id
		self._messages = []
		self._countdown = countdown
		self._notice = None
		self._connection_status = STATUS_CONNECTED
		self._publish()
		logger.info("matched room=%s generation=%s", record.room_id, scope.generation)

		if from_queue:
			try:
				await self._queue.leave(self.uid)
			except StoreError:
				logger.warning("queue removal after match failed", exc_info=True)

		scope.spawn(countdown.run(self._on_tick, lambda: self._on_timer_expired(scope)), name=f"countdown:{self.uid}")
		if not from_queue:
			try:
				await self._watch_own_record(scope)
			except StoreError:
				logger.warning("failed to watch own match record", exc_info=True)
		await self._attach_room(scope, record)

	async def _follow_record(self, scope: SessionScope, record: MatchRecord) -> None:
		if record.room_id == self._room_id and self._partner is not None and record.partner.uid == self._partner.uid:
			return
		logger.info("match record moved room=%s -> %s", self._room_id, record.room_id)
		attached, self._room_watches = self._room_watches, []
		for subscription in attached:
			await scope.release(subscription)
		if scope is not self._scope or scope.exiting:
			return
		self._partner = record.partner
		self._room_id = record.room_id
		self._messages = []
		self._connection_status = STATUS_CONNECTED
		self._publish()
		await self._attach_room(scope, record)

	async def _attach_room(self, scope: SessionScope, record: MatchRecord) -> None:
		room_id = record.room_id

		async def _on_messages(messages: List[ChatMessage]) -> None:
			if scope is not self._scope or scope.closed or self._room_id != room_id:
				return
			self._messages = messages
			if self._connection_status in (STATUS_RECONNECTING, STATUS_DEGRADED) and not scope.exiting:
				self._connection_status = STATUS_CONNECTED
			self._publish()

		async def _on_vanish(reason: str) -> None:
			# A watch on a room we already moved away from is stale
			if scope is not self._scope or self._room_id != room_id or not scope.claim_exit():
				return
			self._spawn_background(self._partner_vanished(scope, reason), name="partner-vanished")

		try:
			self._room_watches.append(
				await scope.track(
					await self._channel.subscribe(
						room_id,
						_on_messages,
						on_error=self._watch_error(scope, "messages"),
					)
				)
			)
			self._room_watches.append(
				await scope.track(
					await self._bridge.watch(
						self.uid,
						record.partner.uid,
						room_id,
						_on_vanish,
						on_error=self._watch_error(scope, "partner_record"),
					)
				)
			)
		except StoreError:
			# The countdown still ends the session; surface the degraded link
			logger.warning("failed to attach session watches room=%s", room_id, exc_info=True)
			self._connection_status = STATUS_DEGRADED
			self._publish()

	def _on_tick(self, remaining: int) -> None:
		self._publish()

	async def _on_timer_expired(self, scope: SessionScope) -> None:
		if scope is not self._scope or not scope.claim_exit():
			return
		self._spawn_background(
			self._finish(
				scope,
				reason="timeout",
				text=TIMES_UP_TEXT,
				is_skip=False,
				notice=Notice(code="times_up", message="Time's up! Chat ended."),
			),
			name="times-up",
		)

	async def _finish(
		self,
		scope: SessionScope,
		*,
		reason: str,
		text: str,
		is_skip: bool,
		notice: Optional[Notice] = None,
	) -> None:
		# The system message has to land before our record disappears: the
		# partner reads it to tell a skip from an end
		room_id = self._room_id
		if room_id:
			try:
				await self._channel.append_system(room_id, text, is_skip_action=is_skip)
			except StoreError:
				logger.warning("failed to post %s notice room=%s", reason, room_id, exc_info=True)
		await self._teardown(scope)
		obs_metrics.inc_session_ended(reason)
		logger.info("chat finished reason=%s room=%s", reason, room_id)
		self._reset_session()
		self._set_state(SessionState.IDLE)
		self._notice = notice
		self._connection_status = STATUS_DISCONNECTED
		self._publish()

	async def _partner_vanished(self, scope: SessionScope, reason: str) -> None:
		room_id = self._room_id
		if reason == VANISH_GHOST:
			obs_metrics.inc_ghost_match()
			notice = GhostMatch().to_notice()
			rematch, grace, ended = True, self._config.partner_skip_grace_seconds, "ghost"
		else:
			last: Optional[ChatMessage] = None
			if room_id:
				try:
					last = await self._channel.last_message(room_id)
				except StoreError:
					logger.warning("could not read last message room=%s", room_id, exc_info=True)
			if last is not None and last.is_skip_action and last.sender != self.uid:
				notice = Notice(code="partner_skipped", message="Your chat partner skipped. Finding someone new…")
				rematch, grace, ended = True, self._config.partner_skip_grace_seconds, "partner_skipped"
			else:
				notice = Notice(code="partner_left", message="Your chat partner left the chat.")
				rematch, grace, ended = False, self._config.partner_left_grace_seconds, "partner_left"

		self._notice = notice
		self._connection_status = STATUS_DISCONNECTED
		self._publish()
		logger.info("partner gone reason=%s room=%s rematch=%s", ended, room_id, rematch)

		await asyncio.sleep(grace)
		await self._teardown(scope)
		obs_metrics.inc_session_ended(ended)
		self._reset_session()
		self._set_state(SessionState.IDLE)
		self._publish()
		if rematch:
			await self._rematch_after(0)

	async def _rematch_after(self, delay: float) -> None:
		if delay > 0:
			await asyncio.sleep(delay)
		if self._closed or self._state is not SessionState.IDLE:
			return
		try:
			await self.start_matching()
		except MatchingError as exc:
			logger.info("automatic rematch rejected reason=%s", exc.reason)
		except StoreError:
			logger.warning("automatic rematch failed", exc_info=True)

	# -- shared plumbing ----------------------------------------------

	async def _send(self, text: str, *, is_reaction: bool) -> Optional[ChatMessage]:
		room_id = self._room_id
		scope = self._scope
		if self._state is not SessionState.MATCHED or not room_id or scope is None or scope.exiting:
			return None
		if not (text or "").strip():
			return None
		try:
			return await self._channel.append(room_id, self.uid, text, is_reaction=is_reaction)
		except StoreError:
			logger.warning("message send failed room=%s", room_id, exc_info=True)
			if not is_reaction:
				self._notice = Notice(code="send_failed", message="Failed to send message. Please try again.")
				self._publish()
			return None

	def _watch_error(self, scope: SessionScope, resource: str):
		async def _on_error(exc: StoreError, failures: int, exhausted: bool) -> None:
			obs_metrics.inc_subscription_error(resource)
			if scope is not self._scope or scope.exiting:
				return
			logger.warning("watch error resource=%s failures=%s: %s", resource, failures, exc)
			if exhausted:
				self._connection_status = STATUS_DEGRADED
				self._notice = SubscriptionError().to_notice()
			else:
				self._connection_status = STATUS_RECONNECTING
			self._publish()

		return _on_error

	def _begin_generation(self) -> SessionScope:
		self._generation += 1
		self._scope = SessionScope(self._generation)
		return self._scope

	async def _teardown(self, scope: SessionScope) -> None:
		await scope.close()
		self._countdown = None
		await self._release_records()

	async def _release_records(self) -> None:
		results = await asyncio.gather(
			self._queue.leave(self.uid),
			self._store.delete(match_key(self.uid)),
			return_exceptions=True,
		)
		for result in results:
			if isinstance(result, asyncio.CancelledError):
				raise result
			if isinstance(result, Exception):
				logger.warning("cleanup write failed: %s", result)

	def _reset_session(self) -> None:
		self._partner = None
		self._room_id = None
		self._messages = []
		self._room_watches = []
		self._countdown = None

	def _set_state(self, state: SessionState) -> None:
		if state is self._state:
			return
		obs_metrics.controller_state_changed(self._state.value, state.value)
		self._state = state

	def _publish(self) -> None:
		if not self._listeners:
			return
		snapshot = self.snapshot()
		for listener in list(self._listeners):
			try:
				listener(snapshot)
			except Exception:
				logger.exception("session listener failed")

	def _spawn_background(self, coro: Coroutine, *, name: str) -> asyncio.Task:
		task = asyncio.create_task(coro, name=f"{name}:{self.uid}")
		self._background.add(task)
		task.add_done_callback(self._background_done)
		return task

	def _background_done(self, task: asyncio.Task) -> None:
		self._background.discard(task)
		if task.cancelled():
			return
		exc = task.exception()
		if exc is not None:
			logger.error("session transition %s failed", task.get_name(), exc_info=exc)
