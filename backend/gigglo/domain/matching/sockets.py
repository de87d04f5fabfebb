"""Socket.IO namespace driving one session controller per connected client."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import socketio
from pydantic import ValidationError

from gigglo.infra.store import StoreError
from gigglo.obs import logging as obs_logging
from gigglo.obs import metrics as obs_metrics

from .exceptions import MatchingError
from .models import QUICK_REACTIONS, SessionSnapshot
from .schemas import AckPayload, ErrorPayload, ReactionRequest, SendMessageRequest
from .session import SessionController

logger = logging.getLogger(__name__)

ControllerFactory = Callable[[str], SessionController]


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


@dataclass
class _Client:
	sid: str
	uid: str
	controller: SessionController
	outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
	pump: Optional[asyncio.Task] = None
	detach: Optional[Callable[[], None]] = None


class RouletteNamespace(socketio.AsyncNamespace):
	"""Namespace that binds each socket to its own ``SessionController``.

	State pushes go out in order through a per-socket outbox so a slow emit
	never blocks a state transition.
	"""

	def __init__(self, controller_factory: Optional[ControllerFactory] = None) -> None:
		super().__init__("/roulette")
		self._factory = controller_factory
		self._clients: Dict[str, _Client] = {}

	def set_controller_factory(self, factory: ControllerFactory) -> None:
		self._factory = factory

	@property
	def clients(self) -> Dict[str, _Client]:
		return self._clients

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		obs_metrics.socket_connected(self.namespace)
		scope = environ.get("asgi.scope", environ)
		auth_payload = auth or environ.get("auth") or scope.get("auth") or {}
		user_id = auth_payload.get("userId") or _header(scope, "x-user-id")
		if not user_id or self._factory is None:
			obs_metrics.socket_disconnected(self.namespace)
			raise ConnectionRefusedError("missing user id" if not user_id else "service unavailable")
		for other_sid, other in list(self._clients.items()):
			# One live controller per user: a reconnect replaces the old socket
			if other.uid == user_id:
				await self._drop(other_sid)
		controller = self._factory(user_id)
		client = _Client(sid=sid, uid=user_id, controller=controller)
		client.detach = controller.add_listener(client.outbox.put_nowait)
		client.pump = asyncio.create_task(self._pump(client), name=f"roulette-pump:{sid}")
		self._clients[sid] = client
		tokens = obs_logging.bind_context(user_id=user_id, sid=sid)
		try:
			logger.info("roulette client connected")
		finally:
			obs_logging.reset_context(tokens)
		await self.emit("roulette:ack", AckPayload(quick_reactions=list(QUICK_REACTIONS)).model_dump(), room=sid)
		await self.emit("roulette:state", controller.snapshot().to_dict(), room=sid)

	async def on_disconnect(self, sid: str, reason: Any = None) -> None:
		await self._drop(sid)

	async def on_start(self, sid: str, payload: Any = None) -> None:
		await self._invoke(sid, "start", lambda controller: controller.start_matching())

	async def on_cancel(self, sid: str, payload: Any = None) -> None:
		await self._invoke(sid, "cancel", lambda controller: controller.cancel_search())

	async def on_send(self, sid: str, payload: Any = None) -> None:
		request = await self._parse(sid, SendMessageRequest, payload)
		if request is not None:
			await self._invoke(sid, "send", lambda controller: controller.send_message(request.text))

	async def on_react(self, sid: str, payload: Any = None) -> None:
		request = await self._parse(sid, ReactionRequest, payload)
		if request is not None:
			await self._invoke(sid, "react", lambda controller: controller.send_reaction(request.emoji))

	async def on_end(self, sid: str, payload: Any = None) -> None:
		await self._invoke(sid, "end", lambda controller: controller.end_chat())

	async def on_skip(self, sid: str, payload: Any = None) -> None:
		await self._invoke(sid, "skip", lambda controller: controller.skip_chat())

	async def on_extend(self, sid: str, payload: Any = None) -> None:
		async def _extend(controller: SessionController) -> int:
			return controller.extend()

		await self._invoke(sid, "extend", _extend)

	async def shutdown(self) -> None:
		for sid in list(self._clients):
			await self._drop(sid)

	async def _invoke(self, sid: str, event: str, action) -> None:
		obs_metrics.socket_event(self.namespace, event)
		client = self._clients.get(sid)
		if client is None:
			raise ConnectionRefusedError("unauthenticated")
		tokens = obs_logging.bind_context(user_id=client.uid, sid=sid)
		try:
			await action(client.controller)
		except MatchingError as exc:
			await self._emit_error(sid, exc.reason, exc.message)
		except StoreError:
			logger.warning("roulette %s failed on store error", event, exc_info=True)
			await self._emit_error(sid, "store_unavailable", "Service temporarily unavailable. Please try again.")
		finally:
			obs_logging.reset_context(tokens)

	async def _parse(self, sid: str, model, payload: Any):
		try:
			return model.model_validate(payload or {})
		except ValidationError:
			await self._emit_error(sid, "invalid_payload", "Malformed request.")
			return None

	async def _emit_error(self, sid: str, code: str, message: str) -> None:
		await self.emit("roulette:error", ErrorPayload(code=code, message=message).model_dump(), room=sid)

	async def _pump(self, client: _Client) -> None:
		while True:
			snapshot: SessionSnapshot = await client.outbox.get()
			try:
				await self.emit("roulette:state", snapshot.to_dict(), room=client.sid)
			except Exception:
				logger.warning("state emit failed sid=%s", client.sid, exc_info=True)

	async def _drop(self, sid: str) -> None:
		client = self._clients.pop(sid, None)
		if client is None:
			return
		obs_metrics.socket_disconnected(self.namespace)
		if client.detach is not None:
			client.detach()
		await client.controller.close()
		if client.pump is not None:
			client.pump.cancel()
			with suppress(asyncio.CancelledError):
				await client.pump
