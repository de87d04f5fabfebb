"""Shared key/value + append-list store used by the matchmaking core.

Keys are slash separated paths. Keyed collections (``queue/<uid>``,
``matches/<uid>``) support point reads and a full snapshot of the collection;
append-lists (``chats/<room>/messages``) return generated ids in insertion
order. Writes are last-write-wins and there is no multi-key transaction.

Two adapters implement the ``Store`` protocol: ``MemoryStore`` for tests and
single-process runs, and ``RedisStore`` (hashes, streams and pub/sub).
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple

import ulid
from redis.exceptions import RedisError

from gigglo.infra.redis import RedisProxy, redis_client
from gigglo.settings import settings

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Any], Awaitable[None]]
# (error, consecutive failures, retries exhausted)
ErrorCallback = Callable[["StoreError", int, bool], Awaitable[None]]
ListItem = Tuple[str, Dict[str, Any]]


class StoreError(RuntimeError):
	"""Raised when the backing store cannot complete an operation."""


def split_key(key: str) -> Tuple[str, str]:
	collection, sep, member = key.rpartition("/")
	if not sep or not collection or not member:
		raise ValueError(f"invalid store key: {key!r}")
	return collection, member


class Subscription:
	"""Handle for one live watch; ``close()`` stops delivery immediately."""

	def __init__(self, key: str, callback: ChangeCallback) -> None:
		self.key = key
		self._callback = callback
		self._task: Optional[asyncio.Task] = None
		self._closed = False

	def start(self, runner: Awaitable[None]) -> "Subscription":
		self._task = asyncio.create_task(runner, name=f"store-watch:{self.key}")
		return self

	@property
	def closed(self) -> bool:
		return self._closed

	async def deliver(self, value: Any) -> None:
		if self._closed:
			return
		try:
			await self._callback(value)
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("store subscription callback failed key=%s", self.key)

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		task = self._task
		# Closing from inside our own callback: the runner exits on its next check
		if task is None or task.done() or task is asyncio.current_task():
			return
		task.cancel()
		with suppress(asyncio.CancelledError):
			await task


class Store(Protocol):
	async def upsert(self, key: str, value: Dict[str, Any]) -> None:
		...

	async def delete(self, key: str) -> None:
		...

	async def get(self, key: str) -> Optional[Dict[str, Any]]:
		...

	async def get_children(self, collection: str) -> Dict[str, Dict[str, Any]]:
		...

	async def subscribe(
		self,
		key: str,
		on_change: ChangeCallback,
		*,
		on_error: Optional[ErrorCallback] = None,
	) -> Subscription:
		...

	async def append_to_list(self, list_key: str, value: Dict[str, Any]) -> str:
		...

	async def read_list(self, list_key: str) -> List[ListItem]:
		...

	async def subscribe_list(
		self,
		list_key: str,
		on_change: ChangeCallback,
		*,
		on_error: Optional[ErrorCallback] = None,
	) -> Subscription:
		...

	async def ping(self) -> bool:
		...


class MemoryStore:
	"""In-process store with the same observable semantics as ``RedisStore``.

	Every operation yields to the event loop once (optionally sleeping
	``latency`` seconds) so concurrent callers interleave the way they would
	against a remote store.
	"""

	def __init__(self, *, latency: float = 0.0) -> None:
		self._latency = latency
		self._values: Dict[str, Dict[str, Any]] = {}
		self._lists: Dict[str, List[ListItem]] = {}
		self._watchers: Dict[str, Set["_MemoryWatch"]] = {}

	async def _hop(self) -> None:
		await asyncio.sleep(self._latency)

	async def upsert(self, key: str, value: Dict[str, Any]) -> None:
		split_key(key)
		await self._hop()
		self._values[key] = copy.deepcopy(value)
		self._notify(key, self._values[key])

	async def delete(self, key: str) -> None:
		await self._hop()
		if self._values.pop(key, None) is not None:
			self._notify(key, None)

	async def get(self, key: str) -> Optional[Dict[str, Any]]:
		await self._hop()
		value = self._values.get(key)
		return copy.deepcopy(value) if value is not None else None

	async def get_children(self, collection: str) -> Dict[str, Dict[str, Any]]:
		await self._hop()
		prefix = f"{collection}/"
		children: Dict[str, Dict[str, Any]] = {}
		for key, value in self._values.items():
			if not key.startswith(prefix):
				continue
			member = key[len(prefix):]
			if "/" in member:
				continue
			children[member] = copy.deepcopy(value)
		return children

	async def subscribe(
		self,
		key: str,
		on_change: ChangeCallback,
		*,
		on_error: Optional[ErrorCallback] = None,
	) -> Subscription:
		await self._hop()
		current = self._values.get(key)
		return self._watch(key, on_change, copy.deepcopy(current) if current is not None else None)

	async def append_to_list(self, list_key: str, value: Dict[str, Any]) -> str:
		await self._hop()
		item_id = str(ulid.new())
		items = self._lists.setdefault(list_key, [])
		items.append((item_id, copy.deepcopy(value)))
		self._notify(list_key, copy.deepcopy(items))
		return item_id

	async def read_list(self, list_key: str) -> List[ListItem]:
		await self._hop()
		return copy.deepcopy(self._lists.get(list_key, []))

	async def subscribe_list(
		self,
		list_key: str,
		on_change: ChangeCallback,
		*,
		on_error: Optional[ErrorCallback] = None,
	) -> Subscription:
		await self._hop()
		return self._watch(list_key, on_change, copy.deepcopy(self._lists.get(list_key, [])))

	async def ping(self) -> bool:
		return True

	def _watch(self, key: str, on_change: ChangeCallback, initial: Any) -> Subscription:
		subscription = Subscription(key, on_change)
		watch = _MemoryWatch(self, key, subscription)
		self._watchers.setdefault(key, set()).add(watch)
		watch.push(initial)
		return subscription.start(watch.run())

	def _notify(self, key: str, value: Any) -> None:
		for watch in list(self._watchers.get(key, ())):
			watch.push(copy.deepcopy(value))

	def _forget(self, watch: "_MemoryWatch") -> None:
		watchers = self._watchers.get(watch.key)
		if not watchers:
			return
		watchers.discard(watch)
		if not watchers:
			self._watchers.pop(watch.key, None)


class _MemoryWatch:
	def __init__(self, store: MemoryStore, key: str, subscription: Subscription) -> None:
		self.key = key
		self._store = store
		self._subscription = subscription
		self._pending: asyncio.Queue = asyncio.Queue()

	def push(self, value: Any) -> None:
		self._pending.put_nowait(value)

	async def run(self) -> None:
		try:
			while not self._subscription.closed:
				value = await self._pending.get()
				await self._subscription.deliver(value)
		finally:
			self._store._forget(self)


class RedisStore:
	"""Store backed by Redis.

	Keyed collections are hashes (``<prefix>:<collection>`` -> member -> JSON),
	append-lists are streams, and every write publishes on
	``<prefix>:changes:<key>`` so watchers re-read the key.
	"""

	def __init__(
		self,
		client: RedisProxy = redis_client,
		*,
		prefix: str = settings.key_prefix,
		retry_limit: int = 3,
		retry_backoff_seconds: float = 0.5,
	) -> None:
		self._client = client
		self._prefix = prefix
		self._retry_limit = max(1, int(retry_limit))
		self._retry_backoff = max(0.0, float(retry_backoff_seconds))

	def _hash_key(self, collection: str) -> str:
		return f"{self._prefix}:{collection}"

	def _stream_key(self, list_key: str) -> str:
		return f"{self._prefix}:{list_key}"

	def _channel(self, key: str) -> str:
		return f"{self._prefix}:changes:{key}"

	async def upsert(self, key: str, value: Dict[str, Any]) -> None:
		collection, member = split_key(key)
		try:
			await self._client.hset(self._hash_key(collection), member, json.dumps(value))
			await self._client.publish(self._channel(key), "upsert")
		except RedisError as exc:
			raise StoreError(f"upsert failed for {key}: {exc}") from exc

	async def delete(self, key: str) -> None:
		collection, member = split_key(key)
		try:
			removed = await self._client.hdel(self._hash_key(collection), member)
			if removed:
				await self._client.publish(self._channel(key), "delete")
		except RedisError as exc:
			raise StoreError(f"delete failed for {key}: {exc}") from exc

	async def get(self, key: str) -> Optional[Dict[str, Any]]:
		collection, member = split_key(key)
		try:
			raw = await self._client.hget(self._hash_key(collection), member)
		except RedisError as exc:
			raise StoreError(f"get failed for {key}: {exc}") from exc
		return _decode(raw)

	async def get_children(self, collection: str) -> Dict[str, Dict[str, Any]]:
		try:
			raw = await self._client.hgetall(self._hash_key(collection))
		except RedisError as exc:
			raise StoreError(f"snapshot failed for {collection}: {exc}") from exc
		children: Dict[str, Dict[str, Any]] = {}
		for member, payload in raw.items():
			value = _decode(payload)
			if value is not None:
				children[str(member)] = value
		return children

	async def append_to_list(self, list_key: str, value: Dict[str, Any]) -> str:
		try:
			item_id = await self._client.xadd(self._stream_key(list_key), {"data": json.dumps(value)})
			await self._client.publish(self._channel(list_key), "append")
		except RedisError as exc:
			raise StoreError(f"append failed for {list_key}: {exc}") from exc
		return str(item_id)

	async def read_list(self, list_key: str) -> List[ListItem]:
		try:
			entries = await self._client.xrange(self._stream_key(list_key))
		except RedisError as exc:
			raise StoreError(f"read failed for {list_key}: {exc}") from exc
		items: List[ListItem] = []
		for entry_id, fields in entries:
			value = _decode(fields.get("data"))
			if value is not None:
				items.append((str(entry_id), value))
		return items

	async def subscribe(
		self,
		key: str,
		on_change: ChangeCallback,
		*,
		on_error: Optional[ErrorCallback] = None,
	) -> Subscription:
		split_key(key)
		subscription = Subscription(key, on_change)
		return subscription.start(self._listen(subscription, lambda: self.get(key), on_error))

	async def subscribe_list(
		self,
		list_key: str,
		on_change: ChangeCallback,
		*,
		on_error: Optional[ErrorCallback] = None,
	) -> Subscription:
		subscription = Subscription(list_key, on_change)
		return subscription.start(self._listen(subscription, lambda: self.read_list(list_key), on_error))

	async def ping(self) -> bool:
		try:
			return bool(await self._client.ping())
		except RedisError as exc:
			raise StoreError(f"ping failed: {exc}") from exc

	async def _listen(
		self,
		subscription: Subscription,
		fetch: Callable[[], Awaitable[Any]],
		on_error: Optional[ErrorCallback],
	) -> None:
		channel = self._channel(subscription.key)
		failures = 0
		while not subscription.closed:
			pubsub = self._client.pubsub()
			try:
				# Subscribe before the first read so no change slips between them
				await pubsub.subscribe(channel)
				await subscription.deliver(await fetch())
				failures = 0
				async for message in pubsub.listen():
					if subscription.closed:
						return
					if message.get("type") != "message":
						continue
					await subscription.deliver(await fetch())
			except asyncio.CancelledError:
				raise
			except (RedisError, StoreError) as exc:
				failures += 1
				exhausted = failures >= self._retry_limit
				logger.warning(
					"store watch failed key=%s failures=%s exhausted=%s",
					subscription.key,
					failures,
					exhausted,
				)
				if on_error is not None:
					error = exc if isinstance(exc, StoreError) else StoreError(str(exc))
					await on_error(error, failures, exhausted)
				await asyncio.sleep(self._retry_backoff * min(failures, self._retry_limit))
			finally:
				with suppress(RedisError):
					await pubsub.aclose()


def _decode(raw: Any) -> Optional[Dict[str, Any]]:
	if raw is None:
		return None
	try:
		value = json.loads(raw)
	except (TypeError, ValueError):
		logger.warning("discarding undecodable store payload")
		return None
	return value if isinstance(value, dict) else None


def build_store(source=settings) -> Store:
	"""Store selected by ``STORE_BACKEND``."""
	if source.store_backend == "memory":
		logger.info("using in-process memory store")
		return MemoryStore()
	return RedisStore(
		redis_client,
		prefix=source.key_prefix,
		retry_limit=source.subscription_retry_limit,
		retry_backoff_seconds=source.subscription_retry_backoff_seconds,
	)


__all__ = [
	"ChangeCallback",
	"ErrorCallback",
	"MemoryStore",
	"RedisStore",
	"Store",
	"StoreError",
	"Subscription",
	"build_store",
	"split_key",
]
