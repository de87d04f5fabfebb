import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from gigglo.infra.store import RedisStore, StoreError


@pytest.mark.asyncio
async def test_keyed_collections_round_trip(fake_redis):
    store = RedisStore(fake_redis, prefix="test")

    await store.upsert("queue/alice", {"uid": "alice", "joined_at": 1})
    await store.upsert("queue/bob", {"uid": "bob", "joined_at": 2})
    await store.upsert("matches/alice", {"room_id": "room_1"})

    assert await store.get("queue/alice") == {"uid": "alice", "joined_at": 1}
    assert set(await store.get_children("queue")) == {"alice", "bob"}
    assert await fake_redis.hget("test:queue", "bob") is not None

    await store.delete("queue/alice")
    await store.delete("queue/alice")
    assert await store.get("queue/alice") is None
    assert set(await store.get_children("queue")) == {"bob"}


@pytest.mark.asyncio
async def test_lists_keep_insertion_order(fake_redis):
    store = RedisStore(fake_redis, prefix="test")

    first = await store.append_to_list("chats/room_1/messages", {"text": "one", "timestamp": 2})
    second = await store.append_to_list("chats/room_1/messages", {"text": "two", "timestamp": 1})

    items = await store.read_list("chats/room_1/messages")
    assert [item_id for item_id, _ in items] == [first, second]
    assert [data["text"] for _, data in items] == ["one", "two"]
    assert await store.read_list("chats/empty/messages") == []


@pytest.mark.asyncio
async def test_undecodable_payloads_are_skipped(fake_redis):
    store = RedisStore(fake_redis, prefix="test")
    await fake_redis.hset("test:queue", "broken", "{not json")

    assert await store.get("queue/broken") is None
    assert await store.get_children("queue") == {}


@pytest.mark.asyncio
async def test_subscribe_delivers_current_value_then_changes(fake_redis, eventually):
    store = RedisStore(fake_redis, prefix="test")
    await store.upsert("matches/bob", {"room_id": "room_1"})
    seen = []

    async def _on_change(value):
        seen.append(value)

    subscription = await store.subscribe("matches/bob", _on_change)
    await eventually(lambda: seen)
    await store.delete("matches/bob")

    await eventually(lambda: len(seen) >= 2)
    assert seen[0] == {"room_id": "room_1"}
    assert seen[-1] is None
    await subscription.close()


@pytest.mark.asyncio
async def test_invalid_keys_are_rejected(fake_redis):
    store = RedisStore(fake_redis, prefix="test")

    with pytest.raises(ValueError):
        await store.upsert("no-collection", {"x": 1})


@pytest.mark.asyncio
async def test_ping_wraps_redis_errors():
    class _Down:
        async def ping(self):
            raise RedisConnectionError("down")

    with pytest.raises(StoreError):
        await RedisStore(_Down(), prefix="test").ping()


class FlakySubscribeClient:
    """Delegates to a real client but refuses the first ``failures`` subscribes."""

    def __init__(self, client, failures: int) -> None:
        self._client = client
        self._remaining = failures

    def pubsub(self):
        pubsub = self._client.pubsub()
        real_subscribe = pubsub.subscribe

        async def _subscribe(*channels):
            if self._remaining > 0:
                self._remaining -= 1
                raise RedisConnectionError("connection reset")
            return await real_subscribe(*channels)

        pubsub.subscribe = _subscribe
        return pubsub

    def __getattr__(self, name):
        return getattr(self._client, name)


@pytest.mark.asyncio
async def test_watch_resubscribes_after_failures_and_reports_exhaustion(fake_redis, eventually):
    flaky = FlakySubscribeClient(fake_redis, failures=3)
    store = RedisStore(flaky, prefix="test", retry_limit=2, retry_backoff_seconds=0.01)
    errors = []
    seen = []

    async def _on_error(error, failures, exhausted):
        assert isinstance(error, StoreError)
        errors.append((failures, exhausted))

    async def _on_change(value):
        seen.append(value)

    subscription = await store.subscribe("matches/bob", _on_change, on_error=_on_error)
    try:
        await eventually(lambda: len(seen) == 1)
        assert errors == [(1, False), (2, True), (3, True)]
        assert seen == [None]

        await store.upsert("matches/bob", {"a": 1})
        await eventually(lambda: seen[-1] == {"a": 1})
        assert len(errors) == 3
    finally:
        await subscription.close()
