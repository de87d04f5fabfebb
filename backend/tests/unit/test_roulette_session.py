import asyncio
from dataclasses import replace

import pytest

from gigglo.domain.identity import PublicInfo
from gigglo.domain.matching.exceptions import VerificationRequired
from gigglo.domain.matching.models import MatchRecord, SessionState
from gigglo.domain.matching.session import END_TEXT, SKIP_TEXT, TIMES_UP_TEXT, SessionController
from gigglo.infra.store import MemoryStore, StoreError


def _notice_log(controller):
    codes = []

    def _listener(snapshot):
        if snapshot.notice is not None:
            codes.append(snapshot.notice.code)

    controller.add_listener(_listener)
    return codes


async def _pair(make_controller, eventually, first="alice", second="bob"):
    waiting = make_controller(first)
    joining = make_controller(second)
    assert await waiting.start_matching()
    assert await joining.start_matching()
    await eventually(lambda: waiting.state is SessionState.MATCHED and joining.state is SessionState.MATCHED)
    return waiting, joining


async def _room(store, room_id):
    return [data for _, data in await store.read_list(f"chats/{room_id}/messages")]


@pytest.mark.asyncio
async def test_unverified_user_cannot_search(make_controller, store):
    controller = make_controller("mallory")

    with pytest.raises(VerificationRequired):
        await controller.start_matching()

    assert controller.state is SessionState.IDLE
    assert controller.notice.code == "verification_required"
    assert controller.generation == 0
    assert await store.get("queue/mallory") is None


class UnreachableDirectory:
    async def get_profile(self, uid):
        raise StoreError("users/ unavailable")


@pytest.mark.asyncio
async def test_profile_lookup_failure_reports_start_failed(store, fast_config):
    controller = SessionController("alice", store=store, profiles=UnreachableDirectory(), config=fast_config)
    try:
        assert await controller.start_matching() is False

        assert controller.state is SessionState.IDLE
        assert controller.generation == 0
        assert controller.notice.code == "start_failed"
        assert await store.get("queue/alice") is None
    finally:
        await controller.close()


@pytest.mark.asyncio
async def test_search_times_out_and_leaves_queue(make_controller, store, eventually):
    controller = make_controller("alice")

    assert await controller.start_matching()
    assert controller.state is SessionState.SEARCHING
    assert await store.get("queue/alice") is not None

    await eventually(lambda: controller.state is SessionState.IDLE)
    assert controller.notice.code == "search_timeout"
    assert controller.notice.message == "No users found. Please try again later."
    assert await store.get("queue/alice") is None


@pytest.mark.asyncio
async def test_second_start_while_searching_is_a_no_op(make_controller):
    controller = make_controller("alice")
    assert await controller.start_matching()

    assert await controller.start_matching() is False
    assert controller.generation == 1


@pytest.mark.asyncio
async def test_cancel_search_removes_queue_entry(make_controller, store):
    controller = make_controller("alice")
    await controller.start_matching()

    assert await controller.cancel_search()

    assert controller.state is SessionState.IDLE
    assert controller.notice is None
    assert await store.get("queue/alice") is None
    assert await controller.cancel_search() is False


@pytest.mark.asyncio
async def test_late_match_record_after_cancel_is_ignored(make_controller, store):
    controller = make_controller("alice")
    await controller.start_matching()
    await controller.cancel_search()

    record = MatchRecord(room_id="room_late", partner=PublicInfo(uid="bob"), created_at=1)
    await store.upsert("matches/alice", record.to_dict())
    await asyncio.sleep(0.05)

    assert controller.state is SessionState.IDLE
    assert controller.room_id is None


@pytest.mark.asyncio
async def test_queued_user_is_paired_by_next_searcher(make_controller, store, eventually):
    alice, bob = await _pair(make_controller, eventually)

    assert alice.room_id == bob.room_id
    assert alice.partner.uid == "bob"
    assert bob.partner.uid == "alice"
    assert alice.partner.group_attributes == {"college": "McGill"}
    assert alice.connection_status == "connected"
    assert 295 <= alice.time_left <= 300

    async def _queue_empty():
        return await store.get_children("queue") == {}

    await eventually(_queue_empty)


@pytest.mark.asyncio
async def test_messages_reach_both_sides(make_controller, eventually):
    alice, bob = await _pair(make_controller, eventually)

    sent = await alice.send_message("  hey there  ")
    await bob.send_reaction("🔥")

    assert sent.text == "hey there"
    await eventually(lambda: [m.text for m in bob.messages] == ["hey there", "🔥"])
    await eventually(lambda: [m.text for m in alice.messages] == ["hey there", "🔥"])
    assert alice.messages[1].flags.is_reaction
    assert await alice.send_message("   ") is None


@pytest.mark.asyncio
async def test_send_outside_a_chat_is_ignored(make_controller):
    controller = make_controller("alice")

    assert await controller.send_message("hello?") is None


@pytest.mark.asyncio
async def test_skip_posts_one_notice_and_rematches(make_controller, fast_config, store, eventually):
    alice = make_controller("alice")
    # The skipper waits longer than the partner's grace so the partner is queued first
    bob = make_controller("bob", config=replace(fast_config, skip_rematch_delay_seconds=0.15))
    await alice.start_matching()
    await bob.start_matching()
    await eventually(lambda: alice.state is SessionState.MATCHED and bob.state is SessionState.MATCHED)
    alice_notices = _notice_log(alice)
    room_id = bob.room_id

    assert await bob.skip_chat()

    assert bob.state is SessionState.IDLE
    assert await store.get("matches/bob") is None
    assert await bob.skip_chat() is False
    messages = await _room(store, room_id)
    assert [m["text"] for m in messages if m.get("isSkipAction")] == [SKIP_TEXT]

    await eventually(lambda: "partner_skipped" in alice_notices)
    # Both go back to searching on their own and find each other again
    await eventually(lambda: alice.state is SessionState.MATCHED and bob.state is SessionState.MATCHED)
    assert alice.room_id == bob.room_id != room_id
    assert alice.generation == 2 and bob.generation == 2


@pytest.mark.asyncio
async def test_partner_end_leaves_other_side_idle(make_controller, store, eventually):
    alice, bob = await _pair(make_controller, eventually)
    alice_notices = _notice_log(alice)
    room_id = alice.room_id

    assert await bob.end_chat()

    await eventually(lambda: alice.state is SessionState.IDLE)
    assert "partner_left" in alice_notices
    await asyncio.sleep(0.1)
    assert alice.state is SessionState.IDLE
    assert bob.state is SessionState.IDLE
    assert alice.generation == 1
    messages = await _room(store, room_id)
    assert [m["text"] for m in messages] == [END_TEXT]
    assert await store.get("matches/alice") is None


@pytest.mark.asyncio
async def test_timer_and_end_race_finishes_once(make_controller, store, eventually):
    alice, bob = await _pair(make_controller, eventually)
    scope = bob._scope
    room_id = bob.room_id

    _, ended = await asyncio.gather(bob._on_timer_expired(scope), bob.end_chat())

    assert ended is False
    await eventually(lambda: bob.state is SessionState.IDLE)
    assert bob.notice.code == "times_up"
    messages = await _room(store, room_id)
    assert [m["text"] for m in messages if m.get("isSystem")] == [TIMES_UP_TEXT]


@pytest.mark.asyncio
async def test_countdown_expiry_ends_session(make_controller, fast_config, eventually):
    short = replace(fast_config, session_duration_seconds=2, timer_tick_seconds=0.02)
    alice = make_controller("alice", config=short)
    bob = make_controller("bob", config=short)
    alice_notices = _notice_log(alice)
    bob_notices = _notice_log(bob)
    assert await alice.start_matching()
    assert await bob.start_matching()
    await eventually(lambda: alice.state is SessionState.IDLE and bob.state is SessionState.IDLE)
    assert "times_up" in alice_notices + bob_notices


@pytest.mark.asyncio
async def test_extend_adds_time(make_controller, eventually):
    alice, _ = await _pair(make_controller, eventually)
    before = alice.time_left

    remaining = alice.extend()

    assert remaining >= before + 299
    assert make_controller("carol").extend() == 300


@pytest.mark.asyncio
async def test_close_releases_records(make_controller, store, eventually):
    alice, bob = await _pair(make_controller, eventually)

    await bob.close()

    assert await store.get("matches/bob") is None
    await eventually(lambda: alice.state is SessionState.IDLE)
    assert await bob.start_matching() is False


class ScanBarrierStore(MemoryStore):
    """Holds queue scans until ``parties`` searchers have taken a snapshot."""

    def __init__(self, parties: int) -> None:
        super().__init__()
        self.armed = False
        self._parties = parties
        self._arrived = 0
        self._gate = asyncio.Event()

    async def get_children(self, collection):
        snapshot = await super().get_children(collection)
        if self.armed and collection == "queue" and not self._gate.is_set():
            self._arrived += 1
            if self._arrived >= self._parties:
                self._gate.set()
            else:
                await self._gate.wait()
        return snapshot


@pytest.mark.asyncio
async def test_two_searchers_taking_the_same_candidate_recover(make_controller, eventually, fast_config):
    barrier = ScanBarrierStore(parties=2)
    patient = replace(fast_config, search_timeout_seconds=5.0)
    alice = make_controller("alice", config=patient, backing=barrier)
    bob = make_controller("bob", config=patient, backing=barrier)
    carol = make_controller("carol", config=patient, backing=barrier)
    by_uid = {"alice": alice, "bob": bob, "carol": carol}
    notices = {uid: _notice_log(ctrl) for uid, ctrl in by_uid.items()}

    assert await bob.start_matching()
    barrier.armed = True
    await asyncio.gather(alice.start_matching(), carol.start_matching())

    await eventually(lambda: "ghost_match" in notices["alice"] + notices["carol"])
    await asyncio.sleep(0.5)

    # The last write to bob's record decides who keeps him
    record = MatchRecord.from_dict(await barrier.get("matches/bob"))
    winner = by_uid[record.partner.uid]
    loser = carol if winner is alice else alice

    assert bob.state is SessionState.MATCHED
    assert winner.state is SessionState.MATCHED
    assert bob.room_id == winner.room_id == record.room_id
    assert bob.partner.uid == winner.uid
    assert winner.partner.uid == "bob"

    assert "ghost_match" in notices[loser.uid]
    assert "ghost_match" not in notices[winner.uid]
    assert loser.state is SessionState.SEARCHING
    assert loser.partner is None


@pytest.mark.asyncio
async def test_matched_session_follows_a_rewritten_record(make_controller, eventually, store):
    alice, bob = await _pair(make_controller, eventually)
    alice_notices = _notice_log(alice)
    await bob.send_message("hi alice")
    await eventually(lambda: len(bob.messages) == 1)

    bob_info = PublicInfo(uid="bob", display_name="Bob", group_attributes={"college": "McGill"})
    carol_info = PublicInfo(uid="carol", display_name="Carol", group_attributes={"college": "McGill"})
    await store.upsert("matches/carol", MatchRecord(room_id="room-carol", partner=bob_info, created_at=1).to_dict())
    await store.upsert("matches/bob", MatchRecord(room_id="room-carol", partner=carol_info, created_at=1).to_dict())

    await eventually(lambda: bob.room_id == "room-carol")
    assert bob.partner.uid == "carol"
    assert bob.messages == []

    await bob.send_message("hi carol")
    await eventually(lambda: [m.text for m in bob.messages] == ["hi carol"])

    # alice no longer holds bob; her exit must not end bob's new chat
    await eventually(lambda: "ghost_match" in alice_notices)
    await asyncio.sleep(0.3)
    assert bob.state is SessionState.MATCHED
    assert bob.room_id == "room-carol"


@pytest.mark.asyncio
async def test_deleting_own_record_does_not_move_the_session(make_controller, eventually, store, fast_config):
    alice = make_controller("alice", config=replace(fast_config, partner_left_grace_seconds=5.0))
    bob = make_controller("bob")
    assert await alice.start_matching()
    assert await bob.start_matching()
    await eventually(lambda: alice.state is SessionState.MATCHED and bob.state is SessionState.MATCHED)
    room_id = bob.room_id

    await store.delete("matches/bob")
    await eventually(lambda: alice.notice is not None and alice.notice.code == "partner_left")
    await asyncio.sleep(0.1)

    assert bob.state is SessionState.MATCHED
    assert bob.room_id == room_id
    assert bob.partner.uid == "alice"


class BrokenAppendStore(MemoryStore):
    async def append_to_list(self, list_key, value):
        raise StoreError("append refused")


@pytest.mark.asyncio
async def test_send_failure_sets_notice(make_controller, eventually):
    broken = BrokenAppendStore()
    alice = make_controller("alice", backing=broken)
    bob = make_controller("bob", backing=broken)
    await alice.start_matching()
    await bob.start_matching()
    await eventually(lambda: alice.state is SessionState.MATCHED and bob.state is SessionState.MATCHED)

    assert await alice.send_message("hello") is None

    assert alice.notice.code == "send_failed"
    assert alice.state is SessionState.MATCHED


class ErrorHookStore(MemoryStore):
    """Keeps the ``on_error`` hook of every list watch so tests can fire it."""

    def __init__(self) -> None:
        super().__init__()
        self.error_hooks = {}

    async def subscribe_list(self, list_key, on_change, *, on_error=None):
        self.error_hooks[list_key] = on_error
        return await super().subscribe_list(list_key, on_change, on_error=on_error)


@pytest.mark.asyncio
async def test_watch_errors_degrade_without_leaving_the_chat(make_controller, eventually):
    hooked = ErrorHookStore()
    alice = make_controller("alice", backing=hooked)
    bob = make_controller("bob", backing=hooked)
    await alice.start_matching()
    await bob.start_matching()
    await eventually(lambda: alice.state is SessionState.MATCHED and bob.state is SessionState.MATCHED)
    hook = hooked.error_hooks[f"chats/{alice.room_id}/messages"]

    await hook(StoreError("connection reset"), 1, False)
    assert {alice.connection_status, bob.connection_status} & {"reconnecting"}

    await hook(StoreError("connection reset"), 3, True)
    degraded = [c for c in (alice, bob) if c.connection_status == "degraded"]
    assert len(degraded) == 1
    assert degraded[0].notice.code == "subscription_error"
    assert degraded[0].state is SessionState.MATCHED
