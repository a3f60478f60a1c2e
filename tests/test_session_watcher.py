import asyncio
import random
from uuid import uuid4

import pytest

from moodchat.core.exceptions import MatchmakingError, StoreUnavailableError
from moodchat.schemas.room import Mood, RoomStatus
from moodchat.services import identity_service, room_service
from moodchat.services.realtime import ChangeFeed
from moodchat.services.session_watcher import SessionWatcher, WatchState, pick_match_timeout

LONG = 60.0


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, outcome):
        self.calls.append(outcome)


async def wait_for_state(watcher: SessionWatcher, timeout: float = 2.0):
    return await asyncio.wait_for(watcher.wait(), timeout)


@pytest.mark.asyncio
async def test_joins_existing_room_immediately(make_store):
    alice = await make_store()
    bob = await make_store()
    room = await room_service.create_room(alice, Mood.calm, alice.user_id)
    matched = Recorder()

    watcher = SessionWatcher(bob, Mood.calm, poll_interval=LONG, timeout=LONG, on_matched=matched)
    state = await watcher.start()

    assert state == WatchState.MATCHED
    assert watcher.scope is None
    assert len(matched.calls) == 1
    assert matched.calls[0].room.id == room.id
    assert matched.calls[0].reason == "joined"


@pytest.mark.asyncio
async def test_push_notification_reports_match(make_store, feed):
    alice = await make_store()
    bob = await make_store()
    matched = Recorder()
    watcher = SessionWatcher(alice, Mood.happy, poll_interval=LONG, timeout=LONG, on_matched=matched)

    assert await watcher.start() == WatchState.WAITING_FOR_PEER
    await room_service.join_or_create(bob, Mood.happy, bob.user_id)
    outcome = await wait_for_state(watcher)

    assert outcome.state == WatchState.MATCHED
    assert outcome.reason == "push"
    assert outcome.room.user2_id == bob.user_id
    assert len(matched.calls) == 1
    assert feed.subscriber_count == 0


@pytest.mark.asyncio
async def test_poll_reports_match_when_push_is_lost(make_store):
    alice = await make_store()
    # Writes from bob go to a feed nobody listens to
    bob = await make_store(feed_override=ChangeFeed())
    watcher = SessionWatcher(alice, Mood.sad, poll_interval=0.05, timeout=LONG)

    await watcher.start()
    await room_service.join_or_create(bob, Mood.sad, bob.user_id)
    outcome = await wait_for_state(watcher)

    assert outcome.state == WatchState.MATCHED
    assert outcome.reason == "poll"
    assert watcher.scope.closed


@pytest.mark.asyncio
async def test_match_reported_once_when_push_and_poll_both_fire(make_store):
    alice = await make_store()
    bob = await make_store()
    matched = Recorder()
    watcher = SessionWatcher(alice, Mood.calm, poll_interval=0.01, timeout=LONG, on_matched=matched)

    await watcher.start()
    await room_service.join_or_create(bob, Mood.calm, bob.user_id)
    await wait_for_state(watcher)
    await asyncio.sleep(0.1)

    assert len(matched.calls) == 1
    assert watcher.state == WatchState.MATCHED


@pytest.mark.asyncio
async def test_timeout_abandons_and_deletes_room(make_store, service_store, session_maker):
    alice = await make_store()
    identity_id = alice.user_id
    abandoned = Recorder()
    watcher = SessionWatcher(alice, Mood.angry, poll_interval=LONG, timeout=0.05, on_abandoned=abandoned)

    await watcher.start()
    room_id = watcher.room.id
    outcome = await wait_for_state(watcher)

    assert outcome.state == WatchState.ABANDONED
    assert outcome.reason == "timeout"
    assert len(abandoned.calls) == 1
    assert await service_store.select("rooms", id=room_id) == []
    assert alice.user_id is None
    async with session_maker() as db:
        identity = await identity_service.get_identity(db, identity_id)
    assert identity.signed_out_at is not None


@pytest.mark.asyncio
async def test_cancel_while_waiting_abandons(make_store, service_store):
    alice = await make_store()
    watcher = SessionWatcher(alice, Mood.excited, poll_interval=LONG, timeout=LONG)
    await watcher.start()
    room_id = watcher.room.id

    assert await watcher.cancel() is True

    assert watcher.state == WatchState.ABANDONED
    assert (await watcher.wait()).reason == "cancelled"
    assert await service_store.select("rooms", id=room_id) == []
    assert await watcher.cancel() is False


@pytest.mark.asyncio
async def test_room_ended_elsewhere_while_waiting(make_store, service_store):
    alice = await make_store()
    ended = Recorder()
    watcher = SessionWatcher(alice, Mood.calm, poll_interval=0.05, timeout=LONG, on_ended=ended)
    await watcher.start()

    await service_store.update("rooms", {"status": RoomStatus.ended}, id=watcher.room.id)
    outcome = await wait_for_state(watcher)

    assert outcome.state == WatchState.ENDED
    assert len(ended.calls) == 1


@pytest.mark.asyncio
async def test_deleted_room_ends_watch(make_store, service_store):
    alice = await make_store()
    watcher = SessionWatcher(alice, Mood.anxious, poll_interval=0.05, timeout=LONG)
    await watcher.start()

    await service_store.delete("rooms", id=watcher.room.id)
    outcome = await wait_for_state(watcher)

    assert outcome.state == WatchState.ENDED
    assert outcome.reason == "room_deleted"


@pytest.mark.asyncio
async def test_poll_errors_do_not_stop_watching(make_store, monkeypatch):
    alice = await make_store()
    bob = await make_store(feed_override=ChangeFeed())
    watcher = SessionWatcher(alice, Mood.happy, poll_interval=0.02, timeout=LONG)
    await watcher.start()

    real_get_room = room_service.get_room
    failures = {"left": 3}

    async def flaky_get_room(store, room_id):
        if failures["left"] > 0:
            failures["left"] -= 1
            raise StoreUnavailableError(operation="select rooms")
        return await real_get_room(store, room_id)

    monkeypatch.setattr(room_service, "get_room", flaky_get_room)
    await room_service.join_or_create(bob, Mood.happy, bob.user_id)
    outcome = await wait_for_state(watcher)

    assert failures["left"] == 0
    assert outcome.state == WatchState.MATCHED


@pytest.mark.asyncio
async def test_no_callbacks_after_teardown(make_store, feed):
    alice = await make_store()
    bob = await make_store()
    calls = Recorder()
    watcher = SessionWatcher(
        alice,
        Mood.sad,
        poll_interval=0.01,
        timeout=0.05,
        on_matched=calls,
        on_abandoned=calls,
        on_ended=calls,
    )
    await watcher.start()

    await watcher.aclose()
    await room_service.join_or_create(bob, Mood.sad, bob.user_id)
    await asyncio.sleep(0.15)

    assert calls.calls == []
    assert watcher.state == WatchState.WAITING_FOR_PEER
    assert watcher.scope.closed
    assert watcher.scope.active_tasks == 0
    assert feed.subscriber_count == 0
    # Closing again is harmless
    watcher.close()


@pytest.mark.asyncio
async def test_matchmaking_failure_propagates(make_store, monkeypatch):
    alice = await make_store()

    async def unavailable(*args, **kwargs):
        raise StoreUnavailableError(operation="select rooms")

    monkeypatch.setattr(alice, "select", unavailable)
    watcher = SessionWatcher(alice, Mood.calm, poll_interval=LONG, timeout=LONG)

    with pytest.raises(MatchmakingError):
        await watcher.start()

    assert watcher.state == WatchState.FAILED
    assert (await watcher.wait()).state == WatchState.FAILED


@pytest.mark.asyncio
async def test_start_twice_is_rejected(make_store):
    alice = await make_store()
    watcher = SessionWatcher(alice, Mood.calm, poll_interval=LONG, timeout=LONG)
    await watcher.start()

    with pytest.raises(RuntimeError):
        await watcher.start()

    await watcher.aclose()


def test_match_timeout_within_bounds():
    rng = random.Random(7)
    for _ in range(50):
        assert 60.0 <= pick_match_timeout(rng) <= 180.0


def test_watcher_requires_identity(service_store):
    with pytest.raises(ValueError):
        SessionWatcher(service_store, Mood.calm)


def test_explicit_zero_poll_interval_is_kept(service_store):
    watcher = SessionWatcher(service_store, Mood.calm, user_id=uuid4(), poll_interval=0, timeout=LONG)

    assert watcher.poll_interval == 0


@pytest.mark.asyncio
async def test_close_during_matchmaking_releases_room(make_store, service_store, monkeypatch, feed):
    alice = await make_store()
    calls = Recorder()
    watcher = SessionWatcher(
        alice,
        Mood.calm,
        poll_interval=0.01,
        timeout=0.05,
        on_matched=calls,
        on_abandoned=calls,
        on_ended=calls,
    )
    entered, release = asyncio.Event(), asyncio.Event()
    real_join_or_create = room_service.join_or_create

    async def slow_join_or_create(*args, **kwargs):
        entered.set()
        await release.wait()
        return await real_join_or_create(*args, **kwargs)

    monkeypatch.setattr(room_service, "join_or_create", slow_join_or_create)
    starting = asyncio.create_task(watcher.start())
    await entered.wait()

    assert await watcher.cancel() is False
    watcher.close()
    release.set()
    state = await starting
    await asyncio.sleep(0.15)

    assert state == WatchState.ABANDONED
    assert (await watcher.wait()).reason == "closed"
    assert calls.calls == []
    assert watcher.scope is None
    assert feed.subscriber_count == 0
    assert await service_store.select("rooms") == []
    assert alice.user_id is None


@pytest.mark.asyncio
async def test_close_during_matchmaking_ends_joined_room(make_store, service_store, monkeypatch):
    alice = await make_store()
    bob = await make_store()
    room = await room_service.create_room(alice, Mood.sad, alice.user_id)
    watcher = SessionWatcher(bob, Mood.sad, poll_interval=LONG, timeout=LONG)
    entered, release = asyncio.Event(), asyncio.Event()
    real_join_or_create = room_service.join_or_create

    async def slow_join_or_create(*args, **kwargs):
        entered.set()
        await release.wait()
        return await real_join_or_create(*args, **kwargs)

    monkeypatch.setattr(room_service, "join_or_create", slow_join_or_create)
    starting = asyncio.create_task(watcher.start())
    await entered.wait()
    watcher.close()
    release.set()

    assert await starting == WatchState.ABANDONED
    stored = (await service_store.select("rooms", id=room.id))[0]
    assert stored["status"] == RoomStatus.ended.value


@pytest.mark.asyncio
async def test_partner_joining_during_abandon_gets_room_ended(make_store, service_store, monkeypatch):
    """The owner gives up just as a joiner claims the room: the joiner must not be stranded."""
    alice = await make_store()
    bob = await make_store()
    watcher = SessionWatcher(alice, Mood.happy, poll_interval=LONG, timeout=0.05)
    await watcher.start()
    room_id = watcher.room.id
    real_cancel = room_service.cancel_waiting_room

    async def joiner_wins_first(store, room_id, user_id):
        await room_service.claim_room(bob, room_id, bob.user_id)
        return await real_cancel(store, room_id, user_id)

    monkeypatch.setattr(room_service, "cancel_waiting_room", joiner_wins_first)
    outcome = await wait_for_state(watcher)

    assert outcome.state == WatchState.ABANDONED
    stored = (await service_store.select("rooms", id=room_id))[0]
    assert stored["user2_id"] == bob.user_id
    assert stored["status"] == RoomStatus.ended.value
    assert alice.user_id is None
