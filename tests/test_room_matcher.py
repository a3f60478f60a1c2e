import asyncio

import pytest

from moodchat.core.exceptions import MatchmakingError, StoreUnavailableError
from moodchat.schemas.room import Mood, RoomStatus
from moodchat.services import room_service


@pytest.mark.asyncio
async def test_first_user_creates_waiting_room(make_store):
    """Nobody waiting: a new room is created with the caller as user1."""
    store = await make_store()

    room = await room_service.join_or_create(store, Mood.calm, store.user_id)

    assert room.status == RoomStatus.waiting
    assert room.mood == Mood.calm
    assert room.user1_id == store.user_id
    assert room.user2_id is None


@pytest.mark.asyncio
async def test_second_user_same_mood_joins(make_store):
    """Same mood pairs the two users in one active room."""
    alice = await make_store()
    bob = await make_store()

    waiting = await room_service.join_or_create(alice, Mood.calm, alice.user_id)
    joined = await room_service.join_or_create(bob, Mood.calm, bob.user_id)

    assert joined.id == waiting.id
    assert joined.status == RoomStatus.active
    assert joined.user1_id == alice.user_id
    assert joined.user2_id == bob.user_id


@pytest.mark.asyncio
async def test_different_mood_does_not_match(make_store, service_store):
    alice = await make_store()
    bob = await make_store()

    calm = await room_service.join_or_create(alice, Mood.calm, alice.user_id)
    happy = await room_service.join_or_create(bob, Mood.happy, bob.user_id)

    assert happy.id != calm.id
    assert happy.status == RoomStatus.waiting
    rooms = await service_store.select("rooms", status=RoomStatus.waiting)
    assert len(rooms) == 2


@pytest.mark.asyncio
async def test_mood_string_is_accepted(make_store):
    store = await make_store()

    room = await room_service.join_or_create(store, "excited", store.user_id)

    assert room.mood == Mood.excited


@pytest.mark.asyncio
async def test_oldest_waiting_room_is_joined_first(make_store):
    first = await make_store()
    second = await make_store()
    joiner = await make_store()

    oldest = await room_service.join_or_create(first, Mood.sad, first.user_id)
    await room_service.join_or_create(second, Mood.sad, second.user_id)

    joined = await room_service.join_or_create(joiner, Mood.sad, joiner.user_id)

    assert joined.id == oldest.id


@pytest.mark.asyncio
async def test_user_never_joins_own_room(make_store, service_store):
    """Asking again returns the same waiting room instead of pairing with yourself."""
    store = await make_store()

    first = await room_service.join_or_create(store, Mood.angry, store.user_id)
    again = await room_service.join_or_create(store, Mood.angry, store.user_id)

    assert again.id == first.id
    assert again.status == RoomStatus.waiting
    assert again.user2_id is None
    assert len(await service_store.select("rooms")) == 1


@pytest.mark.asyncio
async def test_user_with_active_room_gets_it_back(make_store, service_store):
    alice = await make_store()
    bob = await make_store()
    room = await room_service.join_or_create(alice, Mood.calm, alice.user_id)
    await room_service.join_or_create(bob, Mood.calm, bob.user_id)

    # A different mood still returns the active room
    again = await room_service.join_or_create(bob, Mood.happy, bob.user_id)

    assert again.id == room.id
    assert again.status == RoomStatus.active
    assert len(await service_store.select("rooms")) == 1


@pytest.mark.asyncio
async def test_ended_room_is_not_returned(make_store):
    alice = await make_store()
    bob = await make_store()
    room = await room_service.join_or_create(alice, Mood.calm, alice.user_id)
    await room_service.join_or_create(bob, Mood.calm, bob.user_id)
    await room_service.leave_room(alice, room.id)

    fresh = await room_service.join_or_create(alice, Mood.calm, alice.user_id)

    assert fresh.id != room.id
    assert fresh.status == RoomStatus.waiting


@pytest.mark.asyncio
async def test_concurrent_joiners_only_one_wins(make_store, service_store):
    """Two joiners race for one waiting room: exactly one pairs, the other creates."""
    owner = await make_store()
    joiners = [await make_store(), await make_store()]
    waiting = await room_service.join_or_create(owner, Mood.anxious, owner.user_id)

    results = await asyncio.gather(
        *(room_service.join_or_create(store, Mood.anxious, store.user_id) for store in joiners)
    )

    paired = [room for room in results if room.id == waiting.id]
    created = [room for room in results if room.id != waiting.id]
    assert len(paired) == 1
    assert paired[0].status == RoomStatus.active
    assert len(created) == 1
    assert created[0].status == RoomStatus.waiting
    assert created[0].user1_id in {store.user_id for store in joiners}

    stored = (await service_store.select("rooms", id=waiting.id))[0]
    assert stored["user2_id"] == paired[0].user2_id


@pytest.mark.asyncio
async def test_claim_fails_once_room_is_taken(make_store):
    """A stale candidate read loses the conditional update."""
    owner = await make_store()
    winner = await make_store()
    loser = await make_store()
    room = await room_service.create_room(owner, Mood.happy, owner.user_id)

    assert await room_service.claim_room(winner, room.id, winner.user_id) is not None
    assert await room_service.claim_room(loser, room.id, loser.user_id) is None


@pytest.mark.asyncio
async def test_lost_race_falls_back_to_creating(make_store, monkeypatch):
    owner = await make_store()
    winner = await make_store()
    loser = await make_store()
    room = await room_service.create_room(owner, Mood.happy, owner.user_id)
    stale = await room_service.find_joinable_room(loser, Mood.happy, loser.user_id)
    await room_service.claim_room(winner, room.id, winner.user_id)

    async def stale_candidate(*args, **kwargs):
        return stale

    monkeypatch.setattr(room_service, "find_joinable_room", stale_candidate)

    result = await room_service.join_or_create(loser, Mood.happy, loser.user_id)

    assert result.id != room.id
    assert result.status == RoomStatus.waiting
    assert result.user1_id == loser.user_id


@pytest.mark.asyncio
async def test_store_failure_surfaces_as_matchmaking_error(make_store, monkeypatch):
    store = await make_store()

    async def unavailable(*args, **kwargs):
        raise StoreUnavailableError(operation="select rooms")

    monkeypatch.setattr(store, "select", unavailable)

    with pytest.raises(MatchmakingError):
        await room_service.join_or_create(store, Mood.calm, store.user_id)


@pytest.mark.asyncio
async def test_invalid_mood_is_rejected(make_store):
    store = await make_store()

    with pytest.raises(ValueError):
        await room_service.join_or_create(store, "bored", store.user_id)


@pytest.mark.asyncio
async def test_leave_room_is_idempotent(make_store):
    alice = await make_store()
    bob = await make_store()
    room = await room_service.join_or_create(alice, Mood.calm, alice.user_id)
    await room_service.join_or_create(bob, Mood.calm, bob.user_id)

    ended = await room_service.leave_room(alice, room.id)
    again = await room_service.leave_room(bob, room.id)

    assert ended is not None
    assert ended.status == RoomStatus.ended
    assert again is None


@pytest.mark.asyncio
async def test_cancel_waiting_room_only_for_creator(make_store, service_store):
    owner = await make_store()
    other = await make_store()
    room = await room_service.create_room(owner, Mood.sad, owner.user_id)

    assert await room_service.cancel_waiting_room(other, room.id, other.user_id) is False
    assert await room_service.cancel_waiting_room(owner, room.id, owner.user_id) is True
    assert await service_store.select("rooms", id=room.id) == []
