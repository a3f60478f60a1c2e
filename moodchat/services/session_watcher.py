"""Waiting-room watcher: from "looking for a partner" to matched or abandoned.

After matchmaking leaves this client as the owner of a waiting room, two
independent signals race to report the partner's arrival: the change-feed
subscription on the room row and a fixed-interval poll of the same row. Both
feed one guarded transition function, so whichever fires second is a no-op.
A randomized timeout abandons the search and deletes the unjoined room.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable
from uuid import UUID

from moodchat.config import settings
from moodchat.core.exceptions import AppException
from moodchat.core.tasks import TaskScope, invoke_callback
from moodchat.schemas.room import Mood, RoomResponse
from moodchat.services import room_service
from moodchat.services.realtime import Subscription
from moodchat.services.store import StoreGateway

logger = logging.getLogger(__name__)


class WatchState(str, Enum):
    SEARCHING = "searching"
    WAITING_FOR_PEER = "waiting_for_peer"
    MATCHED = "matched"
    ABANDONED = "abandoned"
    # Room ended through another path while still waiting
    ENDED = "ended"
    # Initial search failed; the error went to the caller
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    WatchState.SEARCHING: {
        WatchState.MATCHED,
        WatchState.WAITING_FOR_PEER,
        WatchState.ABANDONED,
        WatchState.FAILED,
    },
    WatchState.WAITING_FOR_PEER: {WatchState.MATCHED, WatchState.ABANDONED, WatchState.ENDED},
}


@dataclass(frozen=True)
class WatchOutcome:
    state: WatchState
    room: RoomResponse | None
    reason: str | None = None


Listener = Callable[[WatchOutcome], Any]


def pick_match_timeout(rng: random.Random | None = None) -> float:
    """Uniform between the configured bounds, drawn once per session."""
    return (rng or random).uniform(
        settings.MATCH_TIMEOUT_MIN_SECONDS,
        settings.MATCH_TIMEOUT_MAX_SECONDS,
    )


class SessionWatcher:
    def __init__(
        self,
        store: StoreGateway,
        mood: Mood,
        user_id: UUID | None = None,
        *,
        poll_interval: float | None = None,
        timeout: float | None = None,
        on_matched: Listener | None = None,
        on_abandoned: Listener | None = None,
        on_ended: Listener | None = None,
        rng: random.Random | None = None,
    ):
        self._store = store
        self.mood = Mood(mood)
        self.user_id = user_id or store.user_id
        if self.user_id is None:
            raise ValueError("SessionWatcher needs a signed-in identity")

        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.WAITING_POLL_INTERVAL_SECONDS
        )
        self.timeout = timeout if timeout is not None else pick_match_timeout(rng)

        self._listeners = {
            WatchState.MATCHED: on_matched,
            WatchState.ABANDONED: on_abandoned,
            WatchState.ENDED: on_ended,
        }
        self._state = WatchState.SEARCHING
        self._started = False
        # Set by close(); start() must not acquire anything afterwards
        self._closed = False
        self._scope: TaskScope | None = None
        self._outcome: asyncio.Future[WatchOutcome] | None = None
        self.room: RoomResponse | None = None

    @property
    def state(self) -> WatchState:
        return self._state

    @property
    def scope(self) -> TaskScope | None:
        return self._scope

    async def start(self) -> WatchState:
        """
        Run matchmaking and, if this client now owns a waiting room, start
        listening for a partner. Matchmaking errors propagate to the caller.
        """
        if self._started:
            raise RuntimeError("SessionWatcher.start() called twice")
        self._started = True
        self._outcome = asyncio.get_running_loop().create_future()

        try:
            room = await room_service.join_or_create(self._store, self.mood, self.user_id)
        except AppException as e:
            self._enter(WatchState.FAILED)
            self._resolve(WatchOutcome(WatchState.FAILED, None, e.code.value))
            raise

        self.room = room
        if self._closed:
            # Torn down while matchmaking ran: hand the room back silently
            if self._enter(WatchState.ABANDONED):
                logger.info("Watcher closed during matchmaking, releasing room %s", room.id)
                await self._cleanup()
                self._resolve(WatchOutcome(WatchState.ABANDONED, room, "closed"))
        elif room.is_active:
            await self._finish(WatchState.MATCHED, room, "joined")
        elif self._enter(WatchState.WAITING_FOR_PEER):
            self._acquire(room)
            logger.info(
                "Waiting for a %s partner in room %s (timeout %.0fs)",
                self.mood.value,
                room.id,
                self.timeout,
            )
        return self._state

    async def wait(self) -> WatchOutcome:
        if self._outcome is None:
            raise RuntimeError("SessionWatcher was not started")
        return await asyncio.shield(self._outcome)

    async def cancel(self) -> bool:
        """User gave up waiting: same cleanup as the timeout."""
        if self._state != WatchState.WAITING_FOR_PEER:
            self.close()
            return False
        return await self._finish(WatchState.ABANDONED, self.room, "cancelled")

    def close(self) -> None:
        """Stop the subscription, poll and timeout together. Idempotent."""
        self._closed = True
        if self._scope is not None:
            self._scope.close()

    async def aclose(self) -> None:
        self.close()
        if self._scope is not None:
            await self._scope.wait_closed()

    # ---------- signal sources ----------

    def _acquire(self, room: RoomResponse) -> None:
        scope = TaskScope(f"waiting-room-{room.id}")
        self._scope = scope

        subscription = self._store.subscribe("rooms", "UPDATE", id=room.id)
        scope.attach(subscription)
        scope.spawn(self._listen(subscription), "push")
        scope.every(self.poll_interval, self._poll, "poll")
        scope.after(self.timeout, self._on_timeout, "timeout")

    async def _listen(self, subscription: Subscription) -> None:
        async for event in subscription:
            if event.new is None:
                continue
            await self._observe(RoomResponse.model_validate(event.new), "push")

    async def _poll(self) -> None:
        try:
            room = await room_service.get_room(self._store, self.room.id)
        except AppException as e:
            # The backup path must survive transient failures
            logger.warning("Polling room %s failed: %s", self.room.id, e.message)
            return
        if room is None:
            await self._finish(WatchState.ENDED, self.room, "room_deleted")
            return
        await self._observe(room, "poll")

    async def _observe(self, room: RoomResponse, source: str) -> None:
        if room.is_active:
            await self._finish(WatchState.MATCHED, room, source)
        elif room.is_ended:
            await self._finish(WatchState.ENDED, room, source)

    async def _on_timeout(self) -> None:
        await self._finish(WatchState.ABANDONED, self.room, "timeout")

    # ---------- transitions ----------

    def _enter(self, state: WatchState) -> bool:
        if state not in ALLOWED_TRANSITIONS.get(self._state, set()):
            return False
        logger.debug("Watcher %s -> %s", self._state.value, state.value)
        self._state = state
        return True

    async def _finish(self, state: WatchState, room: RoomResponse | None, reason: str) -> bool:
        if not self._enter(state):
            return False
        self.close()
        self.room = room or self.room
        outcome = WatchOutcome(state, self.room, reason)
        logger.info("Room %s: %s via %s", self.room.id if self.room else None, state.value, reason)

        if state == WatchState.ABANDONED:
            await self._cleanup()

        self._resolve(outcome)
        await invoke_callback(self._listeners.get(state), outcome)
        return True

    async def _cleanup(self) -> None:
        try:
            await self._release_room()
        except AppException as e:
            logger.warning("Could not release abandoned room %s: %s", self.room.id, e.message)
        try:
            await self._store.sign_out()
        except AppException as e:
            logger.warning("Sign-out after abandoning room failed: %s", e.message)

    async def _release_room(self) -> None:
        """
        Delete the unjoined room. If a partner claimed it in the meantime the
        delete matches nothing, so the room is ended instead and the partner's
        chat terminates rather than waiting on someone who already left.
        """
        room = self.room
        if room is None:
            return
        if not room.is_active and room.user1_id == self.user_id:
            if await room_service.cancel_waiting_room(self._store, room.id, self.user_id):
                return
            room = await room_service.get_room(self._store, room.id)
        if room is not None and room.is_active:
            await room_service.leave_room(self._store, room.id)
            logger.info("Room %s was joined while being abandoned, ended it", room.id)

    def _resolve(self, outcome: WatchOutcome) -> None:
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(outcome)
