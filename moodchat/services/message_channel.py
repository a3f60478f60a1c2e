"""Live message list for an active room.

Confirmed messages reach the channel three ways: the initial history load,
the INSERT subscription and a periodic full re-read. All three merge by
message id, so a message delivered twice is shown once. Outgoing messages are
shown immediately as drafts keyed by a local correlation id and dropped once
the store confirms or rejects them.

The room ends when the room row is pushed or polled as ``ended``, or when the
store's access policy denies a message read/write. Whichever detector fires
first wins; the end is reported once.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable
from uuid import UUID, uuid4

from moodchat.config import settings
from moodchat.core.exceptions import (
    AppException,
    DecryptionError,
    RoomAccessDeniedError,
    RoomEndedError,
    ValidationError,
)
from moodchat.core.tasks import TaskScope, invoke_callback
from moodchat.schemas.room import RoomStatus
from moodchat.services import crypto_service, room_service
from moodchat.services.crypto_service import KeyPair, RoomKeyRing
from moodchat.services.realtime import Subscription
from moodchat.services.store import StoreGateway

logger = logging.getLogger(__name__)


class ChannelState(str, Enum):
    IDLE = "idle"
    OPEN = "open"
    ENDED = "ended"
    CLOSED = "closed"


@dataclass
class ChatMessage:
    """Displayable message: decrypted text, or a marker that decryption failed."""

    id: str
    room_id: UUID
    sender_id: UUID
    created_at: datetime
    text: str | None
    pending: bool = False
    decrypt_failed: bool = False


def _order_key(row: dict[str, Any]) -> tuple[Any, str]:
    return row["created_at"], str(row["id"])


class MessageChannel:
    def __init__(
        self,
        store: StoreGateway,
        room_id: UUID,
        keyring: RoomKeyRing,
        *,
        user_id: UUID | None = None,
        key_pair: KeyPair | None = None,
        poll_interval: float | None = None,
        on_change: Callable[[], Any] | None = None,
        on_ended: Callable[[str], Any] | None = None,
        on_send_failed: Callable[[AppException], Any] | None = None,
    ):
        self._store = store
        self.room_id = room_id
        self.user_id = user_id or store.user_id
        if self.user_id is None:
            raise ValueError("MessageChannel needs a signed-in identity")
        self._keyring = keyring
        self._key_pair = key_pair or crypto_service.generate_key_pair()
        self._key: bytes | None = None
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.MESSAGE_POLL_INTERVAL_SECONDS
        )

        self._on_change = on_change
        self._on_ended = on_ended
        self._on_send_failed = on_send_failed

        self.compose = ""
        self.state = ChannelState.IDLE
        self.ended_reason: str | None = None

        # Confirmed rows in display order, plus their decrypted views
        self._rows: list[dict[str, Any]] = []
        self._views: dict[str, ChatMessage] = {}
        # Optimistic drafts by correlation id
        self._drafts: dict[str, ChatMessage] = {}

        self._scope = TaskScope(f"chat-{room_id}")
        self._ended: asyncio.Event = asyncio.Event()

    @property
    def messages(self) -> list[ChatMessage]:
        confirmed = [self._view(row) for row in self._rows]
        return confirmed + list(self._drafts.values())

    @property
    def scope(self) -> TaskScope:
        return self._scope

    @property
    def is_ended(self) -> bool:
        return self.state == ChannelState.ENDED

    # ---------- lifecycle ----------

    async def open(self) -> ChannelState:
        """Fetch the room key, subscribe, load history and start polling."""
        if self.state != ChannelState.IDLE:
            return self.state
        try:
            self._key = await crypto_service.get_or_establish_room_key(
                self._store, self._keyring, self.room_id, self.user_id
            )
            if self.state != ChannelState.IDLE:
                # Closed while the key was being fetched
                return self.state
            # Subscribe before the first read so nothing falls in between
            messages = self._store.subscribe("messages", "INSERT", room_id=self.room_id)
            room = self._store.subscribe("rooms", "UPDATE", id=self.room_id)
            self._scope.attach(messages)
            self._scope.attach(room)
            self._scope.spawn(self._listen_messages(messages), "messages")
            self._scope.spawn(self._listen_room(room), "room")
            self.state = ChannelState.OPEN

            await self.load_history()
        except RoomAccessDeniedError:
            await self._end("access_denied")
            return self.state
        except AppException:
            self.close()
            raise

        if self.state == ChannelState.OPEN:
            self._scope.every(self.poll_interval, self._poll, "poll")
            logger.info("Chat channel open for room %s", self.room_id)
        return self.state

    async def load_history(self) -> list[ChatMessage]:
        try:
            rows = await self._store.select("messages", room_id=self.room_id, order_by="created_at")
        except RoomAccessDeniedError:
            await self._end("access_denied")
            return self.messages
        self._reconcile(rows)
        return self.messages

    async def wait_ended(self) -> str | None:
        await self._ended.wait()
        return self.ended_reason

    def close(self) -> None:
        """Tear down subscriptions and polling without touching the room. Idempotent."""
        self._scope.close()
        if self.state in (ChannelState.IDLE, ChannelState.OPEN):
            self.state = ChannelState.CLOSED

    async def aclose(self) -> None:
        self.close()
        await self._scope.wait_closed()

    async def leave(self) -> None:
        """
        End the room for the partner (best effort) and drop the local identity.
        The local session exits even if the store cannot be reached.
        """
        self.state = ChannelState.CLOSED
        self._scope.close()
        self._drafts.clear()
        try:
            await room_service.leave_room(self._store, self.room_id)
        except AppException as e:
            logger.warning("Could not mark room %s as ended: %s", self.room_id, e.message)
        self._keyring.discard(self.room_id)
        try:
            await self._store.sign_out()
        except AppException as e:
            logger.warning("Sign-out after leaving room %s failed: %s", self.room_id, e.message)

    # ---------- sending ----------

    async def send(self, text: str | None = None) -> ChatMessage | None:
        """
        Send ``text`` (or the compose buffer). Returns the confirmed message,
        or None when nothing was sent.
        """
        if self.state in (ChannelState.ENDED, ChannelState.CLOSED):
            raise RoomEndedError()
        if self.state != ChannelState.OPEN or self._key is None:
            raise RuntimeError("MessageChannel.open() must run before send()")

        original = self.compose if text is None else text
        body = original.strip()
        if not body:
            return None
        if len(body) > settings.MESSAGE_MAX_LENGTH:
            raise ValidationError(
                f"Message is longer than {settings.MESSAGE_MAX_LENGTH} characters",
                field="content",
            )

        payload = crypto_service.encrypt(body, self._key)

        correlation_id = f"draft-{uuid4().hex}"
        self._drafts[correlation_id] = ChatMessage(
            id=correlation_id,
            room_id=self.room_id,
            sender_id=self.user_id,
            created_at=datetime.now(timezone.utc),
            text=body,
            pending=True,
        )
        self.compose = ""
        self._changed()

        try:
            row = await self._store.insert(
                "messages",
                {
                    "room_id": self.room_id,
                    "sender_id": self.user_id,
                    "content": payload.ciphertext,
                    "iv": payload.iv,
                    "sender_public_key": self._key_pair.public_key,
                },
            )
        except RoomAccessDeniedError:
            self._drafts.pop(correlation_id, None)
            self.compose = ""
            await self._end("access_denied")
            return None
        except AppException as e:
            self._drafts.pop(correlation_id, None)
            self.compose = original
            self._changed()
            logger.warning("Sending to room %s failed: %s", self.room_id, e.message)
            await invoke_callback(self._on_send_failed, e)
            return None

        self._drafts.pop(correlation_id, None)
        self._merge(row)
        self._changed()
        return self._view(row)

    # ---------- delivery paths ----------

    async def _listen_messages(self, subscription: Subscription) -> None:
        async for event in subscription:
            if event.new is not None and self._merge(event.new):
                self._changed()

    async def _listen_room(self, subscription: Subscription) -> None:
        async for event in subscription:
            if event.new is not None and event.new.get("status") == RoomStatus.ended.value:
                await self._end("room_ended")

    async def _poll(self) -> None:
        try:
            room = await room_service.get_room(self._store, self.room_id)
            if room is None or room.is_ended:
                await self._end("room_ended")
                return
            rows = await self._store.select("messages", room_id=self.room_id, order_by="created_at")
        except RoomAccessDeniedError:
            await self._end("access_denied")
            return
        except AppException as e:
            logger.warning("Polling messages for room %s failed: %s", self.room_id, e.message)
            return
        self._reconcile(rows)

    def _merge(self, row: dict[str, Any]) -> bool:
        """Add one confirmed row unless its id is already shown."""
        if self.state != ChannelState.OPEN:
            return False
        message_id = str(row["id"])
        if any(str(existing["id"]) == message_id for existing in self._rows):
            return False
        key = _order_key(row)
        index = len(self._rows)
        while index > 0 and _order_key(self._rows[index - 1]) > key:
            index -= 1
        self._rows.insert(index, row)
        return True

    def _reconcile(self, fetched: list[dict[str, Any]]) -> bool:
        """
        Adopt a full re-read if it differs from what is shown. Rows pushed after
        the read started are kept, since messages are never deleted.
        """
        if self.state != ChannelState.OPEN:
            return False
        fetched_ids = {str(row["id"]) for row in fetched}
        newer = [row for row in self._rows if str(row["id"]) not in fetched_ids]
        merged = sorted([*fetched, *newer], key=_order_key)
        if merged == self._rows:
            return False
        self._rows = merged
        self._changed()
        return True

    def _view(self, row: dict[str, Any]) -> ChatMessage:
        message_id = str(row["id"])
        view = self._views.get(message_id)
        if view is not None:
            return view
        try:
            text = crypto_service.decrypt(row["content"], row["iv"], self._key)
            failed = False
        except DecryptionError:
            logger.warning("Message %s in room %s could not be decrypted", message_id, self.room_id)
            text, failed = None, True
        view = ChatMessage(
            id=message_id,
            room_id=row["room_id"],
            sender_id=row["sender_id"],
            created_at=row["created_at"],
            text=text,
            decrypt_failed=failed,
        )
        self._views[message_id] = view
        return view

    # ---------- termination ----------

    async def _end(self, reason: str) -> bool:
        if self.state in (ChannelState.ENDED, ChannelState.CLOSED):
            return False
        self.state = ChannelState.ENDED
        self.ended_reason = reason
        self._scope.close()
        self._drafts.clear()
        self._ended.set()
        logger.info("Chat in room %s ended (%s)", self.room_id, reason)
        await invoke_callback(self._on_ended, reason)
        return True

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change()
        except Exception:
            logger.exception("Message list listener failed")
