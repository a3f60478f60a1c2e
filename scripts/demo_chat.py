#!/usr/bin/env python3
"""Run two anonymous clients through a full chat session against the configured database.

Both clients pick the same mood: the first one waits, the second one joins,
they exchange a few encrypted messages and the second one leaves.
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from moodchat.database import Base, async_session_maker, engine
from moodchat.schemas.room import Mood
from moodchat.services.crypto_service import RoomKeyRing
from moodchat.services.message_channel import MessageChannel
from moodchat.services.realtime import ChangeFeed
from moodchat.services.session_watcher import SessionWatcher, WatchState
from moodchat.services.store import StoreGateway


async def run_demo(mood: Mood, lines: list[str], create_tables: bool) -> None:
    if create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    feed = ChangeFeed()
    first = StoreGateway(async_session_maker, feed)
    second = StoreGateway(async_session_maker, feed)
    await first.sign_in_anonymously()
    await second.sign_in_anonymously()

    waiting = SessionWatcher(first, mood, timeout=30)
    print(f"First client: {(await waiting.start()).value}")

    joining = SessionWatcher(second, mood, timeout=30)
    print(f"Second client: {(await joining.start()).value}")

    outcome = await waiting.wait()
    if outcome.state != WatchState.MATCHED:
        print(f"No match: {outcome.state.value} ({outcome.reason})")
        return
    room_id = outcome.room.id
    print(f"Matched in room {room_id}")

    first_chat = MessageChannel(first, room_id, RoomKeyRing.from_settings())
    second_chat = MessageChannel(second, room_id, RoomKeyRing())
    await first_chat.open()
    await second_chat.open()

    for index, line in enumerate(lines):
        sender = first_chat if index % 2 == 0 else second_chat
        await sender.send(line)
    await asyncio.sleep(0.2)

    for message in first_chat.messages:
        who = "me" if message.sender_id == first_chat.user_id else "them"
        print(f"  [{who}] {message.text}")

    await second_chat.leave()
    reason = await asyncio.wait_for(first_chat.wait_ended(), timeout=5)
    print(f"Chat ended for the first client: {reason}")
    await first_chat.leave()
    await engine.dispose()


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Two-client chat session demo")
    parser.add_argument(
        "--mood",
        default=Mood.calm.value,
        choices=[mood.value for mood in Mood],
        help="Mood both clients pick (default: calm)",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create tables directly instead of relying on alembic",
    )
    parser.add_argument(
        "lines",
        nargs="*",
        default=["hi", "hey, how's your day?", "pretty calm, you?"],
        help="Messages to exchange, alternating between the clients",
    )

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_demo(Mood(args.mood), args.lines, args.create_tables))


if __name__ == "__main__":
    main()
