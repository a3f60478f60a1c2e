"""Store gateway: the only path from session logic to the database.

Every operation runs in its own short transaction and returns plain row
dicts. Writes publish change events to the feed once they have committed.
Driver failures surface as ``StoreUnavailableError``; the row-level policy on
``messages`` and ``room_keys`` surfaces as ``RoomAccessDeniedError``.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator
from uuid import UUID

from sqlalchemy import ColumnElement, Table, delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from moodchat.core.exceptions import (
    ConflictError,
    RoomAccessDeniedError,
    StoreUnavailableError,
)
from moodchat.models.identity import AnonymousIdentity
from moodchat.models.message import Message
from moodchat.models.room import Room
from moodchat.models.room_key import RoomKey
from moodchat.schemas.events import EventType
from moodchat.schemas.room import RoomStatus
from moodchat.services.realtime import ChangeEvent, ChangeFeed, Subscription

logger = logging.getLogger(__name__)

TABLES: dict[str, Table] = {
    "rooms": Room.__table__,
    "messages": Message.__table__,
    "room_keys": RoomKey.__table__,
}

# Tables guarded by the room participation policy
ROOM_SCOPED_TABLES = {"messages", "room_keys"}


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _as_uuid(value: Any) -> UUID | None:
    if value is None or isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


class StoreGateway:
    """
    Client handle on the store, optionally bound to an anonymous identity.

    An unbound gateway acts with service privileges and skips the row-level
    policy; a bound one sees only rooms it participates in that have not
    ended.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        feed: ChangeFeed,
        user_id: UUID | None = None,
    ):
        self._session_maker = session_maker
        self._feed = feed
        self._user_id = user_id

    @property
    def user_id(self) -> UUID | None:
        return self._user_id

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    # ---------- identity ----------

    async def sign_in_anonymously(self) -> dict[str, Any]:
        """Create a fresh anonymous identity and bind this gateway to it."""
        async with self._transaction("sign_in") as session:
            result = await session.execute(
                insert(AnonymousIdentity.__table__).returning(*AnonymousIdentity.__table__.c)
            )
            identity = dict(result.mappings().one())
        self._user_id = identity["id"]
        logger.info("Signed in anonymous identity %s", identity["id"])
        return identity

    async def sign_out(self) -> None:
        if self._user_id is None:
            return
        identity_id, self._user_id = self._user_id, None
        async with self._transaction("sign_out") as session:
            await session.execute(
                update(AnonymousIdentity)
                .where(AnonymousIdentity.id == identity_id)
                .values(signed_out_at=datetime.now(timezone.utc))
            )
        logger.info("Signed out anonymous identity %s", identity_id)

    # ---------- rows ----------

    async def select(
        self,
        table: str,
        *where: ColumnElement[bool],
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        **eq: Any,
    ) -> list[dict[str, Any]]:
        target = TABLES[table]
        query = select(*target.c).where(*self._filters(target, where, eq))
        if order_by:
            column = target.c[order_by]
            query = query.order_by(column.desc() if descending else column.asc())
            # Stable order for equal timestamps
            query = query.order_by(*target.primary_key.columns)
        if limit is not None:
            query = query.limit(limit)

        async with self._transaction(f"select {table}") as session:
            if table in ROOM_SCOPED_TABLES:
                await self._authorize_room(session, eq.get("room_id"))
            result = await session.execute(query)
            return [dict(row) for row in result.mappings().all()]

    async def update(
        self,
        table: str,
        patch: dict[str, Any],
        *where: ColumnElement[bool],
        **eq: Any,
    ) -> list[dict[str, Any]]:
        """Conditional update; returns only the rows the filters matched."""
        target = TABLES[table]
        if table in ROOM_SCOPED_TABLES:
            raise RoomAccessDeniedError("Rows in this table are append-only")

        values = {key: _plain(value) for key, value in patch.items()}
        statement = (
            update(target)
            .where(*self._filters(target, where, eq))
            .values(**values)
            .returning(*target.c)
        )
        async with self._transaction(f"update {table}") as session:
            result = await session.execute(statement)
            rows = [dict(row) for row in result.mappings().all()]

        for row in rows:
            self._publish(table, "UPDATE", new=row)
        return rows

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        target = TABLES[table]
        values = {key: _plain(value) for key, value in record.items()}

        async with self._transaction(f"insert {table}") as session:
            if table in ROOM_SCOPED_TABLES:
                await self._authorize_room(session, values.get("room_id"))
                if self._user_id is not None and table == "messages":
                    if _as_uuid(values.get("sender_id")) != self._user_id:
                        raise RoomAccessDeniedError("Cannot send on behalf of another participant")
            result = await session.execute(insert(target).values(**values).returning(*target.c))
            row = dict(result.mappings().one())

        self._publish(table, "INSERT", new=row)
        return row

    async def delete(self, table: str, *where: ColumnElement[bool], **eq: Any) -> int:
        target = TABLES[table]
        if table in ROOM_SCOPED_TABLES:
            raise RoomAccessDeniedError("Rows in this table are append-only")

        statement = (
            delete(target)
            .where(*self._filters(target, where, eq))
            .returning(*target.c)
        )
        async with self._transaction(f"delete {table}") as session:
            result = await session.execute(statement)
            rows = [dict(row) for row in result.mappings().all()]

        for row in rows:
            self._publish(table, "DELETE", old=row)
        return len(rows)

    def subscribe(self, table: str, event_type: EventType, **eq: Any) -> Subscription:
        if table not in TABLES:
            raise KeyError(table)
        return self._feed.subscribe(table, event_type, **eq)

    # ---------- internals ----------

    @staticmethod
    def _filters(
        target: Table,
        where: tuple[ColumnElement[bool], ...],
        eq: dict[str, Any],
    ) -> list[ColumnElement[bool]]:
        # `column == None` renders as IS NULL
        return [*where, *(target.c[key] == _plain(value) for key, value in eq.items())]

    async def _authorize_room(self, session: AsyncSession, room_id: Any) -> None:
        if self._user_id is None:
            return
        room_uuid = _as_uuid(room_id)
        room = await session.get(Room, room_uuid) if room_uuid else None
        if (
            room is None
            or room.status == RoomStatus.ended.value
            or self._user_id not in (room.user1_id, room.user2_id)
        ):
            raise RoomAccessDeniedError(room_id=str(room_id) if room_id else None)

    def _publish(self, table: str, event_type: EventType, **rows: dict[str, Any]) -> None:
        self._feed.publish(ChangeEvent(table=table, event_type=event_type, **rows))

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    yield session
        except IntegrityError as e:
            logger.info("Store conflict during %s: %s", operation, e.orig)
            raise ConflictError(f"Conflicting write during {operation}") from e
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Store error during %s: %s", operation, e)
            raise StoreUnavailableError(operation=operation) from e
