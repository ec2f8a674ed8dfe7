from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy import select, desc, asc, delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from typing import List
import logging

from bomb_round.domain.round_rules import PRUNABLE_STATUSES
from bomb_round.models.schema_models import GameSessionSchema
from bomb_round.models.schemas import Base, GameSessionTable

PRUNABLE_VALUES = [status.value for status in PRUNABLE_STATUSES]


def record_to_columns(record: GameSessionSchema) -> dict:
    """Flatten a session record into column values for game_sessions."""
    values = record.model_dump()
    values["status"] = record.status.value
    return values


class CreateData:
    @staticmethod
    async def create_table(engine: AsyncEngine) -> None:
        """Create table if not exists"""
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except IntegrityError as e:
            logging.warning(f"Table already exists or other integrity error: {e}")

    @staticmethod
    async def create_session_data(record: GameSessionSchema, session: AsyncSession) -> None:
        """Insert a new game session row

        Args:
            record (GameSessionSchema): Session to persist
        """
        async with session.begin():
            session.add(GameSessionTable(**record_to_columns(record)))


class ReadData:
    @staticmethod
    async def read_session_data(
        session_id: str, session: AsyncSession, include_archived: bool = False, for_update: bool = False
    ) -> GameSessionTable | None:
        """Read one game session row

        Args:
            session_id (str): To identify the game session
            include_archived (bool): Also return rows that left the live store
            for_update (bool): Lock the row until the surrounding transaction ends

        Returns:
            GameSessionTable | None: The ORM row, None if missing
        """
        stmt = select(GameSessionTable).where(GameSessionTable.id == session_id)
        if not include_archived:
            stmt = stmt.where(GameSessionTable.is_active.is_(True))
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def read_latest_user_session(user_address: str, session: AsyncSession) -> GameSessionTable | None:
        """Read the most recently updated live pending/active session of a user"""
        stmt = (
            select(GameSessionTable)
            .where(
                GameSessionTable.user_address == user_address,
                GameSessionTable.is_active.is_(True),
                GameSessionTable.status.in_(PRUNABLE_VALUES),
            )
            .order_by(desc(GameSessionTable.updated_at))
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def read_user_sessions(
        user_address: str,
        session: AsyncSession,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> List[GameSessionTable]:
        """Read the session history of a user, archived rows included"""
        column = GameSessionTable.finalized_at if sort_by == "finalized_at" else GameSessionTable.created_at
        stmt = select(GameSessionTable).where(GameSessionTable.user_address == user_address)
        if status is not None:
            stmt = stmt.where(GameSessionTable.status == status)
        stmt = stmt.order_by(desc(column) if descending else asc(column)).offset(offset).limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def count_user_sessions(user_address: str, session: AsyncSession, status: str | None = None) -> int:
        stmt = select(func.count()).select_from(GameSessionTable).where(GameSessionTable.user_address == user_address)
        if status is not None:
            stmt = stmt.where(GameSessionTable.status == status)
        result = await session.execute(stmt)
        return int(result.scalar_one())


class UpdateData:
    @staticmethod
    def apply_session_values(row: GameSessionTable, record: GameSessionSchema) -> None:
        """Copy a merged record onto a loaded row. Does NOT commit."""
        for key, value in record_to_columns(record).items():
            if key != "id":
                setattr(row, key, value)

    @staticmethod
    async def archive_session_data(session_id: str, session: AsyncSession, now: datetime) -> bool:
        """Take a session out of the live store, keeping the row for audit"""
        async with session.begin():
            result = await session.execute(
                update(GameSessionTable)
                .where(GameSessionTable.id == session_id, GameSessionTable.is_active.is_(True))
                .values(is_active=False, updated_at=now)
            )
        return result.rowcount > 0

    @staticmethod
    async def archive_user_sessions(user_address: str, session: AsyncSession, now: datetime) -> int:
        async with session.begin():
            result = await session.execute(
                update(GameSessionTable)
                .where(GameSessionTable.user_address == user_address, GameSessionTable.is_active.is_(True))
                .values(is_active=False, updated_at=now)
            )
        return result.rowcount

    @staticmethod
    async def refresh_expiry(session_id: str, session: AsyncSession, expires_at: datetime) -> None:
        async with session.begin():
            await session.execute(
                update(GameSessionTable).where(GameSessionTable.id == session_id).values(expires_at=expires_at)
            )


class DeleteData:
    @staticmethod
    async def delete_session_data(session_id: str, session: AsyncSession) -> None:
        async with session.begin():
            await session.execute(delete(GameSessionTable).where(GameSessionTable.id == session_id))

    @staticmethod
    async def delete_expired_session_data(now: datetime, idle_cutoff: datetime, session: AsyncSession) -> int:
        """Delete pending/active sessions past their absolute expiry or idle window

        Args:
            now (datetime): Current time
            idle_cutoff (datetime): Sessions not updated since then are abandoned

        Returns:
            int: Number of deleted sessions
        """
        async with session.begin():
            result = await session.execute(
                delete(GameSessionTable).where(
                    GameSessionTable.status.in_(PRUNABLE_VALUES),
                    or_(
                        GameSessionTable.expires_at < now,
                        GameSessionTable.updated_at < idle_cutoff,
                    ),
                )
            )
        deleted = result.rowcount
        if deleted:
            logging.info(f"Pruned {deleted} expired game sessions")
        return deleted
