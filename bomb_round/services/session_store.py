"""Session persistence with an in-process fallback.

- ``SqlSessionBackend`` is the durable store (PostgreSQL in production).
- ``MemorySessionBackend`` caches pending/active records written to the
  durable store and takes over when it fails. Terminal and archived records
  are evicted from the cache while the durable store is healthy.
- ``BackendSelector`` owns the fallback flag. After the first durable failure
  every call uses the memory backend until the process restarts.
- Records handed to callers are always deep copies.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from bomb_round.crud import CreateData, DeleteData, ReadData, UpdateData, record_to_columns
from bomb_round.domain.round_rules import PRUNABLE_STATUSES, SessionStatus
from bomb_round.models.schema_models import GameSessionSchema
from bomb_round.models.schemas import GameSessionTable

# Fields that callers must always replace as a whole.
LIST_FIELDS = ("rows", "locked_tile_counts")
IMMUTABLE_FIELDS = ("id", "server_seed", "server_seed_hash", "client_seed", "nonce_base", "created_at")

Mutation = Callable[[GameSessionSchema], GameSessionSchema]
Guard = Callable[[GameSessionSchema], None]


class SessionBackend(ABC):
    @abstractmethod
    async def create(self, record: GameSessionSchema) -> None: ...

    @abstractmethod
    async def get(self, session_id: str, include_archived: bool = False) -> GameSessionSchema | None: ...

    @abstractmethod
    async def update(self, session_id: str, mutate: Mutation) -> GameSessionSchema | None:
        """Atomically read the live record, apply ``mutate`` and persist the result."""

    @abstractmethod
    async def put(self, record: GameSessionSchema) -> None:
        """Insert or overwrite a record as is."""

    @abstractmethod
    async def delete(self, session_id: str) -> None: ...

    @abstractmethod
    async def archive(self, session_id: str, now: datetime) -> bool: ...

    @abstractmethod
    async def archive_user(self, user_address: str, now: datetime) -> int: ...

    @abstractmethod
    async def latest_live_for_user(self, user_address: str) -> GameSessionSchema | None: ...

    @abstractmethod
    async def refresh_expiry(self, session_id: str, expires_at: datetime) -> None: ...

    @abstractmethod
    async def list_user(
        self, user_address: str, status: str | None, limit: int, offset: int, sort_by: str, descending: bool
    ) -> List[GameSessionSchema]: ...

    @abstractmethod
    async def count_user(self, user_address: str, status: str | None) -> int: ...

    @abstractmethod
    async def prune(self, now: datetime, idle_cutoff: datetime) -> int: ...


class MemorySessionBackend(SessionBackend):
    """Lock-guarded keyed map owned by a single store instance."""

    def __init__(self):
        self._live: dict[str, GameSessionSchema] = {}
        self._archived: dict[str, GameSessionSchema] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._live) + len(self._archived)

    async def forget_user(self, user_address: str) -> None:
        """Drop every cached record of a user, live or archived."""
        async with self._lock:
            for records in (self._live, self._archived):
                for session_id in [key for key, record in records.items() if record.user_address == user_address]:
                    del records[session_id]

    async def create(self, record: GameSessionSchema) -> None:
        async with self._lock:
            if record.id in self._live or record.id in self._archived:
                raise ValueError(f"Session {record.id} already exists")
            self._live[record.id] = record.model_copy(deep=True)

    async def get(self, session_id: str, include_archived: bool = False) -> GameSessionSchema | None:
        async with self._lock:
            record = self._live.get(session_id)
            if record is None and include_archived:
                record = self._archived.get(session_id)
            return record.model_copy(deep=True) if record is not None else None

    async def update(self, session_id: str, mutate: Mutation) -> GameSessionSchema | None:
        async with self._lock:
            current = self._live.get(session_id)
            if current is None:
                return None
            merged = mutate(current.model_copy(deep=True))
            self._live[session_id] = merged.model_copy(deep=True)
            return merged

    async def put(self, record: GameSessionSchema) -> None:
        async with self._lock:
            target = self._live if record.is_active else self._archived
            target[record.id] = record.model_copy(deep=True)

    async def delete(self, session_id: str) -> None:
        async with self._lock:
            self._live.pop(session_id, None)
            self._archived.pop(session_id, None)

    async def archive(self, session_id: str, now: datetime) -> bool:
        async with self._lock:
            record = self._live.pop(session_id, None)
            if record is None:
                return False
            self._archived[session_id] = record.model_copy(update={"is_active": False, "updated_at": now})
            return True

    async def archive_user(self, user_address: str, now: datetime) -> int:
        async with self._lock:
            ids = [key for key, record in self._live.items() if record.user_address == user_address]
            for session_id in ids:
                record = self._live.pop(session_id)
                self._archived[session_id] = record.model_copy(update={"is_active": False, "updated_at": now})
            return len(ids)

    async def latest_live_for_user(self, user_address: str) -> GameSessionSchema | None:
        async with self._lock:
            candidates = [
                record
                for record in self._live.values()
                if record.user_address == user_address and record.status in PRUNABLE_STATUSES
            ]
            if not candidates:
                return None
            latest = max(candidates, key=lambda record: record.updated_at)
            return latest.model_copy(deep=True)

    async def refresh_expiry(self, session_id: str, expires_at: datetime) -> None:
        async with self._lock:
            record = self._live.get(session_id)
            if record is not None:
                self._live[session_id] = record.model_copy(update={"expires_at": expires_at})

    def _user_records(self, user_address: str, status: str | None) -> List[GameSessionSchema]:
        records = [*self._live.values(), *self._archived.values()]
        return [
            record
            for record in records
            if record.user_address == user_address and (status is None or record.status.value == status)
        ]

    async def list_user(
        self, user_address: str, status: str | None, limit: int, offset: int, sort_by: str, descending: bool
    ) -> List[GameSessionSchema]:
        async with self._lock:
            records = self._user_records(user_address, status)
            key = "finalized_at" if sort_by == "finalized_at" else "created_at"
            records.sort(key=lambda record: getattr(record, key) or datetime.min, reverse=descending)
            return [record.model_copy(deep=True) for record in records[offset : offset + limit]]

    async def count_user(self, user_address: str, status: str | None) -> int:
        async with self._lock:
            return len(self._user_records(user_address, status))

    async def prune(self, now: datetime, idle_cutoff: datetime) -> int:
        async with self._lock:
            expired = [
                session_id
                for session_id, record in self._live.items()
                if record.status in PRUNABLE_STATUSES
                and (record.expires_at < now or record.updated_at < idle_cutoff)
            ]
            for session_id in expired:
                del self._live[session_id]
            return len(expired)


class SqlSessionBackend(SessionBackend):
    """game_sessions table through async SQLAlchemy."""

    def __init__(self, Session: async_sessionmaker):
        self.Session: async_sessionmaker = Session

    async def create_table(self) -> None:
        await CreateData.create_table(self.Session.kw["bind"])

    async def create(self, record: GameSessionSchema) -> None:
        async with self.Session() as session:
            await CreateData.create_session_data(record, session)

    async def get(self, session_id: str, include_archived: bool = False) -> GameSessionSchema | None:
        async with self.Session() as session:
            row = await ReadData.read_session_data(session_id, session, include_archived=include_archived)
            return GameSessionSchema.model_validate(row) if row is not None else None

    async def update(self, session_id: str, mutate: Mutation) -> GameSessionSchema | None:
        # The row stays locked (SELECT ... FOR UPDATE) between the read and the write.
        async with self.Session() as session:
            async with session.begin():
                row = await ReadData.read_session_data(session_id, session, for_update=True)
                if row is None:
                    return None
                merged = mutate(GameSessionSchema.model_validate(row))
                UpdateData.apply_session_values(row, merged)
            return merged

    async def put(self, record: GameSessionSchema) -> None:
        async with self.Session() as session:
            async with session.begin():
                row = await ReadData.read_session_data(record.id, session, include_archived=True, for_update=True)
                if row is None:
                    session.add(GameSessionTable(**record_to_columns(record)))
                else:
                    UpdateData.apply_session_values(row, record)

    async def delete(self, session_id: str) -> None:
        async with self.Session() as session:
            await DeleteData.delete_session_data(session_id, session)

    async def archive(self, session_id: str, now: datetime) -> bool:
        async with self.Session() as session:
            return await UpdateData.archive_session_data(session_id, session, now)

    async def archive_user(self, user_address: str, now: datetime) -> int:
        async with self.Session() as session:
            return await UpdateData.archive_user_sessions(user_address, session, now)

    async def latest_live_for_user(self, user_address: str) -> GameSessionSchema | None:
        async with self.Session() as session:
            row = await ReadData.read_latest_user_session(user_address, session)
            return GameSessionSchema.model_validate(row) if row is not None else None

    async def refresh_expiry(self, session_id: str, expires_at: datetime) -> None:
        async with self.Session() as session:
            await UpdateData.refresh_expiry(session_id, session, expires_at)

    async def list_user(
        self, user_address: str, status: str | None, limit: int, offset: int, sort_by: str, descending: bool
    ) -> List[GameSessionSchema]:
        async with self.Session() as session:
            rows = await ReadData.read_user_sessions(
                user_address, session, status=status, limit=limit, offset=offset, sort_by=sort_by, descending=descending
            )
            return [GameSessionSchema.model_validate(row) for row in rows]

    async def count_user(self, user_address: str, status: str | None) -> int:
        async with self.Session() as session:
            return await ReadData.count_user_sessions(user_address, session, status=status)

    async def prune(self, now: datetime, idle_cutoff: datetime) -> int:
        async with self.Session() as session:
            return await DeleteData.delete_expired_session_data(now, idle_cutoff, session)


class BackendSelector:
    """Chooses between the durable backend and the in-process fallback.

    Args:
        primary (SessionBackend | None): Durable backend, None to run memory-only
        fallback (MemorySessionBackend): In-process backend, also used as a cache
        force_fallback (bool): Start in fallback mode (tests, local runs)
    """

    def __init__(self, primary: SessionBackend | None, fallback: MemorySessionBackend, force_fallback: bool = False):
        self.primary = primary
        self.fallback = fallback
        self._fallback_mode = force_fallback or primary is None

    @property
    def fallback_mode(self) -> bool:
        return self._fallback_mode

    def trip(self, error: BaseException) -> None:
        if self._fallback_mode:
            return
        self._fallback_mode = True
        logging.warning(
            f"Durable session store failed ({type(error).__name__}: {error}); "
            "using in-process fallback until restart"
        )


class SessionStore:
    """Keyed get/create/update/remove for game sessions."""

    def __init__(
        self,
        selector: BackendSelector,
        ttl: timedelta = timedelta(hours=24),
        idle_window: timedelta = timedelta(minutes=15),
        timeout: float = 5.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.selector = selector
        self.ttl = ttl
        self.idle_window = idle_window
        self.timeout = timeout
        self.clock = clock

    @property
    def fallback_mode(self) -> bool:
        return self.selector.fallback_mode

    async def _run(self, operation: str, *args, mirror: Callable | None = None):
        """Run one backend operation, degrading to the fallback on failure.

        Args:
            operation (str): SessionBackend method name
            mirror (Callable | None): Coroutine function fed with the primary result
                to keep the in-process cache in step
        """
        if not self.selector.fallback_mode:
            try:
                result = await asyncio.wait_for(
                    getattr(self.selector.primary, operation)(*args), self.timeout
                )
            except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
                self.selector.trip(e)
            else:
                if mirror is not None:
                    await mirror(result)
                return result
        return await getattr(self.selector.fallback, operation)(*args)

    def new_record(self, **fields) -> GameSessionSchema:
        now = self.clock()
        fields.setdefault("status", SessionStatus.pending)
        return GameSessionSchema(
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl,
            **fields,
        )

    async def create(self, record: GameSessionSchema) -> GameSessionSchema:
        async def mirror(_):
            await self.selector.fallback.put(record)

        await self._run("create", record, mirror=mirror)
        return record.model_copy(deep=True)

    def _is_expired(self, record: GameSessionSchema) -> bool:
        return record.status in PRUNABLE_STATUSES and record.expires_at < self.clock()

    async def get(self, session_id: str, include_archived: bool = False) -> GameSessionSchema | None:
        record = await self._run("get", session_id, include_archived)
        if record is not None and self._is_expired(record):
            await self.delete(session_id)
            return None
        return record

    async def update(self, session_id: str, changes: dict, guard: Guard | None = None) -> GameSessionSchema | None:
        """Re-read the live record, check ``guard`` against it and merge ``changes``.

        ``rows`` and ``locked_tile_counts`` replace the stored lists entirely.

        Returns:
            GameSessionSchema | None: The merged record, None if the session is gone
        """
        for field in LIST_FIELDS:
            if field in changes and not isinstance(changes[field], list):
                raise ValueError(f"{field} must be supplied as a full list")
        for field in IMMUTABLE_FIELDS:
            if field in changes:
                raise ValueError(f"{field} cannot be changed")
        now = self.clock()

        def mutate(current: GameSessionSchema) -> GameSessionSchema:
            if guard is not None:
                guard(current)
            payload = current.model_dump()
            payload.update(changes)
            payload["updated_at"] = now
            return GameSessionSchema.model_validate(payload)

        async def mirror(result):
            if result is None:
                return
            if result.status in PRUNABLE_STATUSES:
                await self.selector.fallback.put(result)
            else:
                await self.selector.fallback.delete(result.id)

        return await self._run("update", session_id, mutate, mirror=mirror)

    async def delete(self, session_id: str) -> None:
        async def mirror(_):
            await self.selector.fallback.delete(session_id)

        await self._run("delete", session_id, mirror=mirror)

    async def archive(self, session_id: str) -> bool:
        """Remove a session from the live store. The record is kept for audit."""
        now = self.clock()

        async def mirror(_):
            await self.selector.fallback.delete(session_id)

        return await self._run("archive", session_id, now, mirror=mirror)

    async def archive_user_sessions(self, user_address: str) -> int:
        async def mirror(_):
            await self.selector.fallback.forget_user(user_address)

        return await self._run("archive_user", user_address, self.clock(), mirror=mirror)

    async def restore_latest(self, user_address: str) -> GameSessionSchema | None:
        """Most recent live pending/active session of a user, with a fresh expiry."""
        record = await self._run("latest_live_for_user", user_address)
        if record is None:
            return None
        if self._is_expired(record):
            await self.delete(record.id)
            return None
        expires_at = self.clock() + self.ttl
        await self._run("refresh_expiry", record.id, expires_at)
        return record.model_copy(update={"expires_at": expires_at})

    async def list_user_sessions(
        self,
        user_address: str,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> List[GameSessionSchema]:
        return await self._run("list_user", user_address, status, limit, offset, sort_by, descending)

    async def count_user_sessions(self, user_address: str, status: str | None = None) -> int:
        return await self._run("count_user", user_address, status)

    async def prune_expired(self) -> int:
        """Delete expired or abandoned pending/active sessions.

        Terminal sessions are never touched, whatever their age.
        """
        now = self.clock()
        idle_cutoff = now - self.idle_window

        async def mirror(_):
            await self.selector.fallback.prune(now, idle_cutoff)

        return await self._run("prune", now, idle_cutoff, mirror=mirror)
