"""SQL store for collections, servers, sync logs and job leases."""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from collectarr.core.database import (
    CollectionItemRow,
    CollectionRow,
    JobLeaseRow,
    ServerRow,
    SyncLogRow,
    create_engine,
    init_db,
    utc_now,
)
from collectarr.models.collection import Collection
from collectarr.models.server import SERVER_MODELS, AnyServer, ServerType
from collectarr.models.sync import SyncLog


class Store:
    """
    Persist application state through SQLAlchemy's async engine.

    Reads always return freshly validated pydantic models, so callers own
    independent copies. Collection writes are version-checked: a write based
    on a version another process has already replaced is retried against the
    latest row instead of overwriting it.
    """

    MAX_SYNC_LOGS = 1000
    UPDATE_ATTEMPTS = 5

    def __init__(self, url: Optional[str] = None):
        """
        Initialize store.

        Args:
            url: SQLAlchemy async database URL (None keeps everything in memory)
        """
        self.url = url
        self.engine = create_engine(url)
        self._sessions = async_sessionmaker(self.engine, expire_on_commit=False)
        # Sessions of one process run one at a time (the in-memory database has a single connection)
        self._lock = asyncio.Lock()
        self._ready = False

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._lock:
            if not self._ready:
                await init_db(self.engine)
                self._ready = True
            async with self._sessions() as session:
                yield session

    async def close(self) -> None:
        """Dispose of the engine's connections."""
        await self.engine.dispose()

    # =========================================================================
    # Collections
    # =========================================================================

    async def get_collections(self) -> list[Collection]:
        async with self._session() as session:
            rows = (
                await session.scalars(select(CollectionRow).order_by(CollectionRow.created_at, CollectionRow.id))
            ).all()
            items = (
                await session.scalars(select(CollectionItemRow).order_by(CollectionItemRow.position))
            ).all()

        by_collection: dict[str, list[CollectionItemRow]] = {}
        for item in items:
            by_collection.setdefault(item.collection_id, []).append(item)
        return [self._to_collection(row, by_collection.get(row.id, [])) for row in rows]

    async def get_collection(self, collection_id: str) -> Optional[Collection]:
        async with self._session() as session:
            row = await session.get(CollectionRow, collection_id)
            if row is None:
                return None
            items = await self._item_rows(session, collection_id)
        return self._to_collection(row, list(items.values()))

    async def save_collection(self, collection: Collection) -> None:
        """Insert a collection, or replace the stored version wholesale."""
        async with self._session() as session:
            row = await session.get(CollectionRow, collection.id)
            items: dict[str, CollectionItemRow] = {}
            if row is None:
                row = CollectionRow(id=collection.id)
                session.add(row)
            else:
                items = await self._item_rows(session, collection.id)
            await self._write(session, row, items, collection)
            await session.commit()

    async def update_collection(
        self,
        collection_id: str,
        mutate: Callable[[Collection], None],
    ) -> Optional[Collection]:
        """
        Apply `mutate` to the latest stored version of a collection.

        Read, change and write happen in one transaction. When another writer
        (this process or another one) committed in between, the version check
        fails and `mutate` is applied again to the newer version, so concurrent
        jobs editing different fields of the same collection do not overwrite
        each other.

        Returns:
            The updated collection, or None if it no longer exists

        Raises:
            StaleDataError: The collection kept changing on every attempt
        """
        for attempt in range(1, self.UPDATE_ATTEMPTS + 1):
            try:
                async with self._session() as session:
                    row = await session.get(CollectionRow, collection_id)
                    if row is None:
                        return None

                    items = await self._item_rows(session, collection_id)
                    collection = self._to_collection(row, list(items.values()))
                    mutate(collection)
                    await self._write(session, row, items, collection)
                    await session.commit()
                return collection
            except StaleDataError:
                if attempt == self.UPDATE_ATTEMPTS:
                    raise
                logger.debug(f"Collection {collection_id} changed concurrently, retrying ({attempt}/{self.UPDATE_ATTEMPTS})")

        return None

    async def delete_collection(self, collection_id: str) -> bool:
        async with self._session() as session:
            await session.execute(delete(CollectionItemRow).where(CollectionItemRow.collection_id == collection_id))
            result = await session.execute(delete(CollectionRow).where(CollectionRow.id == collection_id))
            await session.commit()
        return result.rowcount > 0

    async def _item_rows(self, session: AsyncSession, collection_id: str) -> dict[str, CollectionItemRow]:
        rows = await session.scalars(
            select(CollectionItemRow)
            .where(CollectionItemRow.collection_id == collection_id)
            .order_by(CollectionItemRow.position)
        )
        return {row.id: row for row in rows}

    def _to_collection(self, row: CollectionRow, items: list[CollectionItemRow]) -> Collection:
        return Collection.model_validate({**row.data, "items": [item.data for item in items]})

    async def _write(
        self,
        session: AsyncSession,
        row: CollectionRow,
        items: dict[str, CollectionItemRow],
        collection: Collection,
    ) -> None:
        """Stage a collection; only item rows that changed are written."""
        row.name = collection.name
        row.data = collection.model_dump(mode="json", exclude={"items"})
        # Always dirty, so the version check runs even when only items changed
        row.updated_at = utc_now()

        kept: set[str] = set()
        for position, item in enumerate(collection.items):
            data = item.model_dump(mode="json")
            kept.add(item.id)
            existing = items.get(item.id)
            if existing is None:
                session.add(CollectionItemRow(collection_id=collection.id, id=item.id, position=position, data=data))
            elif existing.data != data or existing.position != position:
                existing.data = data
                existing.position = position

        for item_id, existing in items.items():
            if item_id not in kept:
                await session.delete(existing)

    # =========================================================================
    # Servers
    # =========================================================================

    async def get_servers(self, server_type: Optional[ServerType] = None) -> list[AnyServer]:
        query = select(ServerRow).order_by(ServerRow.created_at, ServerRow.id)
        if server_type:
            query = query.where(ServerRow.server_type == server_type.value)
        async with self._session() as session:
            rows = (await session.scalars(query)).all()
        return [self._parse_server(row.data) for row in rows]

    async def get_server(self, server_id: str) -> Optional[AnyServer]:
        async with self._session() as session:
            row = await session.get(ServerRow, server_id)
        return self._parse_server(row.data) if row else None

    async def save_server(self, server: AnyServer) -> None:
        async with self._session() as session:
            row = await session.get(ServerRow, server.id)
            if row is None:
                row = ServerRow(id=server.id)
                session.add(row)
            row.server_type = server.server_type.value
            row.name = server.name
            row.data = server.model_dump(mode="json")
            await session.commit()

    async def delete_server(self, server_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(delete(ServerRow).where(ServerRow.id == server_id))
            await session.commit()
        return result.rowcount > 0

    def _parse_server(self, data: dict[str, Any]) -> AnyServer:
        return SERVER_MODELS[ServerType(data["server_type"])].model_validate(data)

    # =========================================================================
    # Sync logs
    # =========================================================================

    async def add_sync_logs(self, logs: list[SyncLog]) -> None:
        if not logs:
            return
        async with self._session() as session:
            session.add_all(
                SyncLogRow(id=log.id, collection_id=log.collection_id, data=log.model_dump(mode="json"))
                for log in logs
            )
            await session.flush()

            # Oldest entries are dropped past the cap
            newest = select(SyncLogRow.seq).order_by(SyncLogRow.seq.desc()).limit(self.MAX_SYNC_LOGS)
            await session.execute(delete(SyncLogRow).where(SyncLogRow.seq.not_in(newest)))
            await session.commit()

    async def get_sync_logs(
        self,
        collection_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[SyncLog]:
        """Get sync logs, newest first."""
        query = select(SyncLogRow).order_by(SyncLogRow.seq.desc()).limit(limit)
        if collection_id:
            query = query.where(SyncLogRow.collection_id == collection_id)
        async with self._session() as session:
            rows = (await session.scalars(query)).all()
        return [SyncLog.model_validate(row.data) for row in rows]

    # =========================================================================
    # Job leases
    # =========================================================================

    async def acquire_job_lease(self, collection_id: str, owner: str, ttl: float) -> bool:
        """
        Take the refresh lease of a collection.

        An expired lease (its holder crashed or hung) is taken over.

        Returns:
            False if another owner holds a live lease
        """
        now = time.time()
        async with self._session() as session:
            await session.execute(
                delete(JobLeaseRow).where(JobLeaseRow.collection_id == collection_id, JobLeaseRow.expires_at < now)
            )
            session.add(JobLeaseRow(collection_id=collection_id, owner=owner, expires_at=now + ttl))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def renew_job_lease(self, collection_id: str, owner: str, ttl: float) -> bool:
        """Extend a lease; False when it was lost (expired and taken over)."""
        async with self._session() as session:
            result = await session.execute(
                update(JobLeaseRow)
                .where(JobLeaseRow.collection_id == collection_id, JobLeaseRow.owner == owner)
                .values(expires_at=time.time() + ttl)
            )
            await session.commit()
        return result.rowcount > 0

    async def release_job_lease(self, collection_id: str, owner: str) -> None:
        async with self._session() as session:
            await session.execute(
                delete(JobLeaseRow).where(JobLeaseRow.collection_id == collection_id, JobLeaseRow.owner == owner)
            )
            await session.commit()
