"""SQL job store on SQLAlchemy's async engine.

Jobs live in one table named after the configured collection; error
messages live in a companion ``<collection>_errors`` table keyed by
(job_id, seq) so they can be appended inside the same transaction as the
counter update. Datetimes are stored as ISO-8601 UTC strings and metadata
as JSON text.

Every write starts with the UPDATE/INSERT/DELETE so the write lock is taken
before anything is read; with SQLite this keeps concurrent claims from
failing on a stale read snapshot.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, Mapping, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobstash.config.models import (
    COLLECTION_NAME_PATTERN,
    DEFAULT_COLLECTION,
    StoreConfig,
)
from jobstash.errors import ConfigError, DuplicateJobIdError, StoreError
from jobstash.types import (
    JobMetadata,
    JobRecord,
    UpdateResult,
    ensure_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

# Record fields that map 1:1 onto job table columns
_COLUMNS = (
    "id",
    "due_at",
    "metadata",
    "is_active",
    "is_locked",
    "retried_count",
    "error_count",
    "created_at",
    "updated_at",
)


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat(timespec="milliseconds")
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _parse_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value))


def _check_fields(fields: Mapping[str, Any]) -> None:
    for name in fields:
        if name not in _COLUMNS:
            raise ValueError(f"Unknown job field: {name}")


def _row_to_record(row: Any, errors: list[str]) -> JobRecord:
    """Convert a job table row to a JobRecord."""
    return JobRecord(
        id=row.id,
        due_at=_parse_datetime(row.due_at),
        metadata=json.loads(row.metadata) if row.metadata else {},
        is_active=bool(row.is_active),
        is_locked=bool(row.is_locked),
        retried_count=row.retried_count or 0,
        error_count=row.error_count or 0,
        error_messages=errors,
        created_at=_parse_datetime(row.created_at),
        updated_at=_parse_datetime(row.updated_at),
    )


class SQLJobStore:
    """Job store backed by a SQL database through SQLAlchemy."""

    def __init__(
        self,
        config: StoreConfig | None = None,
        *,
        engine: AsyncEngine | None = None,
        collection: str | None = None,
    ):
        if config is None and engine is None:
            raise ValueError("Either config or engine must be provided")
        self._config = config
        self._engine = engine
        # Engines passed in by the caller are theirs to dispose
        self._owns_engine = engine is None
        self._table = collection or (config.collection if config else DEFAULT_COLLECTION)
        if not COLLECTION_NAME_PATTERN.match(self._table):
            raise ValueError(f"Invalid collection name: {self._table!r}")
        self._errors_table = f"{self._table}_errors"
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def table(self) -> str:
        return self._table

    async def connect(self) -> None:
        if self._session_factory is not None:
            return
        if self._engine is None:
            assert self._config is not None
            if not self._config.address:
                raise ConfigError("Store address not provided")
            self._engine = create_async_engine(
                self._config.address,
                echo=False,
                pool_pre_ping=True,
                **self._config.client_options,
            )
        self._session_factory = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False
        )
        await self._create_tables()
        logger.info("sql_store_connected", extra={"db.table": self._table})

    async def close(self) -> None:
        if self._engine is not None and self._owns_engine:
            await self._engine.dispose()
            self._engine = None
        self._session_factory = None

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and maps driver errors to StoreError."""
        if self._session_factory is None:
            raise RuntimeError("Store not connected. Call connect() first.")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreError(f"SQL store operation failed: {e}") from e
            except Exception:
                await session.rollback()
                raise

    async def _create_tables(self) -> None:
        async with self._session() as session:
            await session.execute(
                text(f"""
                    CREATE TABLE IF NOT EXISTS {self._table} (
                        id VARCHAR(255) PRIMARY KEY,
                        due_at VARCHAR(64) NOT NULL,
                        metadata TEXT NOT NULL,
                        is_active BOOLEAN NOT NULL,
                        is_locked BOOLEAN NOT NULL,
                        retried_count INTEGER NOT NULL DEFAULT 0,
                        error_count INTEGER NOT NULL DEFAULT 0,
                        created_at VARCHAR(64) NOT NULL,
                        updated_at VARCHAR(64)
                    )
                """)
            )
            await session.execute(
                text(f"""
                    CREATE TABLE IF NOT EXISTS {self._errors_table} (
                        job_id VARCHAR(255) NOT NULL,
                        seq INTEGER NOT NULL,
                        message TEXT NOT NULL,
                        created_at VARCHAR(64) NOT NULL,
                        PRIMARY KEY (job_id, seq)
                    )
                """)
            )
            await session.execute(
                text(
                    f"CREATE INDEX IF NOT EXISTS ix_{self._table}_is_active "
                    f"ON {self._table} (is_active)"
                )
            )

    async def ensure_unique_index(self) -> None:
        async with self._session() as session:
            await session.execute(
                text(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS ux_{self._table}_id "
                    f"ON {self._table} (id)"
                )
            )

    async def _load_errors(
        self, session: AsyncSession, job_ids: Sequence[str]
    ) -> dict[str, list[str]]:
        if not job_ids:
            return {}
        stmt = text(
            f"SELECT job_id, message FROM {self._errors_table} "
            "WHERE job_id IN :ids ORDER BY job_id, seq"
        ).bindparams(bindparam("ids", expanding=True))
        result = await session.execute(stmt, {"ids": list(job_ids)})
        errors: dict[str, list[str]] = {}
        for row in result.fetchall():
            errors.setdefault(row.job_id, []).append(row.message)
        return errors

    async def insert(self, record: JobRecord) -> None:
        params = {name: _encode(getattr(record, name)) for name in _COLUMNS}
        try:
            async with self._session() as session:
                await session.execute(
                    text(f"""
                        INSERT INTO {self._table} (id, due_at, metadata, is_active,
                            is_locked, retried_count, error_count, created_at, updated_at)
                        VALUES (:id, :due_at, :metadata, :is_active,
                            :is_locked, :retried_count, :error_count, :created_at, :updated_at)
                    """),
                    params,
                )
        except IntegrityError as e:
            raise DuplicateJobIdError(record.id) from e

    async def find_all(self, **predicate: Any) -> list[JobRecord]:
        _check_fields(predicate)
        where = " AND ".join(f"{name} = :{name}" for name in predicate) or "1 = 1"
        async with self._session() as session:
            result = await session.execute(
                text(f"SELECT * FROM {self._table} WHERE {where} ORDER BY due_at"),
                {name: _encode(value) for name, value in predicate.items()},
            )
            rows = result.fetchall()
            errors = await self._load_errors(session, [row.id for row in rows])
        return [_row_to_record(row, errors.get(row.id, [])) for row in rows]

    async def find_one(self, job_id: str) -> JobRecord | None:
        async with self._session() as session:
            return await self._find_one(session, job_id)

    async def _find_one(self, session: AsyncSession, job_id: str) -> JobRecord | None:
        result = await session.execute(
            text(f"SELECT * FROM {self._table} WHERE id = :id"), {"id": job_id}
        )
        row = result.fetchone()
        if row is None:
            return None
        errors = await self._load_errors(session, [job_id])
        return _row_to_record(row, errors.get(job_id, []))

    async def conditional_update(
        self, match: Mapping[str, Any], values: Mapping[str, Any]
    ) -> UpdateResult:
        _check_fields(match)
        _check_fields(values)
        if not values:
            raise ValueError("values must not be empty")

        params: dict[str, Any] = {}
        conditions = []
        for name, value in match.items():
            params[f"m_{name}"] = _encode(value)
            conditions.append(f"{name} = :m_{name}")
        assignments = []
        unchanged = []
        for name, value in values.items():
            params[f"v_{name}"] = _encode(value)
            assignments.append(f"{name} = :v_{name}")
            unchanged.append(f"{name} = :v_{name}")
        where = " AND ".join(conditions) or "1 = 1"

        async with self._session() as session:
            # Rows already holding the new values count as matched but not
            # modified, the same way MongoDB reports a no-op $set.
            result = await session.execute(
                text(
                    f"UPDATE {self._table} SET {', '.join(assignments)} "
                    f"WHERE {where} AND NOT ({' AND '.join(unchanged)})"
                ),
                params,
            )
            modified = result.rowcount
            count = await session.execute(
                text(f"SELECT COUNT(*) FROM {self._table} WHERE {where}"), params
            )
            still_matching = count.scalar_one()
        # Exact whenever match pins the id, which every caller here does
        return UpdateResult(
            matched_count=max(modified, still_matching), modified_count=modified
        )

    async def record_failure(
        self, job_id: str, error: str, retry_count: int
    ) -> JobRecord | None:
        now = _encode(utc_now())
        async with self._session() as session:
            # Right-hand sides read the row's values from before the update
            result = await session.execute(
                text(f"""
                    UPDATE {self._table}
                    SET retried_count = error_count,
                        error_count = error_count + 1,
                        is_locked = FALSE,
                        is_active = CASE
                            WHEN error_count >= :retry_count THEN FALSE
                            ELSE is_active
                        END,
                        updated_at = :now
                    WHERE id = :id
                """),
                {"id": job_id, "retry_count": retry_count, "now": now},
            )
            if result.rowcount != 1:
                return None
            seq = await session.execute(
                text(f"SELECT error_count FROM {self._table} WHERE id = :id"),
                {"id": job_id},
            )
            await session.execute(
                text(f"""
                    INSERT INTO {self._errors_table} (job_id, seq, message, created_at)
                    VALUES (:job_id, :seq, :message, :created_at)
                """),
                {
                    "job_id": job_id,
                    "seq": seq.scalar_one(),
                    "message": error,
                    "created_at": now,
                },
            )
            return await self._find_one(session, job_id)

    async def upsert(
        self, job_id: str, due_at: datetime, metadata: JobMetadata | None
    ) -> None:
        now = utc_now()
        params: dict[str, Any] = {
            "id": job_id,
            "due_at": _encode(due_at),
            "updated_at": _encode(now),
        }
        # A lock held for the old due time must not block the new firing;
        # the claim that took it can no longer complete this record.
        assignments = [
            "is_locked = CASE WHEN due_at = :due_at THEN is_locked ELSE FALSE END",
            "due_at = :due_at",
            "updated_at = :updated_at",
        ]
        if metadata is not None:
            params["metadata"] = _encode(dict(metadata))
            assignments.append("metadata = :metadata")
        update_stmt = text(
            f"UPDATE {self._table} SET {', '.join(assignments)} WHERE id = :id"
        )

        async with self._session() as session:
            result = await session.execute(update_stmt, params)
            if result.rowcount == 1:
                return

        record = JobRecord(
            id=job_id,
            due_at=due_at,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        try:
            await self.insert(record)
        except DuplicateJobIdError:
            # Lost an insert race; the row exists now
            async with self._session() as session:
                await session.execute(update_stmt, params)

    async def delete_one(self, job_id: str, due_at: datetime | None = None) -> bool:
        where = "id = :id"
        params: dict[str, Any] = {"id": job_id}
        if due_at is not None:
            where += " AND due_at = :due_at"
            params["due_at"] = _encode(due_at)
        async with self._session() as session:
            result = await session.execute(
                text(f"DELETE FROM {self._table} WHERE {where}"), params
            )
            deleted = result.rowcount == 1
            if deleted:
                await session.execute(
                    text(f"DELETE FROM {self._errors_table} WHERE job_id = :id"),
                    {"id": job_id},
                )
        return deleted
