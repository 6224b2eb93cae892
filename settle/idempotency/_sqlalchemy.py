"""
SQLAlchemy store — idempotency records in the idempotency_records table.

set_pending() is INSERT ... ON CONFLICT (key) DO NOTHING; the rowcount
tells the caller whether it won the key. Expired rows are deleted first
so an expired key can be claimed again.

Values are stored as JSON text; a replay gets the decoded value back.
"""

import json
from datetime import timedelta
from typing import Any, cast

from sqlalchemy import delete, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError

from kungfu import Result, Ok, Error

from settle._types import Clock, system_clock
from settle.db import IdempotencyRecordRow, SessionFactory, insert_for
from settle.idempotency._store import StoreError
from settle.idempotency._types import IdempotencyRecord, RecordState


class SQLAlchemyStore:
    """
    Idempotency store over SQLAlchemy.

    Example:
        store = SQLAlchemyStore(session_factory)
        executor = (
            idempotent(handle)
            .key(lambda req: req.idempotency_key)
            .store(store)
            .build()
        )
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Clock = system_clock,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def get(self, key: str) -> Result[IdempotencyRecord | None, StoreError]:
        try:
            async with self._session_factory() as session:
                row = (await session.execute(
                    select(IdempotencyRecordRow).where(IdempotencyRecordRow.key == key)
                )).scalar_one_or_none()

                if row is None:
                    return Ok(None)

                record = _to_record(row)
                if record.is_expired(self._clock()):
                    return Ok(None)
                return Ok(record)

        except SQLAlchemyError as e:
            return Error(StoreError(f"Failed to get: {e}", e))

    async def set_pending(
        self,
        key: str,
        ttl: timedelta | None,
        fingerprint: str | None = None,
    ) -> Result[bool, StoreError]:
        now = self._clock()
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(IdempotencyRecordRow).where(
                        IdempotencyRecordRow.key == key,
                        IdempotencyRecordRow.expires_at.is_not(None),
                        IdempotencyRecordRow.expires_at <= now,
                    )
                )
                stmt = (
                    insert_for(session, IdempotencyRecordRow)
                    .values(
                        key=key,
                        request_fingerprint=fingerprint,
                        status=RecordState.PROCESSING.value,
                        created_at=now,
                        expires_at=now + ttl if ttl else None,
                    )
                    .on_conflict_do_nothing(index_elements=["key"])
                )
                cursor = cast(CursorResult[Any], await session.execute(stmt))
                await session.commit()
                return Ok(cursor.rowcount > 0)

        except SQLAlchemyError as e:
            return Error(StoreError(f"Failed to set pending: {e}", e))

    async def set_completed(
        self, key: str, value: Any, ttl: timedelta | None
    ) -> Result[None, StoreError]:
        now = self._clock()
        return await self._finish(
            key,
            status=RecordState.SUCCESS.value,
            response_payload=json.dumps(value, default=str),
            completed_at=now,
            expires_at=now + ttl if ttl else None,
        )

    async def set_failed(
        self, key: str, error: str, ttl: timedelta | None
    ) -> Result[None, StoreError]:
        now = self._clock()
        return await self._finish(
            key,
            status=RecordState.FAILED.value,
            error=error,
            completed_at=now,
            expires_at=now + ttl if ttl else None,
        )

    async def _finish(self, key: str, **values: Any) -> Result[None, StoreError]:
        try:
            async with self._session_factory() as session:
                cursor = cast(CursorResult[Any], await session.execute(
                    update(IdempotencyRecordRow)
                    .where(IdempotencyRecordRow.key == key)
                    .values(**values)
                ))
                if not cursor.rowcount:
                    return Error(StoreError(f"Record not found: {key}"))
                await session.commit()
                return Ok(None)

        except SQLAlchemyError as e:
            return Error(StoreError(f"Failed to finish {key}: {e}", e))

    async def delete(self, key: str) -> Result[bool, StoreError]:
        try:
            async with self._session_factory() as session:
                cursor = cast(CursorResult[Any], await session.execute(
                    delete(IdempotencyRecordRow).where(IdempotencyRecordRow.key == key)
                ))
                await session.commit()
                return Ok(cursor.rowcount > 0)

        except SQLAlchemyError as e:
            return Error(StoreError(f"Failed to delete: {e}", e))

    async def purge_expired(self) -> Result[int, StoreError]:
        try:
            async with self._session_factory() as session:
                cursor = cast(CursorResult[Any], await session.execute(
                    delete(IdempotencyRecordRow).where(
                        IdempotencyRecordRow.expires_at.is_not(None),
                        IdempotencyRecordRow.expires_at <= self._clock(),
                    )
                ))
                await session.commit()
                return Ok(cursor.rowcount)

        except SQLAlchemyError as e:
            return Error(StoreError(f"Failed to purge: {e}", e))


def _to_record(row: IdempotencyRecordRow) -> IdempotencyRecord:
    return IdempotencyRecord(
        key=row.key,
        state=RecordState(row.status),
        value=json.loads(row.response_payload) if row.response_payload is not None else None,
        error=row.error,
        created_at=row.created_at,
        expires_at=row.expires_at,
        fingerprint=row.request_fingerprint,
        completed_at=row.completed_at,
    )


__all__ = ("SQLAlchemyStore",)
