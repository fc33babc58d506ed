"""Repository for the user record store.

All writes are merge-writes: only the keys supplied are touched, and keys
whose value is ``None`` are dropped before the statement is built.  Two
independent writers (for example the paylink cache and the payment grant)
therefore never clobber each other's fields.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from accessgate.state.tables import UserRecordTable

logger = logging.getLogger(__name__)

# Fields a record may be looked up by, besides the primary key.
LOOKUP_FIELDS = frozenset({"stripe_customer_id", "email"})

# Fields the admin surface may clear.
CLEARABLE_FIELDS = frozenset(
    {
        "stripe_mode",
        "stripe_paylink_id",
        "stripe_paylink_url",
        "stripe_price_id",
        "stripe_product_id",
    }
)

_WRITABLE_COLUMNS = frozenset(c.name for c in UserRecordTable.__table__.columns) - {"uid", "created_at"}


def _utcnow() -> datetime:
    return datetime.now(UTC)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent."""
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)

    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={col: getattr(stmt.excluded, col) for col in update_columns},
    )
    return await session.execute(stmt)


async def _dialect_insert_ignore(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``."""
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)

    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


class UserRecordRepository:
    """Read and merge-write user records keyed by identity id.

    Parameters
    ----------
    session:
        An active async session.  The caller owns the transaction; the
        repository only flushes.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, uid: str) -> UserRecordTable | None:
        """Return the record for *uid*, or ``None`` if absent."""
        stmt = (
            select(UserRecordTable)
            .where(UserRecordTable.uid == uid)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_merge(self, uid: str, fields: dict[str, Any]) -> UserRecordTable:
        """Create or partially update the record for *uid*.

        Keys mapped to ``None`` are ignored, so a partial payload never
        erases a field written by another step.

        Raises
        ------
        ValueError
            If *fields* names a column the record does not have.
        """
        unknown = set(fields) - _WRITABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown user record fields: {sorted(unknown)}")

        values = {key: value for key, value in fields.items() if value is not None}
        now = _utcnow()
        values["updated_at"] = now
        update_columns = list(values)
        values["uid"] = uid
        values["created_at"] = now

        await _dialect_upsert(
            self._session,
            UserRecordTable,
            values,
            index_elements=["uid"],
            update_columns=update_columns,
        )
        await self._session.flush()

        record = await self.get(uid)
        assert record is not None
        logger.debug("Merged fields %s into user record %s", sorted(update_columns), uid)
        return record

    async def find_by_field(self, field: str, value: str) -> UserRecordTable | None:
        """Return the oldest record whose *field* equals *value*.

        Raises
        ------
        ValueError
            If *field* is not one of :data:`LOOKUP_FIELDS`.
        """
        if field not in LOOKUP_FIELDS:
            raise ValueError(f"Cannot look up user records by {field!r}")
        column = getattr(UserRecordTable, field)
        stmt = (
            select(UserRecordTable)
            .where(column == value)
            .order_by(UserRecordTable.created_at.asc(), UserRecordTable.uid.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def clear_fields(self, uid: str, fields: list[str] | None = None) -> bool:
        """Null out cached fields on *uid*.  Returns ``False`` if no record exists.

        Defaults to every field in :data:`CLEARABLE_FIELDS`.
        """
        names = sorted(fields) if fields is not None else sorted(CLEARABLE_FIELDS)
        disallowed = set(names) - CLEARABLE_FIELDS
        if disallowed:
            raise ValueError(f"Cannot clear user record fields: {sorted(disallowed)}")

        stmt = (
            update(UserRecordTable)
            .where(UserRecordTable.uid == uid)
            .values({**{name: None for name in names}, "updated_at": _utcnow()})
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return bool(result.rowcount)

    async def ensure_profile(self, uid: str, email: str | None, name: str | None) -> bool:
        """Create a minimal profile if none exists.  Returns ``True`` when created."""
        now = _utcnow()
        values: dict[str, Any] = {
            "uid": uid,
            "email": email,
            "name": name,
            "access": False,
            "created_at": now,
            "updated_at": now,
        }
        result = await _dialect_insert_ignore(self._session, UserRecordTable, values, index_elements=["uid"])
        await self._session.flush()
        return bool(result.rowcount)

    async def delete(self, uid: str) -> bool:
        """Remove the record for *uid*.  Returns ``False`` if none existed."""
        result = await self._session.execute(delete(UserRecordTable).where(UserRecordTable.uid == uid))
        await self._session.flush()
        return bool(result.rowcount)
