"""Dialect-aware SQL building blocks shared by the repositories.

Timestamps are stored as UTC and handed back timezone-aware. Interval
arithmetic that depends on per-row columns goes through ``epoch()``,
which compiles to the native construct of each backend.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Sequence

from sqlalchemy import DateTime, Float, case, types
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.expression import ColumnElement, FunctionElement


class UTCDateTime(types.TypeDecorator):
    """DateTime column that always round-trips timezone-aware UTC values."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class epoch(FunctionElement):
    """Seconds since the Unix epoch for a timestamp expression."""

    type = Float()
    inherit_cache = True
    name = "epoch"


@compiles(epoch)
def _compile_epoch(element, compiler, **kw):
    return "EXTRACT(EPOCH FROM %s)" % compiler.process(element.clauses, **kw)


@compiles(epoch, "sqlite")
def _compile_epoch_sqlite(element, compiler, **kw):
    return "((julianday(%s) - 2440587.5) * 86400.0)" % compiler.process(
        element.clauses, **kw
    )


def greatest(a: ColumnElement, b: ColumnElement) -> ColumnElement:
    """Portable two-argument GREATEST."""
    return case((a > b, a), else_=b)


def to_epoch(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Upserts ───────────────────────────────────────────────────────────


def dialect_insert(session: AsyncSession, table):
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(table)
    if dialect == "postgresql":
        return postgresql.insert(table)
    raise NotImplementedError(f"upsert is not supported on {dialect}")


async def upsert(
    session: AsyncSession,
    table,
    rows: Sequence[dict[str, Any]] | dict[str, Any],
    index_elements: Sequence[str],
    update_columns: Iterable[str],
) -> None:
    """INSERT ... ON CONFLICT (index_elements) DO UPDATE SET update_columns."""
    if isinstance(rows, dict):
        rows = [rows]
    if not rows:
        return
    stmt = dialect_insert(session, table).values(list(rows))
    stmt = stmt.on_conflict_do_update(
        index_elements=list(index_elements),
        set_={col: stmt.excluded[col] for col in update_columns},
    )
    await session.execute(stmt)


async def insert_ignore(
    session: AsyncSession,
    table,
    rows: Sequence[dict[str, Any]] | dict[str, Any],
    index_elements: Sequence[str] | None = None,
) -> int:
    """INSERT ... ON CONFLICT DO NOTHING. Returns the number of rows inserted."""
    if isinstance(rows, dict):
        rows = [rows]
    if not rows:
        return 0
    stmt = dialect_insert(session, table).values(list(rows))
    if index_elements:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(index_elements))
    else:
        stmt = stmt.on_conflict_do_nothing()
    result = await session.execute(stmt)
    return result.rowcount or 0


# ── Misc ──────────────────────────────────────────────────────────────


def escape_like(value: str, escape: str = "\\") -> str:
    """Escape LIKE wildcards so user text is matched literally."""
    return (
        value.replace(escape, escape * 2)
        .replace("%", escape + "%")
        .replace("_", escape + "_")
    )


def chunked(items: Sequence, size: int) -> Iterator[Sequence]:
    for i in range(0, len(items), size):
        yield items[i : i + size]
