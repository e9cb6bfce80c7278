"""Dialect-aware ``INSERT ... ON CONFLICT`` helpers.

PostgreSQL and SQLite share the same ``on_conflict_do_update`` API; the
statement constructor is picked from the session's bound dialect.
"""

from typing import Any, Iterable, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

UPSERT_CHUNK_SIZE = 500


def dialect_insert(db: AsyncSession, model: Any):
    dialect = db.get_bind().dialect.name
    try:
        return _INSERTS[dialect](model)
    except KeyError:
        raise NotImplementedError(f"Upsert not supported for dialect {dialect!r}") from None


async def upsert_rows(
    db: AsyncSession,
    model: Any,
    rows: Sequence[dict[str, Any]],
    conflict_columns: Sequence[str],
    update_columns: Iterable[str] | None = None,
) -> int:
    """
    Insert rows, overwriting the columns of any row that already exists.

    Values are replaced, never incremented, so concurrent writers of the
    same key end with the last writer's complete row.

    Args:
        db: Database session
        model: Mapped class to write
        rows: Full column values per row (all rows share the same keys)
        conflict_columns: Columns of the unique constraint to conflict on
        update_columns: Columns overwritten on conflict (default: every
            non-key column in the rows)

    Returns:
        Number of rows written
    """
    if not rows:
        return 0

    if update_columns is None:
        update_columns = [c for c in rows[0] if c not in conflict_columns]
    update_columns = list(update_columns)

    for i in range(0, len(rows), UPSERT_CHUNK_SIZE):
        chunk = rows[i:i + UPSERT_CHUNK_SIZE]
        stmt = dialect_insert(db, model).values(list(chunk))
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_={c: stmt.excluded[c] for c in update_columns},
        )
        await db.execute(stmt)

    return len(rows)


async def insert_ignore(
    db: AsyncSession,
    model: Any,
    values: dict[str, Any],
    conflict_columns: Sequence[str],
) -> None:
    """Insert a row unless one already exists for ``conflict_columns``."""
    stmt = (
        dialect_insert(db, model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=list(conflict_columns))
    )
    await db.execute(stmt)
