"""Version-controlled, additive schema migrations for the embedded databases."""

from __future__ import annotations

import logging
import re
import sqlite3
from pathlib import Path
from typing import List, Tuple

import aiosqlite

logger = logging.getLogger(__name__)

# Each migration is (version, description, list_of_sql_statements)
MigrationStep = Tuple[int, str, List[str]]

SCHEMA_SQL_PATH = Path(__file__).parent / "schema.sql"

_ADD_COLUMN = re.compile(
    r"^\s*ALTER\s+TABLE\s+(\w+)\s+ADD\s+COLUMN\s+(\w+)", re.IGNORECASE
)


def items_migrations() -> List[MigrationStep]:
    """Return ordered list of migrations for the relational backend."""
    return [
        (
            1,
            "Initial schema: items, settings, metadata",
            [SCHEMA_SQL_PATH.read_text(encoding="utf-8")],
        ),
    ]


async def get_current_version(conn: aiosqlite.Connection) -> int:
    """Get the current schema version, or 0 if no schema exists."""
    try:
        cursor = await conn.execute("SELECT value FROM metadata WHERE key = 'version'")
        row = await cursor.fetchone()
        return int(row[0]) if row and row[0] is not None else 0
    except (sqlite3.OperationalError, ValueError):
        return 0


async def has_column(conn: aiosqlite.Connection, table: str, column: str) -> bool:
    cursor = await conn.execute(f"PRAGMA table_info([{table}])")
    return any(row[1] == column for row in await cursor.fetchall())


async def apply_migrations(
    conn: aiosqlite.Connection, migrations: List[MigrationStep]
) -> int:
    """Apply all pending migrations. Returns the final schema version.

    ``ALTER TABLE ... ADD COLUMN`` statements are skipped when the column is
    already present, so databases created before versioning upgrade cleanly.
    """
    current = await get_current_version(conn)
    applied = 0

    for version, description, statements in migrations:
        if version <= current:
            continue

        logger.info("Applying migration v%d: %s", version, description)
        try:
            for sql in statements:
                match = _ADD_COLUMN.match(sql)
                if match and await has_column(conn, match.group(1), match.group(2)):
                    logger.debug("Column %s.%s already present", match.group(1), match.group(2))
                    continue
                await conn.executescript(sql)
            await conn.execute(
                "INSERT OR REPLACE INTO metadata (key, value) VALUES ('version', ?)",
                (str(version),),
            )
            await conn.commit()
            applied += 1
        except Exception:
            await conn.rollback()
            logger.exception("Migration v%d failed", version)
            raise

    final = await get_current_version(conn)
    if applied:
        logger.info("Applied %d migration(s). Schema at v%d", applied, final)
    else:
        logger.debug("Schema up to date at v%d", final)

    return final
