from importlib.resources import files
from pathlib import Path

import aiosqlite

_SCHEMA = files("webhook_relay").joinpath("schema.sql").read_text()


async def open_db(db_path: str) -> aiosqlite.Connection:
    """Open the shared connection and create any missing tables."""
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(db_path)
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA busy_timeout=5000")
    await conn.executescript(_SCHEMA)
    return conn
