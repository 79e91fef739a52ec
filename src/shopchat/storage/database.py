"""SQLite database connection manager with schema migration."""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from shopchat.log import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tenants (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL DEFAULT '',
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE TABLE IF NOT EXISTS user_tenants (
    user_id         TEXT NOT NULL,
    tenant_id       TEXT NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now')),
    PRIMARY KEY (user_id, tenant_id)
);

CREATE TABLE IF NOT EXISTS facebook_pages (
    page_id         TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    page_name       TEXT,
    page_token      TEXT,
    is_active       INTEGER NOT NULL DEFAULT 1,
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE TABLE IF NOT EXISTS telegram_bots (
    bot_id          TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    bot_username    TEXT,
    bot_token       TEXT NOT NULL,
    secret          TEXT NOT NULL UNIQUE,
    is_active       INTEGER NOT NULL DEFAULT 1,
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE TABLE IF NOT EXISTS bot_sessions (
    owner_user_id    TEXT NOT NULL,
    channel          TEXT NOT NULL CHECK(channel IN ('messenger','telegram')),
    external_user_id TEXT NOT NULL,
    tenant_id        TEXT,
    created_at       TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now')),
    last_active_at   TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now')),
    PRIMARY KEY (owner_user_id, channel, external_user_id)
);

CREATE TABLE IF NOT EXISTS bot_chat_messages (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_user_id    TEXT NOT NULL,
    tenant_id        TEXT,
    channel          TEXT NOT NULL CHECK(channel IN ('messenger','telegram')),
    external_user_id TEXT NOT NULL,
    role             TEXT NOT NULL CHECK(role IN ('user','bot')),
    content          TEXT NOT NULL,
    created_at       TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON bot_chat_messages(owner_user_id, channel, external_user_id, id);

CREATE TABLE IF NOT EXISTS products (
    id              TEXT PRIMARY KEY,
    tenant_id       TEXT NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    name            TEXT NOT NULL,
    sku             TEXT,
    size            TEXT,
    description     TEXT NOT NULL DEFAULT '',
    price           REAL,
    image_url       TEXT,
    category_name   TEXT,
    stock           INTEGER,
    embedding       TEXT,
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE INDEX IF NOT EXISTS idx_products_tenant ON products(tenant_id);

CREATE VIRTUAL TABLE IF NOT EXISTS products_fts USING fts5(
    name,
    description,
    sku,
    category_name,
    content='products',
    content_rowid='rowid',
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS trg_products_fts_insert AFTER INSERT ON products BEGIN
    INSERT INTO products_fts(rowid, name, description, sku, category_name)
    VALUES (new.rowid, new.name, new.description, new.sku, new.category_name);
END;

CREATE TRIGGER IF NOT EXISTS trg_products_fts_delete AFTER DELETE ON products BEGIN
    INSERT INTO products_fts(products_fts, rowid, name, description, sku, category_name)
    VALUES ('delete', old.rowid, old.name, old.description, old.sku, old.category_name);
END;

CREATE TRIGGER IF NOT EXISTS trg_products_fts_update AFTER UPDATE ON products BEGIN
    INSERT INTO products_fts(products_fts, rowid, name, description, sku, category_name)
    VALUES ('delete', old.rowid, old.name, old.description, old.sku, old.category_name);
    INSERT INTO products_fts(rowid, name, description, sku, category_name)
    VALUES (new.rowid, new.name, new.description, new.sku, new.category_name);
END;
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")
