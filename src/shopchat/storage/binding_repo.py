"""Channel bindings (Facebook pages, Telegram bots) and tenant memberships."""

from __future__ import annotations

from datetime import datetime

from shopchat.core.types import Channel
from shopchat.log import get_logger
from shopchat.storage.database import Database
from shopchat.storage.models import ChannelBinding, TenantMembership

logger = get_logger(__name__)


class BindingRepository:
    """Resolves channel identity -> binding, and owner -> tenants."""

    def __init__(self, db: Database):
        self._db = db

    # -- tenants ---------------------------------------------------------

    async def add_tenant(self, tenant_id: str, name: str = "") -> None:
        await self._db.conn.execute(
            "INSERT OR IGNORE INTO tenants (id, name) VALUES (?, ?)", (tenant_id, name)
        )
        await self._db.conn.commit()

    async def add_membership(self, user_id: str, tenant_id: str) -> None:
        await self._db.conn.execute(
            "INSERT OR IGNORE INTO user_tenants (user_id, tenant_id) VALUES (?, ?)",
            (user_id, tenant_id),
        )
        await self._db.conn.commit()

    async def memberships_for_user(self, user_id: str) -> list[TenantMembership]:
        """All memberships of a user, oldest first, ties broken by tenant id."""
        cursor = await self._db.conn.execute(
            """SELECT user_id, tenant_id, created_at FROM user_tenants
               WHERE user_id = ?
               ORDER BY created_at ASC, tenant_id ASC""",
            (user_id,),
        )
        rows = await cursor.fetchall()
        return [
            TenantMembership(
                user_id=row["user_id"],
                tenant_id=row["tenant_id"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    async def tenant_ids_for_user(self, user_id: str) -> list[str]:
        return [m.tenant_id for m in await self.memberships_for_user(user_id)]

    # -- facebook pages --------------------------------------------------

    async def upsert_facebook_page(
        self, page_id: str, user_id: str, page_token: str, page_name: str | None = None
    ) -> ChannelBinding:
        """Connect (or re-connect) a page. One active binding per page id."""
        await self._db.conn.execute(
            """INSERT INTO facebook_pages (page_id, user_id, page_name, page_token, is_active)
               VALUES (?, ?, ?, ?, 1)
               ON CONFLICT(page_id) DO UPDATE SET
                   user_id = excluded.user_id,
                   page_name = excluded.page_name,
                   page_token = excluded.page_token,
                   is_active = 1""",
            (page_id, user_id, page_name, page_token),
        )
        await self._db.conn.commit()
        return ChannelBinding(
            channel=Channel.MESSENGER,
            external_id=page_id,
            owner_user_id=user_id,
            credential=page_token,
            name=page_name,
        )

    async def find_active_page(self, page_id: str) -> ChannelBinding | None:
        cursor = await self._db.conn.execute(
            """SELECT page_id, user_id, page_name, page_token FROM facebook_pages
               WHERE page_id = ? AND is_active = 1""",
            (page_id,),
        )
        row = await cursor.fetchone()
        if row is None or not row["page_token"]:
            return None
        return ChannelBinding(
            channel=Channel.MESSENGER,
            external_id=row["page_id"],
            owner_user_id=row["user_id"],
            credential=row["page_token"],
            name=row["page_name"],
        )

    async def find_page(self, page_id: str) -> ChannelBinding | None:
        cursor = await self._db.conn.execute(
            "SELECT * FROM facebook_pages WHERE page_id = ?", (page_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return ChannelBinding(
            channel=Channel.MESSENGER,
            external_id=row["page_id"],
            owner_user_id=row["user_id"],
            credential=row["page_token"] or "",
            is_active=bool(row["is_active"]),
            name=row["page_name"],
        )

    async def deactivate_page(self, page_id: str) -> bool:
        cursor = await self._db.conn.execute(
            "UPDATE facebook_pages SET is_active = 0 WHERE page_id = ? AND is_active = 1",
            (page_id,),
        )
        await self._db.conn.commit()
        return cursor.rowcount > 0

    # -- telegram bots ---------------------------------------------------

    async def upsert_telegram_bot(
        self,
        bot_id: str,
        user_id: str,
        bot_token: str,
        secret: str,
        bot_username: str | None = None,
    ) -> ChannelBinding:
        await self._db.conn.execute(
            """INSERT INTO telegram_bots (bot_id, user_id, bot_username, bot_token, secret, is_active)
               VALUES (?, ?, ?, ?, ?, 1)
               ON CONFLICT(bot_id) DO UPDATE SET
                   user_id = excluded.user_id,
                   bot_username = excluded.bot_username,
                   bot_token = excluded.bot_token,
                   secret = excluded.secret,
                   is_active = 1""",
            (bot_id, user_id, bot_username, bot_token, secret),
        )
        await self._db.conn.commit()
        return ChannelBinding(
            channel=Channel.TELEGRAM,
            external_id=bot_id,
            owner_user_id=user_id,
            credential=bot_token,
            name=bot_username,
            secret=secret,
        )

    async def find_bot_by_secret(self, secret: str) -> ChannelBinding | None:
        cursor = await self._db.conn.execute(
            """SELECT * FROM telegram_bots WHERE secret = ? AND is_active = 1""",
            (secret,),
        )
        row = await cursor.fetchone()
        return self._row_to_bot(row) if row else None

    async def find_bot(self, bot_id: str) -> ChannelBinding | None:
        cursor = await self._db.conn.execute(
            "SELECT * FROM telegram_bots WHERE bot_id = ?", (bot_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_bot(row) if row else None

    async def deactivate_bot(self, bot_id: str) -> bool:
        cursor = await self._db.conn.execute(
            "UPDATE telegram_bots SET is_active = 0 WHERE bot_id = ? AND is_active = 1",
            (bot_id,),
        )
        await self._db.conn.commit()
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_bot(row) -> ChannelBinding:
        return ChannelBinding(
            channel=Channel.TELEGRAM,
            external_id=row["bot_id"],
            owner_user_id=row["user_id"],
            credential=row["bot_token"],
            is_active=bool(row["is_active"]),
            name=row["bot_username"],
            secret=row["secret"],
        )
