"""Telegram channel: update parsing and a Bot API transport using python-telegram-bot v21+."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from telegram import Bot
from telegram.constants import ChatAction
from telegram.error import InvalidToken, NetworkError, RetryAfter, TelegramError, TimedOut
from telegram.request import HTTPXRequest

from shopchat.config import TelegramConfig
from shopchat.core.types import Channel
from shopchat.errors import ExternalServiceError, TransientServiceError, ValidationError
from shopchat.log import get_logger
from shopchat.messenger.base import ChannelTransport
from shopchat.messenger.models import InboundMessage, OutgoingMessage

logger = get_logger(__name__)

BotFactory = Callable[[str], Bot]


def parse_telegram_update(payload: dict[str, Any], bot_id: str) -> Optional[InboundMessage]:
    """The text message carried by an update, or None for anything else."""
    msg = payload.get("message")
    if not isinstance(msg, dict):
        return None
    text = msg.get("text")
    chat_id = (msg.get("chat") or {}).get("id")
    if not isinstance(text, str) or not text.strip() or chat_id is None:
        return None

    sender = (msg.get("from") or {}).get("id", chat_id)
    date = msg.get("date")
    return InboundMessage(
        channel=Channel.TELEGRAM,
        recipient_id=bot_id,
        sender_id=str(sender),
        chat_id=str(chat_id),
        text=text,
        message_id=str(msg["message_id"]) if "message_id" in msg else None,
        timestamp=(
            datetime.fromtimestamp(date, tz=timezone.utc)
            if isinstance(date, (int, float))
            else datetime.now(timezone.utc)
        ),
    )


class TelegramTransport(ChannelTransport):
    """One lazily initialised :class:`telegram.Bot` per bot token."""

    max_message_length = 4096

    def __init__(self, config: TelegramConfig, bot_factory: Optional[BotFactory] = None):
        self._config = config
        self._bot_factory = bot_factory or self._default_bot
        self._bots: dict[str, Bot] = {}
        self._init_locks: dict[str, asyncio.Lock] = {}

    @property
    def channel(self) -> Channel:
        return Channel.TELEGRAM

    def _default_bot(self, token: str) -> Bot:
        timeout = self._config.timeout
        return Bot(
            token,
            request=HTTPXRequest(connect_timeout=timeout, read_timeout=timeout, write_timeout=timeout),
        )

    async def _bot(self, token: str) -> Bot:
        bot = self._bots.get(token)
        if bot is not None:
            return bot
        # initialize() is a network call; only callers for the same token wait on it
        lock = self._init_locks.setdefault(token, asyncio.Lock())
        async with lock:
            bot = self._bots.get(token)
            if bot is None:
                bot = self._bot_factory(token)
                await bot.initialize()
                self._bots[token] = bot
            return bot

    async def send_message(self, credential: str, message: OutgoingMessage) -> None:
        try:
            bot = await self._bot(credential)
            await bot.send_message(chat_id=int(message.chat_id), text=message.text)
        except TelegramError as e:
            raise _map_error(e) from e

    async def send_typing(self, credential: str, chat_id: str) -> None:
        try:
            bot = await self._bot(credential)
            await bot.send_chat_action(chat_id=int(chat_id), action=ChatAction.TYPING)
        except TelegramError as e:
            raise _map_error(e) from e

    async def get_me(self, token: str) -> tuple[str, str]:
        """(bot id, username) for ``token``; an invalid token raises :class:`ValidationError`."""
        try:
            bot = await self._bot(token)
            me = await bot.get_me()
        except InvalidToken as e:
            raise ValidationError("invalid bot token") from e
        except TelegramError as e:
            raise _map_error(e) from e
        return str(me.id), me.username or ""

    async def set_webhook(self, token: str, url: str, secret_token: Optional[str] = None) -> bool:
        """Point the bot at ``url``; Telegram echoes ``secret_token`` in a header on every update."""
        try:
            bot = await self._bot(token)
            ok = await bot.set_webhook(
                url=url, secret_token=secret_token, drop_pending_updates=True
            )
        except TelegramError as e:
            raise _map_error(e) from e
        logger.info("telegram_webhook_set", url=url.rsplit("/", 1)[0])
        return bool(ok)

    async def delete_webhook(self, token: str) -> bool:
        try:
            bot = await self._bot(token)
            ok = await bot.delete_webhook()
        except TelegramError as e:
            raise _map_error(e) from e
        finally:
            await self._forget(token)
        return bool(ok)

    async def _forget(self, token: str) -> None:
        bot = self._bots.pop(token, None)
        self._init_locks.pop(token, None)
        if bot is not None:
            await bot.shutdown()

    async def close(self) -> None:
        bots = list(self._bots.values())
        self._bots.clear()
        self._init_locks.clear()
        for bot in bots:
            try:
                await bot.shutdown()
            except TelegramError as e:
                logger.warning("telegram_bot_shutdown_error", error=str(e))


def _map_error(e: TelegramError) -> ExternalServiceError:
    if isinstance(e, (TimedOut, NetworkError, RetryAfter)):
        return TransientServiceError("telegram", str(e))
    return ExternalServiceError("telegram", str(e))
