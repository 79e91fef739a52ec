"""Connecting and disconnecting Facebook pages and Telegram bots."""

from __future__ import annotations

import secrets
from dataclasses import dataclass

from shopchat.errors import ConfigurationError, ExternalServiceError, ValidationError
from shopchat.log import get_logger
from shopchat.messenger.facebook import MessengerTransport
from shopchat.messenger.telegram import TelegramTransport
from shopchat.storage.binding_repo import BindingRepository
from shopchat.storage.models import ChannelBinding

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ConnectResult:
    binding: ChannelBinding
    subscribed: bool


def telegram_webhook_url(public_url: str, secret: str) -> str:
    return f"{public_url.rstrip('/')}/webhooks/telegram/{secret}"


class BindingService:
    def __init__(
        self,
        bindings: BindingRepository,
        messenger: MessengerTransport,
        telegram: TelegramTransport,
        public_url: str = "",
    ):
        self._bindings = bindings
        self._messenger = messenger
        self._telegram = telegram
        self._public_url = public_url

    async def connect_telegram(self, owner_user_id: str, bot_token: str) -> ConnectResult:
        """Validate the token, point the bot's webhook at us, then store the binding.

        The webhook secret is kept when the same bot is reconnected, so a
        webhook registered earlier keeps working.
        """
        if not owner_user_id or not bot_token:
            raise ValidationError("owner_user_id and bot_token are required")
        if not self._public_url:
            raise ConfigurationError("server.public_url is required to register Telegram webhooks")

        bot_id, username = await self._telegram.get_me(bot_token)
        existing = await self._bindings.find_bot(bot_id)
        secret = existing.secret if existing and existing.secret else secrets.token_urlsafe(32)

        url = telegram_webhook_url(self._public_url, secret)
        if not await self._telegram.set_webhook(bot_token, url, secret_token=secret):
            raise ExternalServiceError("telegram", "setWebhook was rejected")

        binding = await self._bindings.upsert_telegram_bot(
            bot_id=bot_id,
            user_id=owner_user_id,
            bot_token=bot_token,
            secret=secret,
            bot_username=username,
        )
        logger.info("telegram_bot_connected", bot_id=bot_id, owner_user_id=owner_user_id)
        return ConnectResult(binding=binding, subscribed=True)

    async def disconnect_telegram(self, bot_id: str) -> bool:
        binding = await self._bindings.find_bot(bot_id)
        if binding is None or not await self._bindings.deactivate_bot(bot_id):
            return False
        try:
            await self._telegram.delete_webhook(binding.credential)
        except ExternalServiceError as e:
            logger.warning("telegram_webhook_delete_failed", bot_id=bot_id, error=str(e))
        logger.info("telegram_bot_disconnected", bot_id=bot_id)
        return True

    async def connect_facebook_page(
        self,
        owner_user_id: str,
        page_id: str,
        page_token: str,
        page_name: str | None = None,
    ) -> ConnectResult:
        """Store the page binding, then subscribe the app to its messages.

        A failed subscription leaves the binding in place; connecting again retries it.
        """
        if not owner_user_id or not page_id or not page_token:
            raise ValidationError("owner_user_id, page_id and page_token are required")

        binding = await self._bindings.upsert_facebook_page(
            page_id=page_id, user_id=owner_user_id, page_token=page_token, page_name=page_name
        )
        try:
            subscribed = await self._messenger.subscribe_app(page_id, page_token)
        except ExternalServiceError as e:
            logger.warning("messenger_subscribe_failed", page_id=page_id, error=str(e))
            subscribed = False
        logger.info(
            "facebook_page_connected",
            page_id=page_id,
            owner_user_id=owner_user_id,
            subscribed=subscribed,
        )
        return ConnectResult(binding=binding, subscribed=subscribed)

    async def disconnect_facebook_page(self, page_id: str) -> bool:
        binding = await self._bindings.find_page(page_id)
        if binding is None or not await self._bindings.deactivate_page(page_id):
            return False
        if binding.credential:
            try:
                await self._messenger.unsubscribe_app(page_id, binding.credential)
            except ExternalServiceError as e:
                logger.warning("messenger_unsubscribe_failed", page_id=page_id, error=str(e))
        logger.info("facebook_page_disconnected", page_id=page_id)
        return True
