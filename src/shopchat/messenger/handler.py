"""Message handler: inbound channel message -> memory -> RAG -> reply."""

from __future__ import annotations

from typing import Any, Mapping

from shopchat.core.session import SessionManager
from shopchat.core.tasks import spawn_best_effort
from shopchat.core.types import Channel, Role
from shopchat.log import get_logger
from shopchat.messenger.base import ChannelTransport
from shopchat.messenger.facebook import parse_messenger_events
from shopchat.messenger.models import InboundMessage
from shopchat.messenger.telegram import parse_telegram_update
from shopchat.rag.engine import RagOrchestrator
from shopchat.storage.binding_repo import BindingRepository
from shopchat.storage.models import ChannelBinding, ConversationKey, ConversationSession

logger = get_logger(__name__)


class ChannelMessageHandler:
    """Handles the full flow for webhook events whose origin is already verified.

    Nothing here raises to the webhook: every failure after origin checks is
    logged and the event is dropped or answered with what is available.
    """

    def __init__(
        self,
        bindings: BindingRepository,
        session_manager: SessionManager,
        orchestrator: RagOrchestrator,
        transports: Mapping[Channel, ChannelTransport],
        history_turns: int = 6,
    ):
        self._bindings = bindings
        self._sessions = session_manager
        self._orchestrator = orchestrator
        self._transports = dict(transports)
        self._history_turns = history_turns

    async def handle_messenger_payload(self, payload: dict[str, Any]) -> None:
        for message in parse_messenger_events(payload):
            try:
                binding = await self._bindings.find_active_page(message.recipient_id)
            except Exception as e:
                logger.error("binding_lookup_failed", page_id=message.recipient_id, error=str(e))
                continue
            if binding is None:
                logger.info("messenger_page_not_connected", page_id=message.recipient_id)
                continue
            await self.handle(binding, message)

    async def handle_telegram_update(self, binding: ChannelBinding, payload: dict[str, Any]) -> None:
        message = parse_telegram_update(payload, binding.external_id)
        if message is None:
            return
        await self.handle(binding, message)

    async def handle(self, binding: ChannelBinding, message: InboundMessage) -> None:
        """Process one message end-to-end. Never raises."""
        try:
            await self._handle(binding, message)
        except Exception as e:
            logger.error(
                "channel_message_failed",
                channel=binding.channel.value,
                owner_user_id=binding.owner_user_id,
                chat_id=message.chat_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _handle(self, binding: ChannelBinding, message: InboundMessage) -> None:
        owner = binding.owner_user_id
        tenant_ids = await self._bindings.tenant_ids_for_user(owner)
        if not tenant_ids:
            logger.warning(
                "owner_has_no_tenants", owner_user_id=owner, channel=binding.channel.value
            )
            return

        session = ConversationSession(
            key=ConversationKey(
                owner_user_id=owner,
                channel=binding.channel,
                external_user_id=message.sender_id,
            ),
            tenant_id=tenant_ids[0],
        )
        inbound_id = await self._sessions.log_turn(session, Role.USER, message.text)

        transport = self._transports[binding.channel]
        spawn_best_effort(
            transport.send_typing(binding.credential, message.chat_id),
            "typing_indicator_failed",
            channel=binding.channel.value,
            chat_id=message.chat_id,
        )

        history = await self._sessions.recent_context(
            session, self._history_turns, exclude_id=inbound_id
        )
        reply = await self._orchestrator.run(tenant_ids, message.text, history or None)

        await self._sessions.log_turn(session, Role.BOT, reply)

        try:
            await transport.send_text(binding.credential, message.chat_id, reply)
        finally:
            spawn_best_effort(
                transport.typing_done(binding.credential, message.chat_id),
                "typing_indicator_failed",
                channel=binding.channel.value,
                chat_id=message.chat_id,
            )
        logger.info(
            "channel_reply_sent",
            channel=binding.channel.value,
            owner_user_id=owner,
            chat_id=message.chat_id,
            reply_chars=len(reply),
        )
