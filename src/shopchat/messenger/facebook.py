"""Facebook Messenger: webhook verification, event parsing and the Graph API send transport."""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from shopchat.config import FacebookConfig
from shopchat.core.http import request_with_retry
from shopchat.core.types import Channel
from shopchat.errors import ExternalServiceError, SignatureError
from shopchat.log import get_logger
from shopchat.messenger.base import ChannelTransport
from shopchat.messenger.models import InboundMessage, OutgoingMessage

logger = get_logger(__name__)

GRAPH_URL = "https://graph.facebook.com"
SUBSCRIBED_FIELDS = ("messages", "messaging_postbacks")
SENDER_ACTIONS = frozenset({"typing_on", "typing_off", "mark_seen"})


def verify_signature(
    app_secret: str,
    body: bytes,
    signature_256: Optional[str] = None,
    signature_sha1: Optional[str] = None,
) -> None:
    """Raise :class:`SignatureError` unless ``body`` was signed with ``app_secret``.

    ``X-Hub-Signature-256`` (``sha256=<hex>``) is preferred; the legacy
    ``X-Hub-Signature`` (``sha1=<hex>``) is accepted when it is the only one.
    """
    header = signature_256 or signature_sha1
    if not header or "=" not in header:
        raise SignatureError("missing webhook signature")

    algo, _, received = header.partition("=")
    if algo == "sha256":
        digest = hashlib.sha256
    elif algo == "sha1":
        digest = hashlib.sha1
    else:
        raise SignatureError(f"unsupported signature algorithm: {algo}")

    expected = hmac.new(app_secret.encode(), body, digest).hexdigest()
    supplied = received.strip().lower().encode("utf-8", "replace")
    if not hmac.compare_digest(expected.encode(), supplied):
        raise SignatureError("webhook signature mismatch")


def parse_messenger_events(payload: dict[str, Any]) -> list[InboundMessage]:
    """Text messages from a ``page`` webhook payload.

    Echoes, deliveries, reads, postbacks and attachment-only messages are skipped.
    """
    if payload.get("object") != "page":
        return []

    messages: list[InboundMessage] = []
    for entry in payload.get("entry") or []:
        page_id = str(entry.get("id") or "")
        for event in entry.get("messaging") or []:
            message = event.get("message")
            if not isinstance(message, dict) or message.get("is_echo"):
                continue
            text = message.get("text")
            sender_id = str((event.get("sender") or {}).get("id") or "")
            if not isinstance(text, str) or not text.strip() or not sender_id:
                continue

            recipient_id = str((event.get("recipient") or {}).get("id") or page_id)
            timestamp = event.get("timestamp")
            messages.append(
                InboundMessage(
                    channel=Channel.MESSENGER,
                    recipient_id=recipient_id,
                    sender_id=sender_id,
                    chat_id=sender_id,
                    text=text,
                    message_id=message.get("mid"),
                    timestamp=(
                        datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
                        if isinstance(timestamp, (int, float))
                        else datetime.now(timezone.utc)
                    ),
                )
            )
    return messages


class MessengerTransport(ChannelTransport):
    """Send API calls against the Graph API, authenticated with a page token."""

    max_message_length = 2000

    def __init__(self, config: FacebookConfig, http_client: httpx.AsyncClient):
        self._config = config
        self._http = http_client

    @property
    def channel(self) -> Channel:
        return Channel.MESSENGER

    def _url(self, path: str) -> str:
        return f"{GRAPH_URL}/{self._config.graph_version}/{path.lstrip('/')}"

    async def _call(self, method: str, path: str, page_token: str, **kwargs: Any) -> dict[str, Any]:
        params = dict(kwargs.pop("params", {}) or {})
        params["access_token"] = page_token
        response = await request_with_retry(
            self._http,
            method,
            self._url(path),
            service="messenger",
            max_retries=self._config.max_retries,
            timeout=self._config.timeout,
            params=params,
            **kwargs,
        )
        if response.is_error:
            raise ExternalServiceError(
                "messenger", _graph_error(response), status=response.status_code
            )
        try:
            return response.json()
        except ValueError:
            return {}

    async def send_message(self, credential: str, message: OutgoingMessage) -> None:
        await self._call(
            "POST",
            "me/messages",
            credential,
            json={
                "recipient": {"id": message.chat_id},
                "messaging_type": "RESPONSE",
                "message": {"text": message.text},
            },
        )

    async def send_sender_action(self, credential: str, recipient_id: str, action: str) -> None:
        if action not in SENDER_ACTIONS:
            raise ValueError(f"unknown sender action: {action}")
        await self._call(
            "POST",
            "me/messages",
            credential,
            json={"recipient": {"id": recipient_id}, "sender_action": action},
        )

    async def send_typing(self, credential: str, chat_id: str) -> None:
        await self.send_sender_action(credential, chat_id, "typing_on")

    async def typing_done(self, credential: str, chat_id: str) -> None:
        await self.send_sender_action(credential, chat_id, "typing_off")

    async def subscribe_app(self, page_id: str, page_token: str) -> bool:
        data = await self._call(
            "POST",
            f"{page_id}/subscribed_apps",
            page_token,
            params={"subscribed_fields": ",".join(SUBSCRIBED_FIELDS)},
        )
        logger.info("messenger_page_subscribed", page_id=page_id)
        return bool(data.get("success", True))

    async def unsubscribe_app(self, page_id: str, page_token: str) -> bool:
        data = await self._call("DELETE", f"{page_id}/subscribed_apps", page_token)
        logger.info("messenger_page_unsubscribed", page_id=page_id)
        return bool(data.get("success", True))


def _graph_error(response: httpx.Response) -> str:
    try:
        error = response.json().get("error") or {}
    except (ValueError, AttributeError):
        return f"HTTP {response.status_code}"
    message = error.get("message") if isinstance(error, dict) else None
    return message or f"HTTP {response.status_code}"
