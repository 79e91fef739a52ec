"""End-to-end tests of the HTTP surface with fake model clients and recording transports."""

import hashlib
import hmac
import json

import pytest

from conftest import product, run, unit
from shopchat.core import tasks
from shopchat.core.types import Channel
from shopchat.errors import ExternalServiceError
from shopchat.rag.engine import APOLOGY_REPLY
from shopchat.storage.models import ConversationKey

APP_SECRET = "fb-app-secret"
OWNER = "owner-1"
PAGE_ID = "PAGE1"
PAGE_TOKEN = "page-token"
BOT_TOKEN = "123:bot-token"
BOT_SECRET = "tg-secret-path"


async def seed(shop):
    await shop.binding_repo.add_tenant("T1", "Shop One")
    await shop.binding_repo.add_tenant("T2", "Shop Two")
    await shop.binding_repo.add_membership(OWNER, "T1")
    await shop.catalog_repo.add_product(product("p1", "T1", "Red Shirt", unit(0), price=20))
    await shop.catalog_repo.add_product(product("p2", "T2", "Stolen Shirt", unit(0), price=1))
    await shop.binding_repo.upsert_facebook_page(PAGE_ID, OWNER, PAGE_TOKEN, "My Page")
    await shop.binding_repo.upsert_telegram_bot("BOT1", OWNER, BOT_TOKEN, BOT_SECRET, "shop_bot")


def messenger_payload(text="do you have red shirts?", page_id=PAGE_ID, sender="PSID1"):
    return {
        "object": "page",
        "entry": [
            {
                "id": page_id,
                "messaging": [
                    {
                        "sender": {"id": sender},
                        "recipient": {"id": page_id},
                        "timestamp": 1700000000000,
                        "message": {"mid": "m1", "text": text},
                    }
                ],
            }
        ],
    }


def telegram_update(text="red shirt?", chat_id=555):
    return {
        "update_id": 1,
        "message": {
            "message_id": 9,
            "date": 1700000000,
            "chat": {"id": chat_id, "type": "private"},
            "from": {"id": chat_id, "is_bot": False, "first_name": "C"},
            "text": text,
        },
    }


def signed_post(client, payload, secret=APP_SECRET, signature=None):
    body = json.dumps(payload).encode()
    if signature is None:
        signature = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return client.post(
        "/webhooks/messenger",
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": signature},
    )


def telegram_post(client, secret, payload, header=None):
    return client.post(
        f"/webhooks/telegram/{secret}",
        json=payload,
        headers={"X-Telegram-Bot-Api-Secret-Token": secret if header is None else header},
    )


def messages_for(client, channel, external_user_id, owner=OWNER):
    shop = client.app.state.shop
    key = ConversationKey(owner_user_id=owner, channel=channel, external_user_id=external_user_id)
    return run(client, shop.conversation_repo.recent_messages, key, 50)


@pytest.fixture
def client(client_factory, fake_embedder):
    fake_embedder.vectors["red shirt"] = unit(0)
    with client_factory(facebook={"app_secret": APP_SECRET, "verify_token": "verify-me"}) as c:
        run(c, seed, c.app.state.shop)
        yield c
        run(c, tasks.drain)


# -- health / verification -------------------------------------------------


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"


def test_messenger_verification_handshake(client):
    ok = client.get(
        "/webhooks/messenger",
        params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"},
    )
    bad = client.get(
        "/webhooks/messenger",
        params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "12345"},
    )
    assert ok.status_code == 200 and ok.text == "12345"
    assert bad.status_code == 403


# -- messenger -------------------------------------------------------------


def test_invalid_signature_is_rejected_before_any_write(client, fake_llm, messenger_transport):
    response = signed_post(client, messenger_payload(), signature="sha256=" + "0" * 64)

    assert response.status_code == 403
    assert messages_for(client, Channel.MESSENGER, "PSID1") == []
    assert fake_llm.calls == []
    assert messenger_transport.sent == []


def test_missing_signature_is_rejected(client):
    response = client.post("/webhooks/messenger", json=messenger_payload())
    assert response.status_code == 403


def test_non_ascii_signature_is_rejected(client, fake_llm):
    response = client.post(
        "/webhooks/messenger",
        content=json.dumps(messenger_payload()).encode(),
        headers={"X-Hub-Signature-256": "sha256=éé".encode("latin-1")},
    )

    assert response.status_code == 403
    assert fake_llm.calls == []


def test_non_ascii_verify_token_is_rejected(client):
    response = client.get(
        "/webhooks/messenger",
        params={"hub.mode": "subscribe", "hub.verify_token": "vérify", "hub.challenge": "1"},
    )
    assert response.status_code == 403


def test_messenger_message_is_answered_and_logged(client, messenger_transport):
    response = signed_post(client, messenger_payload())

    assert response.status_code == 200
    assert response.text == "EVENT_RECEIVED"
    assert messenger_transport.texts == ["We have the Red Shirt for $20."]
    assert messenger_transport.sent[0][0] == PAGE_TOKEN
    assert messenger_transport.sent[0][1].chat_id == "PSID1"

    logged = messages_for(client, Channel.MESSENGER, "PSID1")
    assert [(m.role.value, m.content) for m in logged] == [
        ("user", "do you have red shirts?"),
        ("bot", "We have the Red Shirt for $20."),
    ]
    assert {m.tenant_id for m in logged} == {"T1"}


def test_reply_is_grounded_in_own_tenant_only(client, fake_llm):
    signed_post(client, messenger_payload())

    system = fake_llm.answer_calls[0]["system"]
    assert "Red Shirt" in system
    assert "Stolen Shirt" not in system


def test_completion_failure_still_acknowledges(client, fake_llm, messenger_transport):
    fake_llm.answer_reply = ExternalServiceError("llm", "Service Unavailable", status=503)

    response = signed_post(client, messenger_payload())

    assert response.status_code == 200
    assert messenger_transport.texts == [APOLOGY_REPLY]


def test_send_failure_still_acknowledges(client, messenger_transport):
    messenger_transport.fail_send = True
    response = signed_post(client, messenger_payload())
    assert response.status_code == 200
    assert len(messages_for(client, Channel.MESSENGER, "PSID1")) == 2


def test_typing_failure_does_not_block_reply(client, messenger_transport):
    messenger_transport.fail_typing = True
    signed_post(client, messenger_payload())
    run(client, tasks.drain)
    assert messenger_transport.texts == ["We have the Red Shirt for $20."]


def test_second_message_sees_previous_turns(client, fake_llm):
    signed_post(client, messenger_payload("do you have red shirts?"))
    signed_post(client, messenger_payload("how much is it?"))

    system = fake_llm.answer_calls[-1]["system"]
    assert "User: do you have red shirts?" in system
    assert "Bot: We have the Red Shirt for $20." in system
    assert "User: how much is it?" not in system


def test_unknown_page_is_dropped(client, messenger_transport):
    response = signed_post(client, messenger_payload(page_id="OTHER"))
    assert response.status_code == 200
    assert messenger_transport.sent == []


def test_owner_without_tenants_is_dropped(client, messenger_transport):
    shop = client.app.state.shop
    run(client, shop.binding_repo.upsert_facebook_page, "LONELY", "nobody", "tok", None)

    response = signed_post(client, messenger_payload(page_id="LONELY"))

    assert response.status_code == 200
    assert messenger_transport.sent == []
    assert messages_for(client, Channel.MESSENGER, "PSID1", owner="nobody") == []


def test_invalid_json_is_a_bad_request(client):
    body = b"not json"
    signature = "sha256=" + hmac.new(APP_SECRET.encode(), body, hashlib.sha256).hexdigest()
    response = client.post(
        "/webhooks/messenger", content=body, headers={"X-Hub-Signature-256": signature}
    )
    assert response.status_code == 400


def test_unsigned_payload_accepted_without_app_secret(client_factory, messenger_transport, fake_embedder):
    fake_embedder.vectors["red shirt"] = unit(0)
    with client_factory() as c:
        run(c, seed, c.app.state.shop)
        response = c.post("/webhooks/messenger", json=messenger_payload())
        run(c, tasks.drain)
    assert response.status_code == 200
    assert messenger_transport.texts == ["We have the Red Shirt for $20."]


# -- telegram --------------------------------------------------------------


def test_telegram_update_is_answered(client, telegram_transport):
    response = telegram_post(client, BOT_SECRET, telegram_update())

    assert response.json() == {"ok": True}
    assert telegram_transport.texts == ["We have the Red Shirt for $20."]
    credential, message = telegram_transport.sent[0]
    assert credential == BOT_TOKEN
    assert message.chat_id == "555"
    assert len(messages_for(client, Channel.TELEGRAM, "555")) == 2


def test_telegram_unknown_secret_is_silently_ignored(client, telegram_transport, fake_llm):
    response = telegram_post(client, "not-a-secret", telegram_update())
    assert response.status_code == 200
    assert telegram_transport.sent == []
    assert fake_llm.calls == []


@pytest.mark.parametrize("header", ["", "other-secret", "tg-sécret"])
def test_telegram_update_without_matching_secret_header_is_dropped(
    client, telegram_transport, fake_llm, header
):
    response = telegram_post(
        client, BOT_SECRET, telegram_update(), header=header.encode("latin-1")
    )

    assert response.json() == {"ok": True}
    assert telegram_transport.sent == []
    assert fake_llm.calls == []


def test_telegram_non_text_update_is_ignored(client, telegram_transport):
    response = telegram_post(client, BOT_SECRET, {"update_id": 2})
    assert response.status_code == 200
    assert telegram_transport.sent == []


# -- playground ------------------------------------------------------------


def test_rag_chat_returns_reply_and_products(client):
    response = client.post("/rag/chat", json={"query": "red shirt please", "user_id": OWNER})

    assert response.status_code == 200
    data = response.json()
    assert data["reply"] == "We have the Red Shirt for $20."
    assert data["optimized_query"] == "red shirt"
    assert [p["id"] for p in data["products"]] == ["p1"]


def test_rag_chat_requires_query_and_tenants(client):
    assert client.post("/rag/chat", json={"query": "  ", "tenant_ids": ["T1"]}).status_code == 400
    assert client.post("/rag/chat", json={"query": "shirt", "user_id": "nobody"}).status_code == 400


def test_rag_chat_is_rate_limited(client_factory):
    with client_factory(rate_limit={"requests": 1, "interval_seconds": 60}) as c:
        run(c, seed, c.app.state.shop)
        first = c.post("/rag/chat", json={"query": "shirt", "tenant_ids": ["T1"]})
        second = c.post("/rag/chat", json={"query": "shirt", "tenant_ids": ["T1"]})

    assert first.status_code == 200
    assert second.status_code == 429
    assert second.headers["X-RateLimit-Limit"] == "1"
    assert second.headers["X-RateLimit-Remaining"] == "0"


# -- admin -----------------------------------------------------------------


def test_clear_memory_route(client):
    signed_post(client, messenger_payload())

    first = client.delete(f"/bot/memory/{OWNER}")
    second = client.delete(f"/bot/memory/{OWNER}")

    assert first.json() == {"ok": True, "sessions_deleted": 1, "messages_deleted": 2}
    assert second.json() == {"ok": True, "sessions_deleted": 0, "messages_deleted": 0}
    assert messages_for(client, Channel.MESSENGER, "PSID1") == []


def test_admin_routes_require_token_when_configured(client_factory):
    with client_factory(server={"admin_token": "s3cret"}) as c:
        assert c.delete(f"/bot/memory/{OWNER}").status_code == 401
        assert c.get("/cache/stats", headers={"Authorization": "Bearer nope"}).status_code == 401
        ok = c.get("/cache/stats", headers={"Authorization": "Bearer s3cret"})
    assert ok.status_code == 200
    assert set(ok.json()) == {"enhancement", "embedding"}


def test_non_ascii_admin_token_is_unauthorized(client_factory):
    with client_factory(server={"admin_token": "s3cret"}) as c:
        response = c.get(
            "/cache/stats", headers={"Authorization": "Bearer sécret".encode("latin-1")}
        )
    assert response.status_code == 401


def test_telegram_connect_and_disconnect(client, telegram_transport):
    response = client.post(
        "/telegram/bots", json={"owner_user_id": OWNER, "bot_token": "999:new-token"}
    )

    assert response.status_code == 200
    assert response.json()["bot"] == {"id": "4242", "username": "shop_bot"}
    url = telegram_transport.webhooks["999:new-token"]
    assert url.startswith("https://shop.example.com/webhooks/telegram/")
    secret = url.rsplit("/", 1)[1]
    assert telegram_transport.webhook_secrets["999:new-token"] == secret

    assert telegram_post(client, secret, telegram_update()).status_code == 200
    assert telegram_transport.sent[-1][0] == "999:new-token"

    assert client.delete("/telegram/bots/4242").json() == {"ok": True}
    assert telegram_transport.deleted_webhooks == ["999:new-token"]
    sent_before = len(telegram_transport.sent)
    telegram_post(client, secret, telegram_update())
    assert len(telegram_transport.sent) == sent_before
    assert client.delete("/telegram/bots/4242").status_code == 404


def test_telegram_reconnect_keeps_secret(client, telegram_transport):
    client.post("/telegram/bots", json={"owner_user_id": OWNER, "bot_token": "999:a"})
    client.post("/telegram/bots", json={"owner_user_id": OWNER, "bot_token": "999:b"})
    assert telegram_transport.webhooks["999:a"] == telegram_transport.webhooks["999:b"]


def test_facebook_connect_and_disconnect(client, messenger_transport):
    response = client.post(
        "/facebook/pages",
        json={"owner_user_id": OWNER, "page_id": "PAGE2", "page_token": "tok2", "page_name": "Two"},
    )

    assert response.json() == {"ok": True, "page": {"id": "PAGE2", "name": "Two"}, "subscribed": True}
    assert messenger_transport.subscribed == ["PAGE2"]

    assert client.delete("/facebook/pages/PAGE2").json() == {"ok": True}
    assert messenger_transport.unsubscribed == ["PAGE2"]
    assert client.delete("/facebook/pages/PAGE2").status_code == 404

    signed_post(client, messenger_payload(page_id="PAGE2"))
    assert messenger_transport.sent == []


def test_connect_validation_errors(client):
    response = client.post("/facebook/pages", json={"owner_user_id": OWNER, "page_id": "P", "page_token": ""})
    assert response.status_code == 400
