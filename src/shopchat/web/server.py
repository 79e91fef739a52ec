"""HTTP surface: channel webhooks, the RAG playground and admin routes."""

from __future__ import annotations

import hmac
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Literal, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from shopchat import __version__
from shopchat.app import ShopchatApp
from shopchat.errors import (
    ConfigurationError,
    ExternalServiceError,
    SignatureError,
    ValidationError,
)
from shopchat.log import get_logger
from shopchat.messenger.facebook import verify_signature

logger = get_logger(__name__)

TELEGRAM_SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


class HistoryTurn(BaseModel):
    role: Literal["user", "bot", "assistant"]
    content: str


class ChatRequest(BaseModel):
    query: str
    tenant_ids: Optional[list[str]] = None
    user_id: Optional[str] = None
    history: list[HistoryTurn] = Field(default_factory=list)


class ProductOut(BaseModel):
    id: str
    name: str
    price: Optional[float] = None
    image_url: Optional[str] = None
    category_name: Optional[str] = None
    score: float


class ChatResponse(BaseModel):
    reply: str
    optimized_query: str
    keywords: list[str]
    intent: str
    products: list[ProductOut]


class TelegramConnectRequest(BaseModel):
    owner_user_id: str
    bot_token: str


class FacebookConnectRequest(BaseModel):
    owner_user_id: str
    page_id: str
    page_token: str
    page_name: Optional[str] = None


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def secrets_match(supplied: str, expected: str) -> bool:
    """Constant-time comparison that tolerates any text the client sends."""
    return hmac.compare_digest(
        supplied.encode("utf-8", "replace"), expected.encode("utf-8", "replace")
    )


def format_history(turns: list[HistoryTurn]) -> str:
    return "\n".join(
        f"{'User' if t.role == 'user' else 'Bot'}: {t.content}" for t in turns if t.content.strip()
    )


def create_app(shop: ShopchatApp) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await shop.start()
        try:
            yield
        finally:
            await shop.stop()

    app = FastAPI(title="shopchat", version=__version__, lifespan=lifespan)
    app.state.shop = shop

    # -- error mapping ---------------------------------------------------

    @app.exception_handler(ValidationError)
    async def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=400)

    @app.exception_handler(ConfigurationError)
    async def _configuration_error(_: Request, exc: ConfigurationError) -> JSONResponse:
        logger.error("configuration_error", error=str(exc))
        return JSONResponse({"error": str(exc)}, status_code=500)

    @app.exception_handler(ExternalServiceError)
    async def _external_error(_: Request, exc: ExternalServiceError) -> JSONResponse:
        logger.error("external_service_error", service=exc.service, status=exc.status, error=str(exc))
        return JSONResponse({"error": str(exc), "service": exc.service}, status_code=502)

    # -- dependencies ----------------------------------------------------

    async def require_admin(request: Request) -> None:
        token = shop.config.server.admin_token
        if not token:
            return
        header = request.headers.get("authorization", "")
        scheme, _, supplied = header.partition(" ")
        if scheme.lower() != "bearer" or not secrets_match(supplied.strip(), token):
            raise HTTPException(status_code=401, detail="unauthorized")

    async def rate_limited(request: Request) -> None:
        limiter = shop.rate_limiter
        result = await limiter.check(client_key(request))
        if not result.allowed:
            raise HTTPException(
                status_code=429,
                detail="rate limit exceeded",
                headers={
                    "X-RateLimit-Limit": str(limiter.limit),
                    "X-RateLimit-Remaining": str(result.remaining),
                    "X-RateLimit-Reset": str(int(result.reset_at)),
                },
            )

    # -- health ----------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    # -- messenger -------------------------------------------------------

    @app.get("/webhooks/messenger")
    async def messenger_verify(request: Request) -> PlainTextResponse:
        params = request.query_params
        expected = shop.config.facebook.verify_token
        supplied = params.get("hub.verify_token") or ""
        if (
            params.get("hub.mode") == "subscribe"
            and expected
            and secrets_match(supplied, expected)
        ):
            return PlainTextResponse(params.get("hub.challenge") or "")
        logger.warning("messenger_verification_rejected", mode=params.get("hub.mode"))
        return PlainTextResponse("forbidden", status_code=403)

    @app.post("/webhooks/messenger")
    async def messenger_webhook(request: Request, background: BackgroundTasks) -> Any:
        body = await request.body()
        app_secret = shop.config.facebook.app_secret
        if app_secret:
            try:
                verify_signature(
                    app_secret,
                    body,
                    request.headers.get("x-hub-signature-256"),
                    request.headers.get("x-hub-signature"),
                )
            except SignatureError as e:
                logger.warning("messenger_signature_rejected", error=str(e))
                return JSONResponse({"error": "forbidden"}, status_code=403)

        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            return JSONResponse({"error": "invalid json"}, status_code=400)
        if not isinstance(payload, dict):
            return JSONResponse({"error": "invalid payload"}, status_code=400)

        background.add_task(shop.handler.handle_messenger_payload, payload)
        return PlainTextResponse("EVENT_RECEIVED")

    # -- telegram --------------------------------------------------------

    @app.post("/webhooks/telegram/{secret}")
    async def telegram_webhook(secret: str, request: Request, background: BackgroundTasks) -> dict[str, bool]:
        binding = await shop.binding_repo.find_bot_by_secret(secret)
        if binding is None:
            logger.info("telegram_unknown_secret")
            return {"ok": True}
        header = request.headers.get(TELEGRAM_SECRET_HEADER) or ""
        if not secrets_match(header, secret):
            logger.warning("telegram_secret_header_mismatch", bot_id=binding.external_id)
            return {"ok": True}

        try:
            payload = await request.json()
        except ValueError:
            return {"ok": True}
        if isinstance(payload, dict):
            background.add_task(shop.handler.handle_telegram_update, binding, payload)
        return {"ok": True}

    # -- playground ------------------------------------------------------

    @app.post("/rag/chat", response_model=ChatResponse, dependencies=[Depends(rate_limited)])
    async def rag_chat(req: ChatRequest) -> ChatResponse:
        query = req.query.strip()
        if not query:
            raise ValidationError("query is required")

        tenant_ids = [t for t in (req.tenant_ids or []) if t]
        if not tenant_ids and req.user_id:
            tenant_ids = await shop.binding_repo.tenant_ids_for_user(req.user_id)
        if not tenant_ids:
            raise ValidationError("no tenant_ids given and none found for user_id")

        answer = await shop.orchestrator.answer(
            tenant_ids, query, format_history(req.history) or None
        )
        return ChatResponse(
            reply=answer.reply,
            optimized_query=answer.query.optimized,
            keywords=answer.query.keywords,
            intent=answer.query.intent,
            products=[
                ProductOut(
                    id=r.product.id,
                    name=r.product.name,
                    price=r.product.price,
                    image_url=r.product.image_url,
                    category_name=r.product.category_name,
                    score=round(r.score, 4),
                )
                for r in answer.products
            ],
        )

    # -- admin -----------------------------------------------------------

    admin = [Depends(require_admin)]

    @app.delete("/bot/memory/{owner_user_id}", dependencies=admin)
    async def clear_memory(owner_user_id: str) -> dict[str, Any]:
        result = await shop.session_manager.clear_memory(owner_user_id)
        return {
            "ok": True,
            "sessions_deleted": result.sessions_deleted,
            "messages_deleted": result.messages_deleted,
        }

    @app.post("/telegram/bots", dependencies=admin)
    async def connect_telegram(req: TelegramConnectRequest) -> dict[str, Any]:
        result = await shop.bindings.connect_telegram(req.owner_user_id, req.bot_token)
        return {
            "ok": True,
            "bot": {"id": result.binding.external_id, "username": result.binding.name},
        }

    @app.delete("/telegram/bots/{bot_id}", dependencies=admin)
    async def disconnect_telegram(bot_id: str) -> dict[str, bool]:
        if not await shop.bindings.disconnect_telegram(bot_id):
            raise HTTPException(status_code=404, detail="bot not connected")
        return {"ok": True}

    @app.post("/facebook/pages", dependencies=admin)
    async def connect_facebook(req: FacebookConnectRequest) -> dict[str, Any]:
        result = await shop.bindings.connect_facebook_page(
            req.owner_user_id, req.page_id, req.page_token, req.page_name
        )
        return {
            "ok": True,
            "page": {"id": result.binding.external_id, "name": result.binding.name},
            "subscribed": result.subscribed,
        }

    @app.delete("/facebook/pages/{page_id}", dependencies=admin)
    async def disconnect_facebook(page_id: str) -> dict[str, bool]:
        if not await shop.bindings.disconnect_facebook_page(page_id):
            raise HTTPException(status_code=404, detail="page not connected")
        return {"ok": True}

    @app.get("/cache/stats", dependencies=admin)
    async def cache_stats() -> dict[str, Any]:
        return {
            "enhancement": shop.enhancement_cache.stats(),
            "embedding": shop.embedding_cache.stats(),
        }

    return app
