"""CLI entry point for shopchat."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from shopchat.config import AppConfig, load_config
from shopchat.errors import ConfigurationError
from shopchat.log import setup_logging


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    parser.add_argument("-e", "--env", default=".env", help="Path to .env file")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="shopchat",
        description="Storefront chatbot answering Messenger and Telegram from a product catalog",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the webhook server")
    _add_config_args(serve_parser)

    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    _add_config_args(check_parser)

    clear_parser = subparsers.add_parser(
        "clear-memory", help="Delete every conversation of one owner"
    )
    clear_parser.add_argument("owner", help="Owner user id")
    _add_config_args(clear_parser)

    args = parser.parse_args(argv)

    if args.command is None:
        # Default to serve
        args.command = "serve"
        args.config = "config.yaml"
        args.env = ".env"

    if args.command == "config-check":
        _check_config(args.config, args.env)
    elif args.command == "clear-memory":
        _clear_memory(args.config, args.env, args.owner)
    elif args.command == "serve":
        _serve(args.config, args.env)


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        if not Path(config_path).exists():
            print("Copy config.example.yaml to config.yaml and fill in .env", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load(config_path, env_path)
    print(f"Configuration valid: {config_path}")
    print(f"  Storage   : {config.storage.db_path}")
    print(f"  LLM       : {config.llm.backend} / {config.llm.model}")
    print(f"  Embedding : {config.embedding.model} ({config.embedding.dimension}d, {config.embedding.location})")
    print(f"  Enhancer  : {'on' if config.rag.enhance_queries else 'off'}")
    print(f"  Public URL: {config.server.public_url or '(not set, Telegram connect disabled)'}")

    warnings = []
    if config.llm.backend == "openai" and not config.openai.api_key:
        warnings.append("openai.api_key is empty")
    if config.llm.backend == "anthropic" and not config.anthropic:
        warnings.append("anthropic section missing")
    if not config.embedding.project_id:
        warnings.append("embedding.project_id is empty")
    if not config.facebook.app_secret:
        warnings.append("facebook.app_secret is empty: Messenger signatures will not be checked")
    if not config.server.admin_token:
        warnings.append("server.admin_token is empty: admin routes are open")
    for w in warnings:
        print(f"  WARNING: {w}")


def _clear_memory(config_path: str, env_path: str, owner: str) -> None:
    from shopchat.core.session import SessionManager
    from shopchat.storage.conversation_repo import ConversationRepository
    from shopchat.storage.database import Database

    config = _load(config_path, env_path)
    setup_logging(config.log_level, config.json_logs)

    async def _run() -> None:
        db = Database(config.storage.db_path)
        await db.initialize()
        try:
            result = await SessionManager(ConversationRepository(db)).clear_memory(owner)
        finally:
            await db.close()
        print(
            f"Cleared {result.sessions_deleted} session(s) and "
            f"{result.messages_deleted} message(s) for {owner}"
        )

    asyncio.run(_run())


def _serve(config_path: str, env_path: str) -> None:
    """Load config and run the HTTP server."""
    import uvicorn

    from shopchat.app import ShopchatApp
    from shopchat.web.server import create_app

    config = _load(config_path, env_path)
    setup_logging(config.log_level, config.json_logs)

    try:
        shop = ShopchatApp(config)
    except Exception as e:
        print(f"Startup error: {e}", file=sys.stderr)
        sys.exit(1)

    uvicorn.run(
        create_app(shop),
        host=config.server.host,
        port=config.server.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
