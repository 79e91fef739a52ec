"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class Channel(StrEnum):
    MESSENGER = "messenger"
    TELEGRAM = "telegram"


class Role(StrEnum):
    USER = "user"
    BOT = "bot"
