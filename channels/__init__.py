"""Messaging transports for Minion.

A channel yields InboundMessage objects and delivers text back to a
conversation id. Telegram is the production transport; the CLI channel
drives the daemon from a terminal.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from config import Config, ConfigError

PARSE_MODE_MARKDOWN = "Markdown"


@dataclass
class Attachment:
    content_type: str    # "image/jpeg", etc.
    file_id: str         # Transport handle used to download the file
    unique_id: str = ""  # Stable id across bots/re-sends (used in saved filenames)
    size: int = 0        # Bytes, 0 if unknown
    local_path: str = "" # Absolute path on disk, once downloaded


@dataclass
class InboundMessage:
    text: str
    chat_id: str          # Conversation id replies go back to
    sender: str           # Username, "cli", etc.
    timestamp: float
    source: str           # "telegram", "cli"
    attachments: list[Attachment] | None = None


class Channel(Protocol):
    async def connect(self) -> None: ...
    async def disconnect(self) -> None: ...
    def receive(self) -> AsyncIterator[InboundMessage]: ...
    async def send(self, target: str, text: str, parse_mode: str | None = None) -> None: ...
    async def send_typing(self, target: str) -> None: ...
    async def download(self, attachment: Attachment, dest_dir: Path) -> Path: ...


def split_message(text: str, limit: int = 4000) -> list[str]:
    """Split text into chunks of at most limit characters.

    Cuts at the last newline before the limit, else the last space, else
    hard at the limit. A separator in the back half of the window is
    required so chunks never degenerate into tiny fragments.
    """
    if len(text) <= limit:
        return [text]

    chunks = []
    remaining = text
    while len(remaining) > limit:
        window = remaining[:limit + 1]
        cut = window.rfind("\n")
        if cut < limit // 2:
            cut = window.rfind(" ")
        if cut < limit // 2:
            chunks.append(remaining[:limit])
            remaining = remaining[limit:]
            continue
        # Separator is dropped at the cut
        chunks.append(remaining[:cut])
        remaining = remaining[cut + 1:]
    if remaining:
        chunks.append(remaining)
    return chunks


def _telegram(config: Config) -> Channel:
    from .telegram import TelegramChannel

    settings = config.telegram_config
    token_env = settings.get("token_env", "MINION_TELEGRAM_TOKEN")
    token = os.environ.get(token_env, "")
    if not token:
        raise ConfigError(f"Telegram token not found in env var: {token_env}")
    return TelegramChannel(
        token,
        allow_from=[int(uid) for uid in settings.get("allow_from", [])],
        chunk_limit=config.message_chunk_limit,
    )


def create_channel(config: Config) -> Channel:
    """Instantiate the transport named by ``[channel] type``."""
    kind = config.channel_type
    if kind == "telegram":
        return _telegram(config)
    if kind == "cli":
        from .cli import CLIChannel
        return CLIChannel(chunk_limit=config.message_chunk_limit)
    raise ConfigError(f"Unknown channel type: {kind!r}")
