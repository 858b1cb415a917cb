"""Terminal channel: prompts on stdin, prints replies to stdout.

Every line belongs to the single conversation id ``cli``. EOF ends the
stream, after which the daemon finishes queued turns and exits.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from pathlib import Path

from . import Attachment, InboundMessage, split_message

CLI_CONVERSATION = "cli"
PROMPT = "You> "
REPLY_PREFIX = "Agent> "


class CLIChannel:
    def __init__(self, chunk_limit: int = 4000):
        self.chunk_limit = chunk_limit

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    async def receive(self) -> AsyncIterator[InboundMessage]:
        while True:
            try:
                line = await asyncio.to_thread(input, PROMPT)
            except (EOFError, KeyboardInterrupt):
                break
            if line.strip():
                yield InboundMessage(line, CLI_CONVERSATION, "cli", time.time(), "cli")

    async def send(self, target: str, text: str, parse_mode: str | None = None) -> None:
        for chunk in filter(None, split_message(text, self.chunk_limit)):
            print(REPLY_PREFIX + chunk, flush=True)

    async def send_typing(self, target: str) -> None:
        return None

    async def download(self, attachment: Attachment, dest_dir: Path) -> Path:
        raise RuntimeError("CLI channel has no attachments")
