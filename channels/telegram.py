"""Telegram Bot API adapter for Minion.

Updates arrive through getUpdates long polling. Replies, typing actions
and file downloads go through the same httpx client.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

import httpx

from . import Attachment, InboundMessage, split_message

log = logging.getLogger(__name__)

BOT_URL = "https://api.telegram.org/bot{token}"
FILE_URL = "https://api.telegram.org/file/bot{token}/{path}"

POLL_TIMEOUT = 30
BACKOFF_START = 1.0
BACKOFF_CAP = 10.0
BACKOFF_JITTER = 0.2

EXTENSION_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}


class TelegramAPIError(RuntimeError):
    """A Bot API call returned ok=false or an unreadable body."""

    def __init__(self, method: str, reason: str):
        super().__init__(f"Telegram API error ({method}): {reason}")
        self.method = method
        self.reason = reason


def _jittered(delay: float) -> float:
    spread = delay * BACKOFF_JITTER
    return delay + random.uniform(-spread, spread)  # noqa: S311


def _sender_name(user: dict) -> str:
    return user.get("username") or user.get("first_name") or str(user.get("id", 0))


def _largest_photo(message: dict) -> Attachment | None:
    sizes = message.get("photo") or []
    if not sizes:
        return None
    # Telegram orders sizes smallest first.
    photo = sizes[-1]
    return Attachment(
        content_type="image/jpeg",
        file_id=photo.get("file_id", ""),
        unique_id=photo.get("file_unique_id", ""),
        size=photo.get("file_size", 0),
    )


class TelegramChannel:
    """Long-polling Telegram bot restricted to an allow-list of user ids."""

    def __init__(
        self,
        token: str,
        allow_from: list[int] | None = None,
        chunk_limit: int = 4000,
    ):
        self.token = token
        self.allow_from = set(allow_from or ())
        self.chunk_limit = chunk_limit
        self._client: httpx.AsyncClient | None = None
        self._bot_id = 0
        self._bot_username = ""
        self._next_update = 0

    # ─── HTTP ────────────────────────────────────────────────────

    def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            # Read timeout must outlast the long-poll window.
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(POLL_TIMEOUT + 30.0, connect=10.0),
            )
        return self._client

    async def _api(self, method: str, **params):
        """POST a Bot API method and return its ``result`` field."""
        url = BOT_URL.format(token=self.token) + "/" + method
        resp = await self._http().post(url, json=params)
        try:
            body = resp.json()
        except ValueError as exc:
            raise TelegramAPIError(method, f"HTTP {resp.status_code} with non-JSON body") from exc
        if not body.get("ok"):
            raise TelegramAPIError(method, body.get("description") or f"HTTP {resp.status_code}")
        return body.get("result", {})

    # ─── Lifecycle ───────────────────────────────────────────────

    async def connect(self) -> None:
        try:
            me = await self._api("getMe")
        except (httpx.HTTPError, TelegramAPIError) as exc:
            raise ConnectionError(f"Telegram Bot API unreachable: {exc}") from exc
        self._bot_id = me.get("id", 0)
        self._bot_username = me.get("username", "")
        log.info("Connected to Telegram as @%s (id=%d)", self._bot_username, self._bot_id)

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None and not client.is_closed:
            await client.aclose()

    # ─── Inbound ─────────────────────────────────────────────────

    async def receive(self) -> AsyncIterator[InboundMessage]:
        """Yield allowed messages forever, backing off after poll errors."""
        delay = BACKOFF_START
        while True:
            try:
                updates = await self._fetch_updates()
            except asyncio.CancelledError:
                return
            except Exception as exc:
                wait = _jittered(delay)
                log.warning("getUpdates failed (%s), retrying in %.1fs", exc, wait)
                await asyncio.sleep(wait)
                delay = min(delay * 2, BACKOFF_CAP)
                continue
            delay = BACKOFF_START
            for update in updates:
                msg = self._parse_message(update.get("message") or {})
                if msg is not None:
                    yield msg

    async def _fetch_updates(self) -> list[dict]:
        updates = await self._api(
            "getUpdates",
            offset=self._next_update,
            timeout=POLL_TIMEOUT,
            allowed_updates=["message"],
        )
        if updates:
            self._next_update = max(u.get("update_id", 0) for u in updates) + 1
        return updates

    def _parse_message(self, message: dict) -> InboundMessage | None:
        """Convert a Bot API message into an InboundMessage.

        Returns None for the bot's own messages, senders outside the
        allow-list, and messages with neither text nor a photo.
        """
        if not message:
            return None
        user = message.get("from", {})
        user_id = user.get("id", 0)
        if user_id == self._bot_id:
            return None
        if self.allow_from and user_id not in self.allow_from:
            log.debug("Dropping message from user %d (not allowed)", user_id)
            return None

        photo = _largest_photo(message)
        text = message.get("text") or message.get("caption") or ""
        if not text and photo is None:
            return None

        return InboundMessage(
            text=text,
            chat_id=str(message.get("chat", {}).get("id", 0)),
            sender=_sender_name(user),
            timestamp=float(message.get("date", 0)),
            source="telegram",
            attachments=[photo] if photo else None,
        )

    async def download(self, attachment: Attachment, dest_dir: Path) -> Path:
        """Save an attachment as ``<utc stamp>-<unique id>.<ext>`` in dest_dir.

        Updates the attachment's local_path, size and content type.
        """
        info = await self._api("getFile", file_id=attachment.file_id)
        remote = info.get("file_path", "")
        if not remote:
            raise RuntimeError(f"No file_path returned for file_id: {attachment.file_id}")

        resp = await self._http().get(FILE_URL.format(token=self.token, path=remote))
        resp.raise_for_status()
        payload = resp.content

        ext = PurePosixPath(remote).suffix.lstrip(".").lower() or "jpg"
        stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%f")[:-3] + "Z"
        dest_dir.mkdir(parents=True, exist_ok=True)
        target = dest_dir / f"{stamp}-{attachment.unique_id or attachment.file_id}.{ext}"
        target.write_bytes(payload)

        attachment.local_path = str(target)
        attachment.content_type = EXTENSION_TYPES.get(ext, attachment.content_type)
        if not attachment.size:
            attachment.size = len(payload)
        return target

    # ─── Outbound ────────────────────────────────────────────────

    async def send(self, target: str, text: str, parse_mode: str | None = None) -> None:
        """Deliver text as ordered chunks, one sendMessage per chunk."""
        if not text:
            return
        chat_id = int(target)
        for chunk in split_message(text, self.chunk_limit):
            await self._send_chunk(chat_id, chunk, parse_mode)

    async def _send_chunk(self, chat_id: int, chunk: str, parse_mode: str | None) -> None:
        if parse_mode:
            try:
                await self._api("sendMessage", chat_id=chat_id, text=chunk, parse_mode=parse_mode)
                return
            except Exception as exc:
                log.debug("Chat %s rejected %s chunk (%s), sending plain", chat_id, parse_mode, exc)
        try:
            await self._api("sendMessage", chat_id=chat_id, text=chunk)
        except Exception as exc:
            log.error("Dropped chunk for chat %s: %s", chat_id, exc)

    async def send_typing(self, target: str) -> None:
        try:
            await self._api("sendChatAction", chat_id=int(target), action="typing")
        except Exception as exc:
            log.debug("sendChatAction failed for %s: %s", target, exc)
