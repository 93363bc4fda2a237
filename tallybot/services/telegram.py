from __future__ import annotations

import html
import logging
from typing import Any, Dict, List, Protocol

import httpx

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4096


class TransportError(Exception):
    """The chat platform rejected a call or could not be reached."""


class ChatTransport(Protocol):
    async def send_message(self, chat_id: int, text: str) -> None: ...

    async def fetch_file(self, file_id: str) -> bytes: ...


def escape_html(value: Any) -> str:
    return html.escape(str(value if value is not None else ""), quote=False)


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """Split on line boundaries so no chunk exceeds Telegram's message limit."""
    if len(text) <= limit:
        return [text]
    chunks: List[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


class TelegramClient:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    @property
    def _api(self) -> str:
        if not self._settings.telegram_bot_token:
            raise TransportError("Telegram bot token not configured")
        return f"{self._settings.telegram_api_base.rstrip('/')}/bot{self._settings.telegram_bot_token}"

    async def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self._settings.telegram_timeout_seconds) as client:
                resp = await client.post(f"{self._api}/{method}", json=payload)
        except httpx.HTTPError as exc:
            logger.error("HTTP error calling Telegram %s: %s", method, exc)
            raise TransportError(f"telegram_unreachable:{method}") from exc
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400 or not data.get("ok"):
            logger.error("Telegram %s returned %s: %s", method, resp.status_code, resp.text)
            raise TransportError(f"telegram_error:{method}:{resp.status_code}")
        return data.get("result")

    async def send_message(self, chat_id: int, text: str) -> None:
        for chunk in split_message(text):
            await self._call(
                "sendMessage",
                {"chat_id": chat_id, "text": chunk, "parse_mode": "HTML", "disable_web_page_preview": True},
            )

    async def fetch_file(self, file_id: str) -> bytes:
        meta = await self._call("getFile", {"file_id": file_id})
        file_path = (meta or {}).get("file_path")
        if not file_path:
            raise TransportError("telegram_file_without_path")
        url = (
            f"{self._settings.telegram_api_base.rstrip('/')}/file/"
            f"bot{self._settings.telegram_bot_token}/{file_path}"
        )
        try:
            async with httpx.AsyncClient(timeout=self._settings.telegram_timeout_seconds) as client:
                resp = await client.get(url)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to download Telegram file %s: %s", file_id, exc)
            raise TransportError("telegram_download_failed") from exc
        return resp.content
