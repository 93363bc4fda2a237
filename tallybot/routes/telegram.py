from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request, status
from pydantic import ValidationError

from ..config import get_settings
from ..observability import bound_log_context
from ..schemas import TelegramMessage, TelegramUpdate
from ..services.bot import ChatEvent, FileRef, InventoryBot

router = APIRouter(prefix="/telegram", tags=["telegram"])

logger = logging.getLogger(__name__)


def _file_from_message(message: TelegramMessage) -> Optional[FileRef]:
    if message.photo:
        # Telegram lists photo sizes smallest first.
        photo = message.photo[-1]
        return FileRef(
            file_id=photo.file_id,
            unique_id=photo.file_unique_id,
            mime_type="image/jpeg",
            file_name=f"photo_{message.message_id}.jpg",
            file_size=photo.file_size,
            kind="photo",
        )
    if message.document:
        doc = message.document
        return FileRef(
            file_id=doc.file_id,
            unique_id=doc.file_unique_id,
            mime_type=doc.mime_type or "application/octet-stream",
            file_name=doc.file_name or f"document_{message.message_id}",
            file_size=doc.file_size,
            kind="document",
        )
    return None


def event_from_update(update: TelegramUpdate) -> Optional[ChatEvent]:
    message = update.message or update.edited_message
    if message is None:
        return None
    file = _file_from_message(message)
    return ChatEvent(chat_id=message.chat.id, text=None if file else message.text, file=file)


@router.post("/webhook")
async def telegram_webhook(
    request: Request,
    secret_token: str | None = Header(default=None, alias="X-Telegram-Bot-Api-Secret-Token"),
):
    settings = get_settings()
    if settings.telegram_webhook_secret and secret_token != settings.telegram_webhook_secret:
        logger.warning("Telegram webhook secret mismatch")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid secret token")

    try:
        update = TelegramUpdate.model_validate(await request.json())
    except (ValueError, ValidationError):
        logger.warning("Ignoring malformed Telegram update")
        return {"ok": True}

    event = event_from_update(update)
    if event is None:
        return {"ok": True}

    bot: InventoryBot = request.app.state.bot
    with bound_log_context(chat_id=event.chat_id, update_id=update.update_id):
        try:
            await bot.handle_event(event)
        except Exception:
            # Answer 200 anyway so Telegram does not redeliver the same update forever.
            logger.exception("Telegram update %s failed", update.update_id)
    return {"ok": True}
