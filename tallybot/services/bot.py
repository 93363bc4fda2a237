from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..db import DatabaseNotConfigured
from ..models import IngestStatus
from . import inventory
from .batch import Batch, MergePolicy, ResolvedLine, merge, to_commit_lines
from .extraction import ExtractionError, Extractor, extract_quantities
from .inventory import NoSnapshot, StockReport
from .product_resolver import ResolvedProduct, missing_names, resolve_products_by_names
from .quantity_parser import ParsedItem, format_quantity, parse_lines_from_text
from .sessions import ChatSession, SessionMode, SessionStore
from .telegram import ChatTransport, TransportError, escape_html

logger = logging.getLogger(__name__)

# A missing DATABASE_URL is reported to the chat like any other store failure.
STORE_ERRORS = (SQLAlchemyError, DatabaseNotConfigured)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

MODE_COMMANDS: Dict[str, SessionMode] = {
    "/weekly": SessionMode.WEEKLY,
    "/semana": SessionMode.WEEKLY,
    "/purchase": SessionMode.PURCHASE,
    "/ingreso": SessionMode.PURCHASE,
    "/base": SessionMode.BASE_EDIT,
}
FINALIZE_COMMANDS = {"/done", "/listo"}
CANCEL_COMMANDS = {"/cancel", "/cancelar"}
MENU_COMMANDS = {"/menu", "/start", "/help"}
STOCK_COMMANDS = {"/stock"}
SHOPPING_COMMANDS = {"/shopping", "/compras"}
SHOPPING_BY_STORE_COMMANDS = {"/shopping_by_store", "/compras_tienda"}

MODE_LABELS = {
    SessionMode.WEEKLY: "weekly count",
    SessionMode.PURCHASE: "purchases",
    SessionMode.BASE_EDIT: "base targets",
}

MENU_TEXT = (
    "<b>Inventory</b>\n\n"
    "<code>/weekly</code>: start the weekly count (photos or text)\n"
    "<code>/purchase</code>: record purchases (photos or text)\n"
    "<code>/base</code>: edit base targets, or <code>/base Name = qty</code> for one product\n"
    "<code>/done</code>: save the open batch\n"
    "<code>/cancel</code>: discard the open batch\n"
    "<code>/stock</code>: current stock\n"
    "<code>/shopping</code>: suggested purchases\n"
    "<code>/shopping_by_store</code>: suggested purchases by store\n"
    "<code>/status</code>: what is pending in this chat"
)

FORMAT_HELP = "I could not read that. Use one product per line:\n<pre>Product = quantity</pre>"
NO_SNAPSHOT_TEXT = "There is no weekly count yet. Start one with <code>/weekly</code>."
REPORT_FAILED_TEXT = "I could not read the inventory right now. Please try again in a moment."

_START_PROMPTS = {
    SessionMode.WEEKLY: (
        "Send me the <b>weekly count</b>. You can send several photos of the sheet "
        "(one per section) or text like:\n<pre>Coke = 2\nAbsolut 750 ml = 1.5</pre>"
    ),
    SessionMode.PURCHASE: (
        "Send me the <b>purchases</b> as photos of the sheet or text like:\n"
        "<pre>Coke = 6\nTonic = 12</pre>"
    ),
    SessionMode.BASE_EDIT: (
        "Send me the new <b>base targets</b>. A later value for the same product "
        "replaces the earlier one:\n<pre>Coke = 24\nTonic = 12</pre>"
    ),
}


@dataclass(frozen=True)
class FileRef:
    file_id: str
    unique_id: Optional[str] = None
    mime_type: str = "application/octet-stream"
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    kind: str = "document"


@dataclass(frozen=True)
class ChatEvent:
    chat_id: int
    text: Optional[str] = None
    file: Optional[FileRef] = None

    @property
    def is_command(self) -> bool:
        return bool(self.text) and self.text.lstrip().startswith("/")


@dataclass
class MergeOutcome:
    merged: List[ResolvedLine] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)


def parse_command(text: str) -> Tuple[str, str]:
    parts = (text or "").strip().split(None, 1)
    if not parts:
        return "", ""
    command = parts[0].split("@", 1)[0].lower()
    return command, (parts[1].strip() if len(parts) > 1 else "")


def _bullets(names: Sequence[str]) -> str:
    return "\n".join(f"• {escape_html(name)}" for name in names)


class InventoryBot:
    """Per-chat conversation driving batches of counts into the inventory."""

    def __init__(
        self,
        *,
        store: SessionStore,
        transport: ChatTransport,
        extractor: Extractor,
        session_factory: SessionFactory,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._transport = transport
        self._extractor = extractor
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}

    @property
    def session_store(self) -> SessionStore:
        return self._store

    async def handle_event(self, event: ChatEvent) -> None:
        # One chat at a time, in arrival order; other chats are not blocked.
        chat_id = event.chat_id
        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        self._lock_users[chat_id] = self._lock_users.get(chat_id, 0) + 1
        try:
            async with lock:
                if event.is_command:
                    await self._handle_command(chat_id, event.text or "")
                else:
                    await self._handle_message(event)
        finally:
            self._lock_users[chat_id] -= 1
            if not self._lock_users[chat_id]:
                # Nobody holds or waits on it, so idle chats do not pile up locks.
                del self._lock_users[chat_id]
                del self._locks[chat_id]

    async def _reply(self, chat_id: int, text: str) -> None:
        try:
            await self._transport.send_message(chat_id, text)
        except TransportError:
            logger.exception("Failed to deliver reply to chat %s", chat_id)

    # Commands

    async def _handle_command(self, chat_id: int, text: str) -> None:
        command, args = parse_command(text)
        session = self._store.get(chat_id)

        if command in MENU_COMMANDS:
            await self._reply(chat_id, MENU_TEXT)
        elif command == "/status":
            await self._reply(chat_id, self._status_text(session))
        elif command in STOCK_COMMANDS:
            await self._send_stock(chat_id)
        elif command in SHOPPING_COMMANDS:
            await self._send_shopping(chat_id, by_store=False)
        elif command in SHOPPING_BY_STORE_COMMANDS:
            await self._send_shopping(chat_id, by_store=True)
        elif command == "/base" and args:
            await self._set_base_inline(chat_id, args)
        elif command in MODE_COMMANDS:
            if session is not None:
                await self._reply(chat_id, self._reminder_text(session))
                return
            await self._start_batch(chat_id, MODE_COMMANDS[command])
        elif command in FINALIZE_COMMANDS:
            if session is None:
                await self._reply(chat_id, "There is no open batch. Use <code>/menu</code>.")
                return
            await self._finalize(session)
        elif command in CANCEL_COMMANDS:
            if session is None:
                await self._reply(chat_id, "There is no open batch to cancel.")
                return
            self._store.delete(chat_id)
            await self._reply(chat_id, f"Discarded the {MODE_LABELS[session.mode]} batch. Nothing was saved.")
        elif session is not None:
            await self._reply(chat_id, self._reminder_text(session))
        else:
            await self._reply(chat_id, "I did not understand that. Use <code>/menu</code>.")

    async def _start_batch(self, chat_id: int, mode: SessionMode) -> None:
        session = ChatSession(
            chat_id=chat_id,
            mode=mode,
            single_shot=self._settings.single_shot_text_reports and mode is not SessionMode.BASE_EDIT,
        )
        self._store.save(session)
        logger.info("Batch started", extra={"chat_id": chat_id, "mode": mode.value})
        prompt = _START_PROMPTS[mode]
        if not session.single_shot:
            prompt += "\n\nWhen you are finished send <code>/done</code>, or <code>/cancel</code> to discard."
        await self._reply(chat_id, prompt)

    def _reminder_text(self, session: ChatSession) -> str:
        return (
            f"You have an open <b>{MODE_LABELS[session.mode]}</b> batch with "
            f"{len(session.batch)} products.\n"
            "Send more photos or lines, <code>/done</code> to save it or "
            "<code>/cancel</code> to discard it."
        )

    def _status_text(self, session: Optional[ChatSession]) -> str:
        if session is None:
            return "No open batch. Use <code>/menu</code>."
        lines = [
            f"• {escape_html(session.batch.product_names.get(pid, pid))}: <b>{format_quantity(qty)}</b>"
            for pid, qty in session.batch.lines_by_product.items()
        ]
        body = "\n".join(lines) if lines else "(empty)"
        return f"{self._reminder_text(session)}\n\n{body}"

    async def _finalize(self, session: ChatSession) -> None:
        chat_id = session.chat_id
        label = MODE_LABELS[session.mode]
        if session.batch.is_empty:
            self._store.delete(chat_id)
            await self._reply(chat_id, f"The {label} batch was empty, so it was closed without saving anything.")
            return

        lines = to_commit_lines(session.batch)
        try:
            async with self._session_factory() as db:
                if session.mode is SessionMode.WEEKLY:
                    await inventory.start_new_cycle(db, lines)
                elif session.mode is SessionMode.PURCHASE:
                    await inventory.record_purchase(db, lines)
                else:
                    await inventory.set_base_targets(db, lines)
        except STORE_ERRORS:
            logger.exception("Failed to commit %s batch for chat %s", session.mode.value, chat_id)
            self._store.save(session)
            await self._reply(
                chat_id,
                f"I could not save the {label} batch. Nothing was lost: send <code>/done</code> to retry.",
            )
            return

        self._store.delete(chat_id)
        logger.info("Batch committed", extra={"chat_id": chat_id, "mode": session.mode.value, "lines": len(lines)})
        follow_up = {
            SessionMode.WEEKLY: "Use <code>/shopping</code> or <code>/stock</code>.",
            SessionMode.PURCHASE: "Use <code>/stock</code>.",
            SessionMode.BASE_EDIT: "Use <code>/shopping</code>.",
        }[session.mode]
        await self._reply(chat_id, f"Saved {label}: {len(lines)} products ✅\n{follow_up}")

    async def _set_base_inline(self, chat_id: int, args: str) -> None:
        parsed = parse_lines_from_text(args)
        if not parsed.items:
            await self._reply(chat_id, "Usage: <code>/base Product = quantity</code>")
            return
        try:
            async with self._session_factory() as db:
                resolved = await resolve_products_by_names(db, [item.raw_name for item in parsed.items])
                lines = _resolved_lines(parsed.items, resolved)
                if lines:
                    await inventory.set_base_targets(db, to_commit_lines(merge(Batch(), lines, MergePolicy.REPLACE)))
        except STORE_ERRORS:
            logger.exception("Failed to update base targets for chat %s", chat_id)
            await self._reply(chat_id, "I could not update the base targets. Please try again.")
            return

        parts = []
        if lines:
            parts.append(
                "<b>Base targets updated</b>\n"
                + "\n".join(f"• {escape_html(line.name)}: <b>{format_quantity(line.qty)}</b>" for line in lines)
            )
        missing = missing_names([item.raw_name for item in parsed.items], resolved)
        if missing:
            parts.append(f"<b>Not recognised:</b>\n{_bullets(missing)}")
        await self._reply(chat_id, "\n\n".join(parts))

    # Reports

    async def _send_stock(self, chat_id: int) -> None:
        try:
            async with self._session_factory() as db:
                result = await inventory.get_stock_actual(db)
        except STORE_ERRORS:
            logger.exception("Stock query failed for chat %s", chat_id)
            await self._reply(chat_id, REPORT_FAILED_TEXT)
            return
        if isinstance(result, NoSnapshot):
            await self._reply(chat_id, NO_SNAPSHOT_TEXT)
            return
        await self._reply(chat_id, format_stock(result))

    async def _send_shopping(self, chat_id: int, *, by_store: bool) -> None:
        try:
            async with self._session_factory() as db:
                result = await inventory.get_suggested_purchases(db)
        except STORE_ERRORS:
            logger.exception("Shopping query failed for chat %s", chat_id)
            await self._reply(chat_id, REPORT_FAILED_TEXT)
            return
        if isinstance(result, NoSnapshot):
            await self._reply(chat_id, NO_SNAPSHOT_TEXT)
            return
        await self._reply(chat_id, format_shopping_by_store(result) if by_store else format_shopping(result))

    # Reports from the floor

    async def _handle_message(self, event: ChatEvent) -> None:
        session = self._store.get(event.chat_id)
        if session is None:
            if event.file is not None:
                await self._reply(
                    event.chat_id,
                    "First tell me what this is: <code>/weekly</code> or <code>/purchase</code>.",
                )
            else:
                await self._reply(event.chat_id, "Use <code>/menu</code> to see the commands.")
            return

        if event.file is not None:
            await self._ingest_file(session, event.file)
        elif event.text:
            await self._ingest_text(session, event.text)
        else:
            await self._reply(
                event.chat_id,
                "Send me a <b>photo</b> of the sheet or text like <code>Product = quantity</code>.",
            )

    def _merge_items(self, session: ChatSession, items: Sequence[ParsedItem], resolved: Dict[str, ResolvedProduct]) -> MergeOutcome:
        lines = _resolved_lines(items, resolved)
        session.batch.raw_seen += len(items)
        merge(session.batch, lines, session.mode.merge_policy)
        return MergeOutcome(merged=lines, missing=missing_names([item.raw_name for item in items], resolved))

    async def _ingest_text(self, session: ChatSession, text: str) -> None:
        chat_id = session.chat_id
        parsed = parse_lines_from_text(text)
        if not parsed.items:
            await self._reply(chat_id, FORMAT_HELP)
            return
        try:
            async with self._session_factory() as db:
                resolved = await resolve_products_by_names(db, [item.raw_name for item in parsed.items])
        except STORE_ERRORS:
            logger.exception("Product lookup failed for chat %s", chat_id)
            await self._reply(chat_id, "I could not look up the products right now. Please send it again.")
            return

        outcome = self._merge_items(session, parsed.items, resolved)
        if session.single_shot and outcome.merged and not outcome.missing:
            await self._finalize(session)
            return
        self._store.save(session)
        await self._reply(chat_id, self._merge_summary(session, outcome, skipped=parsed.skipped))

    async def _ingest_file(self, session: ChatSession, file: FileRef) -> None:
        chat_id = session.chat_id
        try:
            async with self._session_factory() as db:
                ingest = await inventory.create_ingest(
                    db,
                    chat_id=chat_id,
                    mode=session.mode.value,
                    source_file_ref=file.file_id,
                    source_file_unique_id=file.unique_id,
                    mime_type=file.mime_type,
                    file_name=file.file_name,
                    file_size=file.file_size,
                )
                ingest_id = ingest.id
        except STORE_ERRORS:
            logger.exception("Could not record ingest for chat %s", chat_id)
            await self._reply(chat_id, "I could not register that file. Please send it again.")
            return

        mime = (file.mime_type or "").lower()
        if not mime.startswith("image/"):
            await self._fail_ingest(ingest_id, f"unsupported_mime:{mime or 'unknown'}")
            await self._reply(
                chat_id,
                f"I can only read images. Send the sheet as a photo.\nIngest: <code>{ingest_id}</code>",
            )
            return

        await self._reply(
            chat_id,
            f"Reading the sheet… 🤖\nMode: <code>{escape_html(session.mode.value)}</code>\n"
            f"Ingest: <code>{ingest_id}</code>",
        )

        try:
            image = await self._transport.fetch_file(file.file_id)
            result = await asyncio.wait_for(
                extract_quantities(
                    self._extractor,
                    mode=session.mode,
                    image=image,
                    mime_type=mime,
                    tolerance=self._settings.extraction_repair_tolerance,
                    zero_total_threshold=self._settings.extraction_zero_total_threshold,
                    max_repair_names=self._settings.extraction_repair_max_names,
                ),
                timeout=self._settings.extraction_timeout_seconds,
            )
        except asyncio.TimeoutError:
            reason = "extraction_timeout"
        except (ExtractionError, TransportError) as exc:
            reason = getattr(exc, "reason", None) or str(exc)
        else:
            reason = None if result.items else "extractor_returned_empty"

        if reason is not None:
            logger.warning("Ingest %s failed: %s", ingest_id, reason)
            await self._fail_ingest(ingest_id, reason)
            await self._reply(chat_id, _ingest_failure_text(ingest_id, reason))
            return

        names = [item.raw_name for item in result.items]
        try:
            async with self._session_factory() as db:
                resolved = await resolve_products_by_names(db, names)
                missing = missing_names(names, resolved)
                if missing:
                    await inventory.mark_ingest(
                        db,
                        ingest_id,
                        IngestStatus.PROCESSED_WITH_MISSING,
                        error="missing_products:" + ",".join(missing),
                    )
                else:
                    await inventory.mark_ingest(db, ingest_id, IngestStatus.PROCESSED)
        except STORE_ERRORS as exc:
            logger.exception("Store error while processing ingest %s", ingest_id)
            await self._fail_ingest(ingest_id, f"store_error:{type(exc).__name__}")
            await self._reply(chat_id, _ingest_failure_text(ingest_id, "store_error"))
            return

        # Only touch the batch once every store write for this ingest succeeded.
        outcome = self._merge_items(session, result.items, resolved)
        self._store.save(session)
        logger.info(
            "Ingest %s processed",
            ingest_id,
            extra={"rows_read": result.rows_read, "merged": len(outcome.merged), "missing": len(outcome.missing)},
        )
        summary = self._merge_summary(session, outcome)
        if result.repaired_names:
            summary += f"\n\nRe-read {len(result.repaired_names)} rows whose totals did not add up."
        await self._reply(chat_id, f"{summary}\nIngest: <code>{ingest_id}</code>")

    async def _fail_ingest(self, ingest_id: int, reason: str) -> None:
        try:
            async with self._session_factory() as db:
                await inventory.mark_ingest(db, ingest_id, IngestStatus.FAILED, error=reason)
        except STORE_ERRORS:
            logger.exception("Could not mark ingest %s as failed", ingest_id)

    def _merge_summary(self, session: ChatSession, outcome: MergeOutcome, *, skipped: Sequence[str] = ()) -> str:
        parts = []
        if outcome.merged:
            parts.append(
                f"Added to the {MODE_LABELS[session.mode]} batch:\n"
                + "\n".join(
                    f"• {escape_html(line.name)}: <b>{format_quantity(line.qty)}</b>" for line in outcome.merged
                )
            )
        if outcome.missing:
            parts.append(
                f"<b>Not recognised:</b>\n{_bullets(outcome.missing)}\n"
                "Fix the name or add it as an alias, then send those lines again."
            )
        if skipped:
            parts.append(f"<b>Ignored lines</b> (expected <code>Product = quantity</code>):\n{_bullets(skipped)}")
        parts.append(
            f"The batch now has {len(session.batch)} products. "
            "Send more, <code>/done</code> to save or <code>/cancel</code> to discard."
        )
        return "\n\n".join(parts)


def _resolved_lines(items: Sequence[ParsedItem], resolved: Dict[str, ResolvedProduct]) -> List[ResolvedLine]:
    lines = []
    for item in items:
        product = resolved.get(item.raw_name)
        if product is not None:
            lines.append(ResolvedLine(product_id=product.product_id, name=product.name, qty=item.qty))
    return lines


def _ingest_failure_text(ingest_id: int, reason: str) -> str:
    if reason == "extractor_returned_empty":
        return (
            "I could not read anything on that image 😵‍💫\n"
            "Tip: better light, hold the phone straight and keep the whole table in frame.\n"
            "You can also paste text: <pre>Coke = 2</pre>\n"
            f"Ingest: <code>{ingest_id}</code>"
        )
    return (
        "Processing failed 😵 The batch was not changed, so you can send the same photo again.\n"
        f"Reason: <code>{escape_html(reason)}</code>\nIngest: <code>{ingest_id}</code>"
    )


def format_stock(report: StockReport) -> str:
    lines = [f"• {escape_html(row.name)}: <b>{format_quantity(row.stock_actual)}</b>" for row in report.rows]
    return "<b>Current stock</b>\n\n" + ("\n".join(lines) if lines else "(no active products)")


def format_shopping(report: StockReport) -> str:
    if not report.rows:
        return "<b>Suggested purchases</b>\n\nEverything is at or above its base target ✅"
    lines = [f"• {escape_html(row.name)}: <b>{format_quantity(row.shortfall)}</b>" for row in report.rows]
    return "<b>Suggested purchases</b>\n\n" + "\n".join(lines)


def format_shopping_by_store(report: StockReport) -> str:
    if not report.rows:
        return "<b>Suggested purchases by store</b>\n\nEverything is at or above its base target ✅"
    out = "<b>Suggested purchases by store</b>\n"
    for store, rows in inventory.group_by_store(report.rows).items():
        out += f"\n<b>{escape_html(store)}</b>\n"
        out += "\n".join(f"• {escape_html(row.name)}: <b>{format_quantity(row.shortfall)}</b>" for row in rows)
        out += "\n"
    return out.strip()


def build_bot(settings: Settings | None = None) -> InventoryBot:
    from ..db import get_session
    from .sessions import build_session_store
    from .telegram import TelegramClient
    from .vision import OpenAIVisionExtractor

    settings = settings or get_settings()
    return InventoryBot(
        store=build_session_store(settings),
        transport=TelegramClient(settings),
        extractor=OpenAIVisionExtractor(settings),
        session_factory=get_session,
        settings=settings,
    )
