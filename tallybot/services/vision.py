from __future__ import annotations

import asyncio
import base64
import json
import logging
from textwrap import dedent
from typing import Any, Dict, List, Sequence

from openai import APITimeoutError, OpenAI, OpenAIError

from ..config import Settings, get_settings
from .extraction import ExtractedRow, ExtractionError, PurchaseRow, UnsupportedMediaError, WeeklyRow
from .quantity_parser import clean_name, to_number
from .sessions import SessionMode

logger = logging.getLogger(__name__)


_BASE_RULES = dedent(
    """
    You are a strict inventory extractor for a restaurant.
    You will read a PHOTO of a handwritten table.

    RULES:
    - Return ONLY valid JSON, no extra text.
    - "product" must be the text exactly as written; never invent products.
    - Numbers may be decimals; use null when a cell is empty or illegible.
    - Ignore header rows such as "Product", "Local", "Storage", "Total", "Purchase".
    - Skip empty rows and category titles.
    - If nothing is legible, return {"items": []}.
    """
).strip()

_WEEKLY_FORMAT = dedent(
    """
    The sheet is a WEEKLY COUNT with columns for front of house, storage and total.
    Exact format:
      {"items": [{"product": "<string>", "front": <number|null>, "storage": <number|null>, "total": <number|null>}]}
    Copy each column as written; do not compute totals yourself.
    """
).strip()

_PURCHASE_FORMAT = dedent(
    """
    The sheet is a PURCHASE record with a single purchased-quantity column.
    Exact format:
      {"items": [{"product": "<string>", "purchased": <number|null>}]}
    """
).strip()


_BASE_TARGET_FORMAT = dedent(
    """
    The sheet lists TARGET stock levels with a single quantity column.
    Exact format:
      {"items": [{"product": "<string>", "target": <number|null>}]}
    """
).strip()

_FORMATS = {
    SessionMode.WEEKLY: _WEEKLY_FORMAT,
    SessionMode.PURCHASE: _PURCHASE_FORMAT,
    SessionMode.BASE_EDIT: _BASE_TARGET_FORMAT,
}


def build_system_prompt(mode: SessionMode, restrict_to_names: Sequence[str] | None = None) -> str:
    schema = _FORMATS[mode]
    prompt = f"{_BASE_RULES}\n\n{schema}"
    if restrict_to_names:
        listed = "\n".join(f"- {name}" for name in restrict_to_names)
        prompt += (
            "\n\nRead the sheet again very carefully and return ONLY the rows for these products"
            f" (same spelling as below):\n{listed}"
        )
    return prompt


def safe_json_parse(text: str) -> Any:
    """Parse JSON even when the model wraps it in prose or code fences."""
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        pass
    raw = str(text or "")
    for opener, closer in (("{", "}"), ("[", "]")):
        start, end = raw.find(opener), raw.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(raw[start : end + 1])
            except ValueError:
                continue
    return None


def rows_from_payload(mode: SessionMode, payload: Any) -> List[ExtractedRow]:
    if isinstance(payload, dict):
        items = payload.get("items")
    else:
        items = payload
    if not isinstance(items, list):
        return []

    rows: List[ExtractedRow] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name = clean_name(item.get("product") or item.get("producto"))
        if not name:
            continue
        if mode is SessionMode.WEEKLY:
            rows.append(
                WeeklyRow(
                    name=name,
                    front=to_number(item.get("front")),
                    storage=to_number(item.get("storage")),
                    total=to_number(item.get("total")),
                )
            )
        else:
            # Single-column sheets: purchases and base targets.
            qty = next(
                (item[key] for key in ("purchased", "target", "total") if item.get(key) is not None),
                None,
            )
            rows.append(PurchaseRow(name=name, qty=to_number(qty)))
    return rows


def _extract_response_text(response: Any) -> str:
    direct = getattr(response, "output_text", None)
    if isinstance(direct, str) and direct.strip():
        return direct.strip()
    chunks: list[str] = []
    output = getattr(response, "output", None)
    if output is None and isinstance(response, dict):
        output = response.get("output")
    for block in output or []:
        block_content = getattr(block, "content", None)
        if block_content is None and isinstance(block, dict):
            block_content = block.get("content")
        for content in block_content or []:
            part_text = getattr(content, "text", None)
            if part_text is None and isinstance(content, dict):
                part_text = content.get("text")
            if part_text:
                chunks.append(part_text)
    return "".join(chunks).strip()


class OpenAIVisionExtractor:
    """Reads tally sheet photos through the OpenAI Responses API."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    async def extract(
        self,
        *,
        mode: SessionMode,
        image: bytes,
        mime_type: str,
        restrict_to_names: Sequence[str] | None = None,
    ) -> List[ExtractedRow]:
        mime = (mime_type or "").lower()
        if not mime.startswith("image/"):
            raise UnsupportedMediaError(f"unsupported_mime:{mime or 'unknown'}")
        if not self._settings.openai_api_key:
            raise ExtractionError("openai_not_configured")

        payload = self._build_payload(mode, image, mime, restrict_to_names)
        text = await asyncio.to_thread(self._call_responses, payload)
        rows = rows_from_payload(mode, safe_json_parse(text))
        logger.info(
            "Vision extraction returned %s rows",
            len(rows),
            extra={"mode": mode.value, "restricted": bool(restrict_to_names)},
        )
        return rows

    def _build_payload(
        self,
        mode: SessionMode,
        image: bytes,
        mime: str,
        restrict_to_names: Sequence[str] | None,
    ) -> Dict[str, Any]:
        data_url = f"data:{mime};base64,{base64.b64encode(image).decode('ascii')}"
        return {
            "model": self._settings.openai_vision_model,
            "input": [
                {"role": "system", "content": build_system_prompt(mode, restrict_to_names)},
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": "Extract the table rows as JSON."},
                        {"type": "input_image", "image_url": data_url},
                    ],
                },
            ],
            "max_output_tokens": self._settings.openai_vision_max_output_tokens,
        }

    def _call_responses(self, payload: Dict[str, Any]) -> str:
        client = OpenAI(
            api_key=self._settings.openai_api_key,
            timeout=self._settings.openai_request_timeout_seconds,
        )
        try:
            response = client.responses.create(**payload)
        except APITimeoutError as exc:
            logger.error("Timed out calling OpenAI Responses API after %ss", self._settings.openai_request_timeout_seconds)
            raise ExtractionError("extraction_timeout") from exc
        except OpenAIError as exc:
            logger.error("OpenAI Responses API call failed: %s", exc)
            raise ExtractionError(f"openai_error:{type(exc).__name__}") from exc

        if getattr(response, "status", "completed") != "completed":
            reason = getattr(getattr(response, "incomplete_details", None), "reason", "unknown")
            logger.error("OpenAI Responses API returned incomplete status: %s", reason)
            raise ExtractionError(f"incomplete_response:{reason}")
        return _extract_response_text(response)
