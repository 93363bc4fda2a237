"""Two-pass reading of handwritten tally sheets.

The vision model reads every row once. Weekly count sheets carry two
sub-columns (front of house, storage) and a declared total; when the two
disagree beyond handwriting tolerance the row is marked suspicious and the
model is asked again, restricted to those rows only. Whatever the second
pass returns for a product replaces the first reading.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Protocol, Sequence, Union

from .quantity_parser import ParsedItem, clean_name
from .sessions import SessionMode

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 0.26
DEFAULT_ZERO_TOTAL_THRESHOLD = 0.1
DEFAULT_MAX_REPAIR_NAMES = 25


class ExtractionError(Exception):
    """The vision service could not produce rows for an image."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class UnsupportedMediaError(ExtractionError):
    pass


@dataclass(frozen=True)
class WeeklyRow:
    name: str
    front: Optional[float] = None
    storage: Optional[float] = None
    total: Optional[float] = None


@dataclass(frozen=True)
class PurchaseRow:
    name: str
    qty: Optional[float] = None


ExtractedRow = Union[WeeklyRow, PurchaseRow]


class Extractor(Protocol):
    async def extract(
        self,
        *,
        mode: SessionMode,
        image: bytes,
        mime_type: str,
        restrict_to_names: Sequence[str] | None = None,
    ) -> List[ExtractedRow]: ...


def _sub_columns(row: WeeklyRow) -> List[float]:
    return [value for value in (row.front, row.storage) if value is not None]


def row_quantity(row: ExtractedRow) -> Optional[float]:
    if isinstance(row, WeeklyRow):
        if row.total is not None:
            return row.total
        parts = _sub_columns(row)
        return sum(parts) if parts else None
    if isinstance(row, PurchaseRow):
        return row.qty
    raise TypeError(f"Unknown extracted row type: {type(row).__name__}")


def is_suspicious(
    row: ExtractedRow,
    *,
    tolerance: float = DEFAULT_TOLERANCE,
    zero_total_threshold: float = DEFAULT_ZERO_TOTAL_THRESHOLD,
) -> bool:
    if not isinstance(row, WeeklyRow) or row.total is None:
        return False
    parts = _sub_columns(row)
    if not parts:
        return False
    parts_sum = sum(parts)
    if row.total == 0 and parts_sum > zero_total_threshold:
        return True
    return abs(row.total - parts_sum) > tolerance


def _key(name: str) -> str:
    return clean_name(name).lower()


def apply_repairs(rows: Sequence[ExtractedRow], repaired: Sequence[ExtractedRow], names: Sequence[str]) -> List[ExtractedRow]:
    """Overwrite first-pass rows with second-pass readings for the requested names."""
    wanted = {_key(name) for name in names}
    by_key: Dict[str, ExtractedRow] = {}
    for row in repaired:
        key = _key(row.name)
        if key in wanted:
            by_key.setdefault(key, row)
    out: List[ExtractedRow] = []
    for row in rows:
        fix = by_key.get(_key(row.name))
        out.append(replace(fix, name=row.name) if fix is not None else row)
    return out


@dataclass(frozen=True)
class ExtractionResult:
    items: List[ParsedItem]
    rows_read: int
    repaired_names: List[str]


async def extract_quantities(
    extractor: Extractor,
    *,
    mode: SessionMode,
    image: bytes,
    mime_type: str,
    tolerance: float = DEFAULT_TOLERANCE,
    zero_total_threshold: float = DEFAULT_ZERO_TOTAL_THRESHOLD,
    max_repair_names: int = DEFAULT_MAX_REPAIR_NAMES,
) -> ExtractionResult:
    rows = await extractor.extract(mode=mode, image=image, mime_type=mime_type)

    suspicious = list(
        dict.fromkeys(
            clean_name(row.name)
            for row in rows
            if is_suspicious(row, tolerance=tolerance, zero_total_threshold=zero_total_threshold)
        )
    )[:max_repair_names]

    if suspicious:
        logger.info("Re-reading %s suspicious rows", len(suspicious), extra={"names": suspicious})
        try:
            repaired = await extractor.extract(
                mode=mode,
                image=image,
                mime_type=mime_type,
                restrict_to_names=suspicious,
            )
        except ExtractionError as exc:
            logger.warning("Repair pass failed (%s); keeping first reading", exc.reason)
        else:
            rows = apply_repairs(rows, repaired, suspicious)

    items: List[ParsedItem] = []
    for row in rows:
        name = clean_name(row.name)
        qty = row_quantity(row)
        if not name or qty is None:
            continue
        items.append(ParsedItem(raw_name=name, qty=qty))
    return ExtractionResult(items=items, rows_read=len(rows), repaired_names=suspicious)
