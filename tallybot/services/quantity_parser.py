from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

LINE_PATTERN = re.compile(r"^(.+?)\s*=\s*([0-9]+(?:[.,][0-9]+)?)$")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class ParsedItem:
    raw_name: str
    qty: float


@dataclass
class ParseResult:
    items: List[ParsedItem] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def clean_name(value: Any) -> str:
    return _WHITESPACE.sub(" ", str(value or "").strip())


def to_number(value: Any) -> Optional[float]:
    """Parse a quantity written with either ``.`` or ``,`` as decimal separator."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = _WHITESPACE.sub("", str(value)).replace(",", ".", 1)
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def parse_lines_from_text(text: str | None) -> ParseResult:
    """Parse ``Name = qty`` lines; anything else is collected in ``skipped``."""
    result = ParseResult()
    for raw_line in str(text or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = LINE_PATTERN.match(line)
        if not match:
            result.skipped.append(line)
            continue
        raw_name = clean_name(match.group(1))
        qty = to_number(match.group(2))
        if not raw_name or qty is None:
            result.skipped.append(line)
            continue
        result.items.append(ParsedItem(raw_name=raw_name, qty=qty))
    return result


def format_quantity(qty: float | None) -> str:
    return f"{float(qty or 0):.2f}"


def format_line(item: ParsedItem) -> str:
    return f"{item.raw_name} = {format_quantity(item.qty)}"
