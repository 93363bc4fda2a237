from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List


class MergePolicy(str, Enum):
    ADDITIVE = "additive"
    REPLACE = "replace"


@dataclass(frozen=True)
class ResolvedLine:
    product_id: int
    name: str
    qty: float


@dataclass(frozen=True)
class CommitLine:
    product_id: int
    qty: float


@dataclass
class Batch:
    """Quantities collected across several messages before they are committed."""

    lines_by_product: Dict[int, float] = field(default_factory=dict)
    product_names: Dict[int, str] = field(default_factory=dict)
    raw_seen: int = 0

    def __len__(self) -> int:
        return len(self.lines_by_product)

    @property
    def is_empty(self) -> bool:
        return not self.lines_by_product

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lines": [
                {"product_id": pid, "name": self.product_names.get(pid), "qty": qty}
                for pid, qty in self.lines_by_product.items()
            ],
            "raw_seen": self.raw_seen,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any] | None) -> "Batch":
        batch = cls()
        if not payload:
            return batch
        for line in payload.get("lines") or []:
            pid = int(line["product_id"])
            batch.lines_by_product[pid] = float(line["qty"])
            if line.get("name"):
                batch.product_names[pid] = line["name"]
        batch.raw_seen = int(payload.get("raw_seen") or 0)
        return batch


def merge(batch: Batch, lines: Iterable[ResolvedLine], policy: MergePolicy) -> Batch:
    """Fold resolved lines into ``batch`` in place. Entries are never removed."""
    for line in lines:
        if policy is MergePolicy.ADDITIVE and line.product_id in batch.lines_by_product:
            batch.lines_by_product[line.product_id] += line.qty
        else:
            batch.lines_by_product[line.product_id] = line.qty
        batch.product_names[line.product_id] = line.name
    return batch


def to_commit_lines(batch: Batch) -> List[CommitLine]:
    return [CommitLine(product_id=pid, qty=qty) for pid, qty in batch.lines_by_product.items()]
