from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Product, ProductAlias
from .quantity_parser import clean_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedProduct:
    product_id: int
    name: str


def match_key(raw: str) -> str:
    return clean_name(raw).lower()


async def resolve_products_by_names(
    session: AsyncSession,
    names: Iterable[str],
) -> Dict[str, ResolvedProduct]:
    """Map raw names onto canonical products.

    Exact product names are tried first, then aliases; both comparisons are
    case-insensitive. An exact hit always beats an alias pointing at another
    product, and when several aliases match the lowest product id wins.
    Names with no match are simply absent from the result.
    """
    raw_names = [name for name in dict.fromkeys(names) if clean_name(name)]
    if not raw_names:
        return {}
    keys = sorted({match_key(name) for name in raw_names})

    exact_rows = await session.execute(
        select(func.lower(Product.name), Product.id, Product.name)
        .where(func.lower(Product.name).in_(keys))
        .order_by(Product.id)
    )
    by_key: Dict[str, ResolvedProduct] = {}
    for key, product_id, name in exact_rows.all():
        by_key.setdefault(key, ResolvedProduct(product_id=product_id, name=name))

    pending = [key for key in keys if key not in by_key]
    if pending:
        alias_rows = await session.execute(
            select(func.lower(ProductAlias.alias), Product.id, Product.name)
            .join(Product, Product.id == ProductAlias.product_id)
            .where(func.lower(ProductAlias.alias).in_(pending))
            .order_by(Product.id)
        )
        for key, product_id, name in alias_rows.all():
            by_key.setdefault(key, ResolvedProduct(product_id=product_id, name=name))

    resolved = {raw: by_key[match_key(raw)] for raw in raw_names if match_key(raw) in by_key}
    logger.debug("Resolved %s of %s product names", len(resolved), len(raw_names))
    return resolved


def missing_names(names: Iterable[str], resolved: Dict[str, ResolvedProduct]) -> List[str]:
    return [name for name in dict.fromkeys(names) if name not in resolved]
