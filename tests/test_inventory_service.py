from __future__ import annotations

import unittest
from unittest import IsolatedAsyncioTestCase

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from tallybot.models import (
    Base,
    Ingest,
    IngestStatus,
    InventoryLine,
    InventorySnapshot,
    Product,
    ProductAlias,
    Purchase,
    PurchaseLine,
    Store,
)
from tallybot.services.batch import CommitLine
from tallybot.services.inventory import (
    NO_STORE_LABEL,
    NoSnapshot,
    StockReport,
    create_ingest,
    get_stock_actual,
    get_suggested_purchases,
    group_by_store,
    mark_ingest,
    record_purchase,
    set_base_target,
    set_base_targets,
    start_new_cycle,
)
from tallybot.services.product_resolver import missing_names, resolve_products_by_names


class InventoryServiceTest(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)

        async with self.Session() as session:
            liquor = Store(name="Liquor City")
            market = Store(name="Market")
            session.add_all([liquor, market])
            await session.flush()
            self.gin = Product(name="Gin", store_id=liquor.id, base_qty=10)
            self.tonic = Product(name="Tonic", store_id=market.id, base_qty=24)
            self.limes = Product(name="Limes", base_qty=0)
            self.retired = Product(name="Old Rum", base_qty=5, active=False)
            session.add_all([self.gin, self.tonic, self.limes, self.retired])
            await session.commit()

    async def asyncTearDown(self):
        await self.engine.dispose()

    async def _count(self, model) -> int:
        async with self.Session() as session:
            return (await session.execute(select(func.count()).select_from(model))).scalar_one()

    async def test_stock_is_snapshot_plus_purchases(self):
        async with self.Session() as session:
            await start_new_cycle(session, [CommitLine(self.gin.id, 5)])
            await record_purchase(session, [CommitLine(self.gin.id, 3)])
            await record_purchase(session, [CommitLine(self.gin.id, 2), CommitLine(self.tonic.id, 6)])

            report = await get_stock_actual(session)

        self.assertIsInstance(report, StockReport)
        rows = {row.name: row for row in report.rows}
        self.assertEqual(rows["Gin"].snapshot_qty, 5)
        self.assertEqual(rows["Gin"].purchased_qty, 5)
        self.assertEqual(rows["Gin"].stock_actual, 10)
        # Missing from the count means zero, purchases still add on top.
        self.assertEqual(rows["Tonic"].stock_actual, 6)
        self.assertEqual(rows["Limes"].stock_actual, 0)

    async def test_inactive_products_are_left_out(self):
        async with self.Session() as session:
            await start_new_cycle(session, [CommitLine(self.retired.id, 1)])
            report = await get_stock_actual(session)
        self.assertNotIn("Old Rum", [row.name for row in report.rows])

    async def test_suggested_purchases_only_list_shortfalls(self):
        async with self.Session() as session:
            await start_new_cycle(session, [CommitLine(self.gin.id, 7), CommitLine(self.tonic.id, 24)])
            report = await get_suggested_purchases(session)

        self.assertEqual([(row.name, row.shortfall) for row in report.rows], [("Gin", 3)])

    async def test_stock_at_target_needs_no_purchase(self):
        async with self.Session() as session:
            await start_new_cycle(session, [CommitLine(self.gin.id, 10)])
            await record_purchase(session, [CommitLine(self.tonic.id, 30)])
            report = await get_suggested_purchases(session)
        self.assertEqual(report.rows, [])

    async def test_no_snapshot_is_reported_explicitly(self):
        async with self.Session() as session:
            self.assertEqual(await get_stock_actual(session), NoSnapshot())
            self.assertIsInstance(await get_suggested_purchases(session), NoSnapshot)

    async def test_new_cycle_discards_previous_cycle(self):
        async with self.Session() as session:
            await start_new_cycle(session, [CommitLine(self.gin.id, 1), CommitLine(self.tonic.id, 2)])
            await record_purchase(session, [CommitLine(self.gin.id, 4)])
            second = await start_new_cycle(session, [CommitLine(self.limes.id, 9)])

        self.assertEqual(await self._count(InventorySnapshot), 1)
        self.assertEqual(await self._count(Purchase), 0)
        self.assertEqual(await self._count(PurchaseLine), 0)
        async with self.Session() as session:
            lines = (await session.execute(select(InventoryLine))).scalars().all()
        self.assertEqual([(line.snapshot_id, line.product_id, line.qty) for line in lines], [(second, self.limes.id, 9)])

    async def test_empty_snapshot_still_opens_a_cycle(self):
        async with self.Session() as session:
            snapshot_id = await start_new_cycle(session, [])
            report = await get_stock_actual(session)
        self.assertEqual(report.snapshot_id, snapshot_id)
        self.assertTrue(all(row.stock_actual == 0 for row in report.rows))

    async def test_duplicate_lines_collapse_to_last_value(self):
        async with self.Session() as session:
            purchase_id = await record_purchase(session, [CommitLine(self.gin.id, 1), CommitLine(self.gin.id, 4)])
            rows = (await session.execute(select(PurchaseLine).where(PurchaseLine.purchase_id == purchase_id))).scalars().all()
        self.assertEqual([(row.product_id, row.qty) for row in rows], [(self.gin.id, 4)])

    async def test_base_targets(self):
        async with self.Session() as session:
            self.assertTrue(await set_base_target(session, self.limes.id, 12))
            self.assertFalse(await set_base_target(session, 9999, 1))
            count = await set_base_targets(session, [CommitLine(self.gin.id, 6), CommitLine(self.tonic.id, 0)])
            self.assertEqual(count, 2)
            targets = dict((await session.execute(select(Product.name, Product.base_qty))).all())
        self.assertEqual(targets["Limes"], 12)
        self.assertEqual(targets["Gin"], 6)
        self.assertEqual(targets["Tonic"], 0)

    async def test_group_by_store_uses_placeholder_for_unassigned(self):
        async with self.Session() as session:
            await start_new_cycle(session, [])
            await set_base_target(session, self.limes.id, 2)
            report = await get_suggested_purchases(session)

        grouped = group_by_store(report.rows)
        self.assertEqual(list(grouped), ["Liquor City", "Market", NO_STORE_LABEL])
        self.assertEqual([row.name for row in grouped[NO_STORE_LABEL]], ["Limes"])

    async def test_ingest_bookkeeping(self):
        async with self.Session() as session:
            ingest = await create_ingest(
                session, chat_id=77, mode="weekly", source_file_ref="file-1", mime_type="image/jpeg"
            )
            self.assertEqual(ingest.status, IngestStatus.PENDING)
            await mark_ingest(session, ingest.id, IngestStatus.FAILED, "x" * 2000)

        async with self.Session() as session:
            stored = await session.get(Ingest, ingest.id)
        self.assertEqual(stored.status, IngestStatus.FAILED)
        self.assertEqual(len(stored.error), 1024)


class ProductResolverTest(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)

        async with self.Session() as session:
            self.gin = Product(name="Gin Gordons")
            self.tonic = Product(name="Tonic")
            self.coke = Product(name="Coca Cola")
            self.coke_zero = Product(name="Coca Cola Zero")
            session.add_all([self.gin, self.tonic, self.coke, self.coke_zero])
            await session.flush()
            session.add_all(
                [
                    ProductAlias(product_id=self.gin.id, alias="gordons"),
                    # Points at another product but "Tonic" is an exact name.
                    ProductAlias(product_id=self.gin.id, alias="tonic"),
                    ProductAlias(product_id=self.coke_zero.id, alias="coke"),
                    ProductAlias(product_id=self.coke.id, alias="Coke"),
                ]
            )
            await session.commit()

    async def asyncTearDown(self):
        await self.engine.dispose()

    async def test_exact_names_match_case_insensitively(self):
        async with self.Session() as session:
            resolved = await resolve_products_by_names(session, ["GIN  gordons", "tonic"])
        self.assertEqual(resolved["GIN  gordons"].product_id, self.gin.id)
        self.assertEqual(resolved["GIN  gordons"].name, "Gin Gordons")
        self.assertEqual(resolved["tonic"].product_id, self.tonic.id)

    async def test_aliases_resolve_to_canonical_product(self):
        async with self.Session() as session:
            resolved = await resolve_products_by_names(session, ["Gordons", "COKE"])
        self.assertEqual(resolved["Gordons"].name, "Gin Gordons")
        # Two products share the alias; the lower id wins.
        self.assertEqual(resolved["COKE"].product_id, self.coke.id)

    async def test_unknown_names_are_reported_missing(self):
        names = ["Tonic", "Mystery Liqueur", "Tonic", "Bitters"]
        async with self.Session() as session:
            resolved = await resolve_products_by_names(session, names)
        self.assertEqual(list(resolved), ["Tonic"])
        self.assertEqual(missing_names(names, resolved), ["Mystery Liqueur", "Bitters"])

    async def test_blank_input_resolves_nothing(self):
        async with self.Session() as session:
            self.assertEqual(await resolve_products_by_names(session, []), {})
            self.assertEqual(await resolve_products_by_names(session, ["  "]), {})


if __name__ == "__main__":
    unittest.main()
