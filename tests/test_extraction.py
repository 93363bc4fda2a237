from __future__ import annotations

import unittest
from unittest import IsolatedAsyncioTestCase

from tallybot.services.extraction import (
    ExtractionError,
    PurchaseRow,
    WeeklyRow,
    apply_repairs,
    extract_quantities,
    is_suspicious,
    row_quantity,
)
from tallybot.services.quantity_parser import ParsedItem
from tallybot.services.sessions import SessionMode


class ScriptedExtractor:
    """Returns canned rows for the first pass and for the repair pass."""

    def __init__(self, first, repair=None, repair_error=None):
        self.first = first
        self.repair = repair or []
        self.repair_error = repair_error
        self.calls = []

    async def extract(self, *, mode, image, mime_type, restrict_to_names=None):
        self.calls.append(list(restrict_to_names) if restrict_to_names else None)
        if restrict_to_names is None:
            return list(self.first)
        if self.repair_error is not None:
            raise self.repair_error
        return list(self.repair)


class SuspiciousRowTestCase(unittest.TestCase):
    def test_total_disagreeing_with_columns_is_suspicious(self):
        self.assertTrue(is_suspicious(WeeklyRow("Coke", front=2, storage=1, total=5)))

    def test_consistent_row_is_not_suspicious(self):
        self.assertFalse(is_suspicious(WeeklyRow("Coke", front=2, storage=1, total=3)))

    def test_small_handwriting_drift_is_tolerated(self):
        self.assertFalse(is_suspicious(WeeklyRow("Gin", front=1.25, storage=0.5, total=2)))
        self.assertTrue(is_suspicious(WeeklyRow("Gin", front=1.2, storage=0.5, total=2)))

    def test_zero_total_with_counted_columns_is_suspicious(self):
        self.assertTrue(is_suspicious(WeeklyRow("Rum", front=0.2, storage=None, total=0)))
        self.assertFalse(is_suspicious(WeeklyRow("Rum", front=0.05, storage=None, total=0)))

    def test_rows_without_total_or_columns_are_not_suspicious(self):
        self.assertFalse(is_suspicious(WeeklyRow("Rum", front=2, storage=1, total=None)))
        self.assertFalse(is_suspicious(WeeklyRow("Rum", total=4)))
        self.assertFalse(is_suspicious(PurchaseRow("Rum", qty=4)))

    def test_row_quantity_prefers_declared_total(self):
        self.assertEqual(row_quantity(WeeklyRow("A", front=2, storage=1, total=5)), 5)
        self.assertEqual(row_quantity(WeeklyRow("A", front=2, storage=None, total=None)), 2)
        self.assertEqual(row_quantity(WeeklyRow("A", front=2, storage=1.5)), 3.5)
        self.assertIsNone(row_quantity(WeeklyRow("A")))
        self.assertEqual(row_quantity(WeeklyRow("A", total=0)), 0)
        self.assertEqual(row_quantity(PurchaseRow("A", qty=6)), 6)
        self.assertIsNone(row_quantity(PurchaseRow("A")))

    def test_apply_repairs_matches_names_case_insensitively(self):
        rows = [WeeklyRow("Coke", 2, 1, 5), WeeklyRow("Tonic", 1, 1, 2)]
        repaired = [WeeklyRow("COKE ", 2, 1, 3), WeeklyRow("Tonic", 9, 9, 18)]
        out = apply_repairs(rows, repaired, ["Coke"])
        self.assertEqual(out[0], WeeklyRow("Coke", 2, 1, 3))
        self.assertEqual(out[1], WeeklyRow("Tonic", 1, 1, 2))


class ExtractQuantitiesTestCase(IsolatedAsyncioTestCase):
    async def test_consistent_sheet_needs_a_single_pass(self):
        extractor = ScriptedExtractor([WeeklyRow("Coke", 2, 1, 3), WeeklyRow("Gin", None, None, None)])
        result = await extract_quantities(extractor, mode=SessionMode.WEEKLY, image=b"x", mime_type="image/jpeg")

        self.assertEqual(extractor.calls, [None])
        self.assertEqual(result.items, [ParsedItem("Coke", 3)])
        self.assertEqual(result.repaired_names, [])
        # The blank Gin row was read but yields no quantity.
        self.assertEqual(result.rows_read, 2)

    async def test_repair_pass_overwrites_only_suspicious_rows(self):
        extractor = ScriptedExtractor(
            first=[WeeklyRow("Coke", 2, 1, 5), WeeklyRow("Tonic", 1, 1, 2)],
            repair=[WeeklyRow("Coke", 2, 1, 3)],
        )
        result = await extract_quantities(extractor, mode=SessionMode.WEEKLY, image=b"x", mime_type="image/jpeg")

        self.assertEqual(extractor.calls, [None, ["Coke"]])
        self.assertEqual(result.items, [ParsedItem("Coke", 3), ParsedItem("Tonic", 2)])
        self.assertEqual(result.repaired_names, ["Coke"])

    async def test_repair_result_is_taken_even_when_still_inconsistent(self):
        extractor = ScriptedExtractor(
            first=[WeeklyRow("Coke", 2, 1, 5)],
            repair=[WeeklyRow("Coke", 4, 1, 4)],
        )
        result = await extract_quantities(extractor, mode=SessionMode.WEEKLY, image=b"x", mime_type="image/jpeg")
        self.assertEqual(result.items, [ParsedItem("Coke", 4)])

    async def test_repair_request_is_capped(self):
        first = [WeeklyRow(f"Item {i}", 1, 1, 9) for i in range(40)]
        extractor = ScriptedExtractor(first=first)
        await extract_quantities(
            extractor, mode=SessionMode.WEEKLY, image=b"x", mime_type="image/jpeg", max_repair_names=25
        )
        self.assertEqual(len(extractor.calls[1]), 25)
        self.assertEqual(extractor.calls[1][0], "Item 0")

    async def test_failed_repair_keeps_first_reading(self):
        extractor = ScriptedExtractor(
            first=[WeeklyRow("Coke", 2, 1, 5)],
            repair_error=ExtractionError("extraction_timeout"),
        )
        result = await extract_quantities(extractor, mode=SessionMode.WEEKLY, image=b"x", mime_type="image/jpeg")
        self.assertEqual(result.items, [ParsedItem("Coke", 5)])

    async def test_purchase_sheets_never_trigger_repair(self):
        extractor = ScriptedExtractor([PurchaseRow("Coke", 6), PurchaseRow("Tonic", None), PurchaseRow("Lime", 0)])
        result = await extract_quantities(extractor, mode=SessionMode.PURCHASE, image=b"x", mime_type="image/png")

        self.assertEqual(extractor.calls, [None])
        self.assertEqual(result.items, [ParsedItem("Coke", 6), ParsedItem("Lime", 0)])


if __name__ == "__main__":
    unittest.main()
