from __future__ import annotations

import base64
import unittest
from types import SimpleNamespace
from unittest import IsolatedAsyncioTestCase, mock

import httpx
from openai import APITimeoutError

from tallybot.config import Settings
from tallybot.services.extraction import ExtractionError, PurchaseRow, UnsupportedMediaError, WeeklyRow
from tallybot.services.sessions import SessionMode
from tallybot.services.vision import (
    OpenAIVisionExtractor,
    build_system_prompt,
    rows_from_payload,
    safe_json_parse,
)


class PayloadParsingTest(unittest.TestCase):
    def test_safe_json_parse_tolerates_fences_and_prose(self):
        self.assertEqual(safe_json_parse('{"items": []}'), {"items": []})
        self.assertEqual(safe_json_parse('```json\n{"items": [1]}\n```'), {"items": [1]})
        self.assertEqual(safe_json_parse("Sure! [1, 2]"), [1, 2])
        self.assertIsNone(safe_json_parse("no json here"))
        self.assertIsNone(safe_json_parse(None))

    def test_weekly_rows_keep_columns(self):
        payload = {
            "items": [
                {"product": "Coke ", "front": "2", "storage": "1,5", "total": 3.5},
                {"producto": "Tonic", "front": None, "storage": None, "total": "x"},
                {"product": "", "total": 4},
                "garbage",
            ]
        }
        self.assertEqual(
            rows_from_payload(SessionMode.WEEKLY, payload),
            [WeeklyRow("Coke", 2.0, 1.5, 3.5), WeeklyRow("Tonic", None, None, None)],
        )

    def test_single_column_rows(self):
        payload = [{"product": "Coke", "purchased": 6}, {"product": "Gin", "target": "2"}, {"product": "Rum"}]
        self.assertEqual(
            rows_from_payload(SessionMode.PURCHASE, payload),
            [PurchaseRow("Coke", 6.0), PurchaseRow("Gin", 2.0), PurchaseRow("Rum", None)],
        )
        self.assertEqual(rows_from_payload(SessionMode.BASE_EDIT, {"items": "nope"}), [])

    def test_repair_prompt_lists_only_requested_rows(self):
        prompt = build_system_prompt(SessionMode.WEEKLY, ["Coke", "Gin"])
        self.assertIn('"front"', prompt)
        self.assertIn("- Coke\n- Gin", prompt)
        self.assertNotIn("again", build_system_prompt(SessionMode.PURCHASE))


class OpenAIVisionExtractorTest(IsolatedAsyncioTestCase):
    def _extractor(self, **overrides) -> OpenAIVisionExtractor:
        values = {"openai_api_key": "sk-test"}
        values.update(overrides)
        return OpenAIVisionExtractor(Settings(_env_file=None, **values))

    async def test_rejects_non_images_before_calling_the_api(self):
        with mock.patch("tallybot.services.vision.OpenAI") as client_cls:
            with self.assertRaises(UnsupportedMediaError) as ctx:
                await self._extractor().extract(mode=SessionMode.WEEKLY, image=b"%PDF", mime_type="application/pdf")
        self.assertEqual(ctx.exception.reason, "unsupported_mime:application/pdf")
        client_cls.assert_not_called()

    async def test_missing_api_key(self):
        with self.assertRaises(ExtractionError) as ctx:
            await self._extractor(openai_api_key=None).extract(
                mode=SessionMode.WEEKLY, image=b"img", mime_type="image/png"
            )
        self.assertEqual(ctx.exception.reason, "openai_not_configured")

    async def test_sends_image_as_data_url_and_parses_rows(self):
        response = SimpleNamespace(
            status="completed",
            output_text='{"items": [{"product": "Coke", "purchased": 6}]}',
        )
        with mock.patch("tallybot.services.vision.OpenAI") as client_cls:
            client_cls.return_value.responses.create.return_value = response
            rows = await self._extractor(openai_vision_model="gpt-test").extract(
                mode=SessionMode.PURCHASE, image=b"img", mime_type="image/png"
            )

        self.assertEqual(rows, [PurchaseRow("Coke", 6.0)])
        kwargs = client_cls.return_value.responses.create.call_args.kwargs
        self.assertEqual(kwargs["model"], "gpt-test")
        image_part = kwargs["input"][1]["content"][1]
        self.assertEqual(image_part["type"], "input_image")
        self.assertEqual(image_part["image_url"], "data:image/png;base64," + base64.b64encode(b"img").decode())

    async def test_timeout_and_incomplete_responses_raise(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/responses")
        with mock.patch("tallybot.services.vision.OpenAI") as client_cls:
            client_cls.return_value.responses.create.side_effect = APITimeoutError(request=request)
            with self.assertRaises(ExtractionError) as ctx:
                await self._extractor().extract(mode=SessionMode.WEEKLY, image=b"img", mime_type="image/jpeg")
        self.assertEqual(ctx.exception.reason, "extraction_timeout")

        incomplete = SimpleNamespace(
            status="incomplete",
            incomplete_details=SimpleNamespace(reason="max_output_tokens"),
            output_text="",
        )
        with mock.patch("tallybot.services.vision.OpenAI") as client_cls:
            client_cls.return_value.responses.create.return_value = incomplete
            with self.assertRaises(ExtractionError) as ctx:
                await self._extractor().extract(mode=SessionMode.WEEKLY, image=b"img", mime_type="image/jpeg")
        self.assertEqual(ctx.exception.reason, "incomplete_response:max_output_tokens")


if __name__ == "__main__":
    unittest.main()
