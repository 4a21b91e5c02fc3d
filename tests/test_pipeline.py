"""
Tests for the document pipeline with a fake LLM extractor.
"""

import sys
import threading
import time
import unittest
from pathlib import Path
from unittest import mock

# Add project root to path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from src.schemas import BillItem, PageText, TokenUsage
from src.extractor.fraud_filters import DUPLICATE_ITEMS, FONT_INCONSISTENCY, TOTAL_MISMATCH
from src.extractor.pipeline import (
    BillExtractionPipeline,
    DocumentResult,
    PipelineState,
    extract_bill_data_from_document,
    extract_page_items,
    fallback_page_items,
)
from src.extractor.token_tracker import TokenTracker


class FakeExtractor:
    """Returns one fixed item and fixed usage per call."""

    def __init__(self, items=None, usage=None, error=None):
        self.items = items if items is not None else [
            BillItem(item_name="Nursing Care", item_rate=200, item_quantity=2, item_amount=400)
        ]
        self.usage = usage or TokenUsage(total_tokens=100, input_tokens=80, output_tokens=20)
        self.error = error
        self.calls = []
        self._lock = threading.Lock()

    def extract(self, text, page_number):
        with self._lock:
            self.calls.append(page_number)
        if self.error is not None:
            raise self.error
        return list(self.items), self.usage


class BlockingExtractor:
    """Blocks until released, then answers like FakeExtractor."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = []

    def extract(self, text, page_number):
        self.calls.append(page_number)
        self.entered.set()
        self.release.wait(5)
        item = BillItem(item_name="Oxygen", item_rate=100, item_quantity=1, item_amount=100)
        return [item], TokenUsage(total_tokens=50, input_tokens=40, output_tokens=10)


class SlowExtractor(FakeExtractor):
    """FakeExtractor that takes ``delay`` seconds per call."""

    def __init__(self, delay, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    def extract(self, text, page_number):
        time.sleep(self.delay)
        return super().extract(text, page_number)


class CancellingExtractor(FakeExtractor):
    """Cancels the request while its own call is in flight."""

    def __init__(self, cancel_event, **kwargs):
        super().__init__(**kwargs)
        self.cancel_event = cancel_event

    def extract(self, text, page_number):
        self.cancel_event.set()
        return super().extract(text, page_number)


TABLE_PAGE = "Consultation 1 500.00 500.00\nCBC Test 1 300.00 300.00"
FREE_TEXT_PAGE = "Nursing care charged for two days as per policy"


class TestPipeline(unittest.TestCase):

    def test_table_pages_use_no_tokens(self):
        extractor = FakeExtractor()
        pipeline = BillExtractionPipeline(extractor=extractor, max_workers=2)

        result = pipeline.run([PageText(page_number=1, text=TABLE_PAGE, confidence=92)])

        self.assertTrue(result.is_success)
        self.assertEqual(result.state, PipelineState.COMPLETED)
        self.assertEqual(extractor.calls, [])
        self.assertEqual(result.token_usage, TokenUsage())
        self.assertEqual(result.item_count, 2)
        self.assertEqual(result.reconciled_total, 800.0)

    def test_blank_page_never_reaches_llm(self):
        extractor = FakeExtractor()
        pipeline = BillExtractionPipeline(extractor=extractor)

        result = pipeline.run([PageText(page_number=1, text="   \n ", confidence=90)])

        self.assertTrue(result.is_success)
        self.assertEqual(extractor.calls, [])
        self.assertEqual(result.token_usage.total_tokens, 0)
        self.assertEqual(result.item_count, 0)

    def test_fallback_usage_summed(self):
        extractor = FakeExtractor()
        pipeline = BillExtractionPipeline(extractor=extractor, max_workers=3)
        pages = [
            PageText(page_number=1, text=FREE_TEXT_PAGE, confidence=90),
            PageText(page_number=2, text=TABLE_PAGE, confidence=90),
            PageText(page_number=3, text=FREE_TEXT_PAGE, confidence=90),
        ]

        result = pipeline.run(pages)

        self.assertEqual(sorted(extractor.calls), [1, 3])
        self.assertEqual(result.token_usage, TokenUsage(total_tokens=200, input_tokens=160, output_tokens=40))
        # "Nursing Care 400" appears twice and is counted once
        self.assertEqual(result.item_count, 3)
        self.assertEqual(result.reconciled_total, 1200.0)
        self.assertEqual([p.page_number for p in result.pages], [1, 2, 3])
        self.assertEqual(len(result.pages[2].items), 1)

    def test_no_pages(self):
        result = BillExtractionPipeline(extractor=FakeExtractor()).run([])
        self.assertFalse(result.is_success)
        self.assertEqual(result.state, PipelineState.FAILED)
        self.assertEqual(result.error, "No pages provided")

    def test_all_pages_fail(self):
        extractor = FakeExtractor(error=RuntimeError("boom"))
        pipeline = BillExtractionPipeline(extractor=extractor)
        pages = [PageText(page_number=i, text=FREE_TEXT_PAGE, confidence=90) for i in (1, 2)]

        result = pipeline.run(pages)

        self.assertFalse(result.is_success)
        self.assertEqual(result.error, "Extraction failed for all pages")

    def test_partial_failure_completes(self):
        extractor = FakeExtractor(error=RuntimeError("boom"))
        pipeline = BillExtractionPipeline(extractor=extractor)
        pages = [
            PageText(page_number=1, text=TABLE_PAGE, confidence=90),
            PageText(page_number=2, text=FREE_TEXT_PAGE, confidence=90),
        ]

        result = pipeline.run(pages)

        self.assertTrue(result.is_success)
        self.assertEqual(result.item_count, 2)
        self.assertEqual(result.pages[1].items, [])

    def test_cancelled_before_start(self):
        extractor = FakeExtractor()
        cancel_event = threading.Event()
        cancel_event.set()

        result = BillExtractionPipeline(extractor=extractor).run(
            [PageText(page_number=1, text=FREE_TEXT_PAGE, confidence=90)],
            cancel_event=cancel_event,
        )

        self.assertFalse(result.is_success)
        self.assertEqual(result.error, "Extraction cancelled")
        self.assertEqual(extractor.calls, [])

    def test_page_timeout_yields_empty_page(self):
        extractor = BlockingExtractor()
        pipeline = BillExtractionPipeline(extractor=extractor, page_timeout=0.1)
        pages = [
            PageText(page_number=1, text=TABLE_PAGE, confidence=90),
            PageText(page_number=2, text=FREE_TEXT_PAGE, confidence=90),
        ]
        try:
            result = pipeline.run(pages)
        finally:
            extractor.release.set()

        self.assertTrue(result.is_success)
        self.assertEqual(result.pages[1].items, [])
        self.assertEqual(result.item_count, 2)
        self.assertEqual(result.token_usage.total_tokens, 0)

    def test_hung_fallback_does_not_empty_parsed_pages(self):
        extractor = BlockingExtractor()
        pipeline = BillExtractionPipeline(extractor=extractor, max_workers=1, page_timeout=0.3)
        pages = [
            PageText(page_number=1, text=FREE_TEXT_PAGE, confidence=90),
            PageText(page_number=2, text="Consultation 1 500.00 500.00", confidence=90),
        ]
        try:
            result = pipeline.run(pages)
        finally:
            extractor.release.set()

        self.assertTrue(result.is_success)
        self.assertEqual(result.pages[0].items, [])
        self.assertEqual(result.item_count, 1)
        self.assertEqual(result.reconciled_total, 500.0)

    def test_timeout_counts_from_call_start(self):
        extractor = SlowExtractor(delay=0.15)
        pipeline = BillExtractionPipeline(extractor=extractor, max_workers=1, page_timeout=0.5)
        pages = [PageText(page_number=i, text=FREE_TEXT_PAGE, confidence=90) for i in (1, 2, 3, 4)]

        result = pipeline.run(pages)

        # 4 x 0.15s queued on one worker exceeds 0.5s overall, but no single call does
        self.assertEqual(sorted(extractor.calls), [1, 2, 3, 4])
        self.assertTrue(all(len(p.items) == 1 for p in result.pages))
        self.assertEqual(result.token_usage.total_tokens, 400)

    def test_queued_calls_behind_hung_worker_are_dropped(self):
        extractor = BlockingExtractor()
        pipeline = BillExtractionPipeline(extractor=extractor, max_workers=1, page_timeout=0.2)
        pages = [
            PageText(page_number=1, text=FREE_TEXT_PAGE, confidence=90),
            PageText(page_number=2, text=FREE_TEXT_PAGE, confidence=90),
            PageText(page_number=3, text=TABLE_PAGE, confidence=90),
        ]
        try:
            result = pipeline.run(pages)
        finally:
            extractor.release.set()

        self.assertTrue(result.is_success)
        self.assertEqual(extractor.calls, [1])
        self.assertEqual([len(p.items) for p in result.pages], [0, 0, 2])
        self.assertEqual(result.token_usage.total_tokens, 0)

    def test_cancelled_while_call_in_flight(self):
        extractor = BlockingExtractor()
        cancel_event = threading.Event()

        def cancel_once_started():
            extractor.entered.wait(5)
            cancel_event.set()

        canceller = threading.Thread(target=cancel_once_started)
        canceller.start()
        try:
            result = BillExtractionPipeline(extractor=extractor).run(
                [PageText(page_number=1, text=FREE_TEXT_PAGE, confidence=90)],
                cancel_event=cancel_event,
            )
        finally:
            extractor.release.set()
            canceller.join()

        self.assertFalse(result.is_success)
        self.assertEqual(result.state, PipelineState.FAILED)
        self.assertEqual(result.error, "Extraction cancelled")
        self.assertEqual(result.token_usage, TokenUsage())

    def test_usage_of_cancelled_call_not_recorded(self):
        cancel_event = threading.Event()
        extractor = CancellingExtractor(cancel_event)
        tracker = TokenTracker()

        items = fallback_page_items(
            PageText(page_number=1, text=FREE_TEXT_PAGE, confidence=90), extractor, tracker, cancel_event
        )

        self.assertEqual(items, [])
        self.assertEqual(tracker.snapshot(), TokenUsage())

    def test_single_page_extraction(self):
        extractor = FakeExtractor()
        tracker = TokenTracker()

        self.assertEqual(extract_page_items(PageText(page_number=1, text=""), extractor, tracker), [])
        parsed = extract_page_items(PageText(page_number=2, text=TABLE_PAGE), extractor, tracker)
        fallback = extract_page_items(PageText(page_number=3, text=FREE_TEXT_PAGE), extractor, tracker)

        self.assertEqual(len(parsed), 2)
        self.assertEqual([i.item_name for i in fallback], ["Nursing Care"])
        self.assertEqual(extractor.calls, [3])
        self.assertEqual(tracker.snapshot().total_tokens, 100)

    def test_page_types_assigned(self):
        pipeline = BillExtractionPipeline(extractor=FakeExtractor(items=[]))
        pages = [
            PageText(page_number=1, text=TABLE_PAGE, confidence=90),
            PageText(page_number=2, text="Paracetamol Tablet 10 1.50 15.00", confidence=90),
            PageText(page_number=3, text="FINAL BILL\nGrand Total 815.00", confidence=90),
        ]

        result = pipeline.run(pages)

        self.assertEqual([p.page_type for p in result.pages], ["Bill Detail", "Pharmacy", "Final Bill"])
        self.assertEqual(result.reported_total, 815.0)
        self.assertEqual(result.fraud_flags, set())


class TestFraudFlagsInPipeline(unittest.TestCase):

    def setUp(self):
        self.pipeline = BillExtractionPipeline(extractor=FakeExtractor(items=[]))

    def test_duplicate_items(self):
        pages = [
            PageText(page_number=1, text="X-Ray 1 100.00 100.00", confidence=90),
            PageText(page_number=2, text="X-Ray 1 150.00 150.00", confidence=90),
        ]
        result = self.pipeline.run(pages)
        self.assertIn(DUPLICATE_ITEMS, result.fraud_flags)
        self.assertEqual(result.item_count, 2)

    def test_total_mismatch(self):
        pages = [PageText(page_number=1, text="Consultation 1 4990 4990\nGrand Total 5000", confidence=90)]
        result = self.pipeline.run(pages)
        self.assertEqual(result.reconciled_total, 4990.0)
        self.assertIn(TOTAL_MISMATCH, result.fraud_flags)

    def test_sub_total_row_does_not_raise_mismatch(self):
        pages = [PageText(page_number=1, text="Consultation 1 500 500\nCBC 1 450 450\nSub Total 1 950 950", confidence=90)]
        result = self.pipeline.run(pages)
        self.assertEqual(result.reconciled_total, 950.0)
        self.assertIsNone(result.reported_total)
        self.assertEqual(result.fraud_flags, set())

    def test_low_confidence(self):
        pages = [PageText(page_number=1, text=TABLE_PAGE, confidence=45)]
        result = self.pipeline.run(pages)
        self.assertTrue(result.is_success)
        self.assertEqual(result.fraud_flags, {FONT_INCONSISTENCY})


class TestResponseShape(unittest.TestCase):

    def setUp(self):
        pipeline = BillExtractionPipeline(extractor=FakeExtractor())
        self.result = pipeline.run([PageText(page_number=1, text=TABLE_PAGE, confidence=90)])

    def test_default_response(self):
        body = self.result.to_response().model_dump(exclude_none=True)
        self.assertTrue(body["is_success"])
        self.assertEqual(body["token_usage"], {"total_tokens": 0, "input_tokens": 0, "output_tokens": 0})
        self.assertNotIn("reconciled_amount", body["data"])
        self.assertNotIn("fraud_flags", body)
        page = body["data"]["pagewise_line_items"][0]
        self.assertEqual(page["page_no"], "1")
        self.assertEqual(page["page_type"], "Bill Detail")
        self.assertEqual(page["bill_items"][0], {
            "item_name": "Consultation",
            "item_rate": 500.0,
            "item_quantity": 1.0,
            "item_amount": 500.0,
        })
        self.assertEqual(body["data"]["total_item_count"], 2)

    def test_summary_response(self):
        body = self.result.to_response(include_summary=True).model_dump(exclude_none=True)
        self.assertEqual(body["data"]["reconciled_amount"], 800.0)

    def test_failed_response(self):
        body = DocumentResult.failed("bad input").to_response().model_dump(exclude_none=True)
        self.assertFalse(body["is_success"])
        self.assertEqual(body["error"], "bad input")
        self.assertNotIn("data", body)
        self.assertEqual(body["token_usage"]["total_tokens"], 0)


class TestExtractFromDocument(unittest.TestCase):

    def test_load_failure(self):
        with mock.patch("src.extractor.pipeline.load_document_images", side_effect=RuntimeError("Download failed: 404")):
            result = extract_bill_data_from_document("http://example.com/bill.pdf")
        self.assertFalse(result.is_success)
        self.assertIn("Download failed", result.error)

    def test_no_images(self):
        with mock.patch("src.extractor.pipeline.load_document_images", return_value=[]):
            result = extract_bill_data_from_document(b"%PDF-")
        self.assertEqual(result.error, "No pages extracted from document")

    def test_ocr_then_pipeline(self):
        pages = [PageText(page_number=1, text=TABLE_PAGE, confidence=88)]
        pipeline = BillExtractionPipeline(extractor=FakeExtractor())
        with mock.patch("src.extractor.pipeline.load_document_images", return_value=[object()]), \
                mock.patch("src.extractor.pipeline.run_ocr_parallel", return_value=pages):
            result = extract_bill_data_from_document("bill.png", pipeline=pipeline)
        self.assertTrue(result.is_success)
        self.assertEqual(result.item_count, 2)


if __name__ == "__main__":
    unittest.main(verbosity=2)
