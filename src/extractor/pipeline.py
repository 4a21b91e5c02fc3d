"""
Document-level extraction pipeline.

Received -> Classifying -> Extracting -> Reconciling -> Evaluating -> Completed
(any unrecoverable failure goes straight to Failed).

Every page goes through the deterministic table parser inline; only pages it
cannot read are sent to the LLM fallback, concurrently on a bounded thread
pool. Reconciliation only starts once every page has produced an item list
(possibly empty).
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

from pydantic import BaseModel, Field

from src import config
from src.schemas import (
    BillItem,
    ExtractionData,
    FullResponse,
    PageResult,
    PageText,
    PagewiseItem,
    TokenUsage,
)
from src.extractor.fraud_filters import compute_fraud_score, detect_fraud_flags, find_reported_total
from src.extractor.llm_extractor import ItemExtractor, LLMBillExtractor
from src.extractor.page_classifier import FINAL_BILL, classify_page_type
from src.extractor.reconciliation import reconcile_all_pages
from src.extractor.table_parser import parse_table_rows
from src.extractor.token_tracker import TokenTracker
from src.utils.ocr_runner import run_ocr_parallel
from src.utils.pdf_loader import load_document_images

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


class PipelineState(str, Enum):
    RECEIVED = "Received"
    CLASSIFYING = "Classifying"
    EXTRACTING = "Extracting"
    RECONCILING = "Reconciling"
    EVALUATING = "Evaluating"
    COMPLETED = "Completed"
    FAILED = "Failed"


class DocumentResult(BaseModel):
    is_success: bool
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    pages: List[PageResult] = []
    item_count: int = 0
    reconciled_total: float = 0.0
    fraud_flags: Optional[Set[str]] = None
    reported_total: Optional[float] = None
    state: PipelineState = PipelineState.RECEIVED
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str) -> "DocumentResult":
        return cls(is_success=False, state=PipelineState.FAILED, error=error)

    def to_response(self, include_summary: bool = False) -> FullResponse:
        """
        Wire format; reconciled_amount is only present when a summary is
        requested, and a failed result carries no data at all.
        """
        if not self.is_success:
            return FullResponse(is_success=False, token_usage=self.token_usage, error=self.error)

        pagewise = [
            PagewiseItem(
                page_no=str(page.page_number),
                page_type=page.page_type,
                bill_items=page.items,
            )
            for page in self.pages
        ]
        return FullResponse(
            is_success=self.is_success,
            token_usage=self.token_usage,
            data=ExtractionData(
                pagewise_line_items=pagewise,
                total_item_count=self.item_count,
                reconciled_amount=self.reconciled_total if include_summary else None,
            ),
            error=self.error,
        )


def fallback_page_items(
    page: PageText,
    extractor: ItemExtractor,
    tracker: TokenTracker,
    cancel_event: Optional[threading.Event] = None,
) -> List[BillItem]:
    """One LLM fallback call; its usage is dropped if the call was cancelled meanwhile."""
    if cancel_event is not None and cancel_event.is_set():
        return []

    logger.info(f"Table parser found 0 items for page {page.page_number}, falling back to LLM extraction")
    items, usage = extractor.extract(page.text, page.page_number)

    if cancel_event is not None and cancel_event.is_set():
        logger.info(f"Page {page.page_number} cancelled, discarding LLM result")
        return []

    tracker.add(usage)
    return items


def parse_page_items(page: PageText) -> Optional[List[BillItem]]:
    """
    Deterministic pass: [] for blank pages, the parsed rows when a strategy
    matches, None when the page needs the LLM fallback.
    """
    if not page.text or not page.text.strip():
        logger.info(f"Page {page.page_number} has no text, skipping extraction")
        return []

    items = parse_table_rows(page.text)
    if items:
        logger.info(f"Using table parser for page {page.page_number} - found {len(items)} items, no LLM tokens used")
        return items
    return None


def extract_page_items(
    page: PageText,
    extractor: Optional[ItemExtractor],
    tracker: TokenTracker,
    cancel_event: Optional[threading.Event] = None,
) -> List[BillItem]:
    """
    Deterministic parser first; the LLM extractor only when it finds nothing.
    Blank pages never reach the LLM.
    """
    if cancel_event is not None and cancel_event.is_set():
        return []

    items = parse_page_items(page)
    if items is not None:
        return items
    if extractor is None:
        return []
    return fallback_page_items(page, extractor, tracker, cancel_event)


def _reported_document_total(pages: Sequence[PageText], page_types: Sequence[str]) -> Optional[float]:
    """Total printed on the last Final Bill page, else on the last page that has one."""
    final_pages = [p for p, t in zip(pages, page_types) if t == FINAL_BILL]
    for candidates in (final_pages, list(pages)):
        for page in reversed(candidates):
            total = find_reported_total(page.text)
            if total is not None:
                return total
    return None


class BillExtractionPipeline:
    """
    Orchestrates one document per ``run`` call. Holds only configuration, so a
    single instance can serve concurrent requests.
    """

    def __init__(
        self,
        extractor: Optional[ItemExtractor] = None,
        max_workers: Optional[int] = None,
        page_timeout: Optional[float] = None,
    ):
        self.extractor = extractor if extractor is not None else LLMBillExtractor()
        self.max_workers = max(1, max_workers or config.EXTRACTION_WORKERS)
        self.page_timeout = page_timeout if page_timeout is not None else config.LLM_TIMEOUT_SECONDS + 5

    def _transition(self, state: PipelineState, new_state: PipelineState) -> PipelineState:
        logger.debug(f"Pipeline state {state.value} -> {new_state.value}")
        return new_state

    def _run_fallbacks(
        self,
        pages: Sequence[PageText],
        tracker: TokenTracker,
        cancel_event: threading.Event,
    ) -> Tuple[Dict[int, List[BillItem]], int]:
        """
        Run the LLM fallback for ``pages`` on a bounded pool.

        Each call gets ``page_timeout`` seconds from the moment it starts. A
        call past its deadline yields [] and its late result is discarded.
        Calls still queued once every worker is held by an expired call
        cannot start in time and yield [] as well.

        Returns (items by page number, number of calls that raised).
        """
        results: Dict[int, List[BillItem]] = {}
        failures = 0
        if not pages:
            return results, failures

        workers = min(self.max_workers, len(pages))
        started: Dict[int, float] = {}
        call_events = {page.page_number: threading.Event() for page in pages}
        expired: List[Future] = []

        def call(page: PageText) -> List[BillItem]:
            started[page.page_number] = time.monotonic()
            return fallback_page_items(page, self.extractor, tracker, call_events[page.page_number])

        def give_up(page: PageText, reason: str) -> None:
            logger.warning(f"Extraction {reason} for page {page.page_number}")
            call_events[page.page_number].set()
            results[page.page_number] = []

        executor = ThreadPoolExecutor(max_workers=workers)
        try:
            pending = {executor.submit(call, page): page for page in pages}
            while pending:
                if cancel_event.is_set():
                    for event in call_events.values():
                        event.set()
                    break

                done, _ = wait(pending, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    page = pending.pop(future)
                    try:
                        results[page.page_number] = future.result()
                    except Exception as e:
                        logger.error(f"Extraction failed for page {page.page_number}: {e}", exc_info=True)
                        failures += 1
                        results[page.page_number] = []

                now = time.monotonic()
                for future, page in list(pending.items()):
                    start = started.get(page.page_number)
                    if start is not None and now - start > self.page_timeout:
                        del pending[future]
                        expired.append(future)
                        give_up(page, "timed out")

                if pending and sum(1 for f in expired if not f.done()) >= workers:
                    for future, page in list(pending.items()):
                        del pending[future]
                        future.cancel()
                        give_up(page, "could not start (all workers timed out)")
        finally:
            # Do not wait on hung workers
            executor.shutdown(wait=False, cancel_futures=True)

        return results, failures

    def run(
        self,
        pages: Sequence[PageText],
        cancel_event: Optional[threading.Event] = None,
    ) -> DocumentResult:
        state = PipelineState.RECEIVED

        if not pages:
            logger.error("No pages provided")
            return DocumentResult.failed("No pages provided")

        # 1. Classify pages
        state = self._transition(state, PipelineState.CLASSIFYING)
        page_types = [classify_page_type(page.text) for page in pages]

        # 2. Extract: deterministic pass inline, LLM fallbacks in parallel
        state = self._transition(state, PipelineState.EXTRACTING)
        tracker = TokenTracker()
        cancel_event = cancel_event or threading.Event()

        page_items: Dict[int, List[BillItem]] = {}
        needs_fallback: List[PageText] = []
        if not cancel_event.is_set():
            for page in pages:
                items = parse_page_items(page)
                if items is None:
                    needs_fallback.append(page)
                else:
                    page_items[page.page_number] = items

        fallback_items, failures = self._run_fallbacks(needs_fallback, tracker, cancel_event)
        page_items.update(fallback_items)

        if cancel_event.is_set():
            self._transition(state, PipelineState.FAILED)
            return DocumentResult.failed("Extraction cancelled")
        if failures == len(pages):
            self._transition(state, PipelineState.FAILED)
            return DocumentResult.failed("Extraction failed for all pages")

        token_usage = tracker.snapshot()

        # 3. Reconcile (barrier: every page has an item list by now)
        state = self._transition(state, PipelineState.RECONCILING)
        page_results = [
            PageResult(
                page_number=page.page_number,
                page_type=page_type,
                items=page_items.get(page.page_number, []),
                confidence=page.confidence,
            )
            for page, page_type in zip(pages, page_types)
        ]
        validated_pages, reconciled = reconcile_all_pages(page_results)

        # 4. Fraud heuristics (advisory)
        state = self._transition(state, PipelineState.EVALUATING)
        reported_total = _reported_document_total(pages, page_types)
        fraud_flags = detect_fraud_flags(validated_pages, reconciled.total, reported_total)
        if fraud_flags:
            score = compute_fraud_score(fraud_flags)
            logger.warning(f"FRAUD FLAGS: {sorted(fraud_flags)} (score {score:.2f})")

        state = self._transition(state, PipelineState.COMPLETED)
        logger.info(
            f"Extraction complete: {reconciled.item_count} items, total {reconciled.total:.2f}, "
            f"token usage {token_usage.model_dump()}"
        )

        return DocumentResult(
            is_success=True,
            token_usage=token_usage,
            pages=validated_pages,
            item_count=reconciled.item_count,
            reconciled_total=reconciled.total,
            fraud_flags=fraud_flags,
            reported_total=reported_total,
            state=state,
        )


def extract_bill_data_from_document(
    document: Union[str, Path, bytes],
    pipeline: Optional[BillExtractionPipeline] = None,
    cancel_event: Optional[threading.Event] = None,
) -> DocumentResult:
    """
    Extract bill data from a URL, local path or raw file bytes.

    Acquisition and OCR failures produce a Failed result, never an exception.
    """

    try:
        images = load_document_images(document)
    except Exception as e:
        logger.error(f"Document loading error: {e}", exc_info=True)
        return DocumentResult.failed(f"Failed to load document: {e}")

    if not images:
        return DocumentResult.failed("No pages extracted from document")

    try:
        pages = run_ocr_parallel(images)
    except Exception as e:
        logger.error(f"OCR error: {e}", exc_info=True)
        return DocumentResult.failed(f"OCR failed: {e}")

    pipeline = pipeline or BillExtractionPipeline()
    return pipeline.run(pages, cancel_event=cancel_event)
