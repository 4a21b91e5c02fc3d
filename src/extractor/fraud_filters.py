"""
Text-level fraud heuristics for extracted bills.

Soft, advisory checks only; they never fail the pipeline:
1. Font Inconsistency (low OCR confidence on a page)
2. Duplicate Items (same item name billed with different amounts)
3. Total Mismatch (reconciled total vs. total printed on the bill)
"""

import re
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from src.schemas import PageResult

FONT_INCONSISTENCY = "font_inconsistency"
DUPLICATE_ITEMS = "duplicate_items"
TOTAL_MISMATCH = "total_mismatch"

LOW_CONFIDENCE_THRESHOLD = 60.0
DUPLICATE_AMOUNT_TOLERANCE = 0.01
TOTAL_MISMATCH_TOLERANCE = 1.0

REPORTED_TOTAL_KEYWORD_RE = re.compile(
    r'\b(grand total|net payable|amount payable|balance due|total amount|total)\b',
    re.IGNORECASE,
)
PARTIAL_TOTAL_RE = re.compile(r'\b(sub[\s\-]?total|category total)\b', re.IGNORECASE)
AMOUNT_RE = re.compile(r'(\d{1,3}(?:,\d{2,3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?)')


def detect_font_inconsistency(pages: Sequence[PageResult]) -> List[str]:
    """Flag the document when any page was recognised with low confidence."""
    if any(page.confidence < LOW_CONFIDENCE_THRESHOLD for page in pages):
        return [FONT_INCONSISTENCY]
    return []


def detect_duplicate_items(pages: Sequence[PageResult]) -> List[str]:
    """Flag items that reappear (case-insensitive name) with a different amount."""
    amount_range: Dict[str, Tuple[float, float]] = {}

    for page in pages:
        for item in page.items:
            key = item.item_name.strip().lower()
            low, high = amount_range.get(key, (item.item_amount, item.item_amount))
            low, high = min(low, item.item_amount), max(high, item.item_amount)
            if round(high - low, 2) > DUPLICATE_AMOUNT_TOLERANCE:
                return [DUPLICATE_ITEMS]
            amount_range[key] = (low, high)
    return []


def detect_total_mismatch(reconciled_total: float, extracted_total: Optional[float]) -> List[str]:
    if extracted_total is None:
        return []
    if round(abs(reconciled_total - extracted_total), 2) > TOTAL_MISMATCH_TOLERANCE:
        return [TOTAL_MISMATCH]
    return []


def detect_fraud_flags(
    pages: Sequence[PageResult],
    reconciled_total: float,
    extracted_total: Optional[float] = None,
) -> Set[str]:
    """
    Main Entry Point.
    Runs all checks and returns the deduplicated set of flag labels.
    """
    flags: Set[str] = set()
    flags.update(detect_font_inconsistency(pages))
    flags.update(detect_duplicate_items(pages))
    flags.update(detect_total_mismatch(reconciled_total, extracted_total))
    return flags


def find_reported_total(text: str) -> Optional[float]:
    """
    Scan lines bottom-up for a total keyword and return the last amount
    printed after it on the same line ("Total 2 950.00" -> 950.0).
    Sub-total and category-total lines are not document totals.
    """
    if not text:
        return None

    lines = [ln.strip() for ln in text.splitlines() if ln.strip()]
    for line in reversed(lines):
        if PARTIAL_TOTAL_RE.search(line):
            continue
        match = REPORTED_TOTAL_KEYWORD_RE.search(line)
        if not match:
            continue
        amounts = AMOUNT_RE.findall(line, match.end())
        if amounts:
            return float(amounts[-1].replace(',', ''))
    return None


def compute_fraud_score(flags: Iterable[str]) -> float:
    """Weighted sum of all fraud indicators, capped at 1.0."""
    weights = {
        FONT_INCONSISTENCY: 0.20,  # Often just a poor scan
        DUPLICATE_ITEMS: 0.35,
        TOTAL_MISMATCH: 0.45,
    }
    score = sum(weights.get(flag, 0.05) for flag in set(flags))
    return round(min(score, 1.0), 2)
