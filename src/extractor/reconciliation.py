"""
Reconciliation engine to ensure numeric integrity of extracted bill items.

Two entry points share one validation primitive:
- validate_item_amounts(items): page level, validation only
- reconcile_amount(items):      document level, validate + dedupe + total

Every function returns new BillItem instances; inputs are never mutated.
"""

import logging
from typing import List, Sequence, Tuple

from src.schemas import BillItem, PageResult, ReconciliationResult

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = 0.01


def validate_item(item: BillItem) -> BillItem:
    """
    Check item_amount against round(rate x quantity, 2).

    Mismatches beyond AMOUNT_TOLERANCE are corrected to the computed amount
    and logged; they are not errors.
    """
    expected = round(item.item_rate * item.item_quantity, 2)
    amount = item.item_amount

    if round(abs(amount - expected), 2) > AMOUNT_TOLERANCE:
        logger.warning(
            "Amount mismatch for %r: expected %.2f, got %.2f (corrected)",
            item.item_name, expected, amount,
        )
        amount = expected

    return BillItem(
        item_name=item.item_name,
        item_rate=round(item.item_rate, 2),
        item_quantity=round(item.item_quantity, 2),
        item_amount=round(amount, 2),
    )


def validate_item_amounts(items: Sequence[BillItem]) -> List[BillItem]:
    """Page-level validation: correct amounts, keep every item."""
    return [validate_item(item) for item in items]


def _dedupe_key(item: BillItem) -> Tuple[str, float]:
    return item.item_name.strip().lower(), round(item.item_amount, 2)


def remove_duplicates(items: Sequence[BillItem]) -> List[BillItem]:
    """
    Drop repeated (name, amount) pairs, keeping the first occurrence.

    Items sharing a name but differing in amount are kept; that pattern is
    reported by the fraud checks instead.
    """
    seen = set()
    unique: List[BillItem] = []

    for item in items:
        key = _dedupe_key(item)
        if key in seen:
            logger.info("Duplicate item removed: %s (%.2f)", item.item_name, item.item_amount)
            continue
        seen.add(key)
        unique.append(item.model_copy())

    return unique


def reconcile_amount(items: Sequence[BillItem]) -> ReconciliationResult:
    """Validate, deduplicate and total a combined item list."""
    validated = validate_item_amounts(items)
    unique = remove_duplicates(validated)
    total = round(sum(item.item_amount for item in unique), 2)

    return ReconciliationResult(items=unique, total=total, item_count=len(unique))


def reconcile_all_pages(pages: Sequence[PageResult]) -> Tuple[List[PageResult], ReconciliationResult]:
    """
    Reconcile a whole document.

    Each page's items are validated independently (no cross-page dedup) for
    the per-page view; the document total is computed once over all pages.
    """
    all_items: List[BillItem] = []
    for page in pages:
        all_items.extend(page.items)

    reconciled = reconcile_amount(all_items)

    validated_pages = [
        page.model_copy(update={"items": validate_item_amounts(page.items)})
        for page in pages
    ]

    return validated_pages, reconciled
