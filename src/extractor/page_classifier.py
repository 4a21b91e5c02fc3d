"""
Keyword-based page type classification.

Labels are used for display grouping only; they never influence arithmetic.
"""

import re

FINAL_BILL = "Final Bill"
PHARMACY = "Pharmacy"
BILL_DETAIL = "Bill Detail"

PAGE_TYPES = (FINAL_BILL, PHARMACY, BILL_DETAIL)

FINAL_BILL_KEYWORDS = ("final bill", "total amount", "grand total", "final total")
PHARMACY_KEYWORDS = ("pharmacy", "medicine", "prescription", "drug")
PHARMACY_FORMS_RE = re.compile(r'tablet|syrup|capsule|injection', re.IGNORECASE)


def classify_page_type(text: str) -> str:
    """Return "Final Bill", "Pharmacy" or "Bill Detail" for a page's OCR text."""
    if not text:
        return BILL_DETAIL

    lowered = text.lower()

    # Final Bill takes precedence over Pharmacy
    if any(kw in lowered for kw in FINAL_BILL_KEYWORDS):
        return FINAL_BILL
    if "total" in lowered and "payable" in lowered:
        return FINAL_BILL

    if any(kw in lowered for kw in PHARMACY_KEYWORDS) or PHARMACY_FORMS_RE.search(text):
        return PHARMACY

    return BILL_DETAIL
