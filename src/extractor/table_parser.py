"""
Deterministic table-row parsers for OCR page text.

Each strategy is a pure function ``text -> List[BillItem]``. ``parse_table_rows``
tries them in order and returns the first non-empty result; results of
different strategies are never merged. No LLM tokens are spent here.

Strategies:
- parse_date_anchored_rows: "Sl#  Description  Date  Qty  Rate  Amount ..."
- parse_qty_rate_rows:      "Description  Qty  Rate  [Discount]  Net Amt"
"""

import logging
import re
from typing import Callable, List, Optional, Sequence

from src.schemas import BillItem

logger = logging.getLogger(__name__)

DATE_RE = re.compile(r'(\d{2}/\d{2}/\d{4})')
SERIAL_RE = re.compile(r'^\d+')
PURE_NUMBER_RE = re.compile(r'^-?[\d.,]*\d[\d.,]*$')
WHITESPACE_RE = re.compile(r'\s+')
CURRENCY_PREFIX_RE = re.compile(r'^[A-Za-z]+\.')
NUMBER_PREFIX_RE = re.compile(r'-?(?:\d+\.?\d*|\.\d+)')

HEADER_KEYWORDS = ("description", "qty", "rate", "discount", "net", "amt", "hrs")
HEADER_MAX_TOKENS = 12
SUMMARY_WORDS = ("total", "subtotal", "category", "charges")


def parse_number(token: Optional[str]) -> Optional[float]:
    """
    Strip everything except digits, '.' and '-' and convert the leading
    numeric prefix (".50" -> 0.5, "1200.50-" -> 1200.5); None if unparsable.
    """
    if not token:
        return None
    # "Rs.1,200.50": the abbreviation's dot is not a decimal point
    token = CURRENCY_PREFIX_RE.sub('', token.strip())
    cleaned = re.sub(r'[^\d.\-]', '', token)
    match = NUMBER_PREFIX_RE.match(cleaned)
    if not match:
        return None
    return float(match.group(0))


def _split_lines(text: str) -> List[str]:
    return [ln.strip() for ln in (text or "").splitlines() if ln.strip()]


def _make_item(name: str, rate: float, quantity: float, amount: float) -> BillItem:
    return BillItem(
        item_name=WHITESPACE_RE.sub(' ', name).strip(),
        item_rate=round(rate, 2),
        item_quantity=round(quantity, 2),
        item_amount=round(amount, 2),
    )


def parse_date_anchored_rows(text: str) -> List[BillItem]:
    """
    Rows anchored on a DD/MM/YYYY date token.

    Before the date: serial index + description. After the date: at least
    three tokens read positionally as quantity, rate, amount.
    """
    items: List[BillItem] = []

    for line in _split_lines(text):
        date_match = DATE_RE.search(line)
        if not date_match:
            continue

        before_date = line[:date_match.start()].strip()
        after_date = line[date_match.end():].strip()

        serial = SERIAL_RE.match(before_date)
        if not serial:
            continue
        description = before_date[serial.end():].strip()
        if not description:
            continue

        numeric_parts = after_date.split()
        if len(numeric_parts) < 3:
            continue

        values = [parse_number(tok) for tok in numeric_parts[:3]]
        if any(v is None for v in values):
            continue
        quantity, rate, amount = (round(v, 2) for v in values)
        if quantity <= 0 or rate <= 0 or amount < 0:
            continue

        items.append(_make_item(description, rate, quantity, amount))

    return items


def _is_header_row(tokens: Sequence[str]) -> bool:
    if len(tokens) > HEADER_MAX_TOKENS:
        return False
    words = set(re.findall(r"[a-z]+", " ".join(tokens).lower()))
    hits = sum(1 for kw in HEADER_KEYWORDS if kw in words)
    return hits >= 2


def _ends_with_summary_word(description: str) -> bool:
    words = re.findall(r'[a-z]+', description.lower())
    return bool(words) and words[-1] in SUMMARY_WORDS


def parse_qty_rate_rows(text: str) -> List[BillItem]:
    """
    Rows shaped like "Description Qty Rate [Discount] NetAmt".

    Three numeric tokens map to quantity, rate, amount; four or more map to
    quantity, rate, (discount ignored), amount = last token.
    """
    items: List[BillItem] = []

    for line in _split_lines(text):
        tokens = line.split()
        if _is_header_row(tokens):
            continue

        # Drop a leading serial index ("1 Paracetamol ...")
        if len(tokens) > 1 and tokens[0].isdigit() and not PURE_NUMBER_RE.match(tokens[1]):
            tokens = tokens[1:]

        first_numeric = next(
            (i for i, tok in enumerate(tokens) if PURE_NUMBER_RE.match(tok)), None
        )
        if first_numeric is None or first_numeric == 0:
            continue

        description = " ".join(tokens[:first_numeric])
        if _ends_with_summary_word(description):
            continue

        tail = [tok for tok in tokens[first_numeric:] if PURE_NUMBER_RE.match(tok)]
        if len(tail) < 3:
            continue

        values = [parse_number(tok) for tok in tail]
        if any(v is None for v in values):
            continue

        quantity, rate, amount = round(values[0], 2), round(values[1], 2), round(values[-1], 2)
        if quantity <= 0 or rate <= 0 or amount <= 0:
            continue

        items.append(_make_item(description, rate, quantity, amount))

    return items


TABLE_STRATEGIES: Sequence[Callable[[str], List[BillItem]]] = (
    parse_date_anchored_rows,
    parse_qty_rate_rows,
)


def parse_table_rows(text: str, strategies: Sequence[Callable[[str], List[BillItem]]] = TABLE_STRATEGIES) -> List[BillItem]:
    """Return the items of the first strategy that finds at least one row."""
    if not text or not text.strip():
        return []

    for strategy in strategies:
        items = strategy(text)
        if items:
            logger.debug("%s matched %d rows", strategy.__name__, len(items))
            return items
    return []
