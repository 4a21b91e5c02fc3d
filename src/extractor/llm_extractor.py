"""
LLM fallback extraction for pages the deterministic table parser cannot read.

The model is asked for JSON matching LLMBillItems; the reply is validated with
pydantic and every amount is recomputed from rate x quantity. Any failure
(missing key, transport error, timeout, malformed JSON, schema mismatch)
degrades to an empty item list for that page.
"""

import json
import logging
from typing import Any, List, Optional, Protocol, Tuple

from openai import OpenAI
from pydantic import ValidationError

from src import config
from src.schemas import BillItem, LLMBillItems, TokenUsage

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert at extracting medical bill line items from OCR text. "
    "Always answer with a single JSON object."
)

EXTRACTION_PROMPT = """Extract ALL line items from the following bill text. For each item, identify:
- item_name: The name/description of the service or item
- item_rate: The rate/price per unit
- item_quantity: The quantity
- item_amount: The total amount for this line item (prefer Net Amt/Gross Amount if shown, otherwise rate x quantity)

Important rules:
1. Extract EVERY line item, including consultations, tests, procedures, charges, medicines, etc.
2. Default item_quantity to 1.0 ONLY when the row has no quantity column
3. Prefer the actual "Net Amt" or "Gross Amount" column value for item_amount over calculated values
4. Do NOT include totals, subtotals, category headers, or summary lines
5. Do NOT duplicate items
6. Preserve exact item names as they appear in the bill
7. All numeric outputs must be numbers with decimals (e.g., 14.00, 32.00)
8. Even if OCR text is messy, extract all visible line items

Respond with JSON of the form:
{{"bill_items": [{{"item_name": "...", "item_rate": 0.0, "item_quantity": 0.0, "item_amount": 0.0}}]}}

OCR Text from Page {page_number}:
{ocr_text}
"""


class ItemExtractor(Protocol):
    """Capability used by the pipeline when deterministic parsing finds nothing."""

    def extract(self, text: str, page_number: int) -> Tuple[List[BillItem], Optional[TokenUsage]]:
        ...


def _usage_from_response(response: Any) -> Optional[TokenUsage]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return None
    input_tokens = getattr(usage, "prompt_tokens", None) or 0
    output_tokens = getattr(usage, "completion_tokens", None) or 0
    total = getattr(usage, "total_tokens", None)
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total if total is not None else input_tokens + output_tokens,
    )


def normalize_items(items: List[BillItem]) -> List[BillItem]:
    """Round rate/quantity and recompute amount = round(rate x quantity, 2)."""
    normalized = []
    for item in items:
        name = item.item_name.strip()
        rate = round(item.item_rate, 2)
        quantity = round(item.item_quantity, 2)
        if not name or rate <= 0 or quantity <= 0:
            logger.warning("Dropping LLM item %r: blank name or zero rate/quantity", item.item_name)
            continue
        normalized.append(BillItem(
            item_name=name,
            item_rate=rate,
            item_quantity=quantity,
            item_amount=round(item.item_rate * item.item_quantity, 2),
        ))
    return normalized


class LLMBillExtractor:
    """OpenAI chat-completions backed ItemExtractor."""

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None,
                 timeout: Optional[float] = None):
        self._client = client
        self.model = model or config.LLM_MODEL
        self.timeout = timeout if timeout is not None else config.LLM_TIMEOUT_SECONDS

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not config.OPENAI_API_KEY:
                raise RuntimeError("OPENAI_API_KEY is not set in environment variables")
            self._client = OpenAI(api_key=config.OPENAI_API_KEY, timeout=self.timeout)
        return self._client

    def extract(self, text: str, page_number: int) -> Tuple[List[BillItem], Optional[TokenUsage]]:
        try:
            client = self._get_client()
            response = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": EXTRACTION_PROMPT.format(
                        page_number=page_number, ocr_text=text)},
                ],
                temperature=0,
                response_format={"type": "json_object"},
            )

            content = response.choices[0].message.content
            parsed = LLMBillItems.model_validate(json.loads(content or ""))
            usage = _usage_from_response(response)

        except json.JSONDecodeError as e:
            logger.error(f"LLM returned malformed JSON for page {page_number}: {e}")
            return [], None
        except ValidationError as e:
            logger.error(f"LLM response failed schema validation for page {page_number}: {e}")
            return [], None
        except Exception as e:
            logger.error(f"LLM extraction error for page {page_number}: {e}")
            return [], None

        items = normalize_items(parsed.bill_items)
        logger.info(f"LLM extracted {len(items)} items for page {page_number}")
        return items, usage
