from typing import List, Literal, Optional

from pydantic import BaseModel, Field


PageType = Literal["Final Bill", "Pharmacy", "Bill Detail"]


class DocumentRequest(BaseModel):
    document: Optional[str] = None
    include_summary: bool = False


class BillItem(BaseModel):
    item_name: str = Field(min_length=1)
    item_rate: float = Field(gt=0)
    item_quantity: float = Field(gt=0)
    item_amount: float = Field(ge=0)


class LLMBillItems(BaseModel):
    """Schema the fallback LLM must answer with."""
    bill_items: List[BillItem]


class PageText(BaseModel):
    page_number: int = Field(ge=1)
    text: str = ""
    confidence: float = Field(default=0.0, ge=0, le=100)


class PageResult(BaseModel):
    page_number: int
    page_type: PageType = "Bill Detail"
    items: List[BillItem] = []
    confidence: float = 0.0


class TokenUsage(BaseModel):
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class ReconciliationResult(BaseModel):
    items: List[BillItem]
    total: float
    item_count: int


# --- Wire format ---

class PagewiseItem(BaseModel):
    page_no: str
    page_type: PageType
    bill_items: List[BillItem]


class ExtractionData(BaseModel):
    pagewise_line_items: List[PagewiseItem]
    total_item_count: int
    reconciled_amount: Optional[float] = None


class FullResponse(BaseModel):
    is_success: bool
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    data: Optional[ExtractionData] = None
    error: Optional[str] = None
