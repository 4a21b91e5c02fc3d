"""
Extractor package: table parsing, LLM fallback, reconciliation and fraud checks.
Exports main functions for global import.
"""

from .pipeline import BillExtractionPipeline, DocumentResult, extract_bill_data_from_document
from .reconciliation import reconcile_amount
from .table_parser import parse_table_rows

__all__ = [
    "BillExtractionPipeline",
    "DocumentResult",
    "extract_bill_data_from_document",
    "reconcile_amount",
    "parse_table_rows",
]
