"""
Bill extraction & reconciliation service - main package.
Makes the pipeline available for global imports.
"""

# Re-export extractor functions for convenience
from .extractor import BillExtractionPipeline, extract_bill_data_from_document

__all__ = [
    "BillExtractionPipeline",
    "extract_bill_data_from_document",
]
