"""
Utils package for document loading and OCR operations.
"""

from .pdf_loader import load_document_images
from .ocr_runner import run_ocr_parallel

__all__ = ["load_document_images", "run_ocr_parallel"]
