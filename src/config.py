"""
Runtime configuration loaded from environment variables (and a local .env file).
"""

import os

from dotenv import load_dotenv

load_dotenv()

# LLM fallback extraction
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

# Page-level fan-out
EXTRACTION_WORKERS = int(os.getenv("EXTRACTION_WORKERS", "4"))

# Acquisition / OCR
OCR_DPI = int(os.getenv("OCR_DPI", "300"))
OCR_WORKERS = int(os.getenv("OCR_WORKERS", "4"))
POPPLER_PATH = os.getenv("POPPLER_PATH")
TESSERACT_CMD = os.getenv("TESSERACT_CMD")
DOWNLOAD_TIMEOUT_SECONDS = int(os.getenv("DOWNLOAD_TIMEOUT_SECONDS", "30"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
