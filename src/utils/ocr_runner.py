"""
Parallel OCR with pytesseract.

Each page image becomes a PageText: text reassembled line by line from
image_to_data output, plus the mean word confidence (0-100).
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Optional, Tuple

import pytesseract
from PIL import Image

from src import config
from src.schemas import PageText

logger = logging.getLogger(__name__)

if config.TESSERACT_CMD:
    pytesseract.pytesseract.tesseract_cmd = config.TESSERACT_CMD


def ocr_dict_to_text(ocr_dict: Dict[str, Any]) -> Tuple[str, float]:
    """
    Convert pytesseract Output.DICT into (text, mean_confidence).
    Words are grouped by (block, paragraph, line) and joined left to right.
    """
    lines: Dict[Tuple[int, int, int], List[Tuple[int, str]]] = {}
    confidences: List[float] = []

    n = len(ocr_dict.get("text", []))
    for i in range(n):
        word = str(ocr_dict["text"][i]).strip()
        if not word:
            continue
        key = (
            int(ocr_dict.get("block_num", [0] * n)[i]),
            int(ocr_dict.get("par_num", [0] * n)[i]),
            int(ocr_dict.get("line_num", [0] * n)[i]),
        )
        left = int(ocr_dict.get("left", [0] * n)[i])
        lines.setdefault(key, []).append((left, word))

        try:
            conf = float(ocr_dict.get("conf", [-1] * n)[i])
        except (TypeError, ValueError):
            conf = -1.0
        if conf >= 0:
            confidences.append(conf)

    text = "\n".join(
        " ".join(word for _, word in sorted(tokens))
        for _, tokens in sorted(lines.items())
    )
    confidence = round(sum(confidences) / len(confidences), 2) if confidences else 0.0
    return text, confidence


def ocr_page(img: "Image.Image", page_number: int) -> PageText:
    if img.mode != "L":
        img = img.convert("L")
    ocr_dict = pytesseract.image_to_data(
        img, lang="eng", config="--psm 6", output_type=pytesseract.Output.DICT
    )
    text, confidence = ocr_dict_to_text(ocr_dict)
    return PageText(page_number=page_number, text=text, confidence=min(confidence, 100.0))


def run_ocr_parallel(images: List["Image.Image"], max_workers: Optional[int] = None) -> List[PageText]:
    """
    OCR all pages concurrently; results come back in page order.
    A page whose OCR fails yields empty text with zero confidence; if every
    page fails, RuntimeError is raised.
    """
    if not images:
        return []

    results: List[PageText] = []
    failures = 0
    with ThreadPoolExecutor(max_workers=max_workers or config.OCR_WORKERS) as executor:
        future_to_page = {
            executor.submit(ocr_page, img, idx): idx
            for idx, img in enumerate(images, start=1)
        }
        for future in as_completed(future_to_page):
            page_number = future_to_page[future]
            try:
                results.append(future.result())
            except Exception as e:
                logger.error(f"OCR failed for page {page_number}: {e}")
                failures += 1
                results.append(PageText(page_number=page_number, text="", confidence=0.0))

    if failures == len(images):
        raise RuntimeError("OCR failed for all pages")

    results.sort(key=lambda p: p.page_number)
    return results
