"""
Document acquisition: URL / local path / raw bytes -> list of page images.
"""

import io
from pathlib import Path
from typing import List, Optional, Union

import requests
from pdf2image import convert_from_bytes
from PIL import Image

from src import config


def download_bytes(url: str, timeout: Optional[int] = None) -> bytes:
    headers = {"User-Agent": "Mozilla/5.0"}
    try:
        r = requests.get(url, headers=headers, timeout=timeout or config.DOWNLOAD_TIMEOUT_SECONDS)
        r.raise_for_status()
        return r.content
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Download failed: {e}")


def read_document_bytes(document: Union[str, Path, bytes]) -> bytes:
    """
    Resolve a document reference to its bytes.

    Accepts raw bytes, a local file path, or an http(s) URL.
    """
    if isinstance(document, bytes):
        return document

    if isinstance(document, Path):
        if not document.exists():
            raise FileNotFoundError(f"File not found: {document}")
        return document.read_bytes()

    if isinstance(document, str):
        if document.lower().startswith(("http://", "https://")):
            return download_bytes(document)
        local_path = Path(document)
        if local_path.exists() and local_path.is_file():
            return local_path.read_bytes()
        raise FileNotFoundError(f"File not found: {document}")

    raise ValueError(f"Unsupported document input type: {type(document)}")


def bytes_to_images(data: bytes, dpi: Optional[int] = None) -> List["Image.Image"]:
    """
    Rasterize a PDF (one image per page) or open a single image file.

    Raises:
        RuntimeError: If the bytes are neither a PDF nor a readable image
    """
    if not data:
        raise ValueError("Empty document")

    if data[:5] == b"%PDF-":
        poppler = config.POPPLER_PATH if config.POPPLER_PATH and Path(config.POPPLER_PATH).exists() else None
        try:
            return convert_from_bytes(data, dpi=dpi or config.OCR_DPI, poppler_path=poppler)
        except Exception as e:
            raise RuntimeError(f"PDF->image conversion failed: {e}. Ensure Poppler is installed and POPPLER_PATH is set correctly.")

    try:
        img = Image.open(io.BytesIO(data))
        img.load()
        return [img]
    except Exception as e:
        raise RuntimeError(f"Unsupported document format: {e}")


def load_document_images(document: Union[str, Path, bytes], dpi: Optional[int] = None) -> List["Image.Image"]:
    return bytes_to_images(read_document_bytes(document), dpi=dpi)
