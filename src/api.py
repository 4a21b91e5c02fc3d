"""
Bill Extraction API
Always answers HTTP 200 with a well-formed FullResponse.
"""

import asyncio
import logging
import threading
import traceback
from typing import Optional, Union

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.schemas import DocumentRequest, FullResponse
from src.extractor.pipeline import BillExtractionPipeline, DocumentResult, extract_bill_data_from_document

# --- SETUP ---
app = FastAPI(title="Bill Extraction API", version="1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger("uvicorn")

_pipeline: Optional[BillExtractionPipeline] = None


def get_pipeline() -> BillExtractionPipeline:
    """Shared, stateless pipeline instance (created lazily)."""
    global _pipeline
    if _pipeline is None:
        _pipeline = BillExtractionPipeline()
    return _pipeline


def _failure(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=200,
        content=DocumentResult.failed(message).to_response().model_dump(exclude_none=True),
    )


@app.exception_handler(Exception)
async def unhandled_exceptions(request: Request, exc: Exception):
    logger.error(f"Unhandled error:\n{traceback.format_exc()}")
    return _failure(str(exc) or "Internal server error")


async def _run_extraction(document: Union[str, bytes], include_summary: bool) -> FullResponse:
    """Run the blocking pipeline off the event loop; cancel it if the request is cancelled."""
    cancel_event = threading.Event()
    try:
        result = await run_in_threadpool(
            extract_bill_data_from_document, document, get_pipeline(), cancel_event
        )
    except asyncio.CancelledError:
        cancel_event.set()
        raise

    if result.is_success:
        usage = result.token_usage
        logger.info(f"Extraction complete: {result.item_count} items, token usage {usage.model_dump()}")
        if usage.total_tokens == 0:
            logger.info("No LLM tokens used - table parser handled every page")
    return result.to_response(include_summary=include_summary)


@app.get("/")
def health():
    return {"status": "ok", "message": "Bill Extraction API is running"}


@app.post("/extract-bill-data", response_model=FullResponse, response_model_exclude_none=True)
async def extract_bill_data(payload: DocumentRequest):
    if not payload.document:
        return _failure("Document URL is required")
    return await _run_extraction(payload.document, payload.include_summary)


@app.post("/api/v1/hackrx/run", response_model=FullResponse, response_model_exclude_none=True)
async def hackrx_run(
    request: Request,
    document: Optional[UploadFile] = File(None)
):
    """
    Extract bill data from an uploaded file or a URL.
    Supports both file upload (multipart/form-data) and JSON body with URL.
    """
    document_input: Optional[Union[str, bytes]] = None
    include_summary = request.query_params.get("include_summary", "").lower() in ("1", "true", "yes")

    if document is not None:
        document_input = await document.read()
    else:
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("document"):
            document_input = str(body["document"])
            include_summary = include_summary or bool(body.get("include_summary"))

    if not document_input:
        return _failure("Document URL is required")

    return await _run_extraction(document_input, include_summary)
