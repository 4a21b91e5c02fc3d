"""
Entry point: uvicorn main:app --host 0.0.0.0 --port 8000
"""

import logging
import os

import uvicorn

from src import config
from src.api import app

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

__all__ = ["app"]

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
