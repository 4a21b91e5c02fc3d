"""
Setup script to make the src package importable globally.
Install with: pip install -e .
"""

from setuptools import setup, find_packages

setup(
    name="bill-reconciler",
    version="1.0.0",
    description="Bill line-item extraction, reconciliation and fraud heuristics API",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "fastapi",
        "uvicorn",
        "pydantic>=2",
        "python-multipart",
        "requests",
        "pdf2image",
        "pytesseract",
        "Pillow",
        "openai>=1.0",
        "python-dotenv",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
)
