"""
Document Processing Package
════════════════════════════

  Text Extraction → Classification

Modules
───────
  extractor.py   Per-format text extraction (PyMuPDF, python-docx, BOM-aware text)
  classifier.py  Keyword-signal RESUME / NON_RESUME classifier (pure)
"""

from resume_sorter.processing.classifier import DocumentCategory, classify
from resume_sorter.processing.extractor import ExtractionResult, TextExtractor

__all__ = [
    "DocumentCategory",
    "classify",
    "ExtractionResult",
    "TextExtractor",
]
