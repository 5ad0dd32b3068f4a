"""
Text Extraction
═══════════════

Turns (filename, raw bytes) into plain text, dispatching on extension:

  .txt   BOM sniffing → UTF-8 / UTF-16 LE / UTF-16 BE decode, NULs stripped
  .pdf   PyMuPDF native text layer; discarded if the result looks garbled
  .docx  python-docx paragraph walk

Contract
────────
  TextExtractor.extract() NEVER raises. Any parser failure is logged and an
  empty ExtractionResult is returned, so the pipeline can still classify
  (as NON_RESUME) and audit the document.

  Extracted text is capped at max_chars. When the cap bites, `truncated`
  is set and the scoring gate turns it into a "too_large" skip; the
  truncated text is never scored as though it were the whole document.

Blocking parsers run in the default thread executor so the event loop is
never stalled by a large PDF.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
from dataclasses import dataclass

from resume_sorter.core.config import settings
from resume_sorter.schemas.intake import get_extension

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Garbled-text heuristic
# ---------------------------------------------------------------------------

GARBLE_SAMPLE_CHARS = 2000
GARBLE_MIN_LETTER_RATIO = 0.05

_LETTER_RE = re.compile(r"[A-Za-z]")


def looks_garbled(text: str) -> bool:
    """
    True when the first 2000 characters are mostly non-letters.

    Broken font maps in PDFs yield glyph soup (symbols, private-use code
    points) rather than an exception, so low letter density is the signal.
    """
    sample = (text or "")[:GARBLE_SAMPLE_CHARS].strip()
    if not sample:
        return True
    letters = len(_LETTER_RE.findall(sample))
    return letters / len(sample) < GARBLE_MIN_LETTER_RATIO


# ---------------------------------------------------------------------------
# Plain-text decoding
# ---------------------------------------------------------------------------

def decode_text(data: bytes) -> str:
    """Decode text bytes using the byte-order mark when present."""
    if data.startswith(b"\xff\xfe"):
        text = data[2:].decode("utf-16-le", errors="replace")
    elif data.startswith(b"\xfe\xff"):
        text = data[2:].decode("utf-16-be", errors="replace")
    elif data.startswith(b"\xef\xbb\xbf"):
        text = data[3:].decode("utf-8", errors="replace")
    else:
        text = data.decode("utf-8", errors="replace")
    return text.replace("\x00", "")


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    text       : extracted text, capped at max_chars
    truncated  : True if the cap removed content
    method     : "text" | "pymupdf" | "python-docx" | "none"
    elapsed_ms : wall-clock time for the parse
    """
    text:       str
    truncated:  bool  = False
    method:     str   = "none"
    elapsed_ms: float = 0.0

    @property
    def char_count(self) -> int:
        return len(self.text)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class TextExtractor:
    """Stateless, safe for concurrent use."""

    def __init__(self, max_chars: int | None = None) -> None:
        self._max_chars = max_chars if max_chars is not None else settings.max_extracted_chars

    async def extract(self, filename: str, data: bytes) -> ExtractionResult:
        ext = get_extension(filename)
        t0 = time.monotonic()

        try:
            if ext == ".txt":
                text, method = decode_text(data), "text"
            elif ext == ".pdf":
                text, method = await self._run_blocking(self._extract_pdf_sync, data), "pymupdf"
                if looks_garbled(text):
                    logger.warning(
                        "PDF text looks garbled, discarding | file=%s chars=%d",
                        filename, len(text),
                    )
                    text = ""
            elif ext == ".docx":
                text, method = await self._run_blocking(self._extract_docx_sync, data), "python-docx"
            else:
                logger.warning("Extraction skipped, unsupported extension | file=%s", filename)
                return ExtractionResult(text="")
        except Exception as exc:
            logger.warning("Text extraction failed | file=%s error=%s", filename, exc)
            return ExtractionResult(text="", elapsed_ms=(time.monotonic() - t0) * 1000)

        truncated = len(text) > self._max_chars
        if truncated:
            text = text[: self._max_chars]

        result = ExtractionResult(
            text=text,
            truncated=truncated,
            method=method,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )
        logger.info(
            "Extracted | file=%s method=%s chars=%d truncated=%s elapsed_ms=%.0f",
            filename, method, result.char_count, truncated, result.elapsed_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Blocking parsers — run in thread executor
    # ------------------------------------------------------------------

    @staticmethod
    async def _run_blocking(fn, data: bytes) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, data)

    @staticmethod
    def _extract_pdf_sync(data: bytes) -> str:
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        pages: list[str] = []
        with fitz.open(stream=data, filetype="pdf") as doc:
            for page in doc:
                raw = page.get_text("text") or ""
                if raw.strip():
                    pages.append(raw.strip())
        return "\n\n".join(pages)

    @staticmethod
    def _extract_docx_sync(data: bytes) -> str:
        import docx  # python-docx

        document = docx.Document(io.BytesIO(data))
        return "\n".join(p.text for p in document.paragraphs if p.text.strip())
