"""Raw text extraction providers.

Two implementations of IExtractionService:
    1. PassthroughExtractor — returns text that was extracted upstream
       (pasted text, converted uploads, transcripts).
    2. WebPageExtractor     — fetches web pages with httpx and extracts
       readable text with trafilatura; delegates everything else to the
       passthrough extractor.
"""

from src.providers.extraction.passthrough_extractor import PassthroughExtractor
from src.providers.extraction.web_page_extractor import WebPageExtractor

__all__ = ["PassthroughExtractor", "WebPageExtractor"]
