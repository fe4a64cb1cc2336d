"""Web page extractor using httpx and trafilatura.

Fetches HTML for ``web_page`` sources and extracts the main readable text
with trafilatura, dropping navigation, ads and boilerplate.  Every other
source type, and web pages submitted with content already attached, are
handed to a fallback extractor.
"""

from __future__ import annotations

import httpx
import structlog
import trafilatura

from src.interfaces.extraction_service import IExtractionService
from src.models.knowledge import SourceType
from src.providers.extraction.passthrough_extractor import PassthroughExtractor
from src.utils.errors import ExtractionFailedError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_TIMEOUT = 20.0
_DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; agent-knowledge/0.1)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}


class WebPageExtractor(IExtractionService):
    """Extraction backed by httpx + trafilatura for web pages.

    Parameters
    ----------
    http_client:
        Shared ``httpx.AsyncClient``; one is created when omitted.
    fallback:
        Extractor for non-web sources (defaults to :class:`PassthroughExtractor`).
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        fallback: IExtractionService | None = None,
    ) -> None:
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(_DEFAULT_TIMEOUT),
            headers=_DEFAULT_HEADERS,
            follow_redirects=True,
        )
        self._fallback = fallback or PassthroughExtractor()

    # ------------------------------------------------------------------
    # IExtractionService implementation
    # ------------------------------------------------------------------

    async def extract(
        self,
        source_type: SourceType,
        locator: str | None = None,
        content: str | None = None,
    ) -> str:
        """Fetch *locator* and return its readable text."""
        if source_type is not SourceType.WEB_PAGE or content is not None:
            return await self._fallback.extract(source_type, locator, content)
        if not locator:
            raise ExtractionFailedError(
                message="Web page source has no URL",
                provider_name=self.get_provider_name(),
            )

        try:
            response = await self._client.get(locator)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ExtractionFailedError(
                message=f"Timeout fetching {locator}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise ExtractionFailedError(
                message=f"HTTP {exc.response.status_code} for {locator}",
                provider_name=self.get_provider_name(),
            ) from exc
        except httpx.HTTPError as exc:
            raise ExtractionFailedError(
                message=f"HTTP error fetching {locator}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        text = trafilatura.extract(response.text, include_comments=False, include_tables=True)
        if not text:
            logger.warning("trafilatura_extraction_empty", url=locator)
            return ""

        logger.info("web_page_extracted", url=locator, text_length=len(text))
        return text

    def supports(self, source_type: SourceType) -> bool:
        return True

    def get_provider_name(self) -> str:
        return "web_page"

    async def aclose(self) -> None:
        await self._client.aclose()
