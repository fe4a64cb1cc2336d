"""Extractor for sources whose text was extracted upstream.

Plain-text sources carry their content directly, and file uploads (PDF,
Word, slides) or transcripts arrive already converted by the outer layer.
This extractor returns that text unchanged and fails when there is none.
"""

from __future__ import annotations

import structlog

from src.interfaces.extraction_service import IExtractionService
from src.models.knowledge import SourceType
from src.utils.errors import ExtractionFailedError

logger = structlog.get_logger(logger_name=__name__)


class PassthroughExtractor(IExtractionService):
    """Returns pre-extracted content for any source type."""

    async def extract(
        self,
        source_type: SourceType,
        locator: str | None = None,
        content: str | None = None,
    ) -> str:
        if content is None:
            raise ExtractionFailedError(
                message=(
                    f"No extracted content supplied for {source_type.value} source "
                    f"{locator or '<unnamed>'}"
                ),
                provider_name=self.get_provider_name(),
            )
        logger.debug("passthrough_extract", source_type=source_type.value, length=len(content))
        return content

    def supports(self, source_type: SourceType) -> bool:
        return True

    def get_provider_name(self) -> str:
        return "passthrough"
