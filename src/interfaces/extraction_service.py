"""Abstract base class for raw text extraction.

Turning a web page, PDF, slide deck or video into plain text is an
external capability: the ingestion pipeline only consumes the result.
Implementations may wrap trafilatura, a document-conversion service or a
transcript API.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.models.knowledge import SourceType


class IExtractionService(ABC):
    """Contract for services that produce plain text for a knowledge source."""

    @abstractmethod
    async def extract(
        self,
        source_type: SourceType,
        locator: str | None = None,
        content: str | None = None,
    ) -> str:
        """Return the plain text of a source.

        Parameters
        ----------
        source_type:
            Declared type of the source.
        locator:
            URL or filename, for sources that must be fetched.
        content:
            Already-extracted text, when the caller supplied it.

        Returns
        -------
        str
            The extracted text.  May be blank; the orchestrator decides
            whether blank text is an error.

        Raises
        ------
        src.utils.errors.ExtractionFailedError
            If the source cannot be read.
        """

    @abstractmethod
    def supports(self, source_type: SourceType) -> bool:
        """Return ``True`` if this service can extract *source_type*."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier for logs and error messages."""
