"""Knowledge source ingestion pipeline.

Orchestrates the full pipeline: **extract -> segment -> embed -> store**.

1. **Extract** (via IExtractionService) -- turns a URL, an uploaded file's
   pre-extracted text or a pasted text into plain text.

2. **Segment** (segmenter.py / TextSegmenter) -- splits the text into
   ordered chunks with the agent's paragraph, sentence, recursive or
   semantic strategy.

3. **Tag** (chunk_metadata.py) -- attaches a flat metadata bag (content
   class, language, keywords, counters) used for filtered retrieval.

4. **Embed + Store** (via IEmbeddingProvider / IVectorIndex) -- one
   vector per chunk, upserted in throttled batches with per-chunk retry.

The IngestionOrchestrator class coordinates all four stages and reports
progress milestones through the ProgressTracker.
"""

from src.services.ingestion.orchestrator import IngestionOrchestrator
from src.services.ingestion.segmenter import TextSegmenter

__all__ = [
    "IngestionOrchestrator",
    "TextSegmenter",
]
