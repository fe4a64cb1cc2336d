"""Text segmentation into chunks sized for embedding.

Four interchangeable strategies, selected by :class:`ChunkingStrategy`:

1. **Paragraph** -- split on blank lines and greedily pack paragraphs
   into chunks of at most ``max_chunk_size`` characters.  Each new chunk
   is seeded with an *overlap suffix* of the previous one: the trailing
   whole sentences that fit in ``overlap`` characters, or a raw character
   tail when no sentence fits.

2. **Sentence** -- the same packing loop over sentences.

3. **Recursive** -- emit content that fits; otherwise split it by
   paragraphs, then sentences, then at the whitespace nearest its
   midpoint, and repeat on the pieces.  Implemented with an explicit
   work stack; depth is capped at 10 and tiny leftovers are emitted
   as-is, so it terminates on any input.

4. **Semantic** -- embed the sentences, find where adjacent-sentence
   similarity drops below ``max(floor, mean - k * stddev)`` and cut
   there.  Any problem along the way falls back to Paragraph.

Paragraph, Sentence and Recursive are pure functions of
``(text, max_chunk_size, overlap)``; only Semantic needs the embedding
provider.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from itertools import pairwise
from typing import TYPE_CHECKING

import numpy as np
import structlog

from src.models.knowledge import ChunkingStrategy
from src.models.rag import SegmentMetadata, TextSegment

if TYPE_CHECKING:
    from src.interfaces.embedding_provider import IEmbeddingProvider

logger = structlog.get_logger(logger_name=__name__)

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")
_LOOSE_SENTENCE_BREAK = re.compile(r"[.!?]+")
_WHITESPACE = re.compile(r"\s")

# Pieces this short or shorter are never sentences on their own.
_MIN_SENTENCE_LENGTH = 10
_MAX_RECURSION_DEPTH = 10
_MIN_SPLIT_LENGTH = 50
# Character split looks for whitespace within +/-20% of the midpoint.
_SPLIT_WINDOW = 0.2
# Semantic groups longer than this multiple of max size get sub-split.
_OVERSIZE_FACTOR = 1.5
# Character windows only back off to a space past 80% of the window.
_WORD_BREAK_RATIO = 0.8


@dataclass(frozen=True)
class _Unit:
    """A paragraph, sentence or packed chunk with its span in the source."""

    text: str
    start: int
    end: int


@dataclass(frozen=True)
class _Work:
    """Pending item on the recursive strategy's work stack."""

    content: str
    start: int
    end: int
    depth: int


# ---------------------------------------------------------------------------
# Splitting helpers
# ---------------------------------------------------------------------------

def _units_between(text: str, separator: re.Pattern[str]) -> list[_Unit]:
    """Split *text* on *separator*, returning stripped pieces with offsets."""
    units: list[_Unit] = []
    pos = 0
    for match in separator.finditer(text):
        _append_unit(units, text, pos, match.start())
        pos = match.end()
    _append_unit(units, text, pos, len(text))
    return units


def _append_unit(units: list[_Unit], text: str, start: int, end: int) -> None:
    raw = text[start:end]
    stripped = raw.strip()
    if not stripped:
        return
    lead = len(raw) - len(raw.lstrip())
    units.append(_Unit(stripped, start + lead, start + lead + len(stripped)))


def _paragraph_units(text: str) -> list[_Unit]:
    return _units_between(text, _PARAGRAPH_BREAK)


def _merge_short(pieces: list[_Unit], source: str) -> list[_Unit]:
    """Fold pieces of <= 10 chars into a neighbour and ensure terminal punctuation."""
    merged: list[_Unit] = []
    pending: _Unit | None = None
    for piece in pieces:
        if pending is not None:
            piece = _Unit(source[pending.start : piece.end], pending.start, piece.end)
            pending = None
        if len(piece.text) > _MIN_SENTENCE_LENGTH:
            merged.append(piece)
        elif merged:
            last = merged[-1]
            merged[-1] = _Unit(source[last.start : piece.end], last.start, piece.end)
        else:
            pending = piece
    if pending is not None:
        merged.append(pending)

    return [
        u if u.text[-1] in ".!?" else _Unit(f"{u.text}.", u.start, u.end)
        for u in merged
    ]


def _sentence_units(text: str) -> list[_Unit]:
    sentences = _merge_short(_units_between(text, _SENTENCE_BREAK), text)
    if len(sentences) <= 1:
        loose = _merge_short(_units_between(text, _LOOSE_SENTENCE_BREAK), text)
        if len(loose) > len(sentences):
            return loose
    return sentences


def split_paragraphs(text: str) -> list[str]:
    """Split *text* on blank-line boundaries, discarding blanks."""
    return [u.text for u in _paragraph_units(text)]


def split_sentences(text: str) -> list[str]:
    """Split *text* into sentences.

    Splits after ``.``, ``!`` or ``?`` followed by whitespace.  Pieces of
    10 characters or fewer are attached to the preceding sentence (or the
    following one, at the start) and a period is appended where terminal
    punctuation is missing.  Falls back to splitting on any run of
    ``.!?`` when that finds more sentences.
    """
    return [u.text for u in _sentence_units(text)]


def count_sentences(text: str) -> int:
    """Number of non-empty pieces between runs of ``.!?``."""
    return sum(1 for piece in _LOOSE_SENTENCE_BREAK.split(text) if piece.strip())


def overlap_suffix(text: str, overlap: int) -> str:
    """Return the tail of *text* used to seed the next chunk.

    The whole text when it fits in *overlap*; otherwise the longest run
    of trailing whole sentences of total length <= *overlap*; otherwise
    the last *overlap* characters.
    """
    if overlap <= 0 or not text:
        return ""
    if len(text) <= overlap:
        return text

    suffix = ""
    for sentence in reversed(split_sentences(text)):
        candidate = f"{sentence} {suffix}" if suffix else sentence
        if len(candidate) > overlap:
            break
        suffix = candidate
    return suffix or text[-overlap:].lstrip()


def character_windows(text: str, size: int, overlap: int) -> list[_Unit]:
    """Cut *text* into windows of at most *size* chars that overlap by *overlap*.

    A window that would end mid-word is shortened to the last space, as
    long as that keeps more than 80% of the window.
    """
    windows: list[_Unit] = []
    start = 0
    n = len(text)
    while start < n:
        end = min(start + size, n)
        if end < n:
            cut = text.rfind(" ", start, end)
            if cut > start + int(size * _WORD_BREAK_RATIO):
                end = cut
        _append_unit(windows, text, start, end)
        if end >= n:
            break
        next_start = end - overlap
        start = next_start if next_start > start else end
    return windows


def _accumulate(
    units: list[_Unit], source: str, max_size: int, overlap: int, joiner: str
) -> list[_Unit]:
    """Greedy packing loop shared by the paragraph and sentence strategies.

    On overflow the current chunk is flushed and the next one starts with
    the overlap suffix of the flushed chunk.  A chunk's span runs from the
    start of its overlap seed in *source* to the end of its last unit.
    """
    chunks: list[_Unit] = []
    current = ""
    start = 0
    end = 0
    for unit in units:
        if current and len(current) + len(joiner) + len(unit.text) > max_size:
            chunks.append(_Unit(current, start, end))
            seed = overlap_suffix(current, overlap)
            if seed:
                current = f"{seed}{joiner}{unit.text}"
                start = _seed_start(source, start, end, seed)
            else:
                current = unit.text
                start = unit.start
        elif current:
            current = f"{current}{joiner}{unit.text}"
        else:
            current = unit.text
            start = unit.start
        end = unit.end
    if current.strip():
        chunks.append(_Unit(current, start, end))
    return chunks


def _seed_start(source: str, start: int, end: int, seed: str) -> int:
    """Where *seed*, the tail of the chunk spanning ``source[start:end]``, begins."""
    found = source.rfind(seed, start, end)
    if found >= 0:
        return found
    # Joined or re-punctuated text; estimate from the span end.
    return max(start, end - len(seed))


def _midpoint_split(content: str) -> int:
    """Index of the whitespace nearest the midpoint within the split window."""
    mid = len(content) // 2
    window = int(len(content) * _SPLIT_WINDOW)
    for distance in range(window + 1):
        for idx in (mid - distance, mid + distance):
            if 0 < idx < len(content) and _WHITESPACE.match(content[idx]):
                return idx
    return mid


def _segment(unit: _Unit, chunk_type: str, depth: int = 0, similarity: float | None = None) -> TextSegment:
    content = unit.text.strip()
    return TextSegment(
        content=content,
        chunk_index=0,
        metadata=SegmentMetadata(
            chunk_type=chunk_type,
            start_index=unit.start,
            end_index=max(unit.start, unit.end),
            length=len(content),
            sentence_count=count_sentences(content),
            semantic_similarity=similarity,
            depth=depth,
        ),
    )


def _reindex(segments: list[TextSegment]) -> list[TextSegment]:
    return [
        seg.model_copy(update={"chunk_index": idx})
        for idx, seg in enumerate(s for s in segments if s.content.strip())
    ]


# ---------------------------------------------------------------------------
# Strategies (pure)
# ---------------------------------------------------------------------------

def segment_paragraphs(text: str, max_chunk_size: int, overlap: int) -> list[TextSegment]:
    """Paragraph strategy."""
    packed = _accumulate(_paragraph_units(text), text, max_chunk_size, overlap, "\n\n")
    return _reindex([_segment(u, "paragraph") for u in packed])


def segment_sentences(text: str, max_chunk_size: int, overlap: int) -> list[TextSegment]:
    """Sentence strategy."""
    packed = _accumulate(_sentence_units(text), text, max_chunk_size, overlap, " ")
    return _reindex([_segment(u, "sentence") for u in packed])


def segment_recursive(text: str, max_chunk_size: int, overlap: int) -> list[TextSegment]:
    """Recursive strategy, driven by an explicit (content, span, depth) stack.

    Children are pushed in reverse so pops come out in source order.  Child
    spans are mapped into the parent's span and clamped to it.
    """
    segments: list[TextSegment] = []
    stack: list[_Work] = [_Work(text, 0, len(text), 0)]

    while stack:
        work = stack.pop()
        content = work.content
        if not content.strip():
            continue
        span = _Unit(content, work.start, work.end)

        if work.depth > _MAX_RECURSION_DEPTH:
            segments.append(_segment(span, "recursive_max_depth", work.depth))
            continue
        if len(content) <= max_chunk_size:
            segments.append(_segment(span, "recursive", work.depth))
            continue
        if len(content) < _MIN_SPLIT_LENGTH:
            segments.append(_segment(span, "recursive_small", work.depth))
            continue

        children = _split_once(content, max_chunk_size, overlap)
        if not children:
            segments.append(_segment(span, "recursive_forced", work.depth))
            continue
        for child in reversed(children):
            start = min(work.start + child.start, work.end)
            end = min(work.start + child.end, work.end)
            stack.append(_Work(child.text, start, end, work.depth + 1))

    return _reindex(segments)


def _split_once(content: str, max_size: int, overlap: int) -> list[_Unit]:
    """One level of recursive splitting; empty when the content can't be split."""
    paragraphs = _paragraph_units(content)
    if len(paragraphs) >= 2:
        return _accumulate(paragraphs, content, max_size, overlap, "\n\n")

    sentences = _sentence_units(content)
    if len(sentences) >= 2:
        return _accumulate(sentences, content, max_size, overlap, " ")

    split_at = _midpoint_split(content)
    halves: list[_Unit] = []
    _append_unit(halves, content, 0, split_at)
    _append_unit(halves, content, split_at, len(content))
    return halves if len(halves) == 2 else []


_PURE_STRATEGIES: dict[ChunkingStrategy, Callable[[str, int, int], list[TextSegment]]] = {
    ChunkingStrategy.PARAGRAPH: segment_paragraphs,
    ChunkingStrategy.SENTENCE: segment_sentences,
    ChunkingStrategy.RECURSIVE: segment_recursive,
}


class _SemanticFallback(Exception):
    """Signals that semantic segmentation should degrade to paragraphs."""


class TextSegmenter:
    """Dispatches segmentation to the configured strategy.

    Parameters
    ----------
    embedding_provider:
        Needed only by the semantic strategy; without it semantic
        requests fall back to paragraphs.
    threshold_floor, stddev_factor:
        Breakpoint threshold is ``max(threshold_floor, mean - stddev_factor * std)``.
    max_sentences:
        Only this many leading sentences are embedded.
    batch_size, batch_delay:
        Sentence embedding batch size and the pause between batches.
    """

    def __init__(
        self,
        embedding_provider: IEmbeddingProvider | None = None,
        threshold_floor: float = 0.3,
        stddev_factor: float = 0.5,
        max_sentences: int = 50,
        batch_size: int = 5,
        batch_delay: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._embedding_provider = embedding_provider
        self._threshold_floor = threshold_floor
        self._stddev_factor = stddev_factor
        self._max_sentences = max_sentences
        self._batch_size = batch_size
        self._batch_delay = batch_delay
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def segment(
        self,
        text: str,
        max_chunk_size: int,
        overlap: int,
        strategy: ChunkingStrategy | str = ChunkingStrategy.RECURSIVE,
    ) -> list[TextSegment]:
        """Split *text* into ordered, non-empty segments.

        Parameters
        ----------
        text:
            Source text.
        max_chunk_size:
            Target maximum characters per chunk.
        overlap:
            Characters of trailing context carried into the next chunk;
            capped at half of *max_chunk_size*.
        strategy:
            Which :class:`ChunkingStrategy` to apply.

        Returns
        -------
        list[TextSegment]
            Segments with consecutive ``chunk_index`` values from 0.
            Blank input returns an empty list.
        """
        if max_chunk_size < 1:
            msg = f"max_chunk_size must be positive, got {max_chunk_size}"
            raise ValueError(msg)
        if not text or not text.strip():
            return []

        overlap = max(0, min(overlap, max_chunk_size // 2))
        strategy = ChunkingStrategy(strategy)
        segments = await self._select_strategy(strategy)(text, max_chunk_size, overlap)

        logger.debug(
            "segmentation_complete",
            strategy=strategy.value,
            num_chunks=len(segments),
            text_length=len(text),
        )
        return segments

    # ------------------------------------------------------------------
    # Strategy dispatch
    # ------------------------------------------------------------------

    def _select_strategy(
        self, strategy: ChunkingStrategy
    ) -> Callable[[str, int, int], Awaitable[list[TextSegment]]]:
        if strategy is ChunkingStrategy.SEMANTIC:
            return self._segment_semantic
        pure = _PURE_STRATEGIES[strategy]

        async def _run(text: str, max_chunk_size: int, overlap: int) -> list[TextSegment]:
            # Off the event loop so callers' timeouts can fire.
            return await asyncio.to_thread(pure, text, max_chunk_size, overlap)

        return _run

    # ------------------------------------------------------------------
    # Semantic strategy
    # ------------------------------------------------------------------

    async def _segment_semantic(self, text: str, max_chunk_size: int, overlap: int) -> list[TextSegment]:
        try:
            return await self._semantic_groups(text, max_chunk_size, overlap)
        except _SemanticFallback as signal:
            logger.info("semantic_fallback_to_paragraph", reason=str(signal))
        except Exception as exc:  # noqa: BLE001
            logger.warning("semantic_segmentation_failed", error=str(exc))
        return segment_paragraphs(text, max_chunk_size, overlap)

    async def _semantic_groups(self, text: str, max_chunk_size: int, overlap: int) -> list[TextSegment]:
        sentences = _sentence_units(text)
        if len(sentences) <= 2:
            raise _SemanticFallback("too_few_sentences")
        if len(text) <= max_chunk_size:
            whole = _Unit(text.strip(), 0, len(text))
            return _reindex([_segment(whole, "semantic")])
        if self._embedding_provider is None:
            raise _SemanticFallback("no_embedding_provider")

        limited = sentences[: self._max_sentences]
        vectors = await self._embed_sentences([s.text for s in limited])
        if len(vectors) < 2:
            raise _SemanticFallback("too_few_embeddings")

        similarities = adjacent_similarities(vectors)
        threshold = self.breakpoint_threshold(similarities)
        breakpoints = [0] + [i + 1 for i, sim in enumerate(similarities) if sim < threshold]
        if len(breakpoints) < 2:
            raise _SemanticFallback("no_breakpoints")

        # Sentences past the embedding cap stay with the last group.
        boundaries = [*breakpoints, len(sentences)]
        segments: list[TextSegment] = []
        for a, b in pairwise(boundaries):
            group = sentences[a:b]
            if not group:
                continue
            span = _Unit(" ".join(s.text for s in group), group[0].start, group[-1].end)
            group_sims = similarities[a : max(a, b - 1)]
            similarity = float(np.mean(group_sims)) if len(group_sims) else None

            if len(span.text) > _OVERSIZE_FACTOR * max_chunk_size:
                for window in character_windows(span.text, max_chunk_size, overlap):
                    piece = _Unit(window.text, span.start + window.start, span.start + window.end)
                    segments.append(_segment(piece, "semantic_split", similarity=similarity))
            else:
                segments.append(_segment(span, "semantic", similarity=similarity))

        logger.debug(
            "semantic_breakpoints",
            sentences=len(sentences),
            breakpoints=len(breakpoints) - 1,
            threshold=round(threshold, 4),
        )
        return _reindex(segments)

    async def _embed_sentences(self, sentences: list[str]) -> list[list[float]]:
        """Embed in fixed-size batches with a pause between batches."""
        assert self._embedding_provider is not None
        vectors: list[list[float]] = []
        for start in range(0, len(sentences), self._batch_size):
            if start > 0 and self._batch_delay > 0:
                await self._sleep(self._batch_delay)
            batch = sentences[start : start + self._batch_size]
            vectors.extend(await self._embedding_provider.embed(batch))
        return vectors

    def breakpoint_threshold(self, similarities: np.ndarray) -> float:
        """``max(floor, mean - k * std)`` over the similarity series (population std)."""
        if len(similarities) == 0:
            return self._threshold_floor
        mean = float(np.mean(similarities))
        std = float(np.std(similarities))
        return max(self._threshold_floor, mean - self._stddev_factor * std)


def adjacent_similarities(vectors: list[list[float]]) -> np.ndarray:
    """Cosine similarity between each pair of consecutive vectors."""
    matrix = np.asarray(vectors, dtype=float)
    norms = np.linalg.norm(matrix, axis=1)
    norms[norms == 0] = 1.0
    unit = matrix / norms[:, None]
    return np.sum(unit[:-1] * unit[1:], axis=1)
