"""
Text segmentation for the translate and synthesize stages.

Splits a transcript (or its translation) into ordered, addressable chunks
under one of three strategies:

- punctuation: clause-level pieces packed greedily up to a character budget
- sentence:    sentence-level pieces joined with a space toward a target length
- duration:    punctuation packing at a budget derived from a target speech
               duration (4 chars/sec), followed by a hard split
"""

import math
import re
import uuid
import logging
from dataclasses import dataclass

from dubflow.core.constants import (
    SegmentationStrategy,
    DEFAULT_MAX_CHARS_PER_SEGMENT, MIN_MAX_CHARS_PER_SEGMENT,
    DEFAULT_TARGET_SEGMENT_LENGTH, MIN_TARGET_SEGMENT_LENGTH,
    DEFAULT_TARGET_DURATION_SEC, MIN_TARGET_DURATION_SEC,
    MIN_DURATION_CHARS, CHARS_PER_SECOND,
)
from dubflow.core.error_codes import SegmentIntegrityError

logger = logging.getLogger(__name__)

_CLAUSE_MARKS = "。！？!?；;，,、\n"
_SENTENCE_MARKS = "。！？!?\n"

# A run of ordinary characters followed by its closing marks, or a bare run
# of marks (leading punctuation must not be dropped).
_CLAUSE_RE = re.compile(rf"[^{_CLAUSE_MARKS}]+[{_CLAUSE_MARKS}]*|[{_CLAUSE_MARKS}]+")
_SENTENCE_RE = re.compile(rf"[^{_SENTENCE_MARKS}]+[{_SENTENCE_MARKS}]*|[{_SENTENCE_MARKS}]+")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class TextSegment:
    id: str
    index: int
    text: str
    estimated_duration_sec: int


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def estimate_duration_sec(text: str) -> int:
    return max(1, math.ceil(len(text) / CHARS_PER_SECOND))


def _option(options: dict | None, key: str):
    if not options:
        return None
    value = options.get(key)
    return value if value not in (None, "") else None


def budget_for(strategy: str, options: dict | None = None) -> int:
    """Effective character budget a strategy packs chunks to."""
    if strategy == SegmentationStrategy.SENTENCE:
        target = (_option(options, 'target_segment_length')
                  or _option(options, 'max_chars_per_segment')
                  or DEFAULT_TARGET_SEGMENT_LENGTH)
        return max(MIN_TARGET_SEGMENT_LENGTH, int(target))

    if strategy == SegmentationStrategy.DURATION:
        seconds = _option(options, 'target_duration_sec') or DEFAULT_TARGET_DURATION_SEC
        seconds = max(MIN_TARGET_DURATION_SEC, float(seconds))
        return max(MIN_DURATION_CHARS, int(round(seconds * CHARS_PER_SECOND)))

    limit = (_option(options, 'max_chars_per_segment')
             or _option(options, 'target_segment_length')
             or DEFAULT_MAX_CHARS_PER_SEGMENT)
    return max(MIN_MAX_CHARS_PER_SEGMENT, int(limit))


def _hard_split(text: str, limit: int) -> list[str]:
    if len(text) <= limit:
        return [text]
    return [text[i:i + limit] for i in range(0, len(text), limit)]


def _pack(parts: list[str], limit: int) -> list[str]:
    """Greedy concatenation of raw pieces; oversized pieces are sliced first."""
    chunks = []
    buffer = ""
    for part in parts:
        if not part.strip():
            # whitespace-only run, keep it attached so offsets stay intact
            if buffer:
                buffer += part
            continue
        for piece in _hard_split(part, limit):
            if not buffer:
                buffer = piece
            elif len(buffer + piece) <= limit:
                buffer += piece
            else:
                chunks.append(buffer)
                buffer = piece
    if buffer.strip():
        chunks.append(buffer)
    return chunks


def _punctuation_chunks(text: str, limit: int) -> list[str]:
    return _pack(_CLAUSE_RE.findall(text), limit)


def _sentence_chunks(text: str, limit: int) -> list[str]:
    chunks = []
    current = ""
    for part in _SENTENCE_RE.findall(text):
        sentence = part.strip()
        if not sentence:
            continue
        for piece in _hard_split(sentence, limit):
            if not current:
                current = piece
            elif len(current) + 1 + len(piece) <= limit:
                current = f"{current} {piece}"
            else:
                chunks.append(current)
                current = piece
    if current:
        chunks.append(current)
    return chunks


def _duration_chunks(text: str, limit: int) -> list[str]:
    chunks = []
    for candidate in _punctuation_chunks(text, limit):
        chunks.extend(_hard_split(candidate, limit))
    return chunks


def segment(text: str, strategy: str = SegmentationStrategy.PUNCTUATION,
            options: dict | None = None) -> list[TextSegment]:
    """Split text into ordered chunks. Empty input yields an empty list."""
    cleaned = (text or "").replace("\r\n", "\n").strip()
    if not cleaned:
        return []

    if strategy not in (SegmentationStrategy.PUNCTUATION, SegmentationStrategy.SENTENCE,
                        SegmentationStrategy.DURATION):
        logger.warning("Unknown segmentation strategy %r, using punctuation", strategy)
        strategy = SegmentationStrategy.PUNCTUATION

    limit = budget_for(strategy, options)
    if strategy == SegmentationStrategy.SENTENCE:
        raw = _sentence_chunks(cleaned, limit)
    elif strategy == SegmentationStrategy.DURATION:
        raw = _duration_chunks(cleaned, limit)
    else:
        raw = _punctuation_chunks(cleaned, limit)

    texts = [chunk.strip() for chunk in raw]
    texts = [chunk for chunk in texts if chunk]
    return [
        TextSegment(
            id=uuid.uuid4().hex,
            index=index,
            text=chunk,
            estimated_duration_sec=estimate_duration_sec(chunk),
        )
        for index, chunk in enumerate(texts)
    ]


def assert_segment_integrity(original_text: str, segments: list) -> None:
    """
    Raise SegmentIntegrityError unless the chunks reproduce the original.

    Chunks are rejoined with a single space. Boundaries inside CJK text or
    inside a hard-split word have no whitespace in the source, so the
    comparison ignores whitespace altogether.
    """
    merged = " ".join(seg.text for seg in segments)
    if _WHITESPACE_RE.sub("", merged) != _WHITESPACE_RE.sub("", original_text or ""):
        raise SegmentIntegrityError(
            "Segment integrity check failed: merged text differs from source text"
        )
