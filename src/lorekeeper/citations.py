from __future__ import annotations

import re

from .config import settings
from .models import ScoredChunk, SourceChunk

_CITE_RE = re.compile(r"\[(Page \d+|Unknown Page),\s*([^\]]+?)\s*\]")


def to_source_chunks(
    chunks: list[ScoredChunk],
    preview_chars: int | None = None,
) -> list[SourceChunk]:
    """Citation form of retrieved chunks: 1-based rank plus a content preview."""
    limit = settings.preview_chars if preview_chars is None else preview_chars
    return [
        SourceChunk(
            chunk_id=sc.chunk.chunk_id,
            resource_id=sc.chunk.resource_id,
            file_name=sc.chunk.file_name,
            page_number=sc.chunk.page_number,
            section_heading=sc.chunk.section_heading,
            content_preview=sc.chunk.text[:limit],
            similarity_score=sc.score,
            rank=i,
        )
        for i, sc in enumerate(chunks, start=1)
    ]


def extract_citations(text: str) -> list[str]:
    """Pull ``[Page N, Section]`` citations from generated text.

    Returns normalised labels like ``"Page 12, Combat"`` in order of appearance.
    """
    return [f"{page}, {section}" for page, section in _CITE_RE.findall(text)]


def validate_citations(answer: str, chunks: list[ScoredChunk]) -> tuple[list[str], list[str]]:
    """Split the answer's citations into (known, unknown) against the excerpts.

    A citation is known when it matches the page/section label of a supplied
    excerpt. Both lists are de-duplicated, order preserved.
    """
    labels = {sc.chunk.citation_label() for sc in chunks}
    known: list[str] = []
    unknown: list[str] = []
    for label in dict.fromkeys(extract_citations(answer)):
        (known if label in labels else unknown).append(label)
    return known, unknown


def citation_coverage(answer: str, chunks: list[ScoredChunk]) -> float:
    """Fraction of distinct excerpt labels that the answer cites."""
    labels = {sc.chunk.citation_label() for sc in chunks}
    if not labels:
        return 1.0
    cited = set(extract_citations(answer))
    return len(cited & labels) / len(labels)
