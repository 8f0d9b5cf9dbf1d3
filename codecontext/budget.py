"""
Budget module for code context selection.

This module packs ranked chunks into a token budget and merges adjacent chunks
of the same file for cleaner output.
"""

from typing import Dict, List, Sequence, Tuple

from codecontext.models import BudgetResult, Chunk, RankedChunk, make_chunk_id
from codecontext.tokens import count_tokens


def pack(ranked: Sequence[RankedChunk], budget: int) -> BudgetResult:
    """
    Take ranked chunks in order until the next one would overflow the budget.

    Packing stops at the first chunk that does not fit; smaller chunks further
    down are not considered, so the output always keeps strict rank order.

    Args:
        ranked: Chunks, best first
        budget: Maximum total tokens

    Returns:
        BudgetResult with the included chunks, their token total and the number excluded
    """
    included = []
    total = 0
    for item in ranked:
        if total + item.tokens > budget:
            break
        included.append(item)
        total += item.tokens
    return BudgetResult(chunks=included, total_tokens=total, excluded=len(ranked) - len(included))


def _merge_pair(first: RankedChunk, second: RankedChunk) -> RankedChunk:
    a, b = first.chunk, second.chunk
    if b.end_line <= a.end_line:
        content = a.content
        end_line = a.end_line
    else:
        extra = b.content.split('\n')[a.end_line - b.start_line + 1:]
        content = '\n'.join(a.content.split('\n') + extra)
        end_line = b.end_line

    tokens = min(count_tokens(content), a.tokens + b.tokens)
    merged = Chunk(
        id=make_chunk_id(a.source_id, a.file_path, a.start_line, end_line),
        source_id=a.source_id,
        file_path=a.file_path,
        content=content,
        start_line=a.start_line,
        end_line=end_line,
        tokens=tokens,
        kind=a.kind if a.kind == b.kind else 'block',
        unit_name=a.unit_name if a.unit_name == b.unit_name else None,
        exported=a.exported,
        created_at=a.created_at,
    )
    best = first if first.score >= second.score else second
    return RankedChunk(chunk=merged, score=best.score, breakdown=best.breakdown)


def merge_adjacent_chunks(chunks: Sequence[RankedChunk]) -> List[RankedChunk]:
    """
    Merge chunks of the same file whose line ranges touch or overlap.

    Chunks are grouped per (source, file): sources whose roots overlap may
    report the same path and are never merged with each other. Files keep
    their first-seen order; within a file chunks are sorted by line.
    A merged chunk keeps the higher score.

    Args:
        chunks: Packed chunks

    Returns:
        Merged chunks grouped by file
    """
    by_file: Dict[Tuple[str, str], List[RankedChunk]] = {}
    for item in chunks:
        by_file.setdefault((item.chunk.source_id, item.file_path), []).append(item)

    merged = []
    for items in by_file.values():
        items = sorted(items, key=lambda r: (r.chunk.start_line, r.chunk.end_line))
        current = items[0]
        for item in items[1:]:
            if item.chunk.start_line <= current.chunk.end_line + 1:
                current = _merge_pair(current, item)
            else:
                merged.append(current)
                current = item
        merged.append(current)
    return merged
