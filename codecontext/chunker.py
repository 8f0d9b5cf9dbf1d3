"""
Chunker module for code context selection.

This module turns a file into content-addressed chunks sized to a token budget. It
prefers structural boundaries from the parser registry and falls back to sliding
token windows when a file cannot be parsed.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from codecontext.models import (
    BLOCK, CLASS, METHOD, TOKEN_BLOCK, Chunk, CodeBoundary, DiscoveredFile, Settings, make_chunk_id,
)
from codecontext.parsers import ParserRegistry
from codecontext.tokens import count_tokens

logger = logging.getLogger(__name__)

# Gaps between units smaller than this are folded away
MIN_GAP_TOKENS = 20


@dataclass(frozen=True)
class ChunkOptions:
    chunk_size: int = 500
    chunk_overlap: int = 50
    max_unit_tokens: Optional[int] = None
    use_structural_parsing: bool = True

    @property
    def unit_token_limit(self) -> int:
        return self.max_unit_tokens if self.max_unit_tokens is not None else self.chunk_size * 2

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChunkOptions":
        return cls(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            max_unit_tokens=settings.max_unit_tokens,
            use_structural_parsing=settings.use_structural_parsing,
        )


def extract_lines(lines: List[str], start_line: int, end_line: int) -> str:
    return '\n'.join(lines[start_line - 1:end_line])


class _FileChunker:
    """Chunking state for one file."""

    def __init__(self, file: DiscoveredFile, options: ChunkOptions):
        self.file = file
        self.options = options
        self.lines = file.content.split('\n')
        self.chunks: List[Chunk] = []

    def emit(self, content: str, start_line: int, end_line: int, tokens: int, kind: str,
             unit_name: Optional[str] = None, exported: Optional[bool] = None):
        self.chunks.append(Chunk(
            id=make_chunk_id(self.file.source_id, self.file.relative_path, start_line, end_line),
            source_id=self.file.source_id,
            file_path=self.file.relative_path,
            content=content,
            start_line=start_line,
            end_line=end_line,
            tokens=tokens,
            kind=kind,
            unit_name=unit_name,
            exported=exported,
        ))

    def windows(self, start_line: int, end_line: int, kind: str, unit_name: Optional[str] = None):
        """
        Emit sliding token windows over a line range.

        A window grows until the next line would exceed chunk_size; the next window
        starts with the trailing lines worth at least chunk_overlap tokens.
        """
        lines = self.lines[start_line - 1:end_line]
        current: List[str] = []
        current_costs: List[int] = []
        current_tokens = 0
        current_start = start_line
        part = 1

        def name_for(part_num: int, final: bool) -> Optional[str]:
            if unit_name is None:
                return None
            if final and part_num == 1:
                return unit_name
            return f"{unit_name} (part {part_num})"

        for line in lines:
            line_tokens = count_tokens(line + '\n')

            if current and current_tokens + line_tokens > self.options.chunk_size:
                chunk_end = current_start + len(current) - 1
                self.emit('\n'.join(current), current_start, chunk_end, current_tokens, kind,
                          name_for(part, False))
                part += 1

                # Walk back for the overlap, always leaving at least one line behind
                keep = 0
                overlap_tokens = 0
                while keep < len(current) - 1 and overlap_tokens < self.options.chunk_overlap:
                    keep += 1
                    overlap_tokens += current_costs[-keep]

                current = current[len(current) - keep:] if keep else []
                current_costs = current_costs[len(current_costs) - keep:] if keep else []
                current_tokens = overlap_tokens
                current_start = chunk_end + 1 - keep

            current.append(line)
            current_costs.append(line_tokens)
            current_tokens += line_tokens

        if current:
            content = '\n'.join(current)
            self.emit(content, current_start, current_start + len(current) - 1, count_tokens(content), kind,
                      name_for(part, True))

    def token_windows(self) -> List[Chunk]:
        self.chunks = []
        self.windows(1, len(self.lines), TOKEN_BLOCK)
        return self.chunks

    def structural(self, boundaries: List[CodeBoundary]) -> List[Chunk]:
        limit = self.options.unit_token_limit
        units = fold_methods(boundaries, self.lines, limit)

        covered = 0   # last line accounted for (emitted or folded into a non-unit class)
        emitted = 0   # last line owned by an emitted chunk

        for boundary in units:
            if boundary.start_line > covered + 1:
                self.gap(covered + 1, boundary.start_line - 1)

            if boundary.non_unit:
                covered = max(covered, boundary.end_line)
                continue

            start = max(boundary.start_line, emitted + 1)
            if start > boundary.end_line:
                covered = max(covered, boundary.end_line)
                continue

            content = extract_lines(self.lines, start, boundary.end_line)
            tokens = count_tokens(content)
            if tokens > limit:
                self.windows(start, boundary.end_line, boundary.kind, boundary.name)
            else:
                self.emit(content, start, boundary.end_line, tokens, boundary.kind,
                          boundary.name, boundary.exported)

            emitted = boundary.end_line
            covered = max(covered, boundary.end_line)

        if covered < len(self.lines):
            trailing = extract_lines(self.lines, covered + 1, len(self.lines))
            if trailing.strip():
                self.emit(trailing, covered + 1, len(self.lines), count_tokens(trailing), BLOCK, 'footer')

        return self.chunks

    def gap(self, start_line: int, end_line: int):
        content = extract_lines(self.lines, start_line, end_line)
        if not content.strip():
            return
        tokens = count_tokens(content)
        if tokens > MIN_GAP_TOKENS:
            self.emit(content, start_line, end_line, tokens, BLOCK, 'imports/header')


@dataclass(frozen=True)
class _Unit:
    kind: str
    name: str
    start_line: int
    end_line: int
    exported: bool
    non_unit: bool = False


def fold_methods(boundaries: List[CodeBoundary], lines: List[str], limit: int) -> List[_Unit]:
    """
    Fold methods into their class when the class fits in one chunk.

    A class above the limit that has methods is kept only as covered range
    (non_unit) so its methods become the chunks; a class above the limit without
    methods is split like any other oversized unit.

    Args:
        boundaries: Parser output sorted by start line
        lines: File lines
        limit: Maximum tokens for a single unit chunk

    Returns:
        Units to walk, in line order
    """
    classes = [b for b in boundaries if b.kind == CLASS]
    class_tokens = {}

    def tokens_of(cls: CodeBoundary) -> int:
        key = (cls.start_line, cls.end_line)
        if key not in class_tokens:
            class_tokens[key] = count_tokens(extract_lines(lines, cls.start_line, cls.end_line))
        return class_tokens[key]

    def owner_of(method: CodeBoundary) -> Optional[CodeBoundary]:
        class_name = method.name.split('.')[0]
        candidates = [c for c in classes
                      if c.name == class_name and c.start_line <= method.start_line and method.end_line <= c.end_line]
        if not candidates:
            candidates = [c for c in classes if c.name == class_name]
        return candidates[-1] if candidates else None

    kept_methods = set()
    classes_with_methods = set()
    for boundary in boundaries:
        if boundary.kind != METHOD:
            continue
        owner = owner_of(boundary)
        if owner is None:
            kept_methods.add(boundary)
        elif tokens_of(owner) > limit:
            kept_methods.add(boundary)
            classes_with_methods.add(owner)

    units = []
    for boundary in boundaries:
        if boundary.kind == METHOD and boundary not in kept_methods:
            continue
        units.append(_Unit(
            kind=boundary.kind,
            name=boundary.name,
            start_line=boundary.start_line,
            end_line=boundary.end_line,
            exported=boundary.exported,
            non_unit=boundary in classes_with_methods,
        ))
    return units


def chunk_file(file: DiscoveredFile, options: Optional[ChunkOptions] = None,
               registry: Optional[ParserRegistry] = None) -> List[Chunk]:
    """
    Split a file into chunks.

    Args:
        file: The file to chunk
        options: Chunk sizing options
        registry: Parser registry used for structural boundaries

    Returns:
        Chunks in line order
    """
    options = options or ChunkOptions()
    chunker = _FileChunker(file, options)

    if options.use_structural_parsing and registry is not None and registry.can_parse(file.relative_path):
        result = registry.parse(file.content, file.relative_path)
        if not result.success:
            logger.debug("Falling back to token windows for %s: %s", file.relative_path, result.error)
        elif result.boundaries:
            chunks = chunker.structural(result.boundaries)
            if chunks:
                return chunks

    return chunker.token_windows()


def chunk_files(files: Iterable[DiscoveredFile], options: Optional[ChunkOptions] = None,
                registry: Optional[ParserRegistry] = None) -> List[Chunk]:
    chunks = []
    for file in files:
        chunks.extend(chunk_file(file, options, registry))
    return chunks
