"""
Scoring module for code context selection.

This module combines semantic similarity with lexical signals (path, content and
symbol matches, file type) into one score per chunk, optionally boosted through
the import graph and penalized for repeated files.
"""

import re
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from codecontext.models import ImportGraph, RankedChunk, ScoreBreakdown, ScoredChunk

WEIGHTS = {
    "similarity": 0.50,
    "path_match": 0.15,
    "content_match": 0.15,
    "symbol_match": 0.15,
    "file_type_boost": 0.05,
}

IMPORT_BOOST_WEIGHT = 0.10
IMPORT_BOOST_TOP_FILES = 20

PENALTY_PER_DUPLICATE = 0.1
MAX_PENALTY = 0.3

STOP_WORDS = frozenset([
    'the', 'a', 'an', 'is', 'are', 'was', 'were', 'be', 'been',
    'how', 'what', 'where', 'when', 'why', 'who', 'which',
    'does', 'do', 'did', 'has', 'have', 'had',
    'this', 'that', 'these', 'those',
    'and', 'or', 'but', 'not', 'with', 'for', 'from', 'to', 'in', 'on',
    'work', 'works', 'working', 'use', 'using', 'used',
    'can', 'could', 'would', 'should', 'will',
    'get', 'set', 'make', 'find', 'show', 'tell', 'want', 'need',
    'code', 'file', 'function',
])

SYMBOL_PATTERN = re.compile(r'[a-zA-Z_][a-zA-Z0-9_]*(?:[A-Z][a-z0-9]*)+|[a-z]+(?:_[a-z0-9]+)+')
IDENTIFIER_WORD = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')

DECLARATION_PATTERNS = [
    re.compile(r'function\s+(\w+)', re.IGNORECASE),
    re.compile(r'const\s+(\w+)\s*=', re.IGNORECASE),
    re.compile(r'class\s+(\w+)', re.IGNORECASE),
    re.compile(r'export\s+(?:async\s+)?function\s+(\w+)', re.IGNORECASE),
    re.compile(r'export\s+const\s+(\w+)', re.IGNORECASE),
    re.compile(r'(\w+)\s*[:=]\s*(?:async\s+)?\(', re.IGNORECASE),
]


def extract_keywords(query: str) -> List[str]:
    """Lower-cased query words longer than two characters, minus stop words."""
    return [word for word in query.lower().split() if len(word) > 2 and word not in STOP_WORDS]


def extract_symbols(query: str) -> List[str]:
    """
    Pull code-shaped tokens out of a query.

    camelCase, PascalCase and snake_case words count, and so does any bare
    identifier longer than four characters.

    Returns:
        Unique lower-cased symbols in order of appearance
    """
    symbols = [s.lower() for s in SYMBOL_PATTERN.findall(query)]
    for word in query.split():
        if len(word) > 4 and IDENTIFIER_WORD.match(word):
            symbols.append(word.lower())
    return list(dict.fromkeys(symbols))


def path_match_score(file_path: str, keywords: Sequence[str]) -> float:
    if not keywords:
        return 0.0
    path_lower = file_path.lower()
    return sum(1 for keyword in keywords if keyword in path_lower) / len(keywords)


def content_match_score(content: str, keywords: Sequence[str]) -> float:
    """
    Whole-word keyword matching with diminishing returns on repeats.

    Returns:
        ``match_ratio * 0.7 + avg_weight * 0.3`` where each matching keyword
        weighs ``min(occurrences, 5) / 5``
    """
    if not keywords:
        return 0.0

    matches = 0
    total_weight = 0.0
    for keyword in keywords:
        occurrences = len(re.findall(r'\b' + re.escape(keyword) + r'\b', content, re.IGNORECASE))
        if occurrences > 0:
            matches += 1
            total_weight += min(occurrences, 5) / 5

    match_ratio = matches / len(keywords)
    avg_weight = total_weight / matches if matches else 0.0
    return match_ratio * 0.7 + avg_weight * 0.3


def content_symbols(content: str) -> set:
    symbols = set()
    for pattern in DECLARATION_PATTERNS:
        symbols.update(name.lower() for name in pattern.findall(content))
    return symbols


def symbol_match_score(content: str, symbols: Sequence[str]) -> float:
    if not symbols:
        return 0.0

    declared = content_symbols(content)
    matches = 0.0
    for symbol in symbols:
        if symbol in declared:
            matches += 1
        elif any(symbol in name or name in symbol for name in declared):
            matches += 0.5
    return min(matches / len(symbols), 1.0)


def file_type_boost(file_path: str) -> float:
    """Weight implementation files above tests, configs, type declarations and barrels."""
    path_lower = file_path.lower()
    if '.test.' in path_lower or '.spec.' in path_lower or '__tests__' in path_lower:
        return 0.3
    if 'config' in path_lower or 'setup' in path_lower or path_lower.endswith('.json'):
        return 0.4
    if path_lower.endswith('.d.ts'):
        return 0.5
    if path_lower.endswith('/index.ts') or path_lower.endswith('/index.js'):
        return 0.6
    return 1.0


def base_score(breakdown: ScoreBreakdown) -> float:
    return (WEIGHTS["similarity"] * breakdown.similarity
            + WEIGHTS["path_match"] * breakdown.path_match
            + WEIGHTS["content_match"] * breakdown.content_match
            + WEIGHTS["symbol_match"] * breakdown.symbol_match
            + WEIGHTS["file_type_boost"] * breakdown.file_type_boost)


def _sort_descending(ranked: List[RankedChunk]) -> List[RankedChunk]:
    # sorted() is stable, so equal scores keep their input order
    return sorted(ranked, key=lambda r: -r.score)


def import_boosts(ranked: Sequence[RankedChunk], graph: ImportGraph) -> Dict[str, float]:
    """
    Boost per imported file, propagated from the best-scoring importers.

    Each of the top files (by best base score) passes its own base score to
    every file it imports; a file imported by several of them keeps the maximum.
    """
    file_scores: Dict[str, float] = {}
    for item in ranked:
        if item.file_path not in file_scores or item.score > file_scores[item.file_path]:
            file_scores[item.file_path] = item.score

    top_files = sorted(file_scores, key=lambda path: -file_scores[path])[:IMPORT_BOOST_TOP_FILES]
    boosts: Dict[str, float] = {}
    for importer in top_files:
        importer_score = file_scores[importer]
        for dep in graph.imports.get(importer, []):
            boost = min(importer_score, 1.0)
            if boost > boosts.get(dep, 0.0):
                boosts[dep] = boost
    return boosts


def apply_diversity_penalty(ranked: List[RankedChunk]) -> List[RankedChunk]:
    """Scale down the 2nd, 3rd, ... chunk of a file by 10% per repeat (capped at 30%), then re-sort."""
    counts: Dict[str, int] = {}
    penalized = []
    for item in ranked:
        count = counts.get(item.file_path, 0)
        counts[item.file_path] = count + 1
        if count > 0:
            penalty = min(count * PENALTY_PER_DUPLICATE, MAX_PENALTY)
            item = RankedChunk(chunk=item.chunk, score=item.score * (1 - penalty), breakdown=item.breakdown)
        penalized.append(item)
    return _sort_descending(penalized)


def rank_chunks(chunks: Sequence[ScoredChunk], query: str, import_graph: Optional[ImportGraph] = None,
                diversity_penalty: bool = False) -> List[RankedChunk]:
    """
    Score and order search candidates.

    Args:
        chunks: Candidates with their similarity scores
        query: The natural-language query
        import_graph: When given, files imported by top-ranked files get a boost
        diversity_penalty: Penalize repeated chunks from the same file

    Returns:
        Ranked chunks, best first
    """
    keywords = extract_keywords(query)
    symbols = extract_symbols(query)

    ranked = []
    for scored in chunks:
        chunk = scored.chunk
        breakdown = ScoreBreakdown(
            similarity=scored.similarity,
            path_match=path_match_score(chunk.file_path, keywords),
            content_match=content_match_score(chunk.content, keywords),
            symbol_match=symbol_match_score(chunk.content, symbols),
            file_type_boost=file_type_boost(chunk.file_path),
        )
        ranked.append(RankedChunk(chunk=chunk, score=base_score(breakdown), breakdown=breakdown))

    if import_graph is not None:
        boosts = import_boosts(ranked, import_graph)
        for i, item in enumerate(ranked):
            boost = boosts.get(item.file_path, 0.0)
            if boost > 0:
                ranked[i] = RankedChunk(chunk=item.chunk, score=item.score + IMPORT_BOOST_WEIGHT * boost,
                                        breakdown=replace(item.breakdown, import_boost=boost))

    ranked = _sort_descending(ranked)
    if diversity_penalty:
        ranked = apply_diversity_penalty(ranked)
    return ranked
