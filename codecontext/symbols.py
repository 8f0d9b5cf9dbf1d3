"""
Symbols module for code context selection.

This module finds declarations by name in the stored chunks and builds a lexical
call graph (callers and callees) for a function. Both are regular-expression
based and do not resolve scopes or types.
"""

import os
import re
from typing import Dict, Iterable, List, Optional, Set, Tuple

from codecontext.models import CallGraphResult, CallSite, SymbolMatch
from codecontext.store import IndexStore

JS_TS = ('ts', 'tsx', 'js', 'jsx')

CALL_KEYWORDS = {
    'js': frozenset([
        'if', 'else', 'while', 'for', 'switch', 'catch', 'return', 'throw', 'new', 'typeof',
        'import', 'export', 'const', 'let', 'var', 'function', 'class', 'interface', 'type',
        'async', 'await', 'try', 'finally',
    ]),
    'py': frozenset([
        'if', 'elif', 'else', 'while', 'for', 'in', 'not', 'and', 'or', 'is',
        'return', 'yield', 'lambda', 'assert', 'with', 'except', 'raise', 'del',
        'print', 'await', 'async', 'def', 'class', 'import', 'from',
    ]),
    'go': frozenset(['if', 'for', 'switch', 'select', 'return', 'func', 'go', 'defer', 'range']),
    'rs': frozenset(['if', 'while', 'for', 'loop', 'match', 'return', 'fn', 'let', 'in', 'as']),
}

CALL_PATTERN = re.compile(r'\b(\w+)\s*\(')


def _ext(file_path: str) -> str:
    return os.path.splitext(file_path)[1].lower().lstrip('.')


def find_block_end(lines: List[str], start: int) -> int:
    """1-based line of the brace closing the block opened at or after ``start`` (0-based)."""
    depth = 0
    started = False
    for i in range(start, len(lines)):
        for char in lines[i]:
            if char == '{':
                depth += 1
                started = True
            elif char == '}':
                depth -= 1
                if started and depth == 0:
                    return i + 1
    return len(lines)


def find_python_block_end(lines: List[str], start: int) -> int:
    """1-based last line of the indented block starting at ``start`` (0-based)."""
    start_indent = len(lines[start]) - len(lines[start].lstrip())
    last = start + 1
    for i in range(start + 1, len(lines)):
        line = lines[i]
        if not line.strip():
            continue
        if len(line) - len(line.lstrip()) <= start_indent:
            return last
        last = i + 1
    return last


def _find_type_end(lines: List[str], start: int) -> int:
    for i in range(start, len(lines)):
        if ';' in lines[i]:
            return i + 1
    return start + 1


def _find_statement_end(lines: List[str], start: int) -> int:
    line = lines[start]
    if line.strip().endswith(';'):
        return start + 1
    if '=>' in line or '{' in line:
        return find_block_end(lines, start)
    for i in range(start, min(start + 20, len(lines))):
        if lines[i].strip().endswith(';'):
            return i + 1
    return start + 1


def _signature_line(line: str) -> str:
    brace = line.find('{')
    return line[:brace].strip() if brace > 0 else line.strip()


def _strip_brace(line: str) -> str:
    return re.sub(r'\s*\{$', '', line)


# (pattern, kind, name group, end finder, signature builder, export rule) per extension
def _js_rules():
    return [
        (re.compile(r'^(export\s+)?(async\s+)?function\s+(\w+)'), 'function', 3, find_block_end, _signature_line),
        (re.compile(r'^(export\s+)?(abstract\s+)?class\s+(\w+)'), 'class', 3, find_block_end, _signature_line),
        (re.compile(r'^(export\s+)?interface\s+(\w+)'), 'interface', 2, find_block_end, _signature_line),
        (re.compile(r'^(export\s+)?type\s+(\w+)'), 'type', 2, _find_type_end, lambda t: t),
        (re.compile(r'^(export\s+)?(const|let|var)\s+(\w+)'), 'constant', 3, _find_statement_end, _signature_line),
    ]


SYMBOL_RULES = {
    'js': _js_rules(),
    'py': [
        (re.compile(r'^(async\s+)?def\s+(\w+)'), 'function', 2, find_python_block_end,
         lambda t: re.sub(r':$', '', t)),
        (re.compile(r'^class\s+(\w+)'), 'class', 1, find_python_block_end, lambda t: re.sub(r':$', '', t)),
    ],
    'go': [
        (re.compile(r'^func\s+(\w+)'), 'function', 1, find_block_end, _strip_brace),
        (re.compile(r'^func\s+\([^)]+\)\s+(\w+)'), 'method', 1, find_block_end, _strip_brace),
        (re.compile(r'^type\s+(\w+)'), 'type', 1, find_block_end, _strip_brace),
    ],
    'rs': [
        (re.compile(r'^(pub\s+)?(async\s+)?fn\s+(\w+)'), 'function', 3, find_block_end, _strip_brace),
        (re.compile(r'^(pub\s+)?(struct|enum)\s+(\w+)'), 'class', 3, find_block_end, _strip_brace),
        (re.compile(r'^(pub\s+)?trait\s+(\w+)'), 'interface', 2, find_block_end, _strip_brace),
    ],
}


def _is_exported(ext: str, trimmed: str, name: str) -> bool:
    if ext == 'py':
        return not name.startswith('_')
    if ext == 'go':
        return name[:1].isupper()
    if ext == 'rs':
        return trimmed.startswith('pub ')
    return trimmed.startswith('export ')


def extract_symbols(content: str, file_path: str, start_line: int = 1) -> List[SymbolMatch]:
    """
    Find declarations in a chunk.

    Args:
        content: Chunk content
        file_path: Path of the file, used to pick the declaration patterns
        start_line: Line of the chunk's first line in its file

    Returns:
        Symbols with absolute line numbers
    """
    ext = _ext(file_path)
    rules = SYMBOL_RULES.get('js' if ext in JS_TS else ext)
    if not rules:
        return []

    symbols = []
    lines = content.split('\n')
    for i, line in enumerate(lines):
        trimmed = line.strip()
        for pattern, kind, group, end_finder, signature in rules:
            match = pattern.match(trimmed)
            if not match:
                continue
            name = match.group(group)
            if kind == 'constant' and ('=>' in trimmed or 'function' in trimmed):
                kind = 'function'
            symbols.append(SymbolMatch(
                name=name,
                kind=kind,
                file_path=file_path,
                line=start_line + i,
                end_line=start_line + end_finder(lines, i) - 1,
                signature=signature(trimmed),
                exported=_is_exported(ext, trimmed, name),
            ))
            break
    return symbols


def search_symbols(store: IndexStore, query: str, exact: bool = False, limit: int = 20,
                   sources: Optional[Iterable[str]] = None) -> List[SymbolMatch]:
    """
    Search declarations by name across stored chunks.

    Fuzzy mode matches names containing the query, ignoring names shorter than
    three characters unless they match exactly. Exact matches sort first, then
    shorter names.

    Args:
        store: Index store
        query: Name to look for (case-insensitive)
        exact: Only return names equal to the query
        limit: Maximum number of results
        sources: Optional source filter

    Returns:
        Matches, deduplicated by file and line
    """
    query_lower = query.lower()
    found: Dict[Tuple[str, int], SymbolMatch] = {}

    for chunk in store.get_chunks(sources, with_embeddings=False):
        for symbol in extract_symbols(chunk.content, chunk.file_path, chunk.start_line or 1):
            name_lower = symbol.name.lower()
            if exact:
                matched = name_lower == query_lower
            else:
                matched = name_lower == query_lower or (query_lower in name_lower and len(symbol.name) >= 3)
            key = (symbol.file_path, symbol.line)
            if matched and key not in found:
                found[key] = symbol

    results = sorted(found.values(), key=lambda s: (s.name.lower() != query_lower, len(s.name)))
    return results[:limit]


# Call graph

JS_FUNCTION_DEFS = [
    re.compile(r'^(export\s+)?(async\s+)?function\s+(\w+)'),
    re.compile(r'^(export\s+)?(const|let|var)\s+(\w+)\s*=\s*(async\s+)?\('),
    re.compile(r'^(public|private|protected|static|async\s+)*(async\s+)?(\w+)\s*\([^)]*\)\s*[:{]'),
]
METHOD_EXCLUDES = frozenset(['if', 'while', 'for', 'switch', 'catch'])
PY_DEF = re.compile(r'^(async\s+)?def\s+(\w+)')
GO_FUNC = re.compile(r'^func\s+(?:\([^)]+\)\s+)?(\w+)')
RUST_FN = re.compile(r'^(pub\s+)?(async\s+)?fn\s+(\w+)')


def extract_function_defs(content: str, file_path: str) -> Dict[str, Tuple[int, int]]:
    """
    Map function names to their (start, end) lines within ``content``.

    The first definition of a name wins.
    """
    ext = _ext(file_path)
    lines = content.split('\n')
    functions: Dict[str, Tuple[int, int]] = {}

    for i, line in enumerate(lines):
        trimmed = line.strip()
        name = None
        end = None

        if ext in JS_TS:
            for pattern in JS_FUNCTION_DEFS:
                match = pattern.match(trimmed)
                if match and match.group(3) not in METHOD_EXCLUDES:
                    name, end = match.group(3), find_block_end(lines, i)
                    break
        elif ext == 'py':
            match = PY_DEF.match(trimmed)
            if match:
                name, end = match.group(2), find_python_block_end(lines, i)
        elif ext == 'go':
            match = GO_FUNC.match(trimmed)
            if match:
                name, end = match.group(1), find_block_end(lines, i)
        elif ext == 'rs':
            match = RUST_FN.match(trimmed)
            if match:
                name, end = match.group(3), find_block_end(lines, i)

        if name and name not in functions:
            functions[name] = (i + 1, end)

    return functions


def find_calls(lines: List[str], start: int, end: int, known: Set[str], ext: str = 'js') -> List[Tuple[str, int]]:
    """Calls between 1-based lines ``start`` and ``end``, as (name, 1-based line) pairs."""
    keywords = CALL_KEYWORDS.get('js' if ext in JS_TS else ext, CALL_KEYWORDS['js'])
    calls = []
    for i in range(start - 1, min(end, len(lines))):
        trimmed = lines[i].strip()
        if trimmed.startswith('//') or trimmed.startswith('#') or trimmed.startswith('*'):
            continue
        for name in CALL_PATTERN.findall(lines[i]):
            if name in keywords:
                continue
            if name in known or name[0] == name[0].lower():
                calls.append((name, i + 1))
    return calls


class _FunctionDef:
    def __init__(self, name: str, file_path: str, lines: List[str], start: int, end: int, offset: int):
        self.name = name
        self.file_path = file_path
        self.lines = lines
        self.start = start
        self.end = end
        self.offset = offset

    def calls(self, known: Set[str]) -> List[Tuple[str, int]]:
        found = find_calls(self.lines, self.start, self.end, known, _ext(self.file_path))
        return [(name, line + self.offset) for name, line in found]


def build_call_graph(store: IndexStore, symbol: str, sources: Optional[Iterable[str]] = None) -> CallGraphResult:
    """
    Find who calls ``symbol`` and what it calls.

    Args:
        store: Index store
        symbol: Function name
        sources: Optional source filter

    Returns:
        CallGraphResult; callees not defined in the index are attributed to ``(external)``
    """
    by_file: Dict[str, Dict[str, _FunctionDef]] = {}
    known: Set[str] = set()

    for chunk in store.get_chunks(sources, with_embeddings=False):
        defs = extract_function_defs(chunk.content, chunk.file_path)
        if not defs:
            continue
        lines = chunk.content.split('\n')
        file_defs = by_file.setdefault(chunk.file_path, {})
        for name, (start, end) in defs.items():
            if name not in file_defs:
                file_defs[name] = _FunctionDef(name, chunk.file_path, lines, start, end, (chunk.start_line or 1) - 1)
            known.add(name)

    target = None
    callers: Dict[Tuple[str, str], CallSite] = {}
    callees: Dict[Tuple[str, str], CallSite] = {}

    for file_path, file_defs in by_file.items():
        for name, definition in file_defs.items():
            if name == symbol:
                continue
            for called, line in definition.calls(known):
                if called == symbol and (file_path, name) not in callers:
                    callers[(file_path, name)] = CallSite(name=name, file_path=file_path, line=line)

    for file_path, file_defs in by_file.items():
        definition = file_defs.get(symbol)
        if definition is None:
            continue
        if target is None:
            target = CallSite(name=symbol, file_path=file_path, line=definition.start + definition.offset)
        for called, line in definition.calls(known):
            if called == symbol:
                continue
            defined_in = next((path for path, defs in by_file.items() if called in defs), '(external)')
            if (defined_in, called) not in callees:
                callees[(defined_in, called)] = CallSite(name=called, file_path=defined_in, line=line)

    return CallGraphResult(target=target, callers=list(callers.values()), callees=list(callees.values()))
