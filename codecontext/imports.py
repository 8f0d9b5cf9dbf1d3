"""
Imports module for code context selection.

This module parses JavaScript/TypeScript import statements with line-level
regular expressions, resolves relative specifiers to project files, and builds
the file-level import graph used to boost and expand selections.
"""

import os
import re
import posixpath
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from codecontext.models import ImportGraph

JS_TS_EXTENSIONS = ('.ts', '.tsx', '.js', '.jsx', '.mjs', '.cjs')

RESOLVE_SUFFIXES = ('', '.ts', '.tsx', '.js', '.jsx', '.mjs',
                    '/index.ts', '/index.tsx', '/index.js', '/index.jsx')

NAMED_IMPORT = re.compile(r'''^import\s+(type\s+)?{([^}]+)}\s+from\s+['"]([^'"]+)['"]''')
MIXED_IMPORT = re.compile(r'''^import\s+(\w+)\s*,\s*{([^}]+)}\s+from\s+['"]([^'"]+)['"]''')
NAMESPACE_IMPORT = re.compile(r'''^import\s+\*\s+as\s+(\w+)\s+from\s+['"]([^'"]+)['"]''')
DEFAULT_IMPORT = re.compile(r'''^import\s+(\w+)\s+from\s+['"]([^'"]+)['"]''')
SIDE_EFFECT_IMPORT = re.compile(r'''^import\s+['"]([^'"]+)['"]''')
EXPORT_FROM = re.compile(r'''^export\s+(?:type\s+)?(?:{[^}]*}|\*(?:\s+as\s+\w+)?)\s+from\s+['"]([^'"]+)['"]''')
REQUIRE_CALL = re.compile(r'''require\s*\(\s*['"]([^'"]+)['"]\s*\)''')
DYNAMIC_IMPORT = re.compile(r'''import\s*\(\s*['"]([^'"]+)['"]\s*\)''')
ANY_SPECIFIER = re.compile(r'''(?:import|require|from)\s*\(?['"]([^'"]+)['"]\)?''')


@dataclass
class ParsedImport:
    """
    One import statement.

    Attributes:
        specifier: Module specifier as written (e.g. './utils', 'lodash')
        type: 'relative', 'absolute' or 'package'
        line: 1-based line of the statement
        named_imports: Imported names, without ``as`` aliases
        default_import: Default or namespace binding
        is_type_only: Whether this is an ``import type``/``export type``
    """
    specifier: str
    type: str
    line: int
    named_imports: List[str] = field(default_factory=list)
    default_import: Optional[str] = None
    is_type_only: bool = False


def _split_names(names: str) -> List[str]:
    return [n for n in (re.split(r'\s+as\s+', part.strip())[0].strip() for part in names.split(',')) if n]


def classify_import_type(specifier: str) -> str:
    if specifier.startswith('.'):
        return 'relative'
    if specifier.startswith('/') or re.match(r'^[a-zA-Z]:', specifier):
        return 'absolute'
    return 'package'


def _parse_line(line: str, line_num: int) -> Optional[ParsedImport]:
    match = NAMED_IMPORT.match(line)
    if match:
        return ParsedImport(match.group(3), classify_import_type(match.group(3)), line_num,
                            named_imports=_split_names(match.group(2)), is_type_only=bool(match.group(1)))

    match = MIXED_IMPORT.match(line)
    if match:
        return ParsedImport(match.group(3), classify_import_type(match.group(3)), line_num,
                            named_imports=_split_names(match.group(2)), default_import=match.group(1))

    match = NAMESPACE_IMPORT.match(line) or DEFAULT_IMPORT.match(line)
    if match:
        return ParsedImport(match.group(2), classify_import_type(match.group(2)), line_num,
                            default_import=match.group(1))

    match = SIDE_EFFECT_IMPORT.match(line)
    if match:
        return ParsedImport(match.group(1), classify_import_type(match.group(1)), line_num)

    match = EXPORT_FROM.match(line)
    if match:
        return ParsedImport(match.group(1), classify_import_type(match.group(1)), line_num,
                            is_type_only='export type' in line)

    match = REQUIRE_CALL.search(line) or DYNAMIC_IMPORT.search(line)
    if match:
        return ParsedImport(match.group(1), classify_import_type(match.group(1)), line_num)

    return None


def parse_imports(content: str) -> List[ParsedImport]:
    """
    Parse import statements line by line.

    Handles named, default, mixed, namespace, side-effect and type-only imports,
    ``export ... from`` re-exports, ``require()`` and dynamic ``import()``.
    Lines starting with ``//`` or ``*`` are skipped.

    Args:
        content: Source text

    Returns:
        Parsed imports in line order
    """
    imports = []
    for index, line in enumerate(content.split('\n')):
        trimmed = line.strip()
        if trimmed.startswith('//') or trimmed.startswith('*'):
            continue
        parsed = _parse_line(line, index + 1)
        if parsed is not None:
            imports.append(parsed)
    return imports


def extract_import_specifiers(content: str) -> List[str]:
    """Unique specifiers in order of appearance, without full parsing."""
    specifiers = []
    for spec in ANY_SPECIFIER.findall(content):
        if spec not in specifiers:
            specifiers.append(spec)
    return specifiers


def is_js_ts_file(file_path: str) -> bool:
    return os.path.splitext(file_path)[1].lower() in JS_TS_EXTENSIONS


def resolve_import(specifier: str, from_file: str, base_path: str,
                   known_files: Optional[Set[str]] = None) -> Optional[str]:
    """
    Resolve a relative specifier to a project-relative file path.

    Candidates are tried in order: the bare path, the JS/TS extensions, then
    index files inside a directory of that name.

    Args:
        specifier: Import specifier, e.g. './utils'
        from_file: Project-relative path of the importing file
        base_path: Project directory, used when ``known_files`` does not match
        known_files: Project-relative paths known to exist (e.g. indexed files)

    Returns:
        The resolved path, or None for non-relative or unresolvable specifiers
    """
    if not specifier.startswith('.'):
        return None

    resolved_base = posixpath.normpath(posixpath.join(posixpath.dirname(from_file), specifier))
    if resolved_base.startswith('../'):
        return None

    for suffix in RESOLVE_SUFFIXES:
        candidate = resolved_base + suffix
        if known_files is not None and candidate in known_files:
            return candidate

    for suffix in RESOLVE_SUFFIXES:
        candidate = resolved_base + suffix
        if os.path.isfile(os.path.join(base_path, candidate)):
            return candidate

    return None


def parse_imports_with_resolution(content: str, file_path: str, base_path: str,
                                  known_files: Optional[Set[str]] = None) -> Dict:
    """
    Parse imports and resolve the relative ones.

    Returns:
        Dict with ``imports`` (ParsedImport list) and ``related_files`` (unique resolved paths)
    """
    imports = parse_imports(content)
    related_files = []
    for imp in imports:
        if imp.type != 'relative':
            continue
        resolved = resolve_import(imp.specifier, file_path, base_path, known_files)
        if resolved and resolved not in related_files:
            related_files.append(resolved)
    return {"imports": imports, "related_files": related_files}


def build_dependency_graph(files: Dict[str, str], base_path: str) -> Dict[str, List[str]]:
    """
    Map every file to the project files it imports.

    Non-JS/TS files map to an empty list.

    Args:
        files: File path -> content
        base_path: Project directory

    Returns:
        File path -> resolved imported paths
    """
    known_files = set(files)
    graph = {}
    for path, content in files.items():
        if not is_js_ts_file(path):
            graph[path] = []
            continue
        graph[path] = parse_imports_with_resolution(content, path, base_path, known_files)["related_files"]
    return graph


def build_import_graph(dependency_map: Dict[str, List[str]]) -> ImportGraph:
    """Build forward and reverse adjacency from a dependency map."""
    graph = ImportGraph()
    for path, deps in dependency_map.items():
        graph.imports[path] = list(deps)
        graph.imported_by.setdefault(path, [])
        for dep in deps:
            importers = graph.imported_by.setdefault(dep, [])
            if path not in importers:
                importers.append(path)
    return graph


def find_importers(target_file: str, dependency_map: Dict[str, List[str]]) -> List[str]:
    return [path for path, deps in dependency_map.items() if target_file in deps]


def get_related_imports(selected_files: Iterable[str], graph: ImportGraph, max_depth: int = 1) -> List[str]:
    """
    Files imported by the selection, breadth-first up to ``max_depth`` hops.

    Already-selected files are never returned, and each file appears once.

    Args:
        selected_files: Files already in the selection
        graph: Import graph
        max_depth: Number of import hops to follow

    Returns:
        Related files in discovery order
    """
    selected = list(dict.fromkeys(selected_files))
    seen = set(selected)
    related = []
    queue = deque((path, 0) for path in selected)

    while queue:
        path, depth = queue.popleft()
        if depth >= max_depth:
            continue
        for dep in graph.imports.get(path, []):
            if dep in seen:
                continue
            seen.add(dep)
            related.append(dep)
            queue.append((dep, depth + 1))

    return related
