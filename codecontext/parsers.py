"""
Parsers module for code context selection.

This module finds structural boundaries (functions, classes, methods, constants and
blocks) in source files. Dispatch is by file extension through a ParserRegistry that
owns every grammar it loads:

- NativeGrammarParser handles the ECMAScript family, with a pre-pass that blanks out
  static type annotations when the plain grammar rejects the file.
- EmbeddedGrammarParser hosts the tree-sitter grammars of other languages.
- StructuralTextParser reads prose documents (front matter, headers, fenced code).

Every parser returns a ParseResult and never raises.
"""

import os
import re
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import tree_sitter_language_pack

from codecontext.errors import ParseError
from codecontext.models import (
    BLOCK, CLASS, CONSTANT, FUNCTION, METHOD, CodeBoundary, ParseResult,
)

logger = logging.getLogger(__name__)


def get_extension(file_path: str) -> str:
    _, ext = os.path.splitext(file_path.lower())
    return ext.lstrip('.')


def node_text(node, source: bytes) -> str:
    return source[node.start_byte:node.end_byte].decode('utf-8', errors='replace')


def sort_boundaries(boundaries: List[CodeBoundary]) -> List[CodeBoundary]:
    # Containers sort before the units they contain
    return sorted(boundaries, key=lambda b: (b.start_line, -b.end_line))


class GrammarCache:
    """Lazily loaded tree-sitter parsers, owned by one registry."""

    def __init__(self):
        self.parsers = {}
        self.failed = set()

    def get_parser(self, lang_name: str):
        """
        Get the parser for a language, loading it on first use.

        Args:
            lang_name: Language name in tree_sitter_language_pack

        Returns:
            A tree_sitter Parser

        Raises:
            ParseError: if the grammar cannot be loaded
        """
        if lang_name in self.parsers:
            return self.parsers[lang_name]
        if lang_name in self.failed:
            raise ParseError(f"Grammar unavailable: {lang_name}")
        try:
            parser = tree_sitter_language_pack.get_parser(lang_name)
        except Exception as e:
            self.failed.add(lang_name)
            logger.warning("Failed to load tree-sitter language %s: %s", lang_name, e)
            raise ParseError(f"Grammar unavailable: {lang_name}: {e}")
        logger.debug("Loaded tree-sitter grammar: %s", lang_name)
        self.parsers[lang_name] = parser
        return parser

    def close(self):
        self.parsers.clear()
        self.failed.clear()


class BoundaryParser:
    """Common contract: parse(content, file_path) -> ParseResult, never raising."""

    extensions: Tuple[str, ...] = ()

    def parse(self, content: str, file_path: str = "") -> ParseResult:
        try:
            boundaries = self.extract(content, file_path)
        except ParseError as e:
            return ParseResult(success=False, error=e.message)
        except Exception as e:
            logger.debug("Parser %s failed on %s: %s", type(self).__name__, file_path, e)
            return ParseResult(success=False, error=f"{type(e).__name__}: {e}")
        return ParseResult(success=True, boundaries=sort_boundaries(boundaries))

    def extract(self, content: str, file_path: str) -> List[CodeBoundary]:
        raise NotImplementedError


# --- ECMAScript family -------------------------------------------------------


def _blank(text: str) -> str:
    """Replace everything but newlines with spaces so line numbers survive."""
    return re.sub(r'[^\n]', ' ', text)


def _keep_first(match) -> str:
    text = match.group(0)
    return text[0] + _blank(text[1:])


def _keep_braces(match) -> str:
    text = match.group(0)
    return text[0] + _blank(text[1:-1]) + text[-1]


_TYPE_LIST = r'\w+(?:<[^>]*>)?(?:\[\])?(?:\s*\|\s*\w+(?:<[^>]*>)?(?:\[\])?)*'

# (pattern, replacement) applied in order; replacements keep every newline
TYPE_STRIP_RULES: List[Tuple[re.Pattern, Callable]] = [
    (re.compile(r'import\s+type\s+\{[^}]*\}\s+from\s+[\'"][^\'"]*[\'"];?'), None),
    (re.compile(r'import\s+type\s+\w+\s+from\s+[\'"][^\'"]*[\'"];?'), None),
    (re.compile(r',\s*type\s+\w+'), None),
    (re.compile(r'\{\s*type\s+\w+\s*,'), _keep_first),
    (re.compile(r'\{\s*type\s+\w+\s*\}'), _keep_braces),
    (re.compile(r'(?:\bexport\s+)?(?:\bdeclare\s+)?\binterface\s+\w+(?:<[^>]*>)?\s*(?:extends[^{]*)?\{[^}]*\}',
                re.DOTALL), None),
    (re.compile(r'(?:\bexport\s+)?(?:\bdeclare\s+)?\btype\s+\w+(?:<[^>]*>)?\s*=\s*[^;]+;'), None),
    (re.compile(r'\s+as\s+(?:const\b|\w+(?:<[^>]*>)?)'), None),
    (re.compile(r'<[^<>()]*(?:<[^<>]*>[^<>()]*)*>\s*(?=\()'), None),
    (re.compile(r'(?<=\w)\?(?=\s*:)'), None),
    (re.compile(r':\s*' + _TYPE_LIST + r'(?=\s*[,)=])'), None),
    (re.compile(r'\):\s*' + _TYPE_LIST + r'\s*(?=\{|=>)'), _keep_first),
    (re.compile(r'!(?=\.|\[)'), None),
    (re.compile(r'\bdeclare\s+'), None),
    (re.compile(r'\breadonly\s+'), None),
    (re.compile(r'\babstract\s+'), None),
    (re.compile(r'\b(?:public|private|protected)\s+'), None),
    (re.compile(r'\bimplements\s+[\w,\s<>]+(?=\s*\{)'), None),
]


def strip_type_annotations(code: str) -> str:
    """
    Blank out optional static-typing syntax so an ECMAScript grammar can read a
    typed dialect. Offsets of the remaining code and all line numbers are kept.

    Args:
        code: Source text

    Returns:
        The stripped source, same length and same line count
    """
    stripped = code
    for pattern, replacement in TYPE_STRIP_RULES:
        stripped = pattern.sub(replacement or (lambda m: _blank(m.group(0))), stripped)
    return stripped


FUNCTION_VALUE_TYPES = {'arrow_function', 'function_expression', 'function', 'generator_function'}
FUNCTION_DECLARATION_TYPES = {'function_declaration', 'generator_function_declaration'}
CLASS_DECLARATION_TYPES = {'class_declaration', 'abstract_class_declaration'}


class NativeGrammarParser(BoundaryParser):
    """Parser for JavaScript/TypeScript and their module/JSX variants."""

    extensions = ('ts', 'tsx', 'js', 'jsx', 'mjs', 'cjs', 'mts', 'cts')
    grammar = 'javascript'

    def __init__(self, grammars: GrammarCache):
        self.grammars = grammars

    def extract(self, content: str, file_path: str) -> List[CodeBoundary]:
        parser = self.grammars.get_parser(self.grammar)
        source = content.encode('utf-8')
        tree = parser.parse(source)

        if tree.root_node.has_error:
            source = strip_type_annotations(content).encode('utf-8')
            tree = parser.parse(source)
            if tree.root_node.has_error:
                raise ParseError(f"Syntax error in {file_path or 'input'} "
                                 f"near line {self._first_error_line(tree.root_node)}")

        program = tree.root_node
        exported = self._collect_exports(program, source)
        boundaries = []
        for node in program.named_children:
            boundaries.extend(self._statement_boundaries(node, node, source, exported, False))
        return boundaries

    def _first_error_line(self, root) -> int:
        stack = [root]
        while stack:
            node = stack.pop()
            if node.type == 'ERROR' or node.is_missing:
                return node.start_point[0] + 1
            stack.extend(reversed(node.children))
        return 1

    def _collect_exports(self, program, source: bytes) -> set:
        names = set()
        for node in program.named_children:
            if node.type != 'export_statement':
                continue
            if any(child.type == 'default' for child in node.children):
                names.add('default')
            declaration = node.child_by_field_name('declaration')
            if declaration is not None:
                names.update(self._declared_names(declaration, source))
            for clause in node.named_children:
                if clause.type == 'export_clause':
                    for spec in clause.named_children:
                        name = spec.child_by_field_name('name')
                        if name is not None:
                            names.add(node_text(name, source))
        return names

    def _declared_names(self, declaration, source: bytes) -> List[str]:
        if declaration.type in FUNCTION_DECLARATION_TYPES or declaration.type in CLASS_DECLARATION_TYPES:
            name = declaration.child_by_field_name('name')
            return [node_text(name, source)] if name is not None else []
        if declaration.type in ('lexical_declaration', 'variable_declaration'):
            names = []
            for declarator in declaration.named_children:
                if declarator.type == 'variable_declarator':
                    name = declarator.child_by_field_name('name')
                    if name is not None and name.type == 'identifier':
                        names.append(node_text(name, source))
            return names
        return []

    def _line_range(self, node) -> Tuple[int, int]:
        return node.start_point[0] + 1, node.end_point[0] + 1

    def _statement_boundaries(self, node, range_node, source: bytes, exported: set,
                              force_export: bool) -> List[CodeBoundary]:
        start, end = self._line_range(range_node)

        if node.type in FUNCTION_DECLARATION_TYPES:
            name_node = node.child_by_field_name('name')
            name = node_text(name_node, source) if name_node is not None else 'anonymous'
            return [CodeBoundary(FUNCTION, name, start, end, force_export or name in exported)]

        if node.type in CLASS_DECLARATION_TYPES:
            return self._class_boundaries(node, range_node, source, exported, force_export)

        if node.type == 'lexical_declaration':
            if not node.children or node_text(node.children[0], source) != 'const':
                return []
            boundaries = []
            for declarator in node.named_children:
                if declarator.type != 'variable_declarator':
                    continue
                name_node = declarator.child_by_field_name('name')
                if name_node is None or name_node.type != 'identifier':
                    continue
                name = node_text(name_node, source)
                value = declarator.child_by_field_name('value')
                kind = FUNCTION if value is not None and value.type in FUNCTION_VALUE_TYPES else CONSTANT
                boundaries.append(CodeBoundary(kind, name, start, end, force_export or name in exported))
            return boundaries

        if node.type == 'export_statement':
            is_default = any(child.type == 'default' for child in node.children)
            declaration = node.child_by_field_name('declaration')
            if declaration is not None:
                return self._statement_boundaries(declaration, node, source, exported, True)
            if is_default:
                return [self._default_export(node, source)]
        return []

    def _default_export(self, node, source: bytes) -> CodeBoundary:
        start, end = self._line_range(node)
        value = node.child_by_field_name('value')
        kind, name = BLOCK, 'default'
        if value is not None:
            if value.type in FUNCTION_VALUE_TYPES:
                kind = FUNCTION
            elif value.type == 'class':
                kind = CLASS
            name_node = value.child_by_field_name('name')
            if name_node is not None:
                name = node_text(name_node, source)
        return CodeBoundary(kind, name, start, end, True)

    def _class_boundaries(self, node, range_node, source: bytes, exported: set,
                          force_export: bool) -> List[CodeBoundary]:
        start, end = self._line_range(range_node)
        name_node = node.child_by_field_name('name')
        class_name = node_text(name_node, source) if name_node is not None else 'AnonymousClass'
        boundaries = [CodeBoundary(CLASS, class_name, start, end, force_export or class_name in exported)]

        body = node.child_by_field_name('body')
        if body is None:
            return boundaries
        for member in body.named_children:
            if member.type != 'method_definition':
                continue
            method_name_node = member.child_by_field_name('name')
            method_name = node_text(method_name_node, source) if method_name_node is not None else 'anonymous'
            m_start, m_end = self._line_range(member)
            boundaries.append(CodeBoundary(METHOD, f"{class_name}.{method_name}", m_start, m_end, False))
        return boundaries


# --- Embedded grammars -------------------------------------------------------


def _has_modifier(node, source: bytes, word: str) -> bool:
    for child in node.children:
        if child.type in ('modifiers', 'modifier', 'visibility_modifier'):
            if word in node_text(child, source):
                return True
    return False


def _exported_always(node, name: str, source: bytes) -> bool:
    return True


def _exported_capitalized(node, name: str, source: bytes) -> bool:
    return bool(name) and name[0].isupper()


def _exported_pub(node, name: str, source: bytes) -> bool:
    return _has_modifier(node, source, 'pub')


def _exported_public(node, name: str, source: bytes) -> bool:
    return _has_modifier(node, source, 'public')


def _exported_php(node, name: str, source: bytes) -> bool:
    return node.type == 'function_definition' or _has_modifier(node, source, 'public')


def _default_name(node, source: bytes) -> Optional[str]:
    name = node.child_by_field_name('name')
    return node_text(name, source) if name is not None else None


def _go_name(node, source: bytes) -> Optional[str]:
    if node.type == 'type_declaration':
        for spec in node.named_children:
            if spec.type in ('type_spec', 'type_alias'):
                return _default_name(spec, source)
        return None
    return _default_name(node, source)


def _rust_name(node, source: bytes) -> Optional[str]:
    if node.type == 'impl_item':
        type_node = node.child_by_field_name('type')
        return node_text(type_node, source) if type_node is not None else None
    return _default_name(node, source)


@dataclass(frozen=True)
class LanguageConfig:
    """How to read boundaries out of one tree-sitter grammar."""
    grammar: str
    function_types: Tuple[str, ...]
    class_types: Tuple[str, ...]
    is_exported: Callable = _exported_always
    get_name: Callable = _default_name


LANGUAGE_CONFIGS: Dict[str, LanguageConfig] = {
    'python': LanguageConfig(
        grammar='python',
        function_types=('function_definition',),
        class_types=('class_definition',),
    ),
    'go': LanguageConfig(
        grammar='go',
        function_types=('function_declaration', 'method_declaration'),
        class_types=('type_declaration',),
        is_exported=_exported_capitalized,
        get_name=_go_name,
    ),
    'rust': LanguageConfig(
        grammar='rust',
        function_types=('function_item',),
        class_types=('struct_item', 'enum_item', 'trait_item', 'impl_item'),
        is_exported=_exported_pub,
        get_name=_rust_name,
    ),
    'java': LanguageConfig(
        grammar='java',
        function_types=('method_declaration', 'constructor_declaration'),
        class_types=('class_declaration', 'interface_declaration', 'enum_declaration', 'record_declaration'),
        is_exported=_exported_public,
    ),
    'csharp': LanguageConfig(
        grammar='csharp',
        function_types=('method_declaration', 'constructor_declaration', 'local_function_statement'),
        class_types=('class_declaration', 'interface_declaration', 'struct_declaration', 'enum_declaration',
                     'record_declaration'),
        is_exported=_exported_public,
    ),
    'php': LanguageConfig(
        grammar='php',
        function_types=('function_definition', 'method_declaration'),
        class_types=('class_declaration', 'interface_declaration', 'trait_declaration', 'enum_declaration'),
        is_exported=_exported_php,
    ),
}

EXTENSION_TO_LANGUAGE = {
    'py': 'python',
    'pyw': 'python',
    'go': 'go',
    'rs': 'rust',
    'java': 'java',
    'cs': 'csharp',
    'php': 'php',
}


class EmbeddedGrammarParser(BoundaryParser):
    """Parser for languages hosted by tree-sitter-language-pack grammars."""

    extensions = tuple(EXTENSION_TO_LANGUAGE)

    def __init__(self, grammars: GrammarCache):
        self.grammars = grammars

    def extract(self, content: str, file_path: str) -> List[CodeBoundary]:
        lang_name = EXTENSION_TO_LANGUAGE.get(get_extension(file_path))
        if lang_name is None:
            raise ParseError(f"No grammar for {file_path}")
        config = LANGUAGE_CONFIGS[lang_name]
        parser = self.grammars.get_parser(config.grammar)
        source = content.encode('utf-8')
        tree = parser.parse(source)

        boundaries = []
        self._visit(tree.root_node, config, source, None, boundaries)
        return boundaries

    def _visit(self, node, config: LanguageConfig, source: bytes, parent_class: Optional[str],
               boundaries: List[CodeBoundary], range_node=None):
        range_node = range_node or node

        if node.type == 'decorated_definition':
            definition = node.child_by_field_name('definition')
            if definition is not None:
                self._visit(definition, config, source, parent_class, boundaries, range_node=node)
            return

        start = range_node.start_point[0] + 1
        end = range_node.end_point[0] + 1

        if node.type in config.function_types:
            name = config.get_name(node, source)
            if name:
                exported = config.is_exported(node, name, source)
                if parent_class is not None:
                    boundaries.append(CodeBoundary(METHOD, f"{parent_class}.{name}", start, end, exported))
                else:
                    boundaries.append(CodeBoundary(FUNCTION, name, start, end, exported))
                return

        if node.type in config.class_types:
            name = config.get_name(node, source)
            if name:
                boundaries.append(CodeBoundary(CLASS, name, start, end, config.is_exported(node, name, source)))
                for child in node.children:
                    self._visit(child, config, source, name, boundaries)
                return

        for child in node.children:
            self._visit(child, config, source, parent_class, boundaries)


# --- Prose documents ---------------------------------------------------------


FENCE_PATTERN = re.compile(r'^```(\w*)')
HEADER_PATTERN = re.compile(r'^(#{1,6})\s+(.+)$')


class StructuralTextParser(BoundaryParser):
    """
    Non-AST parser for prose-with-code documents.

    Front matter becomes a ``frontmatter`` constant, fenced code blocks become
    ``codeblock:<lang>`` functions and headers become sections (classes) running
    until the next header. Level-1 sections count as exported.
    """

    extensions = ('md', 'mdx', 'markdown', 'qmd')

    def extract(self, content: str, file_path: str) -> List[CodeBoundary]:
        lines = content.split('\n')
        boundaries = []

        in_front_matter = bool(lines) and lines[0].strip() == '---'
        in_code_block = False
        block_start = 0
        block_lang = ''
        section = None  # (title, level, start_line)

        for i, line in enumerate(lines):
            line_num = i + 1

            if in_front_matter:
                if line_num > 1 and line.strip() == '---':
                    boundaries.append(CodeBoundary(CONSTANT, 'frontmatter', 1, line_num, False))
                    in_front_matter = False
                continue

            fence = FENCE_PATTERN.match(line)
            if fence:
                if not in_code_block:
                    in_code_block = True
                    block_start = line_num
                    block_lang = fence.group(1) or 'text'
                else:
                    boundaries.append(CodeBoundary(FUNCTION, f"codeblock:{block_lang}", block_start, line_num, False))
                    in_code_block = False
                continue

            if in_code_block:
                continue

            header = HEADER_PATTERN.match(line)
            if header:
                if section is not None:
                    title, level, start = section
                    boundaries.append(CodeBoundary(CLASS, title, start, line_num - 1, level == 1))
                section = (header.group(2).strip(), len(header.group(1)), line_num)

        if section is not None:
            title, level, start = section
            boundaries.append(CodeBoundary(CLASS, title, start, len(lines), level == 1))
        if in_code_block:
            boundaries.append(CodeBoundary(FUNCTION, f"codeblock:{block_lang}", block_start, len(lines), False))

        return boundaries


# --- Registry ----------------------------------------------------------------


class ParserRegistry:
    """
    Extension -> parser table with explicit ownership of loaded grammars.

    Use as a context manager, or call close() when done.
    """

    def __init__(self):
        self.grammars = GrammarCache()
        self.parsers: Dict[str, BoundaryParser] = {}
        for parser in (NativeGrammarParser(self.grammars),
                       EmbeddedGrammarParser(self.grammars),
                       StructuralTextParser()):
            for ext in parser.extensions:
                self.parsers[ext] = parser

    def register(self, extension: str, parser: BoundaryParser):
        self.parsers[extension.lower().lstrip('.')] = parser

    def get_parser(self, file_path: str) -> Optional[BoundaryParser]:
        return self.parsers.get(get_extension(file_path))

    def can_parse(self, file_path: str) -> bool:
        return self.get_parser(file_path) is not None

    def supported_extensions(self) -> List[str]:
        return sorted(self.parsers)

    def parse(self, content: str, file_path: str) -> ParseResult:
        """
        Extract structural boundaries from a file.

        Args:
            content: File content
            file_path: Path used for extension dispatch

        Returns:
            ParseResult; on any failure ``success`` is False and ``boundaries`` empty
        """
        parser = self.get_parser(file_path)
        if parser is None:
            return ParseResult(success=False, error=f"No parser available for file type: {file_path}")
        return parser.parse(content, file_path)

    def close(self):
        self.grammars.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
