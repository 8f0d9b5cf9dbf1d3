"""
Formatter module for code context selection.

This module renders packed chunks as markdown, XML, plain text or JSON using
jinja2 templates, and implements the signature-only "map" mode.
"""

import json
import os
import re
from typing import Dict, List, Sequence, Tuple

from jinja2 import Template

from codecontext.models import BudgetResult, Chunk, RankedChunk
from codecontext.tokens import count_tokens

FORMATS = ('markdown', 'xml', 'json', 'plain')
MODES = ('full', 'map')

LANGUAGES = {
    'ts': 'typescript', 'tsx': 'tsx', 'js': 'javascript', 'jsx': 'jsx',
    'py': 'python', 'rb': 'ruby', 'go': 'go', 'rs': 'rust', 'java': 'java',
    'kt': 'kotlin', 'cs': 'csharp', 'cpp': 'cpp', 'c': 'c', 'h': 'c', 'hpp': 'cpp',
    'md': 'markdown', 'json': 'json', 'yaml': 'yaml', 'yml': 'yaml', 'toml': 'toml',
    'sql': 'sql', 'sh': 'bash', 'bash': 'bash', 'zsh': 'bash',
}

MARKDOWN_CHUNK = Template(
    "## {{ chunk.file_path }} (lines {{ chunk.start_line }}-{{ chunk.end_line }})\n"
    "```{{ lang }}\n"
    "{{ chunk.content }}\n"
    "```"
)

PLAIN_CHUNK = Template(
    "// {{ chunk.file_path }} (lines {{ chunk.start_line }}-{{ chunk.end_line }})\n"
    "{{ chunk.content }}"
)

STATS_FOOTER = Template("---\n{{ tokens }} tokens | {{ chunks }} {{ unit }} | {{ files }} files")

EXPLANATION = Template(
    "  {{ item.file_path }}:{{ item.chunk.start_line }}\n"
    "    similarity:     {{ '%.1f' | format(b.similarity * 100) }}%\n"
    "    path_match:     {{ '%.1f' | format(b.path_match * 100) }}%\n"
    "    content_match:  {{ '%.1f' | format(b.content_match * 100) }}%\n"
    "    symbol_match:   {{ '%.1f' | format(b.symbol_match * 100) }}%\n"
    "    file_type:      {{ '%.1f' | format(b.file_type_boost * 100) }}%\n"
    "    import_boost:   {{ '%.1f' | format(b.import_boost * 100) }}%\n"
    "    -> score:       {{ '%.1f' | format(item.score * 100) }}%"
)

XML_DOCUMENT = Template(
    "<context>\n"
    "  <query>{{ query | e }}</query>\n"
    "  <files>\n"
    "{% for group in groups %}"
    "    <file path=\"{{ group.path | e }}\">\n"
    "{% for chunk in group.chunks %}"
    "      <chunk lines=\"{{ chunk.start_line }}-{{ chunk.end_line }}\" tokens=\"{{ chunk.tokens }}\">\n"
    "<![CDATA[{{ chunk.cdata }}]]>\n"
    "      </chunk>\n"
    "{% endfor %}"
    "    </file>\n"
    "{% endfor %}"
    "  </files>\n"
    "  <stats tokens=\"{{ tokens }}\" chunks=\"{{ chunk_count }}\" files=\"{{ file_count }}\" />\n"
    "</context>"
)

REPO_MAP_FILE = Template(
    "{{ path }}\n"
    "{% for line in lines %}│ {{ line }}\n{% endfor %}"
)


def get_language(file_path: str) -> str:
    ext = file_path.rsplit('.', 1)[-1].lower() if '.' in file_path else ''
    return LANGUAGES.get(ext, '')


def group_by_file(chunks: Sequence[RankedChunk]) -> List[Tuple[str, List[RankedChunk]]]:
    """Group chunks by file in first-seen order, sorting each file's chunks by line."""
    groups: Dict[str, List[RankedChunk]] = {}
    for item in chunks:
        groups.setdefault(item.file_path, []).append(item)
    return [(path, sorted(items, key=lambda r: r.chunk.start_line)) for path, items in groups.items()]


def _cdata(content: str) -> str:
    # A literal "]]>" would close the section early
    return content.replace(']]>', ']]]]><![CDATA[>')


def build_data(query: str, groups, total_tokens: int, considered: int, context: str) -> Dict:
    chunk_infos = [
        {
            "file": item.file_path,
            "lines": [item.chunk.start_line, item.chunk.end_line],
            "tokens": item.chunk.tokens,
            "score": round(item.score, 3),
        }
        for _, items in groups for item in items
    ]
    return {
        "query": query,
        "context": context,
        "chunks": chunk_infos,
        "stats": {
            "totalTokens": total_tokens,
            "chunksConsidered": considered,
            "chunksIncluded": len(chunk_infos),
            "filesIncluded": len(groups),
        },
    }


def _footer(total_tokens: int, chunk_count: int, file_count: int, unit: str = "chunks") -> str:
    return STATS_FOOTER.render(tokens=f"{total_tokens:,}", chunks=chunk_count, unit=unit, files=file_count)


def format_markdown(query: str, result: BudgetResult, considered: int, explain: bool = False) -> Tuple[str, Dict]:
    groups = group_by_file(result.chunks)
    parts = [MARKDOWN_CHUNK.render(chunk=item.chunk, lang=get_language(path))
             for path, items in groups for item in items]
    context = '\n\n'.join(parts)
    chunk_count = sum(len(items) for _, items in groups)
    text = context + '\n\n' + _footer(result.total_tokens, chunk_count, len(groups))
    if explain:
        explanations = [EXPLANATION.render(item=item, b=item.breakdown) for item in result.chunks]
        text += '\n\n## Scoring Details\n\n' + '\n\n'.join(explanations)
    return text, build_data(query, groups, result.total_tokens, considered, context)


def format_plain(query: str, result: BudgetResult, considered: int) -> Tuple[str, Dict]:
    groups = group_by_file(result.chunks)
    text = '\n\n'.join(PLAIN_CHUNK.render(chunk=item.chunk) for _, items in groups for item in items)
    return text, build_data(query, groups, result.total_tokens, considered, text)


def format_xml(query: str, result: BudgetResult, considered: int) -> Tuple[str, Dict]:
    groups = group_by_file(result.chunks)
    xml_groups = [
        {
            "path": path,
            "chunks": [
                {
                    "start_line": item.chunk.start_line,
                    "end_line": item.chunk.end_line,
                    "tokens": item.chunk.tokens,
                    "cdata": _cdata(item.chunk.content),
                }
                for item in items
            ],
        }
        for path, items in groups
    ]
    text = XML_DOCUMENT.render(
        query=query,
        groups=xml_groups,
        tokens=result.total_tokens,
        chunk_count=sum(len(items) for _, items in groups),
        file_count=len(groups),
    )
    return text, build_data(query, groups, result.total_tokens, considered, text)


def format_json(query: str, result: BudgetResult, considered: int) -> Tuple[str, Dict]:
    _, data = format_markdown(query, result, considered)
    return json.dumps(data, indent=2), data


def format_repo_map(query: str, result: BudgetResult, considered: int) -> Tuple[str, Dict]:
    groups = group_by_file(result.chunks)
    parts = []
    for path, items in groups:
        lines = [line for item in items for line in item.chunk.content.split('\n') if line.strip()]
        parts.append(REPO_MAP_FILE.render(path=path, lines=lines))
    context = '\n'.join(parts)
    chunk_count = sum(len(items) for _, items in groups)
    text = context + '\n' + _footer(result.total_tokens, chunk_count, len(groups), unit="symbols")
    return text, build_data(query, groups, result.total_tokens, considered, context)


# Signature extraction for map mode

TS_CLASS = re.compile(r'^(export\s+)?(abstract\s+)?class\s+\w+')
TS_FUNCTION = re.compile(r'^(export\s+)?(async\s+)?function\s+\w+')
TS_BINDING = re.compile(r'^(export\s+)?(const|let|var)\s+\w+\s*[=:]')
PY_CLASS = re.compile(r'^class\s+\w+')
PY_DEF = re.compile(r'^(async\s+)?def\s+\w+')
GO_FUNC = re.compile(r'^func\s+')
RUST_FN = re.compile(r'^(pub\s+)?(async\s+)?fn\s+')
TS_TYPE = re.compile(r'^(export\s+)?(interface|type)\s+\w+')
TS_METHOD = re.compile(r'^(public|private|protected|static|async|get|set)?\s*(async\s+)?\w+\s*\(')


def _function_signature(line: str) -> str:
    brace = line.find('{')
    return line[:brace].strip() if brace > 0 else line


def _arrow_signature(first_line: str, lines: List[str]) -> str:
    for line in [first_line] + lines[:3]:
        idx = line.find('=>')
        if idx > 0:
            return line[:idx + 2].strip() + ' ...'
    return first_line


def _is_comment(trimmed: str) -> bool:
    return trimmed.startswith('//') or trimmed.startswith('/*') or trimmed.startswith('*')


def extract_signatures(content: str, file_path: str) -> str:
    """
    Reduce chunk content to its declarations.

    Markdown keeps its headers; code keeps class, function, interface and type
    declarations, with methods indented under their class.

    Args:
        content: Chunk content
        file_path: Path used to detect markdown

    Returns:
        Signature lines, or the first meaningful line when none are found
    """
    lines = content.split('\n')
    ext = os.path.splitext(file_path)[1].lower()

    if ext in ('.md', '.mdx', '.markdown'):
        headers = [line for line in lines if line.strip().startswith('#')]
        if headers:
            return '\n'.join(headers)
        first = next((line for line in lines if line.strip()), None)
        return first[:100] if first else '(markdown content)'

    signatures = []
    in_class = False
    class_indent = 0

    for i, line in enumerate(lines):
        trimmed = line.strip()
        indent = len(line) - len(line.lstrip())

        if not trimmed or _is_comment(trimmed) or trimmed.startswith('#'):
            continue

        if TS_CLASS.match(trimmed):
            signatures.append(re.sub(r'\s*[{:]$', '', trimmed))
            in_class, class_indent = True, indent
        elif TS_FUNCTION.match(trimmed):
            signatures.append(_function_signature(trimmed))
        elif TS_BINDING.match(trimmed):
            signatures.append(_arrow_signature(trimmed, lines[i + 1:]))
        elif PY_CLASS.match(trimmed):
            signatures.append(re.sub(r':$', '', trimmed))
            in_class, class_indent = True, indent
        elif PY_DEF.match(trimmed):
            signature = re.sub(r':$', '', trimmed)
            if in_class and indent > class_indent:
                signatures.append('  ' + signature)
            else:
                signatures.append(signature)
                in_class = False
        elif GO_FUNC.match(trimmed) or RUST_FN.match(trimmed):
            signatures.append(re.sub(r'\s*\{$', '', trimmed))
        elif TS_TYPE.match(trimmed):
            signatures.append(re.sub(r'\s*[{=]$', '', trimmed))
        elif in_class and indent > class_indent and TS_METHOD.match(trimmed):
            signatures.append('  ' + _function_signature(trimmed))

    if signatures:
        return '\n'.join(signatures)

    for line in lines:
        trimmed = line.strip()
        if trimmed and not _is_comment(trimmed):
            return trimmed[:100] + '...' if len(trimmed) > 100 else trimmed

    return '(content)'


def to_signatures(result: BudgetResult) -> BudgetResult:
    """Replace chunk content with signatures, never counting more tokens than the packed chunk."""
    chunks = []
    for item in result.chunks:
        c = item.chunk
        signature = extract_signatures(c.content, c.file_path)
        chunk = Chunk(id=c.id, source_id=c.source_id, file_path=c.file_path, content=signature,
                      start_line=c.start_line, end_line=c.end_line, tokens=min(count_tokens(signature), c.tokens),
                      kind=c.kind, unit_name=c.unit_name, exported=c.exported, created_at=c.created_at)
        chunks.append(RankedChunk(chunk=chunk, score=item.score, breakdown=item.breakdown))
    return BudgetResult(chunks=chunks, total_tokens=sum(r.chunk.tokens for r in chunks), excluded=result.excluded)


def format_output(format: str, query: str, result: BudgetResult, considered: int,
                  mode: str = 'full', explain: bool = False) -> Tuple[str, Dict]:
    """
    Render a packed selection.

    Args:
        format: markdown, xml, json or plain
        query: The query, echoed in the output
        result: Packed (and merged) chunks
        considered: Number of candidates that were ranked
        mode: ``full`` or ``map`` (signatures only)
        explain: Append the score breakdown (markdown only)

    Returns:
        Tuple of (rendered text, structured data)
    """
    if mode == 'map':
        result = to_signatures(result)

    if format == 'xml':
        return format_xml(query, result, considered)
    if format == 'json':
        return format_json(query, result, considered)
    if format == 'plain':
        return format_plain(query, result, considered)
    if mode == 'map':
        return format_repo_map(query, result, considered)
    return format_markdown(query, result, considered, explain)
