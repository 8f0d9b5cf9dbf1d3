"""
Tests for the formatter module.
"""

import json
import unittest

from codecontext.formatter import extract_signatures, format_output, get_language, to_signatures
from codecontext.models import BudgetResult, Chunk, RankedChunk, ScoreBreakdown
from codecontext.tokens import count_tokens

TS_CLASS = """export class AuthService {
  constructor(private store: Store) {}

  async login(user: string): Promise<boolean> {
    return this.store.check(user);
  }
}
export const handler = async (req) => {
  return ok();
};"""

PY_CLASS = """class Session:
    def open(self):
        pass

def helper():
    return 1"""


def ranked(file_path, start, end, content, tokens, score=0.9):
    chunk = Chunk(id=f"chunk_{file_path}_{start}", source_id="src", file_path=file_path, content=content,
                  start_line=start, end_line=end, tokens=tokens)
    breakdown = ScoreBreakdown(similarity=0.9, path_match=0.5, content_match=0.25, symbol_match=1.0,
                               file_type_boost=1.0, import_boost=0.0)
    return RankedChunk(chunk=chunk, score=score, breakdown=breakdown)


class TestFormatOutput(unittest.TestCase):
    """Tests for format_output."""

    def setUp(self):
        """Set up test fixtures."""
        self.result = BudgetResult(chunks=[
            ranked("src/a.ts", 10, 12, "const b = 2;", 600, score=0.8),
            ranked("src/b.py", 1, 2, "def f():\n    pass", 34, score=0.7),
            ranked("src/a.ts", 1, 3, "const a = 1;", 600, score=0.95),
        ], total_tokens=1234, excluded=4)

    def test_markdown(self):
        """Test markdown blocks grouped by file with a stats footer."""
        text, data = format_output("markdown", "auth flow", self.result, considered=7)

        self.assertTrue(text.startswith("## src/a.ts (lines 1-3)\n```typescript\nconst a = 1;\n```"))
        self.assertLess(text.index("(lines 10-12)"), text.index("src/b.py"))
        self.assertIn("```python\ndef f():\n    pass\n```", text)
        self.assertTrue(text.endswith("---\n1,234 tokens | 3 chunks | 2 files"))
        self.assertNotIn("Scoring Details", text)

        self.assertEqual(data["query"], "auth flow")
        self.assertEqual(data["stats"], {"totalTokens": 1234, "chunksConsidered": 7, "chunksIncluded": 3,
                                         "filesIncluded": 2})
        self.assertEqual(data["chunks"][0], {"file": "src/a.ts", "lines": [1, 3], "tokens": 600, "score": 0.95})
        self.assertNotIn("---", data["context"])

    def test_markdown_explain(self):
        text, _ = format_output("markdown", "auth flow", self.result, considered=7, explain=True)
        self.assertIn("## Scoring Details", text)
        self.assertIn("similarity:     90.0%", text)
        self.assertIn("content_match:  25.0%", text)
        self.assertIn("-> score:       95.0%", text)

    def test_plain(self):
        text, data = format_output("plain", "auth flow", self.result, considered=7)
        self.assertTrue(text.startswith("// src/a.ts (lines 1-3)\nconst a = 1;"))
        self.assertNotIn("```", text)
        self.assertEqual(data["context"], text)

    def test_xml(self):
        """Test XML escaping of attributes and CDATA content."""
        result = BudgetResult(chunks=[ranked("src/a&b.ts", 1, 1, "x = y ]]> z", 5)], total_tokens=5)

        text, _ = format_output("xml", "a < b", result, considered=1)

        self.assertIn("<query>a &lt; b</query>", text)
        self.assertIn('<file path="src/a&amp;b.ts">', text)
        self.assertIn('<chunk lines="1-1" tokens="5">', text)
        self.assertIn("<![CDATA[x = y ]]]]><![CDATA[> z]]>", text)
        self.assertIn('<stats tokens="5" chunks="1" files="1" />', text)

    def test_json(self):
        text, data = format_output("json", "auth flow", self.result, considered=7)
        self.assertEqual(json.loads(text), data)
        self.assertIn("```typescript", data["context"])

    def test_map_mode(self):
        """Test that map mode renders signatures with a symbols footer."""
        result = BudgetResult(chunks=[ranked("src/auth.ts", 1, 10, TS_CLASS, 80)], total_tokens=80)

        text, data = format_output("markdown", "auth", result, considered=1, mode="map")

        self.assertTrue(text.startswith("src/auth.ts\n│ export class AuthService\n"))
        self.assertIn("│   async login(user: string): Promise<boolean>", text)
        self.assertIn("symbols | 1 files", text)
        self.assertLess(data["stats"]["totalTokens"], 80)

    def test_empty_selection(self):
        text, data = format_output("markdown", "q", BudgetResult(), considered=0)
        self.assertIn("0 tokens | 0 chunks | 0 files", text)
        self.assertEqual(data["chunks"], [])


class TestSignatures(unittest.TestCase):
    """Tests for signature extraction."""

    def test_typescript(self):
        signatures = extract_signatures(TS_CLASS, "src/auth.ts").split("\n")
        self.assertEqual(signatures[0], "export class AuthService")
        self.assertIn("  async login(user: string): Promise<boolean>", signatures)
        self.assertIn("export const handler = async (req) => ...", signatures)

    def test_python(self):
        signatures = extract_signatures(PY_CLASS, "pkg/session.py")
        self.assertEqual(signatures, "class Session\n  def open(self)\ndef helper()")

    def test_markdown_headers(self):
        self.assertEqual(extract_signatures("# Title\ntext\n## Part", "README.md"), "# Title\n## Part")

    def test_fallback_first_line(self):
        self.assertEqual(extract_signatures("// note\nx = 1", "a.js"), "x = 1")

    def test_to_signatures_counts_tokens(self):
        """Test that signature tokens use the shared tokenizer."""
        result = to_signatures(BudgetResult(chunks=[ranked("pkg/session.py", 1, 6, PY_CLASS, 40)], total_tokens=40))
        content = result.chunks[0].chunk.content
        self.assertEqual(result.chunks[0].chunk.tokens, count_tokens(content))
        self.assertEqual(result.total_tokens, result.chunks[0].chunk.tokens)

    def test_to_signatures_never_exceeds_packed_tokens(self):
        result = to_signatures(BudgetResult(chunks=[ranked("a.js", 1, 1, "", 0)], total_tokens=0))
        self.assertEqual(result.chunks[0].chunk.content, "(content)")
        self.assertEqual(result.total_tokens, 0)

    def test_get_language(self):
        self.assertEqual(get_language("a/b.tsx"), "tsx")
        self.assertEqual(get_language("Makefile"), "")


if __name__ == "__main__":
    unittest.main()
