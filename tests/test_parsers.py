"""
Tests for the parsers module.
"""

import unittest

from codecontext.models import CLASS, CONSTANT, FUNCTION, METHOD
from codecontext.parsers import ParserRegistry, StructuralTextParser, strip_type_annotations


TS_SOURCE = """interface User {
  name: string;
}

export function login(user: User): boolean {
  return user.name.length > 0;
}
"""

JS_SOURCE = """class Greeter {
  hello() {
    return 1;
  }
}
export { Greeter };
const add = (a, b) => a + b;
let mutable = 1;
const LIMIT = 10;
export default function main() {}
"""

PY_SOURCE = """import os

@decorator
def helper(x):
    return x


class Service:
    def run(self):
        pass
"""

MD_SOURCE = """---
title: x
---
# Intro
text
```py
code
```
## Details
more"""


def by_name(result):
    return {b.name: b for b in result.boundaries}


class TestStripTypeAnnotations(unittest.TestCase):
    """Tests for strip_type_annotations."""

    def test_keeps_length_and_lines(self):
        """Test that stripping never moves code to another line."""
        stripped = strip_type_annotations(TS_SOURCE)
        self.assertEqual(len(stripped), len(TS_SOURCE))
        self.assertEqual(stripped.count("\n"), TS_SOURCE.count("\n"))
        self.assertNotIn("interface", stripped)
        self.assertNotIn(": User", stripped)
        self.assertIn("export function login(user", stripped)


class TestParserRegistry(unittest.TestCase):
    """Tests for the ParserRegistry class."""

    def setUp(self):
        """Set up test fixtures."""
        self.registry = ParserRegistry()

    def tearDown(self):
        """Tear down test fixtures."""
        self.registry.close()

    def test_typescript(self):
        """Test that typed sources parse with their original line numbers."""
        result = self.registry.parse(TS_SOURCE, "src/auth.ts")

        self.assertTrue(result.success)
        login = by_name(result)["login"]
        self.assertEqual(login.kind, FUNCTION)
        self.assertEqual((login.start_line, login.end_line), (5, 7))
        self.assertTrue(login.exported)

    def test_javascript(self):
        """Test classes, methods, const functions and exports."""
        result = self.registry.parse(JS_SOURCE, "src/greeter.js")

        self.assertTrue(result.success)
        names = by_name(result)
        self.assertEqual(names["Greeter"].kind, CLASS)
        self.assertEqual((names["Greeter"].start_line, names["Greeter"].end_line), (1, 5))
        self.assertTrue(names["Greeter"].exported)
        self.assertEqual(names["Greeter.hello"].kind, METHOD)
        self.assertEqual((names["Greeter.hello"].start_line, names["Greeter.hello"].end_line), (2, 4))
        self.assertEqual(names["add"].kind, FUNCTION)
        self.assertFalse(names["add"].exported)
        self.assertEqual(names["LIMIT"].kind, CONSTANT)
        self.assertNotIn("mutable", names)
        self.assertEqual(names["main"].kind, FUNCTION)
        self.assertTrue(names["main"].exported)

    def test_boundaries_sorted(self):
        result = self.registry.parse(JS_SOURCE, "src/greeter.js")
        starts = [b.start_line for b in result.boundaries]
        self.assertEqual(starts, sorted(starts))

    def test_python(self):
        """Test that decorators belong to their function and methods are qualified."""
        result = self.registry.parse(PY_SOURCE, "pkg/service.py")

        self.assertTrue(result.success)
        names = by_name(result)
        self.assertEqual((names["helper"].start_line, names["helper"].end_line), (3, 5))
        self.assertEqual(names["Service"].kind, CLASS)
        self.assertEqual((names["Service"].start_line, names["Service"].end_line), (8, 10))
        self.assertEqual(names["Service.run"].kind, METHOD)

    def test_markdown(self):
        """Test front matter, sections and fenced code blocks."""
        result = self.registry.parse(MD_SOURCE, "docs/readme.md")

        self.assertTrue(result.success)
        names = by_name(result)
        self.assertEqual((names["frontmatter"].start_line, names["frontmatter"].end_line), (1, 3))
        self.assertEqual((names["Intro"].start_line, names["Intro"].end_line), (4, 8))
        self.assertTrue(names["Intro"].exported)
        self.assertEqual((names["codeblock:py"].start_line, names["codeblock:py"].end_line), (6, 8))
        self.assertEqual((names["Details"].start_line, names["Details"].end_line), (9, 10))
        self.assertFalse(names["Details"].exported)

    def test_unknown_extension(self):
        """Test that unknown file types fail without raising."""
        result = self.registry.parse("whatever", "data.xyz")
        self.assertFalse(result.success)
        self.assertEqual(result.boundaries, [])
        self.assertFalse(self.registry.can_parse("data.xyz"))

    def test_syntax_error(self):
        """Test that unparseable sources fail without raising."""
        result = self.registry.parse("function (( {\n", "broken.js")
        self.assertFalse(result.success)
        self.assertEqual(result.boundaries, [])
        self.assertTrue(result.error)

    def test_register(self):
        """Test registering a parser for another extension."""
        self.registry.register(".txt", StructuralTextParser())
        self.assertTrue(self.registry.can_parse("notes.txt"))
        self.assertIn("txt", self.registry.supported_extensions())


if __name__ == "__main__":
    unittest.main()
