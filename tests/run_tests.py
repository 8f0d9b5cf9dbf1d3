#!/usr/bin/env python3
"""
Test runner for the code context selection package.

This script runs all the tests for the package.
"""

import unittest
import sys
import os

# Add the parent directory to the path so we can import the codecontext package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Import all the test modules
from tests import (
    test_budget, test_chunker, test_config, test_discovery, test_embedding, test_formatter, test_imports,
    test_indexer, test_indexing, test_models, test_parsers, test_scoring, test_search, test_store,
    test_symbols,
)

TEST_MODULES = [
    test_models,
    test_config,
    test_discovery,
    test_parsers,
    test_chunker,
    test_embedding,
    test_indexing,
    test_store,
    test_indexer,
    test_imports,
    test_scoring,
    test_budget,
    test_formatter,
    test_symbols,
    test_search,
]


def run_tests():
    """Run all the tests."""
    # Create a test suite
    loader = unittest.TestLoader()
    test_suite = unittest.TestSuite()

    # Add all the test cases
    for module in TEST_MODULES:
        test_suite.addTests(loader.loadTestsFromModule(module))

    # Run the tests
    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(test_suite)

    # Return the result
    return result.wasSuccessful()


if __name__ == "__main__":
    success = run_tests()
    sys.exit(0 if success else 1)
