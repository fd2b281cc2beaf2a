"""
Journal repeater test suite.

This package contains:
- unit/: Unit tests (no external dependencies, fake or in-memory sinks)
- integration/: Pipeline tests (stdin lines -> repeater -> in-memory sink)
"""
