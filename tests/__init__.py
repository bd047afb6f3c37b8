"""
revstore test suite.

This package contains:
- unit/: Unit tests (in-memory documents, no database)
- integration/: Integration tests (SQLite in a temporary directory)
"""
