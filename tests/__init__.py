"""
Snapshot agent test suite.

This package contains:
- unit/: Unit tests (no filesystem-heavy or network work)
- integration/: Integration tests (real SQLite databases, real archives, in-memory store)
"""
