"""
revstore - Revision-tracked document store for a multilingual review platform.

This package implements the persistence and versioning core shared by
users, things, reviews and teams:
- Documents whose edits are stored as linearly ordered revisions
- Optimistic concurrency: the first writer of a revision wins
- Many-to-many relations written atomically with their owning document
- Per-viewer permission flags computed from roles
- Human-readable slugs with redirects from old names

Architecture:
    ┌──────────────┐     ┌──────────────┐     ┌──────────────┐
    │   Services   │────▶│ DocumentStore│────▶│   SQLite     │
    │ (models/*)   │     │  models +    │     │ (one table   │
    └──────┬───────┘     │ associations │     │  per type)   │
           │             └──────────────┘     └──────────────┘
           ▼
    ┌──────────────┐     ┌──────────────┐
    │ Permissions  │     │ Slugs / Sync │
    └──────────────┘     └──────────────┘

Invariants:
    - For each document id at most one row is current (stale = 0)
    - Rows are never physically deleted
    - Every multi-table write is all-or-nothing

How to change safely:
    - New document types are declared in revstore.models and registered in
      build_registry()
    - Schema changes must be additive
"""

from ._version import __version__

__all__ = ["__version__"]
