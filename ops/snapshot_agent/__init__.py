"""
Snapshot agent - backup, retention and restore for a single-tenant data root.

The primary workload keeps its durable state (SQLite databases plus a blob
tree) on local storage that can disappear whenever the compute is recycled.
This package keeps that state recoverable:

Architecture:
    ┌──────────────────┐   exit 0    ┌──────────────────┐
    │ snapshot-restore │───────────▶│ primary workload │
    └────────┬─────────┘             └────────┬─────────┘
             │ newest archive                 │ writes
             ▼                                ▼
    ┌──────────────────┐             ┌──────────────────┐
    │   Object store   │◀────────────│  snapshot-agent  │
    │ prefix/namespace │  upload +   │ (capture, pack)  │
    └──────────────────┘  retention  └──────────────────┘
             ▲
             │ report / delete small archives
    ┌────────┴─────────┐
    │  snapshot-audit  │
    └──────────────────┘

Invariants:
    - The workload starts only after snapshot-restore exits 0
    - The agent only reads the data root; restore writes it at most once
    - Archive keys sort chronologically as strings
    - At most RETAIN_COUNT archives remain after each successful iteration

How to change safely:
    - Keep the archive key format and tar layout stable; old archives must restore
    - Changes to request signing must be verified against the real service
"""

from ._version import __version__

__all__ = ["__version__"]
