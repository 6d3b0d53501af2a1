"""
CLI tools for the snapshot agent.

This module provides command-line tools for:
- restore: Restore the newest archive before the workload starts
- audit: Find and delete truncated archives

Invariants:
    - Tools run without the agent loop
    - Destructive operations require an explicit flag
"""

from .audit import SmallArchiveAuditor
from .restore import RestoreCoordinator

__all__ = ["RestoreCoordinator", "SmallArchiveAuditor"]
