"""
The store module durably records the revision history of releases.

- Uses ReleaseKey (namespace and name) plus a revision number as the key for
  every record.
- Stores `Release` dataclasses from manifest.py, each revision as a separate
  immutable record.
- Provides an in-memory implementation for tests and dry runs, and a file
  backed implementation that writes one YAML document per revision.

Reads never observe a partially written record.
"""

from .store import ReleaseStore
from .in_memory import InMemoryReleaseStore
from .file import FileReleaseStore

__all__ = [
    "ReleaseStore",
    "InMemoryReleaseStore",
    "FileReleaseStore",
]
