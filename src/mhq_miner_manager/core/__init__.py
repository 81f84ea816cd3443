"""Core install/uninstall building blocks.

The Installer itself lives in ``core.installer``; it depends on the
platform adapters, which in turn use ``core.file_io``.
"""

from .fetcher import ArtifactFetcher
from .file_io import atomic_write, compute_file_hash, move_into_place
from .state_store import StateStore

__all__ = [
    "ArtifactFetcher",
    "StateStore",
    "atomic_write",
    "compute_file_hash",
    "move_into_place",
]
