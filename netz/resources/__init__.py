"""
Cloud resource lifecycle: sequenced creation and best-effort teardown.
"""

from .manager import ResourceManager
from .models import ResourceSet, TeardownPhase, TeardownReport, UndoStep

__all__ = [
    "ResourceManager",
    "ResourceSet",
    "TeardownPhase",
    "TeardownReport",
    "UndoStep",
]
