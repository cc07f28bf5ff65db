"""
Data models for the resources a run creates and how to remove them.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, List, Optional


class TeardownPhase(IntEnum):
    """Order in which recorded resources are removed."""
    INSTANCE = 0
    ASSOCIATION = 1
    ADDRESS = 2
    INTERFACE = 3
    CLUSTER = 4


@dataclass
class UndoStep:
    """One created resource and the call that removes it."""
    phase: TeardownPhase
    kind: str  # "instance", "association", "address", "interface", "cluster"
    handle: str
    undo: Callable[[], None] = field(repr=False)


@dataclass
class ResourceSet:
    """
    Handles of everything created so far, in creation order.

    Interfaces and addresses are index-paired: interface i carries address i.
    """
    instance_id: Optional[str] = None
    network_interfaces: List[str] = field(default_factory=list)
    addresses: List[str] = field(default_factory=list)
    cluster_name: Optional[str] = None
    undo_log: List[UndoStep] = field(default_factory=list)

    def record(self, step: UndoStep) -> None:
        if step.kind == "instance":
            self.instance_id = step.handle
        elif step.kind == "interface":
            self.network_interfaces.append(step.handle)
        elif step.kind == "address":
            self.addresses.append(step.handle)
        elif step.kind == "cluster":
            self.cluster_name = step.handle
        self.undo_log.append(step)

    def is_empty(self) -> bool:
        return not self.undo_log

    def teardown_plan(self) -> List[UndoStep]:
        """Steps grouped by phase, keeping creation order inside a phase."""
        return sorted(self.undo_log, key=lambda step: step.phase)

    def clear(self) -> None:
        self.instance_id = None
        self.network_interfaces = []
        self.addresses = []
        self.cluster_name = None
        self.undo_log = []


@dataclass
class TeardownReport:
    """Outcome of a destroy pass."""
    removed: int = 0
    failed: int = 0
    skipped: bool = False
