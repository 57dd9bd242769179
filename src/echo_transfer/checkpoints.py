"""
Checkpoint log for a planning run.

Each named checkpoint starts Pending and resolves to Passed, Warning or
Failed. Within a run a checkpoint never goes back to Pending; calling
``add_checkpoint`` again starts a new run for it.
"""
from __future__ import annotations

import copy
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple


class CheckStatus(str, Enum):
    PENDING = "Pending"
    PASSED = "Passed"
    WARNING = "Warning"
    FAILED = "Failed"


_SEVERITY = {
    CheckStatus.PENDING: 0,
    CheckStatus.PASSED: 1,
    CheckStatus.WARNING: 2,
    CheckStatus.FAILED: 3,
}


@dataclass(frozen=True)
class Checkpoint:
    name: str
    status: CheckStatus = CheckStatus.PENDING
    messages: Tuple[str, ...] = field(default_factory=tuple)


class CheckpointTracker:
    """Insertion-ordered map of checkpoint name to status and messages."""

    def __init__(self):
        self._checkpoints: "OrderedDict[str, Checkpoint]" = OrderedDict()

    def __contains__(self, name: str) -> bool:
        return name in self._checkpoints

    def __iter__(self):
        return iter(self._checkpoints.values())

    def __len__(self) -> int:
        return len(self._checkpoints)

    def add_checkpoint(self, name: str) -> None:
        """Register ``name`` as Pending, resetting any earlier result."""
        self._checkpoints[name] = Checkpoint(name=name)

    def update_checkpoint(
        self,
        name: str,
        status: CheckStatus,
        messages: Optional[Iterable[str]] = None,
    ) -> None:
        """Set the status of ``name``, replacing its messages.

        Raises:
            KeyError: if the checkpoint was never added.
            ValueError: if a resolved checkpoint would go back to Pending.
        """
        status = CheckStatus(status)
        current = self._checkpoints[name]
        if status == CheckStatus.PENDING and current.status != CheckStatus.PENDING:
            raise ValueError(f"Checkpoint {name!r} is already {current.status.value}")
        self._checkpoints[name] = Checkpoint(name, status, tuple(messages or ()))

    def escalate_checkpoint(self, name: str, status: CheckStatus, messages: Iterable[str] = ()) -> None:
        """Append messages, keeping the more severe of the two statuses."""
        status = CheckStatus(status)
        if name not in self._checkpoints:
            self.add_checkpoint(name)
        current = self._checkpoints[name]
        if _SEVERITY[status] < _SEVERITY[current.status]:
            status = current.status
        self._checkpoints[name] = Checkpoint(name, status, current.messages + tuple(messages))

    def get_checkpoint(self, name: str) -> Optional[Checkpoint]:
        return self._checkpoints.get(name)

    @property
    def checkpoints(self) -> Dict[str, Checkpoint]:
        return dict(self._checkpoints)

    def has_failures(self) -> bool:
        return any(cp.status == CheckStatus.FAILED for cp in self._checkpoints.values())

    def messages(self, status: Optional[CheckStatus] = None) -> List[str]:
        return [
            msg
            for cp in self._checkpoints.values()
            if status is None or cp.status == status
            for msg in cp.messages
        ]

    def clone(self) -> "CheckpointTracker":
        return copy.deepcopy(self)

    def report(self) -> str:
        """Human-readable multi-line summary."""
        lines = []
        for cp in self._checkpoints.values():
            lines.append(f"[{cp.status.value}] {cp.name}")
            lines.extend(f"    - {msg}" for msg in cp.messages)
        return "\n".join(lines)
