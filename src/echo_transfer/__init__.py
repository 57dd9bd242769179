"""
echo_transfer: transfer planning for Echo acoustic liquid handlers.

Plans dose-response and combination assays: works out which target
concentrations are reachable from the supplied stocks (directly or through
intermediate dilution plates), then allocates wells and emits the ordered
transfer list.
"""

from echo_transfer.checkpoints import CheckpointTracker, CheckStatus
from echo_transfer.precalculator import EchoPreCalculator
from echo_transfer.calculator import EchoCalculator, TransferPlan
from echo_transfer.transfers import TransferStep

__version__ = "0.1.0"

__all__ = [
    "CheckpointTracker",
    "CheckStatus",
    "EchoPreCalculator",
    "EchoCalculator",
    "TransferPlan",
    "TransferStep",
]
