from __future__ import annotations
from dataclasses import dataclass
from typing import Optional


class EchoTransferError(Exception):
    """Base class for planner errors."""
    pass


class FormatError(EchoTransferError, ValueError):
    """Raised when a well ID cannot be parsed."""
    pass


class InvalidRangeError(FormatError):
    """Raised when a well-block token has a malformed start or end."""
    pass


class WellNotFoundError(EchoTransferError, KeyError):
    """Raised when a well ID is valid but does not exist on the plate."""
    pass


class InputValidationError(EchoTransferError, ValueError):
    """Raised when the structured input tables are inconsistent."""
    pass


class PlanningBlockedError(EchoTransferError, RuntimeError):
    """Raised when allocation is attempted after a failed checkpoint."""
    pass


@dataclass
class InsufficientVolumeError(EchoTransferError):
    well_id: str
    requested: float
    available: float
    barcode: Optional[str] = None

    def __post_init__(self) -> None:
        location = f"{self.barcode}:{self.well_id}" if self.barcode else self.well_id
        super().__init__(
            f"Cannot remove {self.requested}nL from well {location}; "
            f"only {self.available}nL present"
        )
