"""
Dilution patterns.

A pattern is a named concentration series with a replicate count and a
scan direction. It is stamped onto one or more well blocks of a plate.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from echo_transfer.exceptions import InputValidationError


class PatternType(str, Enum):
    TREATMENT = "Treatment"
    CONTROL = "Control"
    COMBINATION = "Combination"
    SOLVENT = "Solvent"
    UNUSED = "Unused"


class Direction(str, Enum):
    """Scan direction used when assigning wells to concentrations."""
    LR = "LR"
    RL = "RL"
    TB = "TB"
    BT = "BT"


def parse_directions(raw) -> List[Direction]:
    """Parse ``"LR"``, ``"LR-TB"`` or a list into directions."""
    if raw is None or raw == "":
        return []
    parts = raw.split("-") if isinstance(raw, str) else list(raw)
    try:
        return [Direction(str(getattr(p, "value", p)).strip().upper()) for p in parts if str(p).strip()]
    except ValueError as err:
        raise InputValidationError(f"Invalid direction {raw!r}") from err


@dataclass
class DilutionPattern:
    name: str
    type: PatternType = PatternType.TREATMENT
    concentrations: List[Optional[float]] = field(default_factory=list)
    replicates: int = 1
    directions: List[Direction] = field(default_factory=list)
    fold: int = 1
    locations: List[str] = field(default_factory=list)

    def __post_init__(self):
        try:
            self.type = PatternType(getattr(self.type, "value", self.type))
        except ValueError as err:
            raise InputValidationError(
                f"Invalid pattern type {self.type!r} for pattern {self.name}"
            ) from err
        self.directions = parse_directions(self.directions)

        if self.type == PatternType.UNUSED:
            self.concentrations = []
            self.directions = []
        if self.type == PatternType.COMBINATION and self.directions:
            self.fold = len(self.directions)
        elif self.type != PatternType.COMBINATION:
            self.fold = 1

    @property
    def direction(self) -> Optional[Direction]:
        """Primary scan direction."""
        return self.directions[0] if self.directions else None

    @property
    def valid_concentrations(self) -> List[float]:
        return [c for c in self.concentrations if c is not None]

    def direction_for_axis(self, index: int) -> Optional[Direction]:
        """Direction of one combination axis, falling back to the primary."""
        if 0 <= index < len(self.directions):
            return self.directions[index]
        return self.direction

    def clone(self) -> "DilutionPattern":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "concentrations": list(self.concentrations),
            "replicates": self.replicates,
            "directions": [d.value for d in self.directions],
            "fold": self.fold,
            "locations": list(self.locations),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DilutionPattern":
        return cls(
            name=data["name"],
            type=data.get("type", PatternType.TREATMENT),
            concentrations=list(data.get("concentrations", [])),
            replicates=int(data.get("replicates", 1)),
            directions=data.get("directions", []),
            fold=int(data.get("fold", 1)),
            locations=list(data.get("locations", [])),
        )
