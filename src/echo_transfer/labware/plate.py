"""
Microtiter plates.

A plate owns a fixed grid of wells, created once at construction, and
records which dilution patterns have been stamped onto which blocks.
"""
from __future__ import annotations

import copy
import logging
import uuid
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from echo_transfer.exceptions import WellNotFoundError
from echo_transfer.geometry import (
    format_well_block,
    get_some_wells,
    map_wells_to_concentrations,
    normalize_well_id,
    well_id_from_coords,
)
from echo_transfer.labware.pattern import DilutionPattern, PatternType
from echo_transfer.labware.well import Well

logger = logging.getLogger(__name__)

# plate size -> (rows, columns)
PLATE_DIMENSIONS: Dict[str, Tuple[int, int]] = {
    "12": (3, 4),
    "24": (4, 6),
    "48": (6, 8),
    "96": (8, 12),
    "384": (16, 24),
    "1536": (32, 48),
}

GLOBAL_MAX_CONCENTRATION = "global_max_concentration"


class PlateRole(str, Enum):
    SOURCE = "source"
    INTERMEDIATE1 = "intermediate1"
    INTERMEDIATE2 = "intermediate2"
    DESTINATION = "destination"


class Plate:
    """A plate and its wells.

    Args:
        barcode: plate barcode
        plate_size: one of the keys of ``PLATE_DIMENSIONS``
        plate_role: how the plate is used in the run
        metadata: free-form annotations (e.g. max concentration)
    """

    def __init__(
        self,
        barcode: str = "",
        plate_size: str = "384",
        plate_role: PlateRole = PlateRole.DESTINATION,
        metadata: Optional[Dict[str, Any]] = None,
        plate_id: Optional[str] = None,
    ):
        plate_size = str(plate_size)
        if plate_size not in PLATE_DIMENSIONS:
            raise ValueError(
                f"Unsupported plate size: {plate_size}. "
                f"Supported sizes: {', '.join(PLATE_DIMENSIONS)}"
            )
        self.id = plate_id or uuid.uuid4().hex
        self.barcode = barcode
        self.plate_size = plate_size
        self.plate_role = PlateRole(plate_role)
        self.rows, self.columns = PLATE_DIMENSIONS[plate_size]
        self.metadata: Dict[str, Any] = metadata if metadata is not None else {GLOBAL_MAX_CONCENTRATION: 0.0}
        self.patterns: Dict[str, DilutionPattern] = {}
        self.wells: Dict[str, Well] = {}
        for row in range(self.rows):
            for col in range(self.columns):
                well_id = well_id_from_coords(row, col)
                self.wells[well_id] = Well(id=well_id, parent_barcode=barcode)

    def __repr__(self) -> str:
        return f"Plate(barcode={self.barcode!r}, size={self.plate_size}, role={self.plate_role.value})"

    def __iter__(self) -> Iterator[Well]:
        return iter(self.wells.values())

    def __len__(self) -> int:
        return len(self.wells)

    def __contains__(self, well_id: str) -> bool:
        return self.get_well(well_id) is not None

    def clone(self) -> "Plate":
        """Deep copy sharing no wells or patterns with this plate."""
        return copy.deepcopy(self)

    # -- well access -----------------------------------------------------------

    def get_well(self, well_id: str) -> Optional[Well]:
        well = self.wells.get(well_id)
        if well is None:
            well = self.wells.get(normalize_well_id(well_id))
        return well

    def require_well(self, well_id: str) -> Well:
        well = self.get_well(well_id)
        if well is None:
            raise WellNotFoundError(f"Well {well_id} not found on plate {self.barcode}")
        return well

    def get_some_wells(self, raw_range: str) -> List[Well]:
        """Resolve a well block string to wells on this plate."""
        return [self.require_well(w) for w in get_some_wells(raw_range)]

    def bulk_fill_wells(self, well_ids: List[str], volume: float, solvent: str = "DMSO") -> None:
        for well_id in well_ids:
            self.require_well(well_id).bulk_fill(solvent, volume)

    def fill_all(self, volume: float, solvent: str = "DMSO") -> None:
        for well in self.wells.values():
            well.bulk_fill(solvent, volume)

    def used_wells(self) -> List[Well]:
        return [w for w in self.wells.values() if not w.is_unused]

    # -- patterns -----------------------------------------------------------

    def map_wells_to_concentrations(self, block: str, concentrations, direction) -> List[List[str]]:
        for well_id in get_some_wells(block):
            self.require_well(well_id)
        return map_wells_to_concentrations(block, concentrations, direction)

    def apply_pattern(self, block: str, pattern: DilutionPattern) -> None:
        """Stamp ``pattern`` onto ``block``.

        Unused patterns mark the wells unused. Any other pattern assigns
        each well its concentration along the pattern's primary direction.
        Re-applying the same block is a no-op for the location record.
        """
        if pattern.type == PatternType.UNUSED:
            for well in self.get_some_wells(block):
                well.mark_as_unused()
        elif pattern.direction is not None:
            well_lists = self.map_wells_to_concentrations(block, pattern.concentrations, pattern.direction)
            for concentration, well_ids in zip(pattern.concentrations, well_lists):
                if concentration is None:
                    continue
                for well_id in well_ids:
                    self.require_well(well_id).apply_pattern(pattern.name, concentration)

        applied = self.patterns.get(pattern.name)
        if applied is None:
            applied = pattern.clone()
            applied.locations = []
            self.patterns[pattern.name] = applied
        if block not in applied.locations:
            applied.locations.append(block)

    def remove_pattern(self, block: str, pattern_name: str) -> None:
        applied = self.patterns.get(pattern_name)
        for well in self.get_some_wells(block):
            well.remove_pattern(pattern_name)
            if applied is not None and applied.type == PatternType.UNUSED:
                well.mark_as_used()

        if applied is not None:
            applied.locations = [loc for loc in applied.locations if loc != block]
            if not applied.locations:
                del self.patterns[pattern_name]

    def pattern_blocks(self, pattern_name: str) -> List[str]:
        applied = self.patterns.get(pattern_name)
        return list(applied.locations) if applied else []

    def has_pattern(self, pattern_name: str) -> bool:
        return pattern_name in self.patterns

    def all_patterns(self) -> List[DilutionPattern]:
        return list(self.patterns.values())

    def pattern_wells(self, pattern_name: str) -> str:
        """Well block covering every well stamped with ``pattern_name``."""
        return format_well_block(
            w.id for w in self.wells.values() if w.has_pattern(pattern_name)
        )

    # -- summaries -----------------------------------------------------------

    def max_concentration(self) -> float:
        return max((w.max_concentration() for w in self.wells.values()), default=0.0)

    def update_max_concentration(self) -> float:
        value = self.max_concentration()
        self.metadata[GLOBAL_MAX_CONCENTRATION] = value
        return value
