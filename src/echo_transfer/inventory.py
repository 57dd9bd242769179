"""
Source compound inventory.

Groups the stock aliquots listed in the Compounds table by compound and
pattern, and derives per-plate dead volumes from the aliquot sizes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from echo_transfer.config.defaults import UL_TO_NL
from echo_transfer.config.settings import EchoSettings
from echo_transfer.exceptions import InputValidationError
from echo_transfer.geometry import get_some_wells, normalize_well_id
from echo_transfer.inputs import CompoundRow, InputData, PatternRow
from echo_transfer.labware.pattern import DilutionPattern, PatternType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompoundLocation:
    """A physical stock aliquot (volume in nL, concentration in uM)."""
    barcode: str
    well_id: str
    volume: float
    concentration: float


@dataclass
class CompoundGroup:
    locations: List[CompoundLocation] = field(default_factory=list)

    @property
    def available_concentrations(self) -> Tuple[float, ...]:
        """Distinct stock concentrations, highest first."""
        return tuple(sorted({loc.concentration for loc in self.locations}, reverse=True))

    def locations_at(self, concentration: float) -> List[CompoundLocation]:
        return [loc for loc in self.locations if loc.concentration == concentration]

    @property
    def total_volume(self) -> float:
        return sum(loc.volume for loc in self.locations)


# compound ID -> pattern name -> group
CompoundInventory = Dict[str, Dict[str, CompoundGroup]]

PATTERNS_NEEDING_COMPOUNDS = (
    PatternType.TREATMENT,
    PatternType.CONTROL,
    PatternType.COMBINATION,
)


def analyze_dilution_patterns(rows: List[PatternRow]) -> Dict[str, DilutionPattern]:
    """Turn Patterns table rows into DilutionPattern objects keyed by name.

    Raises:
        InputValidationError: on duplicate names, unknown types or directions,
            or a concentration-bearing pattern without a direction.
    """
    patterns: Dict[str, DilutionPattern] = {}
    for row in rows:
        if row.name in patterns:
            raise InputValidationError(f"Duplicate pattern name: {row.name}")
        pattern = DilutionPattern(
            name=row.name,
            type=row.type,
            concentrations=[c for c in row.concentrations if c is not None],
            replicates=max(1, int(row.replicates)),
            directions=row.direction,
        )
        if pattern.type in PATTERNS_NEEDING_COMPOUNDS:
            if not pattern.directions:
                raise InputValidationError(f"Pattern {row.name} has no direction")
            if not pattern.concentrations:
                raise InputValidationError(f"Pattern {row.name} has no concentrations")
            if any(c <= 0 for c in pattern.concentrations):
                raise InputValidationError(f"Pattern {row.name} has a non-positive concentration")
        patterns[pattern.name] = pattern
    return patterns


def expand_compound_row(row: CompoundRow) -> List[CompoundLocation]:
    """One location per well in the row's well ID or well block."""
    return [
        CompoundLocation(
            barcode=row.source_barcode,
            well_id=normalize_well_id(well_id),
            volume=row.volume * UL_TO_NL,
            concentration=row.concentration,
        )
        for well_id in get_some_wells(row.well_id)
    ]


def build_compound_inventory(input_data: InputData) -> CompoundInventory:
    inventory: CompoundInventory = {}
    for row in input_data.compounds:
        locations = expand_compound_row(row)
        for pattern_name in row.patterns:
            group = inventory.setdefault(row.compound_id, {}).setdefault(pattern_name, CompoundGroup())
            known = {(loc.barcode, loc.well_id) for loc in group.locations}
            group.locations.extend(loc for loc in locations if (loc.barcode, loc.well_id) not in known)
    return inventory


def compounds_for_pattern(inventory: CompoundInventory, pattern_name: str) -> List[str]:
    """Compound IDs using ``pattern_name``, in inventory order."""
    return [cpd for cpd, groups in inventory.items() if pattern_name in groups]


def compute_plate_dead_volumes(
    compounds: List[CompoundRow],
    settings: Optional[EchoSettings] = None,
) -> Dict[str, float]:
    """Dead volume per source barcode, driven by its largest aliquot."""
    if settings is None:
        settings = EchoSettings()
    largest: Dict[str, float] = {}
    for row in compounds:
        volume = row.volume * UL_TO_NL
        largest[row.source_barcode] = max(largest.get(row.source_barcode, 0.0), volume)
    dead_volumes = {barcode: settings.dead_volume_for(vol) for barcode, vol in largest.items()}
    logger.debug(f"Source plate dead volumes: {dead_volumes}")
    return dead_volumes
