from echo_transfer.labware.pattern import DilutionPattern, Direction, PatternType
from echo_transfer.labware.plate import PLATE_DIMENSIONS, Plate, PlateRole
from echo_transfer.labware.well import Solvent, Well, WellContent

__all__ = [
    "DilutionPattern",
    "Direction",
    "PatternType",
    "PLATE_DIMENSIONS",
    "Plate",
    "PlateRole",
    "Solvent",
    "Well",
    "WellContent",
]
