"""
Well contents and volume bookkeeping.

A well tracks the compounds dissolved in it (as concentrations), the
solvents it holds (as volumes) and its total liquid volume. Mixing always
conserves compound mass: adding volume dilutes every existing content by
``old_volume / new_volume``.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from echo_transfer.exceptions import InsufficientVolumeError

logger = logging.getLogger(__name__)


@dataclass
class WellContent:
    """One compound (or pattern placeholder) in a well."""
    concentration: float
    pattern_name: str
    compound_id: Optional[str] = None


@dataclass
class Solvent:
    name: str
    volume: float


@dataclass
class Well:
    id: str
    parent_barcode: str = ""
    contents: List[WellContent] = field(default_factory=list)
    solvents: List[Solvent] = field(default_factory=list)
    total_volume: float = 0.0
    is_unused: bool = False
    raw_response: Optional[float] = None
    normalized_response: Optional[float] = None

    def clone(self) -> "Well":
        return copy.deepcopy(self)

    # -- usage flags ---------------------------------------------------------

    def mark_as_unused(self) -> None:
        """Flag the well unused and empty it of contents and liquid."""
        self.is_unused = True
        self.contents = []
        self.solvents = []
        self.total_volume = 0.0

    def mark_as_used(self) -> None:
        self.is_unused = False

    def _skip_if_unused(self, action: str) -> bool:
        if self.is_unused:
            logger.warning(f"Cannot {action} well {self.id}: well is marked unused")
            return True
        return False

    # -- mixing ----------------------------------------------------------------

    def _dilute(self, factor: float) -> None:
        for content in self.contents:
            content.concentration *= factor

    def _add_solvent_volume(self, name: str, volume: float) -> None:
        for solvent in self.solvents:
            if solvent.name == name:
                solvent.volume += volume
                return
        self.solvents.append(Solvent(name=name, volume=volume))

    def add_content(
        self,
        content: WellContent,
        volume: float,
        solvent_name: str = "DMSO",
        solvent_fraction: float = 1.0,
    ) -> None:
        """Mix in ``volume`` nL of liquid carrying ``content``.

        Existing contents of other compounds are diluted by the added
        volume. A content with the same compound is merged by mass. The
        carrier solvent contributes ``volume * solvent_fraction`` nL to that
        solvent's volume.
        """
        if self._skip_if_unused("add content to"):
            return
        if volume <= 0:
            raise ValueError(f"Volume to add must be positive, got {volume}")

        old_volume = self.total_volume
        new_volume = old_volume + volume
        merged = False
        for existing in self.contents:
            if content.compound_id is not None and existing.compound_id == content.compound_id:
                existing.concentration = (
                    existing.concentration * old_volume + content.concentration * volume
                ) / new_volume
                merged = True
            else:
                existing.concentration *= old_volume / new_volume
        if not merged:
            self.contents.append(WellContent(
                concentration=content.concentration * volume / new_volume,
                pattern_name=content.pattern_name,
                compound_id=content.compound_id,
            ))

        self._add_solvent_volume(solvent_name, volume * solvent_fraction)
        self.total_volume = new_volume

    def add_solvent(self, name: str, volume: float) -> None:
        if self._skip_if_unused("add solvent to"):
            return
        if volume < 0:
            raise ValueError(f"Volume to add must be non-negative, got {volume}")
        new_volume = self.total_volume + volume
        if new_volume > 0:
            self._dilute(self.total_volume / new_volume)
        self._add_solvent_volume(name, volume)
        self.total_volume = new_volume

    def bulk_fill(self, name: str, volume: float) -> None:
        self.add_solvent(name, volume)

    def remove_volume(self, volume: float) -> None:
        """Aspirate ``volume`` nL; concentrations are unchanged.

        Raises:
            InsufficientVolumeError: if more than the current total is requested.
        """
        if volume < 0:
            raise ValueError(f"Volume to remove must be non-negative, got {volume}")
        if volume > self.total_volume:
            raise InsufficientVolumeError(
                well_id=self.id,
                requested=volume,
                available=self.total_volume,
                barcode=self.parent_barcode or None,
            )
        if self._skip_if_unused("remove volume from"):
            return
        if volume == 0:
            return
        remaining = 1 - volume / self.total_volume
        for solvent in self.solvents:
            solvent.volume *= remaining
        self.solvents = [s for s in self.solvents if s.volume > 0]
        self.total_volume -= volume

    def update_volume(self, volume: float) -> None:
        """Replace the total volume with a surveyed measurement.

        Solvent volumes are rescaled proportionally; concentrations are kept.
        """
        if volume < 0:
            raise ValueError(f"Surveyed volume must be non-negative, got {volume}")
        if self.total_volume > 0:
            ratio = volume / self.total_volume
            for solvent in self.solvents:
                solvent.volume *= ratio
        self.solvents = [s for s in self.solvents if s.volume > 0]
        self.total_volume = volume

    def clear_contents(self) -> None:
        self.contents = []

    # -- patterns ------------------------------------------------------------

    def apply_pattern(self, pattern_name: str, concentration: float) -> None:
        if self._skip_if_unused("apply pattern to"):
            return
        for content in self.contents:
            if content.pattern_name == pattern_name and content.concentration == concentration:
                return
        self.contents.append(WellContent(concentration=concentration, pattern_name=pattern_name))

    def remove_pattern(self, pattern_name: str) -> None:
        self.contents = [c for c in self.contents if c.pattern_name != pattern_name]

    def has_pattern(self, pattern_name: str) -> bool:
        return any(c.pattern_name == pattern_name for c in self.contents)

    # -- queries -------------------------------------------------------------

    def concentration_of(self, compound_id: str) -> float:
        return sum(c.concentration for c in self.contents if c.compound_id == compound_id)

    def solvent_volume(self, name: str) -> float:
        return sum(s.volume for s in self.solvents if s.name == name)

    def solvent_fraction(self, name: str) -> float:
        if self.total_volume <= 0:
            return 0.0
        return self.solvent_volume(name) / self.total_volume

    def is_solvent_only(self, name: str) -> bool:
        return (
            not self.contents
            and len(self.solvents) == 1
            and self.solvents[0].name == name
        )

    def max_concentration(self) -> float:
        return max((c.concentration for c in self.contents), default=0.0)

    def set_response(self, raw: Optional[float], normalized: Optional[float] = None) -> None:
        """Attach assay read-out values; the planner never writes these."""
        self.raw_response = raw
        self.normalized_response = normalized

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "parent_barcode": self.parent_barcode,
            "contents": [
                {
                    "compound_id": c.compound_id,
                    "concentration": c.concentration,
                    "pattern_name": c.pattern_name,
                }
                for c in self.contents
            ],
            "solvents": [{"name": s.name, "volume": s.volume} for s in self.solvents],
            "total_volume": self.total_volume,
            "is_unused": self.is_unused,
        }
