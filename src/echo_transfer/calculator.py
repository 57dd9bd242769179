"""
Well allocation and transfer generation.

EchoCalculator turns the recipes planned by EchoPreCalculator into
physical plates and an ordered list of transfers. It runs these phases
once, in order:

1. source plates from the compound inventory
2. intermediate plates, pre-filled with backfill DMSO
3. intermediate fills (stock -> level 1 -> level 2)
4. destination plates and compound stamping per replicate group
5. optional DMSO normalisation of destination wells
6. max-concentration metadata for every plate

When no well can supply a needed transfer the gap is recorded on the
``Transfer Allocation`` checkpoint and allocation continues.
"""
from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pandas as pd

from echo_transfer.checkpoints import CheckpointTracker, CheckStatus
from echo_transfer.config.defaults import (
    ASSAY_BUFFER,
    DESTINATION_BARCODE_PREFIX,
    INTERMEDIATE_BARCODE_PREFIX,
)
from echo_transfer.dilution import round_to_increment
from echo_transfer.exceptions import InputValidationError, PlanningBlockedError
from echo_transfer.inventory import CompoundGroup, expand_compound_row
from echo_transfer.labware.pattern import DilutionPattern, PatternType
from echo_transfer.labware.plate import PLATE_DIMENSIONS, Plate, PlateRole
from echo_transfer.labware.well import Well, WellContent
from echo_transfer.precalculator import ConcentrationObj, EchoPreCalculator, SourceType
from echo_transfer.transfers import (
    TransferInfo,
    TransferStep,
    group_transfers_by_priority,
    priority_label,
    transfers_to_dataframe,
)

logger = logging.getLogger(__name__)

TRANSFER_ALLOCATION = "Transfer Allocation"

WellRef = Tuple[str, str]  # (barcode, well ID)


@dataclass(frozen=True)
class BlockLocation:
    barcode: str
    well_block: str


@dataclass
class IntermediateNeed:
    compound_id: str
    concentration: float
    recipe: ConcentrationObj
    volume: float


@dataclass
class TransferPlan:
    """Result of one allocation run."""
    transfer_steps: Tuple[TransferStep, ...]
    plates: Dict[str, Plate]
    checkpoint_tracker: CheckpointTracker

    @property
    def plate_roles(self) -> Dict[str, PlateRole]:
        return {barcode: plate.plate_role for barcode, plate in self.plates.items()}

    def plates_with_role(self, role: PlateRole) -> List[Plate]:
        return [p for p in self.plates.values() if p.plate_role == role]

    def grouped(self) -> Dict[int, List[TransferStep]]:
        return group_transfers_by_priority(self.transfer_steps, self.plate_roles)

    def to_dataframe(self) -> pd.DataFrame:
        return transfers_to_dataframe(self.transfer_steps, self.plate_roles)

    def to_csv(self, directory: Union[str, Path]) -> List[Path]:
        """Write one CSV per transfer stage and return the paths written."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        df = self.to_dataframe()
        paths = []
        for priority, stage in df.groupby("Priority", sort=True):
            path = directory / f"{priority}_{priority_label(priority)}.csv"
            stage.drop(columns=["Priority", "Transfer Type"]).to_csv(path, index=False)
            paths.append(path)
        return paths


class EchoCalculator:
    """Allocate wells and generate transfers for a planned input.

    Args:
        pre_calc: A pre-calculator; ``calculate_needs`` is run if it has not been
        checkpoint_tracker: Tracker to report into (the pre-calculator's by default)
    """

    def __init__(
        self,
        pre_calc: EchoPreCalculator,
        checkpoint_tracker: Optional[CheckpointTracker] = None,
    ):
        self.pre_calc = pre_calc
        self.checkpoint_tracker = checkpoint_tracker or pre_calc.checkpoint_tracker
        self.settings = pre_calc.settings
        self.solvent = self.settings.solvent_name
        self.plate_dead_volumes: Dict[str, float] = dict(pre_calc.plate_dead_volumes)

        self.plates: Dict[str, Plate] = {}
        self.source_plates: List[Plate] = []
        self.intermediate_plates1: List[Plate] = []
        self.intermediate_plates2: List[Plate] = []
        self.destination_plates: List[Plate] = []
        self.transfer_steps: List[TransferStep] = []

        self.intermediate_well_cache: Dict[Tuple[str, float], Dict[str, List[str]]] = {}
        self.pattern_location_cache: Dict[str, List[BlockLocation]] = {}
        self._dmso_wells: Optional[List[WellRef]] = None
        self._dmso_cursor = 0
        self._allocation_warnings: List[str] = []
        self._has_run = False

    # -- entry point ---------------------------------------------------------

    def run(self) -> TransferPlan:
        if self._has_run:
            raise RuntimeError("EchoCalculator.run() can only be called once per instance")
        if not self.pre_calc.needs_calculated:
            self.pre_calc.calculate_needs()
        if self.pre_calc.checkpoint_tracker.has_failures():
            raise PlanningBlockedError(
                "Cannot allocate transfers while a checkpoint has failed:\n"
                + self.pre_calc.checkpoint_tracker.report()
            )
        self._has_run = True
        self.checkpoint_tracker.add_checkpoint(TRANSFER_ALLOCATION)

        self.prepare_source_plates()
        needs = self.intermediate_needs()
        self.prepare_intermediate_plates(needs)
        self.fill_intermediate_plates(needs)
        self.prepare_destination_plates()
        self.fill_destination_plates()
        if self.pre_calc.dmso_normalization:
            self.dmso_normalization()
        for plate in self.plates.values():
            plate.update_max_concentration()

        if self._allocation_warnings:
            self.checkpoint_tracker.escalate_checkpoint(
                TRANSFER_ALLOCATION, CheckStatus.WARNING, self._allocation_warnings
            )
        else:
            self.checkpoint_tracker.update_checkpoint(TRANSFER_ALLOCATION, CheckStatus.PASSED)

        logger.info(
            f"Generated {len(self.transfer_steps)} transfers across {len(self.plates)} plates"
        )
        return TransferPlan(
            transfer_steps=tuple(self.transfer_steps),
            plates=dict(self.plates),
            checkpoint_tracker=self.checkpoint_tracker.clone(),
        )

    # -- helpers ---------------------------------------------------------------

    def _register_plate(self, plate: Plate) -> Plate:
        if plate.barcode in self.plates:
            raise InputValidationError(f"Duplicate plate barcode: {plate.barcode}")
        self.plates[plate.barcode] = plate
        return plate

    def _allocation_warning(self, message: str) -> None:
        logger.warning(message)
        self._allocation_warnings.append(message)

    def dead_volume(self, barcode: str) -> float:
        return self.plate_dead_volumes.get(barcode, self.settings.low_dead_volume)

    def _pattern(self, name: str) -> Optional[DilutionPattern]:
        return self.pre_calc.dilution_patterns.get(name)

    def _group(self, compound_id: str, pattern_name: str) -> CompoundGroup:
        return self.pre_calc.src_compound_inventory[compound_id][pattern_name]

    # -- phase 1: source plates ----------------------------------------------

    def prepare_source_plates(self) -> None:
        for row in self.pre_calc.input_data.compounds:
            plate = self.plates.get(row.source_barcode)
            if plate is None:
                plate = self._register_plate(Plate(
                    barcode=row.source_barcode,
                    plate_size=self.pre_calc.src_plate_size,
                    plate_role=PlateRole.SOURCE,
                ))
                self.source_plates.append(plate)

            patterns = [self._pattern(name) for name in row.patterns]
            solvent_only = len(patterns) == 1 and patterns[0] is not None and patterns[0].type == PatternType.SOLVENT
            pattern_name = ";".join(row.patterns)
            for location in expand_compound_row(row):
                well = plate.require_well(location.well_id)
                if well.contents or well.solvents:
                    # one aliquot per well, however many rows list it
                    logger.debug(f"Skipping refill of {row.source_barcode}:{location.well_id}")
                    continue
                if solvent_only:
                    well.add_solvent(self.solvent, location.volume)
                else:
                    well.add_content(
                        WellContent(location.concentration, pattern_name, row.compound_id),
                        location.volume,
                        self.solvent,
                        1.0,
                    )
        logger.info(f"Prepared {len(self.source_plates)} source plates")

    # -- phase 2/3: intermediate plates -------------------------------------------

    def intermediate_needs(self) -> Dict[Tuple[str, float], IntermediateNeed]:
        """Aggregate intermediate demand per (compound, concentration)."""
        needs: Dict[Tuple[str, float], IntermediateNeed] = {}
        for (cpd, pattern_name), volumes in self.pre_calc.total_volumes.items():
            pattern = self._pattern(pattern_name)
            recipes = self.pre_calc.calculate_transfer_concentrations(pattern, self._group(cpd, pattern_name))
            for int_conc, recipe in recipes.intermediate_concentrations.items():
                volume = volumes.get(int_conc, 0.0)
                if volume <= 0:
                    continue
                key = (cpd, int_conc)
                if key in needs:
                    needs[key].volume += volume
                else:
                    needs[key] = IntermediateNeed(cpd, int_conc, recipe, volume)
        return needs

    def _wells_for(self, need: IntermediateNeed) -> int:
        return self.pre_calc.intermediate_wells_needed(need.volume, need.recipe.vol_to_transfer)

    def _solvent_only_volume(self) -> float:
        total = 0.0
        for plate in self.source_plates:
            for well in plate:
                if well.is_solvent_only(self.solvent):
                    total += max(0.0, well.total_volume - self.dead_volume(plate.barcode))
        return total

    def prepare_intermediate_plates(self, needs: Dict[Tuple[str, float], IntermediateNeed]) -> None:
        level1_wells = sum(self._wells_for(n) for n in needs.values() if n.recipe.source_type == SourceType.SRC)
        level2_wells = sum(self._wells_for(n) for n in needs.values() if n.recipe.source_type != SourceType.SRC)

        int_dead = self.pre_calc.intermediate_dead_volume()
        dmso_wells = 0
        if self.pre_calc.dmso_normalization:
            shortfall = self.pre_calc.total_dmso_backfill_vol - self._solvent_only_volume()
            usable = self.pre_calc.backfill_volume - int_dead
            if shortfall > 0 and usable > 0:
                dmso_wells = math.ceil(shortfall / usable)

        plate_size = self.settings.intermediate_plate_size
        rows, cols = PLATE_DIMENSIONS[plate_size]
        wells_per_plate = rows * cols
        n_level1 = math.ceil((level1_wells + dmso_wells) / wells_per_plate) if level1_wells or dmso_wells else 0
        n_level2 = math.ceil(level2_wells / wells_per_plate) if level2_wells else 0

        barcodes = list(self.pre_calc.input_data.intermediate_barcodes)
        total = n_level1 + n_level2
        for i in range(len(barcodes) + 1, total + 1):
            barcodes.append(f"{INTERMEDIATE_BARCODE_PREFIX}{i}")

        for i in range(total):
            role = PlateRole.INTERMEDIATE1 if i < n_level1 else PlateRole.INTERMEDIATE2
            plate = self._register_plate(Plate(barcode=barcodes[i], plate_size=plate_size, plate_role=role))
            plate.fill_all(self.pre_calc.backfill_volume, self.solvent)
            self.plate_dead_volumes[plate.barcode] = int_dead
            if role == PlateRole.INTERMEDIATE1:
                self.intermediate_plates1.append(plate)
            else:
                self.intermediate_plates2.append(plate)
        logger.info(
            f"Prepared {n_level1} level-1 and {n_level2} level-2 intermediate plates "
            f"({level1_wells} + {level2_wells} wells, {dmso_wells} DMSO wells)"
        )

    def find_available_wells(self, plates: List[Plate], count: int) -> List[WellRef]:
        """Empty wells for ``count`` intermediates, on one plate where possible."""
        per_plate = []
        for plate in plates:
            empty = [w.id for w in plate if not w.is_unused and not w.contents]
            if len(empty) >= count:
                return [(plate.barcode, well_id) for well_id in empty[:count]]
            per_plate.append((plate.barcode, empty))
        spread = [(barcode, well_id) for barcode, empty in per_plate for well_id in empty]
        return spread[:count]

    def _stock_wells(self, compound_id: str, concentration: float) -> List[WellRef]:
        refs: List[WellRef] = []
        for group in self.pre_calc.src_compound_inventory.get(compound_id, {}).values():
            for loc in group.locations_at(concentration):
                ref = (loc.barcode, loc.well_id)
                if ref not in refs:
                    refs.append(ref)
        return refs

    def _intermediate_wells(self, compound_id: str, concentration: float) -> List[WellRef]:
        cached = self.intermediate_well_cache.get((compound_id, concentration), {})
        return [(barcode, well_id) for barcode, well_ids in cached.items() for well_id in well_ids]

    def _source_candidates(self, compound_id: str, recipe: ConcentrationObj) -> List[WellRef]:
        if recipe.source_type == SourceType.SRC:
            return self._stock_wells(compound_id, recipe.source_conc)
        return self._intermediate_wells(compound_id, recipe.source_conc)

    def fill_intermediate_plates(self, needs: Dict[Tuple[str, float], IntermediateNeed]) -> None:
        for level, plates in ((SourceType.SRC, self.intermediate_plates1), (SourceType.INT1, self.intermediate_plates2)):
            for key, need in needs.items():
                if need.recipe.source_type != level:
                    continue
                wells_needed = self._wells_for(need)
                targets = self.find_available_wells(plates, wells_needed)
                if len(targets) < wells_needed:
                    self._allocation_warning(
                        f"Only {len(targets)} of {wells_needed} intermediate wells available for "
                        f"{need.compound_id} at {need.concentration:.4g}µM"
                    )
                candidates = self._source_candidates(need.compound_id, need.recipe)
                for barcode, well_id in targets:
                    source = self.find_source_well(candidates, need.recipe.vol_to_transfer)
                    if source is None:
                        self._allocation_warning(
                            f"No source well with enough volume of {need.compound_id} at "
                            f"{need.recipe.source_conc:.4g}µM to make {need.concentration:.4g}µM "
                            f"intermediate in {barcode}:{well_id}"
                        )
                        break
                    step = TransferStep(source.parent_barcode, source.id, barcode, well_id, need.recipe.vol_to_transfer)
                    info = TransferInfo(TransferInfo.COMPOUND, need.compound_id, need.concentration)
                    if self.execute_and_record_transfer(step, info):
                        self.intermediate_well_cache.setdefault(key, {}).setdefault(barcode, []).append(well_id)

    # -- source selection ---------------------------------------------------------

    def find_source_well(self, candidates: List[WellRef], volume: float) -> Optional[Well]:
        """A well that can give ``volume`` nL and still keep its dead volume.

        Takes the first eligible well, or the fullest one when even
        depletion is enabled.
        """
        eligible = []
        for barcode, well_id in candidates:
            plate = self.plates.get(barcode)
            well = plate.get_well(well_id) if plate else None
            if well is None or well.is_unused:
                continue
            if well.total_volume >= volume + self.dead_volume(barcode):
                if not self.pre_calc.even_depletion:
                    return well
                eligible.append(well)
        if not eligible:
            return None
        return max(eligible, key=lambda w: w.total_volume)

    def execute_and_record_transfer(
        self,
        step: TransferStep,
        info: TransferInfo,
        pattern_name: Optional[str] = None,
    ) -> bool:
        """Move liquid between wells and append ``step`` to the transfer log.

        A multi-compound source well is split so each compound's mass moves
        in proportion. Returns False (and records nothing) if the source
        holds less than ``step.volume``.
        """
        source = self.plates[step.source_barcode].require_well(step.source_well_id)
        destination = self.plates[step.destination_barcode].require_well(step.destination_well_id)
        if source.total_volume < step.volume:
            logger.warning(
                f"Skipping transfer from {step.source_barcode}:{step.source_well_id}: "
                f"{source.total_volume}nL present, {step.volume}nL requested"
            )
            return False

        if info.transfer_type == TransferInfo.SOLVENT or not source.contents:
            destination.add_solvent(info.solvent_name or self.solvent, step.volume)
        else:
            fraction = source.solvent_fraction(self.solvent)
            contents = list(source.contents)
            share = step.volume / len(contents)
            for content in contents:
                destination.add_content(
                    WellContent(
                        concentration=content.concentration * len(contents),
                        pattern_name=pattern_name or content.pattern_name,
                        compound_id=content.compound_id,
                    ),
                    share,
                    self.solvent,
                    fraction,
                )
        source.remove_volume(step.volume)
        self.transfer_steps.append(step)
        logger.debug(f"Transfer {step}")
        return True

    # -- phase 4: destination plates -----------------------------------------------

    def prepare_destination_plates(self) -> None:
        count = self.pre_calc.destination_plates_count
        barcodes = self.pre_calc.input_data.destination_barcodes
        width = len(str(count))
        unused_blocks = [
            (row.well_block, self._pattern(row.pattern))
            for row in self.pre_calc.input_data.layout
            if self._pattern(row.pattern) is not None
            and self._pattern(row.pattern).type == PatternType.UNUSED
        ]
        for i in range(count):
            barcode = barcodes[i] if i < len(barcodes) else f"{DESTINATION_BARCODE_PREFIX}{str(i + 1).zfill(width)}"
            plate = self._register_plate(Plate(
                barcode=barcode,
                plate_size=self.pre_calc.dst_plate_size,
                plate_role=PlateRole.DESTINATION,
            ))
            plate.fill_all(self.pre_calc.assay_volume, ASSAY_BUFFER)
            for block, pattern in unused_blocks:
                plate.apply_pattern(block, pattern)
            self.destination_plates.append(plate)
        logger.info(f"Prepared {count} destination plates")

    def _block_is_available(self, plate: Plate, block: str, pattern_name: str) -> bool:
        for well in plate.get_some_wells(block):
            if well.is_unused or well.has_pattern(pattern_name):
                return False
        return True

    def find_next_available_block(self, plates: List[Plate], pattern: DilutionPattern) -> Optional[BlockLocation]:
        """Next free layout block for ``pattern`` among ``plates``.

        Free blocks are cached per pattern and consumed in order; an empty
        cache triggers a fresh scan.
        """
        cache = self.pattern_location_cache.get(pattern.name)
        if not cache:
            cache = [
                BlockLocation(plate.barcode, block)
                for plate in plates
                for block in self.pre_calc.input_data.layout_blocks(pattern.name)
                if self._block_is_available(plate, block, pattern.name)
            ]
            self.pattern_location_cache[pattern.name] = cache
        if not cache:
            return None
        return cache.pop(0)

    def transfer_compound(
        self,
        location: BlockLocation,
        compound_id: str,
        pattern: DilutionPattern,
        axis: int = 0,
    ) -> None:
        """Stamp one compound's concentration series onto a block."""
        plate = self.plates[location.barcode]
        recipes = self.pre_calc.calculate_transfer_concentrations(
            pattern, self._group(compound_id, pattern.name)
        ).destination_concentrations
        well_lists = plate.map_wells_to_concentrations(
            location.well_block, pattern.concentrations, pattern.direction_for_axis(axis)
        )
        for concentration, well_ids in zip(pattern.concentrations, well_lists):
            recipe = recipes.get(concentration)
            if recipe is None:
                # already reported as unreachable
                continue
            candidates = self._source_candidates(compound_id, recipe)
            for well_id in well_ids:
                if plate.require_well(well_id).is_unused:
                    continue
                source = self.find_source_well(candidates, recipe.vol_to_transfer)
                if source is None:
                    self._allocation_warning(
                        f"No source well with enough volume of {compound_id} at "
                        f"{recipe.source_conc:.4g}µM for {pattern.name} "
                        f"{concentration}µM in {location.barcode}:{well_id}"
                    )
                    continue
                step = TransferStep(source.parent_barcode, source.id, location.barcode, well_id, recipe.vol_to_transfer)
                info = TransferInfo(TransferInfo.COMPOUND, compound_id, concentration)
                self.execute_and_record_transfer(step, info, pattern_name=pattern.name)

    def fill_destination_plates(self) -> None:
        patterns = list(self.pre_calc.dilution_patterns.values())
        n_groups = self.pre_calc.dest_replicates
        per_group = max(1, len(self.destination_plates) // n_groups)

        for g in range(n_groups):
            group_plates = self.destination_plates[g * per_group:(g + 1) * per_group]
            if not group_plates:
                break
            self.pattern_location_cache.clear()
            for pattern in patterns:
                compounds = self.pre_calc.compounds_for_pattern(pattern.name)
                if pattern.type == PatternType.TREATMENT:
                    for cpd in compounds:
                        location = self.find_next_available_block(group_plates, pattern)
                        if location is None:
                            self._allocation_warning(f"No available block for {cpd} in pattern {pattern.name}")
                            continue
                        self.transfer_compound(location, cpd, pattern)
                elif pattern.type == PatternType.COMBINATION:
                    for combo in itertools.combinations(compounds, pattern.fold):
                        location = self.find_next_available_block(group_plates, pattern)
                        if location is None:
                            self._allocation_warning(
                                f"No available block for combination {' + '.join(combo)} in pattern {pattern.name}"
                            )
                            continue
                        for axis, cpd in enumerate(combo):
                            self.transfer_compound(location, cpd, pattern, axis)

        for pattern in patterns:
            if pattern.type != PatternType.CONTROL:
                continue
            compounds = self.pre_calc.compounds_for_pattern(pattern.name)
            if not compounds:
                continue
            slots = [
                BlockLocation(plate.barcode, block)
                for plate in self.destination_plates
                for block in self.pre_calc.input_data.layout_blocks(pattern.name)
            ]
            for i, slot in enumerate(slots):
                self.transfer_compound(slot, compounds[i % len(compounds)], pattern)

    # -- phase 5: DMSO normalisation -----------------------------------------------

    def find_next_available_dmso_well(self, volume: float) -> Optional[Well]:
        """Next solvent-only well that can give ``volume`` nL.

        The cursor stays on the last well used so later calls do not rescan
        wells already known to be exhausted.
        """
        if self._dmso_wells is None:
            self._dmso_wells = [
                (plate.barcode, well.id)
                for plate in self.source_plates + self.intermediate_plates1 + self.intermediate_plates2
                for well in plate
                if well.is_solvent_only(self.solvent)
            ]
        while self._dmso_cursor < len(self._dmso_wells):
            barcode, well_id = self._dmso_wells[self._dmso_cursor]
            well = self.plates[barcode].require_well(well_id)
            if well.is_solvent_only(self.solvent) and well.total_volume >= volume + self.dead_volume(barcode):
                return well
            self._dmso_cursor += 1
        return None

    def dmso_normalization(self) -> None:
        """Top every used destination well up to its plate's largest volume."""
        max_step = round_to_increment(self.settings.max_transfer_volume, "down", self.settings.droplet_size)
        for plate in self.destination_plates:
            used = plate.used_wells()
            if not used:
                continue
            target = max(w.total_volume for w in used)
            for well in used:
                remaining = round_to_increment(target - well.total_volume, "nearest", self.settings.droplet_size)
                while remaining >= self.settings.droplet_size:
                    volume = min(remaining, max_step)
                    donor = self.find_next_available_dmso_well(volume)
                    if donor is None:
                        self._allocation_warning(
                            f"No DMSO well available to normalise {plate.barcode}:{well.id}"
                        )
                        break
                    step = TransferStep(donor.parent_barcode, donor.id, plate.barcode, well.id, volume)
                    self.execute_and_record_transfer(step, TransferInfo(TransferInfo.SOLVENT, solvent_name=self.solvent))
                    remaining -= volume
