"""
Concentration feasibility solver.

EchoPreCalculator works out, for every compound and pattern, which target
concentrations can be reached from the available stocks and with what
transfer volume, synthesising up to two levels of intermediate dilutions
where a direct transfer cannot hit the target. It then aggregates the
volume needed at each source concentration and checks it against the
inventory.

Results are reported through a CheckpointTracker rather than exceptions,
so the caller can inspect every problem in one pass:

    pre = EchoPreCalculator(input_data)
    pre.calculate_needs()
    if not pre.checkpoint_tracker.has_failures():
        plan = EchoCalculator(pre).run()
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from echo_transfer.checkpoints import CheckpointTracker, CheckStatus
from echo_transfer.config.defaults import UL_TO_NL
from echo_transfer.config.settings import EchoSettings, settings as default_settings
from echo_transfer.dilution import (
    max_volume_to_destination,
    number_combinations,
    round_to_increment,
    solve_c1v1,
)
from echo_transfer.exceptions import InputValidationError
from echo_transfer.geometry import get_some_wells
from echo_transfer.inputs import InputData
from echo_transfer.inventory import (
    PATTERNS_NEEDING_COMPOUNDS,
    CompoundGroup,
    CompoundInventory,
    analyze_dilution_patterns,
    build_compound_inventory,
    compounds_for_pattern,
    compute_plate_dead_volumes,
)
from echo_transfer.labware.pattern import DilutionPattern, PatternType
from echo_transfer.labware.plate import PLATE_DIMENSIONS, Plate, PlateRole

logger = logging.getLogger(__name__)

PATTERN_ANALYSIS = "Pattern Analysis"
SOURCE_INVENTORY = "Source Inventory"
TRANSFER_VOLUMES = "Transfer Volume Calculation"
SOURCE_VOLUMES = "Source Volume Sufficiency"

CHECKPOINTS = (PATTERN_ANALYSIS, SOURCE_INVENTORY, TRANSFER_VOLUMES, SOURCE_VOLUMES)

_EPS = 1e-9


class SourceType(str, Enum):
    SRC = "src"
    INT1 = "int1"
    INT2 = "int2"


@dataclass(frozen=True)
class ConcentrationObj:
    """How to reach one concentration: transfer ``vol_to_transfer`` nL from ``source_conc``."""
    source_conc: float
    source_type: SourceType
    vol_to_transfer: float


@dataclass
class TransferConcentrations:
    """Recipes for one compound/pattern.

    ``intermediate_concentrations`` maps each intermediate concentration to
    the recipe that makes it; ``destination_concentrations`` maps each
    reachable target to the recipe that delivers it.
    """
    intermediate_concentrations: Dict[float, ConcentrationObj] = field(default_factory=dict)
    destination_concentrations: Dict[float, ConcentrationObj] = field(default_factory=dict)


@dataclass
class TransferVolumeResult:
    total_volumes: Dict[float, float]
    destination_wells_count: int
    total_dmso_backfill_vol: float


# (target concentrations, available stock concentrations)
ConcentrationCacheKey = Tuple[Tuple[float, ...], Tuple[float, ...]]


class EchoPreCalculator:
    """Feasibility and volume planning for one input set.

    Args:
        input_data: Patterns, layout, compounds, barcodes and assay parameters
        checkpoint_tracker: Tracker to report into (a fresh one by default)
        settings: Instrument settings (module-level settings by default)
    """

    def __init__(
        self,
        input_data: InputData,
        checkpoint_tracker: Optional[CheckpointTracker] = None,
        settings: Optional[EchoSettings] = None,
    ):
        self.input_data = input_data
        self.settings = settings or default_settings
        self.checkpoint_tracker = checkpoint_tracker or CheckpointTracker()

        common = input_data.common_data
        self.max_transfer_volume = self.settings.max_transfer_volume
        self.droplet_size = self.settings.droplet_size
        self.src_plate_size = self.settings.source_plate_size
        self.dst_plate_size = self.settings.destination_plate_size
        self.max_dmso_fraction = common.max_dmso_fraction
        self.backfill_volume = common.intermediate_backfill_volume * UL_TO_NL
        self.assay_volume = common.final_assay_volume * UL_TO_NL
        self.allowable_error = common.allowable_error
        self.dest_replicates = max(1, int(common.dest_replicates))
        self.create_int_concs = common.create_int_concs
        self.dmso_normalization = common.dmso_normalization
        self.even_depletion = common.even_depletion

        self.plate_dead_volumes: Dict[str, float] = compute_plate_dead_volumes(
            input_data.compounds, self.settings
        )
        self.dead_volume_version = 0

        self.dilution_patterns: Dict[str, DilutionPattern] = {}
        self.src_compound_inventory: CompoundInventory = {}
        self.destination_plates_count = 0
        self.max_dmso_vol = 0.0
        self.total_volumes: Dict[Tuple[str, str], Dict[float, float]] = {}
        self.total_dmso_backfill_vol = 0.0
        self.destination_wells_count = 0
        self._concentration_cache: Dict[ConcentrationCacheKey, TransferConcentrations] = {}
        self._needs_calculated = False

    # -- public pipeline ------------------------------------------------------

    def calculate_needs(self) -> CheckpointTracker:
        """Run every checkpoint phase in order and return the tracker."""
        self._reset()
        for name in CHECKPOINTS:
            self.checkpoint_tracker.add_checkpoint(name)

        self._run_pattern_analysis()
        self._run_source_inventory()
        self._run_transfer_volumes()
        self._run_source_volume_check()
        self._needs_calculated = True
        logger.info(
            f"Planned {len(self.total_volumes)} compound/pattern pairs across "
            f"{self.destination_plates_count} destination plates"
        )
        return self.checkpoint_tracker

    def update_dead_volume(self, barcode: str, dead_volume: float) -> None:
        """Override a source plate's dead volume (nL).

        Only the source volume check depends on dead volumes, so that is
        the only phase re-evaluated.
        """
        self.plate_dead_volumes[barcode] = float(dead_volume)
        self.dead_volume_version += 1
        if self._needs_calculated:
            self.checkpoint_tracker.add_checkpoint(SOURCE_VOLUMES)
            self._run_source_volume_check()

    @property
    def needs_calculated(self) -> bool:
        return self._needs_calculated

    def dead_volume(self, barcode: str) -> float:
        return self.plate_dead_volumes.get(barcode, self.settings.low_dead_volume)

    def intermediate_dead_volume(self) -> float:
        """Dead volume of an intermediate well, set by its backfill volume."""
        if self.backfill_volume < self.settings.dead_volume_threshold:
            return self.settings.low_dead_volume
        return self.settings.high_dead_volume

    def intermediate_wells_needed(self, needed_volume: float, vol_to_transfer: float) -> int:
        """Intermediate wells needed to supply ``needed_volume`` nL."""
        if needed_volume <= 0:
            return 0
        usable = self.backfill_volume + vol_to_transfer - self.intermediate_dead_volume()
        if usable <= 0:
            raise ValueError(
                f"Intermediate backfill of {self.backfill_volume}nL does not exceed "
                f"the {self.intermediate_dead_volume()}nL dead volume"
            )
        return math.ceil(needed_volume / usable - _EPS)

    def compounds_for_pattern(self, pattern_name: str) -> List[str]:
        return compounds_for_pattern(self.src_compound_inventory, pattern_name)

    # -- phases ------------------------------------------------------------------

    def _reset(self) -> None:
        self.dilution_patterns = {}
        self.src_compound_inventory = {}
        self.destination_plates_count = 0
        self.max_dmso_vol = 0.0
        self.total_volumes = {}
        self.total_dmso_backfill_vol = 0.0
        self.destination_wells_count = 0
        self._concentration_cache.clear()

    def _run_pattern_analysis(self) -> None:
        try:
            self.dilution_patterns = analyze_dilution_patterns(self.input_data.patterns)
            unknown = sorted({
                row.pattern for row in self.input_data.layout
                if row.pattern not in self.dilution_patterns
            })
            if unknown:
                raise InputValidationError(
                    f"Layout references unknown patterns: {', '.join(unknown)}"
                )
            for row in self.input_data.layout:
                get_some_wells(row.well_block)
        except Exception as err:
            logger.exception("Pattern analysis failed")
            self.checkpoint_tracker.update_checkpoint(PATTERN_ANALYSIS, CheckStatus.FAILED, [str(err)])
            return
        self.checkpoint_tracker.update_checkpoint(PATTERN_ANALYSIS, CheckStatus.PASSED)

    def _run_source_inventory(self) -> None:
        try:
            self.src_compound_inventory = build_compound_inventory(self.input_data)
        except Exception as err:
            logger.exception("Building the source inventory failed")
            self.checkpoint_tracker.update_checkpoint(SOURCE_INVENTORY, CheckStatus.FAILED, [str(err)])
            return

        messages = []
        for name, pattern in self.dilution_patterns.items():
            if pattern.type not in PATTERNS_NEEDING_COMPOUNDS:
                continue
            compounds = self.compounds_for_pattern(name)
            if not compounds:
                messages.append(f"No compounds found for pattern {name}")
            elif pattern.type == PatternType.COMBINATION and len(compounds) < pattern.fold:
                messages.append(
                    f"Combination pattern {name} needs {pattern.fold} compounds "
                    f"but only {len(compounds)} use it"
                )
        for cpd, groups in self.src_compound_inventory.items():
            for pattern_name in groups:
                if self.dilution_patterns and pattern_name not in self.dilution_patterns:
                    messages.append(f"Compound {cpd} references unknown pattern {pattern_name}")

        status = CheckStatus.WARNING if messages else CheckStatus.PASSED
        self.checkpoint_tracker.update_checkpoint(SOURCE_INVENTORY, status, messages)

    def _run_transfer_volumes(self) -> None:
        try:
            self.destination_plates_count = self.calculate_destination_plates()
            self.max_dmso_vol = self.max_dmso_volume()

            for cpd, groups in self.src_compound_inventory.items():
                for pattern_name, group in groups.items():
                    pattern = self.dilution_patterns.get(pattern_name)
                    if pattern is None or pattern.type not in PATTERNS_NEEDING_COMPOUNDS:
                        continue
                    result = self.calculate_transfer_volumes(pattern, group, cpd)
                    self.total_volumes[(cpd, pattern_name)] = result.total_volumes
                    self.total_dmso_backfill_vol += result.total_dmso_backfill_vol
                    self.destination_wells_count += result.destination_wells_count

                    reachable = self.calculate_transfer_concentrations(pattern, group)
                    missing = [
                        c for c in pattern.valid_concentrations
                        if c not in reachable.destination_concentrations
                    ]
                    if missing:
                        self.checkpoint_tracker.escalate_checkpoint(
                            TRANSFER_VOLUMES,
                            CheckStatus.WARNING,
                            [f"Couldn't build {cpd} concentration {c} in {pattern_name}" for c in missing],
                        )
                        logger.warning(f"Unreachable concentrations for {cpd} in {pattern_name}: {missing}")

            if self.dmso_normalization:
                self.total_dmso_backfill_vol += self.calculate_final_dmso_needed()
        except Exception as err:
            logger.exception("Transfer volume calculation failed")
            self.checkpoint_tracker.escalate_checkpoint(TRANSFER_VOLUMES, CheckStatus.FAILED, [str(err)])
            return

        checkpoint = self.checkpoint_tracker.get_checkpoint(TRANSFER_VOLUMES)
        if checkpoint.status == CheckStatus.PENDING:
            self.checkpoint_tracker.update_checkpoint(TRANSFER_VOLUMES, CheckStatus.PASSED)

    def _run_source_volume_check(self) -> None:
        try:
            messages = self.check_source_volumes()
        except Exception as err:
            logger.exception("Source volume check failed")
            self.checkpoint_tracker.update_checkpoint(SOURCE_VOLUMES, CheckStatus.FAILED, [str(err)])
            return
        status = CheckStatus.WARNING if messages else CheckStatus.PASSED
        self.checkpoint_tracker.update_checkpoint(SOURCE_VOLUMES, status, messages)

    # -- plate and slot arithmetic -------------------------------------------------

    def calculate_destination_plates(self) -> int:
        """Destination plates needed to give every compound a block."""
        plates = 0
        for name, pattern in self.dilution_patterns.items():
            if pattern.type not in PATTERNS_NEEDING_COMPOUNDS:
                continue
            slots = len(self.input_data.layout_blocks(name))
            n_compounds = len(self.compounds_for_pattern(name))
            if slots == 0 or n_compounds == 0:
                continue
            if pattern.type == PatternType.COMBINATION:
                needed = number_combinations(n_compounds, pattern.fold)
            else:
                needed = n_compounds
            plates = max(plates, math.ceil(needed / slots))
        return plates * self.dest_replicates

    def calculate_control_slots(self, pattern_name: str) -> int:
        """Blocks each control compound occupies across all destination plates."""
        n_compounds = len(self.compounds_for_pattern(pattern_name))
        if n_compounds == 0:
            return 0
        total_slots = len(self.input_data.layout_blocks(pattern_name)) * self.destination_plates_count
        return math.ceil(total_slots / n_compounds)

    def max_dmso_volume(self) -> float:
        """Largest DMSO volume any destination well receives before normalisation."""
        test_plate = Plate(barcode="dmso-test", plate_size=self.dst_plate_size, plate_role=PlateRole.DESTINATION)
        for row in self.input_data.layout:
            pattern = self.dilution_patterns.get(row.pattern)
            if pattern is None or pattern.type not in PATTERNS_NEEDING_COMPOUNDS:
                continue
            max_volume = 0.0
            for cpd in self.compounds_for_pattern(pattern.name):
                group = self.src_compound_inventory[cpd][pattern.name]
                recipes = self.calculate_transfer_concentrations(pattern, group).destination_concentrations
                for recipe in recipes.values():
                    max_volume = max(max_volume, recipe.vol_to_transfer)
            if pattern.type == PatternType.COMBINATION:
                max_volume *= pattern.fold
            if max_volume > 0:
                test_plate.bulk_fill_wells(get_some_wells(row.well_block), max_volume)
        return max((w.total_volume for w in test_plate), default=0.0)

    def calculate_final_dmso_needed(self) -> float:
        """DMSO needed to bring empty, usable destination wells up to the max volume."""
        rows, cols = PLATE_DIMENSIONS[self.dst_plate_size]
        plate_wells = rows * cols
        unused_wells = 0
        for row in self.input_data.layout:
            pattern = self.dilution_patterns.get(row.pattern)
            if pattern is not None and pattern.type == PatternType.UNUSED:
                unused_wells += len(set(get_some_wells(row.well_block)))
        empty_wells = (
            self.destination_plates_count * (plate_wells - unused_wells)
            - self.destination_wells_count
        )
        return max(0, empty_wells) * self.max_dmso_vol

    # -- volumes ---------------------------------------------------------------

    def calculate_transfer_volumes(
        self,
        pattern: DilutionPattern,
        group: CompoundGroup,
        compound_id: Optional[str] = None,
    ) -> TransferVolumeResult:
        """Total volume needed at each source concentration for one compound/pattern."""
        recipes = self.calculate_transfer_concentrations(pattern, group)

        if pattern.type == PatternType.CONTROL:
            slots = self.calculate_control_slots(pattern.name)
        elif pattern.type == PatternType.COMBINATION:
            n_compounds = len(self.compounds_for_pattern(pattern.name))
            slots = self.dest_replicates * number_combinations(n_compounds - 1, pattern.fold - 1)
        else:
            slots = self.dest_replicates

        total_volumes: Dict[float, float] = {}
        wells_count = 0
        backfill = 0.0
        for recipe in recipes.destination_concentrations.values():
            wells = pattern.replicates * slots
            total_volumes[recipe.source_conc] = (
                total_volumes.get(recipe.source_conc, 0.0) + recipe.vol_to_transfer * wells
            )
            backfill += max(0.0, self.max_dmso_vol - recipe.vol_to_transfer) * wells
            wells_count += wells

        # level-2 intermediates first so their demand reaches the level-1 totals
        ordered = sorted(
            recipes.intermediate_concentrations.items(),
            key=lambda item: item[1].source_type == SourceType.SRC,
        )
        for int_conc, recipe in ordered:
            wells = self.intermediate_wells_needed(total_volumes.get(int_conc, 0.0), recipe.vol_to_transfer)
            if wells == 0:
                continue
            total_volumes[recipe.source_conc] = (
                total_volumes.get(recipe.source_conc, 0.0) + recipe.vol_to_transfer * wells
            )

        logger.debug(f"Volumes for {compound_id} in {pattern.name}: {total_volumes}")
        return TransferVolumeResult(
            total_volumes=total_volumes,
            destination_wells_count=wells_count,
            total_dmso_backfill_vol=backfill,
        )

    def check_source_volumes(self) -> List[str]:
        """Shortfall messages; empty when every stock covers its demand."""
        messages: List[str] = []
        committed: Dict[Tuple[str, float], float] = {}
        for cpd, groups in self.src_compound_inventory.items():
            for pattern_name, group in groups.items():
                pattern = self.dilution_patterns.get(pattern_name)
                if pattern is None or pattern.type not in PATTERNS_NEEDING_COMPOUNDS:
                    continue
                volumes = self.total_volumes.get((cpd, pattern_name))
                if volumes is None:
                    messages.append(f"Couldn't find volume requirements for {pattern_name}-{cpd}")
                    continue
                for conc, required in volumes.items():
                    locations = group.locations_at(conc)
                    if not locations:
                        # made on an intermediate plate
                        continue
                    available = sum(
                        max(0.0, loc.volume - self.dead_volume(loc.barcode)) for loc in locations
                    )
                    key = (cpd, conc)
                    already = committed.get(key, 0.0)
                    uncommitted = available - already
                    if required > available + _EPS:
                        messages.append(
                            f"Insufficient source volume of {cpd} for {pattern_name} at {conc}µM; "
                            f"{required:.1f}nL required but only {available:.1f}nL available"
                        )
                    elif required > uncommitted + _EPS:
                        messages.append(
                            f"Insufficient uncommitted volume of {cpd} for {pattern_name} at {conc}µM; "
                            f"{required:.1f}nL required, {available:.1f}nL total available, "
                            f"but only {uncommitted:.1f}nL uncommitted"
                        )
                    committed[key] = already + required
        return messages

    # -- concentration search ------------------------------------------------------

    def concentration_passes(self, source_conc: float, target_conc: float, volume: float) -> bool:
        """Whether ``volume`` of ``source_conc`` lands within tolerance of ``target_conc``."""
        if volume < self.droplet_size - _EPS or volume > self.max_transfer_volume + _EPS:
            return False
        steps = volume / self.droplet_size
        if abs(steps - round(steps)) > 1e-6:
            return False
        final_volume = self.assay_volume + volume
        if volume / final_volume > self.max_dmso_fraction + _EPS:
            return False
        actual = source_conc * volume / final_volume
        return abs(actual - target_conc) <= target_conc * self.allowable_error * (1 + _EPS)

    def find_transfer_volume(self, source_conc: float, target_conc: float) -> Optional[float]:
        """First quantised volume that delivers ``target_conc`` from ``source_conc``."""
        if target_conc <= 0 or source_conc <= target_conc:
            return None
        raw = self.assay_volume * target_conc / (source_conc - target_conc)
        dmso_ceiling = self.assay_volume * self.max_dmso_fraction / (1 - self.max_dmso_fraction)
        candidates = (
            round_to_increment(raw, "nearest", self.droplet_size),
            round_to_increment(raw, "up", self.droplet_size),
            round_to_increment(raw, "down", self.droplet_size),
            round_to_increment(dmso_ceiling, "down", self.droplet_size),
            self.droplet_size,
        )
        for volume in candidates:
            if self.concentration_passes(source_conc, target_conc, volume):
                return volume
        return None

    def concentrations_filter(
        self,
        targets: List[float],
        source_conc: float,
        source_type: SourceType,
    ) -> Dict[float, ConcentrationObj]:
        """Recipes for every target reachable from ``source_conc``."""
        found: Dict[float, ConcentrationObj] = {}
        for target in targets:
            volume = self.find_transfer_volume(source_conc, target)
            if volume is not None:
                found[target] = ConcentrationObj(source_conc, source_type, volume)
        return found

    def intermediate_range(self, stock_conc: float) -> Tuple[float, float]:
        """Lowest and highest intermediate concentration makeable from ``stock_conc``."""
        low = stock_conc * self.droplet_size / (self.backfill_volume + self.droplet_size)
        high = stock_conc * self.max_transfer_volume / (self.backfill_volume + self.max_transfer_volume)
        return low, high

    def build_intermediate_conc(self, target_conc: float, stock_conc: float) -> Optional[Tuple[float, float]]:
        """Intermediate concentration (and stock volume) aimed at ``target_conc``.

        The ideal intermediate lets the largest DMSO-respecting transfer hit
        the target. The stock volume is rounded up so the intermediate never
        falls short, then clamped to the max transfer volume.
        """
        max_to_dest = max_volume_to_destination(
            self.assay_volume, self.max_dmso_fraction, self.droplet_size, self.max_transfer_volume
        )
        ideal = solve_c1v1(v1=max_to_dest, c2=target_conc, v2=self.assay_volume + max_to_dest)
        if stock_conc <= ideal:
            return None
        ideal_volume = self.backfill_volume * ideal / (stock_conc - ideal)
        volume = round_to_increment(ideal_volume, "up", self.droplet_size)
        volume = min(max(volume, self.droplet_size), self.max_transfer_volume)
        actual = stock_conc * volume / (self.backfill_volume + volume)
        return actual, volume

    def calculate_c4(self, target_conc: float, int_conc: float, area: str) -> Optional[Dict[str, float]]:
        """One operating point for making a level-2 intermediate from ``int_conc``.

        ``hi`` assumes the largest DMSO-respecting final transfer, ``lo`` a
        single droplet and ``mid`` the midpoint. Returns the level-2
        concentration, the int1 volume needed and its rounding error.
        """
        f = self.max_dmso_fraction
        assay = self.assay_volume
        if area == "hi":
            c4 = target_conc * assay * (1 + f) / (assay * f)
        elif area == "mid":
            mid_volume = (assay * f + self.droplet_size) / 2
            c4 = target_conc * (assay + mid_volume) / mid_volume
        elif area == "lo":
            c4 = target_conc * (assay + self.droplet_size) / self.droplet_size
        else:
            raise ValueError(f"Unknown operating point: {area}")
        if int_conc <= c4:
            return None
        exact_volume = self.backfill_volume * c4 / (int_conc - c4)
        volume = round_to_increment(exact_volume, "nearest", self.droplet_size)
        return {
            "int2_conc": c4,
            "vol": volume,
            "error": abs(exact_volume - volume) / exact_volume,
            "src_conc": int_conc,
        }

    def calculate_transfer_concentrations(
        self,
        pattern: DilutionPattern,
        group: CompoundGroup,
    ) -> TransferConcentrations:
        """Recipes for every reachable concentration in ``pattern``.

        Tries direct transfers from each stock first, then (if enabled) a
        level-1 intermediate made from stock, then a level-2 intermediate
        made from a level-1 intermediate. Unreachable targets are left out.
        """
        available = group.available_concentrations
        key: ConcentrationCacheKey = (tuple(pattern.valid_concentrations), available)
        cached = self._concentration_cache.get(key)
        if cached is not None:
            logger.debug(f"Concentration cache hit for {pattern.name}")
            return cached

        targets = sorted(set(pattern.valid_concentrations), reverse=True)
        result = TransferConcentrations()
        dest = result.destination_concentrations
        intermediates = result.intermediate_concentrations

        def unsatisfied() -> List[float]:
            return [t for t in targets if t not in dest]

        for stock in available:
            dest.update(self.concentrations_filter(unsatisfied(), stock, SourceType.SRC))

        if self.create_int_concs:
            for target in unsatisfied():
                if target in dest:
                    continue
                for stock in available:
                    built = self.build_intermediate_conc(target, stock)
                    if built is None:
                        continue
                    int_conc, volume = built
                    low, high = self.intermediate_range(stock)
                    if not (low * (1 - _EPS) <= int_conc <= high * (1 + _EPS)):
                        continue
                    matched = self.concentrations_filter(unsatisfied(), int_conc, SourceType.INT1)
                    if matched and int_conc not in intermediates:
                        dest.update(matched)
                        intermediates[int_conc] = ConcentrationObj(stock, SourceType.SRC, volume)
                    break

            level1 = [c for c, r in intermediates.items() if r.source_type == SourceType.SRC]
            for target in unsatisfied():
                if target in dest:
                    continue
                candidates = []
                for int_conc in level1:
                    for area in ("hi", "mid", "lo"):
                        point = self.calculate_c4(target, int_conc, area)
                        if point and self.droplet_size <= point["vol"] < self.max_transfer_volume:
                            candidates.append(point)
                if not candidates:
                    continue
                best = min(candidates, key=lambda p: p["error"])
                built = self.build_intermediate_conc(target, best["src_conc"])
                if built is None:
                    continue
                int_conc, volume = built
                low, high = self.intermediate_range(best["src_conc"])
                if not (low * (1 - _EPS) <= int_conc <= high * (1 + _EPS)):
                    continue
                matched = self.concentrations_filter(unsatisfied(), int_conc, SourceType.INT2)
                if matched and int_conc not in intermediates:
                    dest.update(matched)
                    intermediates[int_conc] = ConcentrationObj(best["src_conc"], SourceType.INT1, volume)

        self._concentration_cache[key] = result
        return result
