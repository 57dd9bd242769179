"""
Dilution arithmetic.

Helpers for C1V1 = C2V2 calculations, droplet quantisation and the
concentration ranges reachable from a stock through up to two
intermediate dilutions.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from echo_transfer.config.defaults import DEFAULT_DROPLET_SIZE_NL, DEFAULT_MAX_TRANSFER_VOLUME_NL


def round_to_increment(value: float, direction: str = "nearest", increment: float = DEFAULT_DROPLET_SIZE_NL) -> float:
    """Round ``value`` to a multiple of ``increment``.

    ``direction`` is ``"nearest"`` (halves round up), ``"up"`` or ``"down"``.
    """
    steps = value / increment
    # absorb float noise such as 252.50000000000003 / 2.5
    snapped = round(steps)
    if math.isclose(steps, snapped, rel_tol=0, abs_tol=1e-9):
        return snapped * increment
    if direction == "up":
        return math.ceil(steps) * increment
    if direction == "down":
        return math.floor(steps) * increment
    if direction == "nearest":
        return math.floor(steps + 0.5) * increment
    raise ValueError(f"Unknown rounding direction: {direction}")


def solve_c1v1(
    c1: Optional[float] = None,
    v1: Optional[float] = None,
    c2: Optional[float] = None,
    v2: Optional[float] = None,
) -> float:
    """Solve C1*V1 = C2*V2 for the single missing value."""
    values = {"c1": c1, "v1": v1, "c2": c2, "v2": v2}
    missing = [k for k, v in values.items() if v is None]
    if len(missing) != 1:
        raise ValueError(f"Exactly one of c1, v1, c2, v2 must be missing, got {missing}")
    if missing[0] == "c1":
        return c2 * v2 / v1
    if missing[0] == "v1":
        return c2 * v2 / c1
    if missing[0] == "c2":
        return c1 * v1 / v2
    return c1 * v1 / c2


def number_combinations(n: int, r: int) -> int:
    """n choose r, 0 when r is out of range."""
    if r < 0 or n < 0 or r > n:
        return 0
    return math.comb(n, r)


def final_concentration(stock: float, transfer_volume: float, base_volume: float) -> float:
    """Concentration after adding ``transfer_volume`` of stock to ``base_volume``."""
    return stock * transfer_volume / (base_volume + transfer_volume)


def max_volume_to_destination(
    assay_volume: float,
    max_dmso_fraction: float,
    droplet_size: float = DEFAULT_DROPLET_SIZE_NL,
    max_transfer_volume: float = DEFAULT_MAX_TRANSFER_VOLUME_NL,
) -> float:
    """Largest quantised transfer into an assay well that respects the DMSO limit."""
    volume = round_to_increment(assay_volume * max_dmso_fraction, "down", droplet_size)
    return min(max(volume, droplet_size), max_transfer_volume)


@dataclass(frozen=True)
class ConcentrationRange:
    """Final assay concentrations reachable through one route."""
    source_type: str
    min_concentration: float
    max_concentration: float

    def contains(self, concentration: float) -> bool:
        return self.min_concentration <= concentration <= self.max_concentration


def analyze_achievable_ranges(
    stock: float,
    assay_volume: float,
    backfill_volume: float,
    max_dmso_fraction: float,
    droplet_size: float = DEFAULT_DROPLET_SIZE_NL,
    max_transfer_volume: float = DEFAULT_MAX_TRANSFER_VOLUME_NL,
) -> List[ConcentrationRange]:
    """Reachable assay concentrations directly and via one or two intermediates.

    All volumes in nL. Returns one range each for ``src``, ``int1`` and
    ``int2`` routes.
    """
    dest_max = max_volume_to_destination(assay_volume, max_dmso_fraction, droplet_size, max_transfer_volume)

    int1_low = final_concentration(stock, droplet_size, backfill_volume)
    int1_high = final_concentration(stock, max_transfer_volume, backfill_volume)
    int2_low = final_concentration(int1_low, droplet_size, backfill_volume)
    int2_high = final_concentration(int1_high, max_transfer_volume, backfill_volume)

    return [
        ConcentrationRange(
            "src",
            final_concentration(stock, droplet_size, assay_volume),
            final_concentration(stock, dest_max, assay_volume),
        ),
        ConcentrationRange(
            "int1",
            final_concentration(int1_low, droplet_size, assay_volume),
            final_concentration(int1_high, dest_max, assay_volume),
        ),
        ConcentrationRange(
            "int2",
            final_concentration(int2_low, droplet_size, assay_volume),
            final_concentration(int2_high, dest_max, assay_volume),
        ),
    ]


def merge_concentration_ranges(ranges: Iterable[ConcentrationRange]) -> List[Tuple[float, float]]:
    """Union of ranges as sorted, non-overlapping ``(min, max)`` pairs."""
    merged: List[Tuple[float, float]] = []
    for low, high in sorted((r.min_concentration, r.max_concentration) for r in ranges):
        if merged and low <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], high))
        else:
            merged.append((low, high))
    return merged


def analyze_multiple_stocks(stocks: Iterable[float], **constraints) -> List[Tuple[float, float]]:
    """Merged reachable ranges across several stock concentrations."""
    ranges: List[ConcentrationRange] = []
    for stock in stocks:
        ranges.extend(analyze_achievable_ranges(stock, **constraints))
    return merge_concentration_ranges(ranges)
