"""
Transfer records and export.

A TransferStep is the unit of work handed to the liquid handler. Steps are
immutable once emitted. For export they are grouped into stages so that
intermediate plates are made before they are drawn from.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import pandas as pd

from echo_transfer.labware.plate import PlateRole


@dataclass(frozen=True)
class TransferStep:
    source_barcode: str
    source_well_id: str
    destination_barcode: str
    destination_well_id: str
    volume: float


@dataclass(frozen=True)
class TransferInfo:
    """What a step carries: a compound at a concentration, or plain solvent."""
    transfer_type: str
    compound_id: Optional[str] = None
    concentration: Optional[float] = None
    solvent_name: Optional[str] = None

    COMPOUND = "compound"
    SOLVENT = "solvent"


# (source role, destination role) -> (priority, label)
TRANSFER_PRIORITIES: Dict[Tuple[PlateRole, PlateRole], Tuple[int, str]] = {
    (PlateRole.SOURCE, PlateRole.INTERMEDIATE1): (1, "source_to_intermediate1"),
    (PlateRole.INTERMEDIATE1, PlateRole.INTERMEDIATE2): (2, "intermediate1_to_intermediate2"),
    (PlateRole.SOURCE, PlateRole.DESTINATION): (3, "source_to_destination"),
    (PlateRole.INTERMEDIATE1, PlateRole.DESTINATION): (4, "intermediate1_to_destination"),
    (PlateRole.INTERMEDIATE2, PlateRole.DESTINATION): (5, "intermediate2_to_destination"),
}
OTHER_PRIORITY = (6, "other")


def transfer_priority(step: TransferStep, plate_roles: Mapping[str, PlateRole]) -> Tuple[int, str]:
    key = (plate_roles.get(step.source_barcode), plate_roles.get(step.destination_barcode))
    return TRANSFER_PRIORITIES.get(key, OTHER_PRIORITY)


def group_transfers_by_priority(
    steps: Iterable[TransferStep],
    plate_roles: Mapping[str, PlateRole],
) -> Dict[int, List[TransferStep]]:
    """Bucket steps by stage; each bucket is sorted by source then destination barcode.

    Only non-empty buckets are returned, keyed by priority in ascending order.
    """
    groups: Dict[int, List[TransferStep]] = {}
    for step in steps:
        priority, _ = transfer_priority(step, plate_roles)
        groups.setdefault(priority, []).append(step)
    return {
        priority: sorted(groups[priority], key=lambda s: (s.source_barcode, s.destination_barcode))
        for priority in sorted(groups)
    }


def priority_label(priority: int) -> str:
    for value, label in TRANSFER_PRIORITIES.values():
        if value == priority:
            return label
    return OTHER_PRIORITY[1]


def transfers_to_dataframe(
    steps: Iterable[TransferStep],
    plate_roles: Mapping[str, PlateRole],
) -> pd.DataFrame:
    """Staged transfer list as a DataFrame, one row per step."""
    rows = []
    for priority, group in group_transfers_by_priority(steps, plate_roles).items():
        for step in group:
            rows.append({
                "Priority": priority,
                "Transfer Type": priority_label(priority),
                "Source Barcode": step.source_barcode,
                "Source Well": step.source_well_id,
                "Destination Barcode": step.destination_barcode,
                "Destination Well": step.destination_well_id,
                "Volume (nL)": step.volume,
            })
    columns = [
        "Priority", "Transfer Type", "Source Barcode", "Source Well",
        "Destination Barcode", "Destination Well", "Volume (nL)",
    ]
    return pd.DataFrame(rows, columns=columns)
