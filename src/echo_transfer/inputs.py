"""
Structured planner input.

The planner consumes four tables (Patterns, Layout, Compounds, Barcodes)
plus a set of scalar assay parameters. Rows can be built directly, from
plain dicts keyed by spreadsheet column names, or from pandas DataFrames.
Volumes in the tables are in microlitres; the planner converts them to
nanolitres.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

from echo_transfer.exceptions import InputValidationError

MAX_CONCENTRATION_COLUMNS = 20


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _get(row: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in row and not _is_blank(row[key]):
            return row[key]
    return default


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "y", "1")
    return bool(value)


@dataclass
class CommonData:
    """Scalar assay parameters.

    Attributes:
        max_dmso_fraction: Largest DMSO fraction tolerated in a destination well
        intermediate_backfill_volume: DMSO pre-filled into each intermediate well (uL)
        final_assay_volume: Assay buffer volume in each destination well (uL)
        allowable_error: Relative concentration error accepted (0.1 = 10%)
        dest_replicates: Number of replicate copies of every destination layout
        create_int_concs: Whether intermediate dilutions may be synthesised
        dmso_normalization: Whether to top every used well up to the same DMSO volume
        even_depletion: Draw from the fullest source well instead of the first
    """
    max_dmso_fraction: float
    intermediate_backfill_volume: float
    final_assay_volume: float
    allowable_error: float
    dest_replicates: int = 1
    create_int_concs: bool = True
    dmso_normalization: bool = False
    even_depletion: bool = False

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CommonData":
        try:
            return cls(
                max_dmso_fraction=float(_get(raw, "max_dmso_fraction", "maxDMSOFraction")),
                intermediate_backfill_volume=float(
                    _get(raw, "intermediate_backfill_volume", "intermediateBackfillVolume")
                ),
                final_assay_volume=float(_get(raw, "final_assay_volume", "finalAssayVolume")),
                allowable_error=float(_get(raw, "allowable_error", "allowableError")),
                dest_replicates=int(_get(raw, "dest_replicates", "destReplicates", default=1)),
                create_int_concs=_as_bool(_get(raw, "create_int_concs", "createIntConcs", default=True)),
                dmso_normalization=_as_bool(
                    _get(raw, "dmso_normalization", "dmsoNormalization", default=False)
                ),
                even_depletion=_as_bool(_get(raw, "even_depletion", "evenDepletion", default=False)),
            )
        except TypeError as err:
            raise InputValidationError(f"Missing common data value: {err}") from err


@dataclass
class PatternRow:
    name: str
    type: str
    direction: str
    replicates: int = 1
    concentrations: List[Optional[float]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "PatternRow":
        if "concentrations" in raw:
            concs = [None if _is_blank(c) else float(c) for c in raw["concentrations"]]
        else:
            concs = [
                None if _is_blank(raw.get(f"Conc{i}")) else float(raw[f"Conc{i}"])
                for i in range(1, MAX_CONCENTRATION_COLUMNS + 1)
            ]
        while concs and concs[-1] is None:
            concs.pop()
        name = _get(raw, "Pattern", "name")
        if name is None:
            raise InputValidationError(f"Pattern row without a name: {dict(raw)}")
        return cls(
            name=str(name).strip(),
            type=str(_get(raw, "Type", "type", default="Treatment")).strip(),
            direction=str(_get(raw, "Direction", "direction", default="")).strip(),
            replicates=int(_get(raw, "Replicates", "replicates", default=1)),
            concentrations=concs,
        )


@dataclass
class LayoutRow:
    pattern: str
    well_block: str

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "LayoutRow":
        return cls(
            pattern=str(_get(raw, "Pattern", "pattern", default="")).strip(),
            well_block=str(_get(raw, "Well Block", "well_block", default="")).strip(),
        )


@dataclass
class CompoundRow:
    """One stock aliquot. ``well_id`` may be a single well or a well block."""
    source_barcode: str
    well_id: str
    compound_id: str
    concentration: float
    volume: float
    patterns: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CompoundRow":
        patterns = _get(raw, "Pattern", "patterns", default="")
        if isinstance(patterns, str):
            patterns = [p.strip() for p in patterns.split(";") if p.strip()]
        return cls(
            source_barcode=str(_get(raw, "Source Barcode", "source_barcode", default="")).strip(),
            well_id=str(_get(raw, "Well ID", "well_id", default="")).strip(),
            compound_id=str(_get(raw, "Compound ID", "compound_id", default="")).strip(),
            concentration=float(_get(raw, "Concentration (µM)", "Concentration (uM)", "concentration")),
            volume=float(_get(raw, "Volume (µL)", "Volume (uL)", "volume")),
            patterns=list(patterns),
        )


@dataclass
class BarcodeRow:
    intermediate: str = ""
    destination: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "BarcodeRow":
        return cls(
            intermediate=str(
                _get(raw, "Intermediate Plate Barcode", "intermediate", default="")
            ).strip(),
            destination=str(
                _get(raw, "Destination Plate Barcode", "destination", default="")
            ).strip(),
        )


@dataclass
class InputData:
    common_data: CommonData
    patterns: List[PatternRow] = field(default_factory=list)
    layout: List[LayoutRow] = field(default_factory=list)
    compounds: List[CompoundRow] = field(default_factory=list)
    barcodes: List[BarcodeRow] = field(default_factory=list)

    @property
    def intermediate_barcodes(self) -> List[str]:
        return [b.intermediate for b in self.barcodes if b.intermediate]

    @property
    def destination_barcodes(self) -> List[str]:
        return [b.destination for b in self.barcodes if b.destination]

    def layout_blocks(self, pattern_name: str) -> List[str]:
        return [row.well_block for row in self.layout if row.pattern == pattern_name]

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "InputData":
        """Build from a dict of row lists, e.g. a parsed YAML/JSON document."""
        if "CommonData" not in raw:
            raise InputValidationError("Input is missing the CommonData section")
        return cls(
            common_data=CommonData.from_dict(raw["CommonData"]),
            patterns=[PatternRow.from_dict(r) for r in raw.get("Patterns", []) or []],
            layout=[LayoutRow.from_dict(r) for r in raw.get("Layout", []) or []],
            compounds=[CompoundRow.from_dict(r) for r in raw.get("Compounds", []) or []],
            barcodes=[BarcodeRow.from_dict(r) for r in raw.get("Barcodes", []) or []],
        )

    @classmethod
    def from_frames(
        cls,
        frames: Mapping[str, pd.DataFrame],
        common_data: CommonData,
    ) -> "InputData":
        """Build from one DataFrame per sheet (Patterns, Layout, Compounds, Barcodes)."""
        def records(sheet: str) -> List[Dict[str, Any]]:
            df = frames.get(sheet)
            if df is None:
                return []
            df = df.dropna(how="all")
            return df.to_dict(orient="records")

        return cls(
            common_data=common_data,
            patterns=[PatternRow.from_dict(r) for r in records("Patterns")],
            layout=[LayoutRow.from_dict(r) for r in records("Layout")],
            compounds=[CompoundRow.from_dict(r) for r in records("Compounds")],
            barcodes=[BarcodeRow.from_dict(r) for r in records("Barcodes")],
        )
