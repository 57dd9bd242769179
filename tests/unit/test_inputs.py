"""Tests for input tables, the compound inventory and dead volumes."""

import pandas as pd
import pytest

from echo_transfer.exceptions import InputValidationError
from echo_transfer.inputs import CommonData, CompoundRow, InputData, PatternRow
from echo_transfer.inventory import (
    analyze_dilution_patterns,
    build_compound_inventory,
    compounds_for_pattern,
    compute_plate_dead_volumes,
)
from echo_transfer.labware.pattern import PatternType


def _compound(barcode, volume, well="A01", cpd="CPD1", conc=1000, patterns=("P1",)):
    return CompoundRow(
        source_barcode=barcode,
        well_id=well,
        compound_id=cpd,
        concentration=conc,
        volume=volume,
        patterns=list(patterns),
    )


class TestDeadVolumes:
    """Per-plate dead volume follows the largest aliquot on the plate."""

    def test_small_aliquots(self):
        rows = [_compound("SRC1", 10), _compound("SRC1", 15, well="A02")]
        assert compute_plate_dead_volumes(rows) == {"SRC1": 2500}

    def test_large_aliquot(self):
        rows = [_compound("SRC1", 10), _compound("SRC1", 20, well="A02")]
        assert compute_plate_dead_volumes(rows) == {"SRC1": 15000}

    def test_per_plate(self):
        rows = [_compound("SRC1", 10), _compound("SRC2", 20)]
        assert compute_plate_dead_volumes(rows) == {"SRC1": 2500, "SRC2": 15000}

    def test_no_compounds(self):
        assert compute_plate_dead_volumes([]) == {}


class TestInventory:

    def test_groups_by_compound_and_pattern(self, make_input):
        data = make_input(compounds=("CPD1", "CPD2"))
        data.compounds.append(_compound("SRC1", 30, well="B01", cpd="CPD1", conc=10, patterns=("P1", "P2")))
        inventory = build_compound_inventory(data)
        group = inventory["CPD1"]["P1"]
        assert group.available_concentrations == (1000, 10)
        assert [loc.volume for loc in group.locations] == [50000, 30000]
        assert inventory["CPD1"]["P2"].locations[0].well_id == "B01"
        assert compounds_for_pattern(inventory, "P1") == ["CPD1", "CPD2"]
        assert compounds_for_pattern(inventory, "P2") == ["CPD1"]

    def test_well_block_expands(self, make_input):
        data = make_input()
        data.compounds = [_compound("SRC1", 20, well="A1:A3")]
        group = build_compound_inventory(data)["CPD1"]["P1"]
        assert [loc.well_id for loc in group.locations] == ["A01", "A02", "A03"]
        assert group.total_volume == 60000

    def test_overlapping_rows_count_wells_once(self, make_input):
        data = make_input()
        data.compounds = [_compound("SRC1", 20, well="A1:A2"), _compound("SRC1", 20, well="A2:A3")]
        group = build_compound_inventory(data)["CPD1"]["P1"]
        assert [loc.well_id for loc in group.locations] == ["A01", "A02", "A03"]
        assert group.total_volume == 60000


class TestPatternAnalysis:

    def test_patterns(self):
        patterns = analyze_dilution_patterns([
            PatternRow("P1", "Treatment", "LR", 2, [10, None, 1]),
            PatternRow("Empty", "Unused", "", 1, []),
            PatternRow("DMSO", "Solvent", "", 1, []),
        ])
        assert patterns["P1"].concentrations == [10, 1]
        assert patterns["P1"].replicates == 2
        assert patterns["Empty"].type == PatternType.UNUSED
        assert patterns["DMSO"].type == PatternType.SOLVENT

    def test_duplicate_name(self):
        with pytest.raises(InputValidationError):
            analyze_dilution_patterns([
                PatternRow("P1", "Treatment", "LR", 1, [1]),
                PatternRow("P1", "Control", "LR", 1, [1]),
            ])

    def test_missing_direction(self):
        with pytest.raises(InputValidationError):
            analyze_dilution_patterns([PatternRow("P1", "Treatment", "", 1, [1])])

    def test_bad_direction(self):
        with pytest.raises(InputValidationError):
            analyze_dilution_patterns([PatternRow("P1", "Treatment", "UP", 1, [1])])


class TestInputParsing:

    def test_from_dict_spreadsheet_columns(self):
        data = InputData.from_dict({
            "CommonData": {
                "maxDMSOFraction": 0.01,
                "intermediateBackfillVolume": 10,
                "finalAssayVolume": 25,
                "allowableError": 0.1,
                "destReplicates": 2,
                "dmsoNormalization": "true",
            },
            "Patterns": [{"Pattern": "P1", "Type": "Treatment", "Direction": "LR", "Replicates": 3, "Conc1": 10, "Conc2": 1}],
            "Layout": [{"Pattern": "P1", "Well Block": "A01:C02"}],
            "Compounds": [{
                "Source Barcode": "SRC1", "Well ID": "A01", "Compound ID": "CPD1",
                "Concentration (µM)": 1000, "Volume (µL)": 50, "Pattern": "P1; P2",
            }],
            "Barcodes": [{"Intermediate Plate Barcode": "INT-A", "Destination Plate Barcode": ""}],
        })
        assert data.common_data.dest_replicates == 2
        assert data.common_data.dmso_normalization is True
        assert data.patterns[0].concentrations == [10, 1]
        assert data.compounds[0].patterns == ["P1", "P2"]
        assert data.intermediate_barcodes == ["INT-A"]
        assert data.destination_barcodes == []
        assert data.layout_blocks("P1") == ["A01:C02"]

    def test_missing_common_data(self):
        with pytest.raises(InputValidationError):
            InputData.from_dict({"Patterns": []})

    def test_from_frames(self, common_data):
        frames = {
            "Patterns": pd.DataFrame([
                {"Pattern": "P1", "Type": "Treatment", "Direction": "LR", "Replicates": 1, "Conc1": 10.0, "Conc2": None},
            ]),
            "Layout": pd.DataFrame([{"Pattern": "P1", "Well Block": "A01"}]),
            "Compounds": pd.DataFrame([{
                "Source Barcode": "SRC1", "Well ID": "A01", "Compound ID": "CPD1",
                "Concentration (µM)": 1000.0, "Volume (µL)": 20.0, "Pattern": "P1",
            }]),
        }
        data = InputData.from_frames(frames, common_data)
        assert data.patterns[0].concentrations == [10.0]
        assert data.compounds[0].volume == 20.0
        assert data.barcodes == []

    def test_common_data_from_snake_case(self):
        common = CommonData.from_dict({
            "max_dmso_fraction": 0.005,
            "intermediate_backfill_volume": 10,
            "final_assay_volume": 25,
            "allowable_error": 0.1,
        })
        assert common.create_int_concs is True
        assert common.even_depletion is False
