"""
Pytest configuration for echo_transfer tests.
"""
import sys
import os
import pytest

# Add src directory to Python path so tests can import echo_transfer modules
src_path = os.path.abspath(os.path.join(os.path.dirname(__file__), "../src"))
sys.path.insert(0, src_path)

from echo_transfer.config.settings import EchoSettings  # noqa: E402
from echo_transfer.inputs import (  # noqa: E402
    BarcodeRow,
    CommonData,
    CompoundRow,
    InputData,
    LayoutRow,
    PatternRow,
)


# ==============================================================================
# Planner Input Fixtures
# ==============================================================================

@pytest.fixture
def echo_settings():
    """Default instrument: 2.5 nL droplets, 500 nL max transfer, 384-well plates."""
    return EchoSettings()


@pytest.fixture
def common_data():
    """1% DMSO, 10 uL backfill, 25 uL assay, 10% error."""
    return CommonData(
        max_dmso_fraction=0.01,
        intermediate_backfill_volume=10,
        final_assay_volume=25,
        allowable_error=0.1,
        dest_replicates=1,
        create_int_concs=True,
        dmso_normalization=False,
    )


@pytest.fixture
def make_input(common_data):
    """
    Factory for small planner inputs.

    Usage in tests:
        def test_something(make_input):
            data = make_input(concentrations=[10, 1], stock=1000)
    """
    def _make(
        concentrations=(10.0,),
        stock=1000.0,
        volume=50.0,
        compounds=("CPD1",),
        pattern_type="Treatment",
        direction="LR",
        replicates=1,
        layout=("A01:A01",),
        barcodes=(),
        source_barcode="SRC1",
        common=None,
    ):
        pattern_rows = [PatternRow(
            name="P1",
            type=pattern_type,
            direction=direction,
            replicates=replicates,
            concentrations=list(concentrations),
        )]
        compound_rows = [
            CompoundRow(
                source_barcode=source_barcode,
                well_id=f"A{i + 1:02d}",
                compound_id=cpd,
                concentration=stock,
                volume=volume,
                patterns=["P1"],
            )
            for i, cpd in enumerate(compounds)
        ]
        return InputData(
            common_data=common or common_data,
            patterns=pattern_rows,
            layout=[LayoutRow(pattern="P1", well_block=block) for block in layout],
            compounds=compound_rows,
            barcodes=[BarcodeRow(**b) for b in barcodes],
        )

    return _make
