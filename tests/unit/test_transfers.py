"""Tests for transfer staging and export."""

import dataclasses

import pytest

from echo_transfer.labware.plate import PlateRole
from echo_transfer.transfers import (
    OTHER_PRIORITY,
    TransferStep,
    group_transfers_by_priority,
    priority_label,
    transfer_priority,
    transfers_to_dataframe,
)

ROLES = {
    "SRC": PlateRole.SOURCE,
    "INT1": PlateRole.INTERMEDIATE1,
    "INT2": PlateRole.INTERMEDIATE2,
    "DEST_B": PlateRole.DESTINATION,
    "DEST_A": PlateRole.DESTINATION,
}


def _step(src, dst, volume=2.5):
    return TransferStep(src, "A01", dst, "B02", volume)


class TestPriorities:

    @pytest.mark.parametrize("src,dst,priority", [
        ("SRC", "INT1", 1),
        ("INT1", "INT2", 2),
        ("SRC", "DEST_A", 3),
        ("INT1", "DEST_A", 4),
        ("INT2", "DEST_A", 5),
        ("INT2", "INT1", 6),
        ("SRC", "UNKNOWN", 6),
    ])
    def test_priority_by_roles(self, src, dst, priority):
        assert transfer_priority(_step(src, dst), ROLES)[0] == priority

    def test_labels(self):
        assert priority_label(1) == "source_to_intermediate1"
        assert priority_label(5) == "intermediate2_to_destination"
        assert priority_label(6) == OTHER_PRIORITY[1]


class TestGrouping:

    def test_buckets_sorted_by_barcodes(self):
        steps = [
            _step("SRC", "DEST_B"),
            _step("INT1", "DEST_A"),
            _step("SRC", "DEST_A"),
            _step("SRC", "INT1"),
        ]
        groups = group_transfers_by_priority(steps, ROLES)
        assert list(groups) == [1, 3, 4]
        assert [s.destination_barcode for s in groups[3]] == ["DEST_A", "DEST_B"]

    def test_empty(self):
        assert group_transfers_by_priority([], ROLES) == {}

    def test_steps_are_immutable(self):
        step = _step("SRC", "DEST_A")
        with pytest.raises(dataclasses.FrozenInstanceError):
            step.volume = 5.0


class TestDataFrame:

    def test_columns_and_order(self):
        steps = [_step("SRC", "DEST_A", 252.5), _step("SRC", "INT1", 12.5)]
        df = transfers_to_dataframe(steps, ROLES)
        assert list(df.columns) == [
            "Priority", "Transfer Type", "Source Barcode", "Source Well",
            "Destination Barcode", "Destination Well", "Volume (nL)",
        ]
        assert df["Priority"].tolist() == [1, 3]
        assert df["Volume (nL)"].tolist() == [12.5, 252.5]
        assert df["Transfer Type"].iloc[0] == "source_to_intermediate1"

    def test_empty_frame_keeps_columns(self):
        df = transfers_to_dataframe([], ROLES)
        assert df.empty
        assert "Volume (nL)" in df.columns
