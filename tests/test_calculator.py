"""
End-to-end allocation tests: inputs -> pre-calculation -> transfer plan.
"""
import pandas as pd
import pytest

from echo_transfer.calculator import TRANSFER_ALLOCATION, EchoCalculator
from echo_transfer.checkpoints import CheckStatus
from echo_transfer.exceptions import PlanningBlockedError
from echo_transfer.inputs import CompoundRow, LayoutRow, PatternRow
from echo_transfer.labware.plate import PlateRole
from echo_transfer.precalculator import EchoPreCalculator


def _plan(data):
    pre = EchoPreCalculator(data)
    calc = EchoCalculator(pre)
    return calc, calc.run()


def _drawn_wells_keep_dead_volume(calc, plan):
    """No well a transfer was drawn from ends below its plate's dead volume."""
    for step in plan.transfer_steps:
        well = plan.plates[step.source_barcode].get_well(step.source_well_id)
        assert well.total_volume >= calc.dead_volume(step.source_barcode) - 1e-6


class TestDirectPlan:

    def test_direct_transfers(self, make_input):
        calc, plan = _plan(make_input(concentrations=[10, 1], layout=["A01:A02"]))
        steps = {(s.destination_well_id, s.volume) for s in plan.transfer_steps}
        assert steps == {("A01", 252.5), ("A02", 25.0)}
        assert all(s.source_barcode == "SRC1" for s in plan.transfer_steps)
        assert all(s.destination_barcode == "DestPlate_1" for s in plan.transfer_steps)
        assert plan.checkpoint_tracker.get_checkpoint(TRANSFER_ALLOCATION).status == CheckStatus.PASSED

    def test_plate_state(self, make_input):
        calc, plan = _plan(make_input(concentrations=[10, 1], layout=["A01:A02"]))
        dest = plan.plates["DestPlate_1"]
        assert dest.get_well("A01").concentration_of("CPD1") == pytest.approx(10, rel=0.1)
        assert dest.get_well("A02").concentration_of("CPD1") == pytest.approx(1, rel=0.1)
        assert dest.get_well("A01").contents[0].pattern_name == "P1"
        assert plan.plates["SRC1"].get_well("A01").total_volume == pytest.approx(50000 - 277.5)
        _drawn_wells_keep_dead_volume(calc, plan)

    def test_plate_roles(self, make_input):
        _, plan = _plan(make_input())
        assert plan.plate_roles == {"SRC1": PlateRole.SOURCE, "DestPlate_1": PlateRole.DESTINATION}
        assert plan.plates_with_role(PlateRole.INTERMEDIATE1) == []

    def test_max_concentration_metadata(self, make_input):
        _, plan = _plan(make_input())
        assert plan.plates["SRC1"].metadata["global_max_concentration"] == 1000

    def test_run_pre_calculates(self, make_input):
        pre = EchoPreCalculator(make_input())
        EchoCalculator(pre).run()
        assert pre.needs_calculated

    def test_run_twice(self, make_input):
        calc = EchoCalculator(EchoPreCalculator(make_input()))
        calc.run()
        with pytest.raises(RuntimeError):
            calc.run()

    def test_plan_is_frozen_copy(self, make_input):
        calc, plan = _plan(make_input())
        assert isinstance(plan.transfer_steps, tuple)
        calc.checkpoint_tracker.update_checkpoint(TRANSFER_ALLOCATION, CheckStatus.FAILED, ["later"])
        assert plan.checkpoint_tracker.get_checkpoint(TRANSFER_ALLOCATION).status == CheckStatus.PASSED


class TestIntermediatePlan:

    def test_level1_intermediate(self, make_input):
        calc, plan = _plan(make_input(concentrations=[1], stock=100000, layout=["A01"]))
        assert plan.plate_roles["IntPlate_1"] == PlateRole.INTERMEDIATE1
        groups = plan.grouped()
        assert list(groups) == [1, 4]
        assert groups[1][0].volume == 12.5
        assert groups[4][0].source_barcode == "IntPlate_1"

        dest_well = plan.plates["DestPlate_1"].get_well("A01")
        assert dest_well.concentration_of("CPD1") == pytest.approx(1, rel=0.1)
        _drawn_wells_keep_dead_volume(calc, plan)

    def test_intermediate_plates_are_backfilled(self, make_input):
        _, plan = _plan(make_input(concentrations=[1], stock=100000, layout=["A01"]))
        int_plate = plan.plates["IntPlate_1"]
        assert int_plate.get_well("P24").total_volume == 10000
        assert int_plate.get_well("P24").is_solvent_only("DMSO")

    def test_level2_intermediate(self, make_input):
        data = make_input(concentrations=[0.1, 0.01, 0.001], stock=100000, layout=["A01:A03"])
        calc, plan = _plan(data)
        assert plan.plate_roles["IntPlate_2"] == PlateRole.INTERMEDIATE2
        assert list(plan.grouped()) == [1, 2, 4, 5]

        dest = plan.plates["DestPlate_1"]
        for well_id, target in (("A01", 0.1), ("A02", 0.01), ("A03", 0.001)):
            assert dest.get_well(well_id).concentration_of("CPD1") == pytest.approx(target, rel=0.1)
        _drawn_wells_keep_dead_volume(calc, plan)

    def test_named_intermediate_plates(self, make_input):
        data = make_input(concentrations=[1], stock=100000, layout=["A01"], barcodes=[{"intermediate": "INT-A"}])
        _, plan = _plan(data)
        assert plan.plate_roles["INT-A"] == PlateRole.INTERMEDIATE1


class TestDestinationLayout:

    def test_replicate_plates(self, make_input, common_data):
        common_data.dest_replicates = 2
        data = make_input(barcodes=[{"destination": "PLATE-A"}], common=common_data)
        _, plan = _plan(data)
        dest = [p.barcode for p in plan.plates_with_role(PlateRole.DESTINATION)]
        assert dest == ["PLATE-A", "DestPlate_2"]
        for barcode in dest:
            assert plan.plates[barcode].get_well("A01").concentration_of("CPD1") == pytest.approx(10, rel=0.1)

    def test_compounds_fill_blocks_in_order(self, make_input):
        data = make_input(compounds=("A", "B", "C"), layout=["A01", "B01"])
        _, plan = _plan(data)
        assert len(plan.plates_with_role(PlateRole.DESTINATION)) == 2
        first, second = plan.plates["DestPlate_1"], plan.plates["DestPlate_2"]
        assert first.get_well("A01").contents[0].compound_id == "A"
        assert first.get_well("B01").contents[0].compound_id == "B"
        assert second.get_well("A01").contents[0].compound_id == "C"
        assert second.get_well("B01").contents == []

    def test_unused_wells_receive_nothing(self, make_input):
        data = make_input(concentrations=[10, 1], layout=["A02:A03"])
        data.patterns.append(PatternRow("Edge", "Unused", "", 1, []))
        data.layout.append(LayoutRow("Edge", "A01:P01"))
        _, plan = _plan(data)
        dest = plan.plates["DestPlate_1"]
        assert all(w.is_unused for w in dest.get_some_wells("A01:P01"))
        targets = {s.destination_well_id for s in plan.transfer_steps}
        assert targets == {"A02", "A03"}

    def test_combinations(self, make_input):
        data = make_input(
            compounds=("A", "B", "C"),
            concentrations=[10, 1],
            pattern_type="Combination",
            direction="LR-TB",
            layout=["A01:B02", "D01:E02"],
        )
        _, plan = _plan(data)
        assert len(plan.plates_with_role(PlateRole.DESTINATION)) == 2

        def compounds(barcode, well_id):
            return {c.compound_id for c in plan.plates[barcode].get_well(well_id).contents}

        assert compounds("DestPlate_1", "A01") == {"A", "B"}
        assert compounds("DestPlate_1", "D01") == {"A", "C"}
        assert compounds("DestPlate_2", "A01") == {"B", "C"}
        assert compounds("DestPlate_2", "D01") == set()

        # first compound varies left to right, second top to bottom
        well = plan.plates["DestPlate_1"].get_well("B01")
        assert well.concentration_of("A") > well.concentration_of("B")

    def test_controls_cycle_over_blocks(self, make_input):
        data = make_input(compounds=("X", "Y"), pattern_type="Control", layout=["A01", "B01", "C01"])
        _, plan = _plan(data)
        dest = plan.plates["DestPlate_1"]
        assert [dest.get_well(w).contents[0].compound_id for w in ("A01", "B01", "C01")] == ["X", "Y", "X"]


class TestSourceSelection:

    def _two_well_input(self, make_input):
        data = make_input()
        data.compounds.append(CompoundRow("SRC1", "B01", "CPD1", 1000, 80, ["P1"]))
        return data

    def test_first_eligible_well(self, make_input):
        _, plan = _plan(self._two_well_input(make_input))
        assert plan.transfer_steps[0].source_well_id == "A01"

    def test_even_depletion_uses_fullest(self, make_input, common_data):
        common_data.even_depletion = True
        _, plan = _plan(self._two_well_input(make_input))
        assert plan.transfer_steps[0].source_well_id == "B01"

    def test_donor_may_drain_to_dead_volume(self, make_input):
        """Stock and DMSO donors accept a draw that leaves exactly the dead volume."""
        calc = EchoCalculator(EchoPreCalculator(make_input()))
        calc.prepare_source_plates()
        donor = calc.plates["SRC1"].get_well("B01")
        donor.add_solvent(calc.solvent, 252.5 + calc.dead_volume("SRC1"))
        assert calc.find_source_well([("SRC1", "B01")], 252.5) is donor
        assert calc.find_next_available_dmso_well(252.5) is donor


class TestSharedSourceWells:

    def _shared_well_input(self, make_input, volume=50.0):
        data = make_input(volume=volume)
        data.patterns.append(PatternRow("P2", "Treatment", "LR", 1, [10]))
        data.layout.append(LayoutRow("P2", "B01"))
        data.compounds.append(CompoundRow("SRC1", "A01", "CPD1", 1000, volume, ["P2"]))
        return data

    def test_well_listed_twice_is_filled_once(self, make_input):
        calc, plan = _plan(self._shared_well_input(make_input))
        assert len(plan.transfer_steps) == 2
        assert {s.source_well_id for s in plan.transfer_steps} == {"A01"}
        assert plan.plates["SRC1"].get_well("A01").total_volume == pytest.approx(50000 - 2 * 252.5)
        _drawn_wells_keep_dead_volume(calc, plan)

    def test_shared_well_runs_short(self, make_input):
        """2.8 uL covers one 252.5 nL draw plus dead volume, not two."""
        _, plan = _plan(self._shared_well_input(make_input, volume=2.8))
        assert len(plan.transfer_steps) == 1
        checkpoint = plan.checkpoint_tracker.get_checkpoint(TRANSFER_ALLOCATION)
        assert checkpoint.status == CheckStatus.WARNING


class TestDmsoNormalization:

    def test_used_wells_reach_same_dmso(self, make_input, common_data):
        common_data.dmso_normalization = True
        data = make_input(concentrations=[10, 1], layout=["A02:A03"], common=common_data)
        data.patterns.append(PatternRow("Edge", "Unused", "", 1, []))
        data.layout.append(LayoutRow("Edge", "A01:P01"))
        calc, plan = _plan(data)

        dest = plan.plates["DestPlate_1"]
        for well in dest.used_wells():
            assert well.solvent_volume("DMSO") == pytest.approx(252.5)
            assert well.total_volume == pytest.approx(25252.5)
        for well in dest.get_some_wells("A01:P01"):
            assert well.solvent_volume("DMSO") == 0
        assert max(s.volume for s in plan.transfer_steps) <= 500
        assert plan.checkpoint_tracker.get_checkpoint(TRANSFER_ALLOCATION).status == CheckStatus.PASSED
        _drawn_wells_keep_dead_volume(calc, plan)

    def test_normalization_off_leaves_empty_wells(self, make_input):
        _, plan = _plan(make_input())
        assert plan.plates["DestPlate_1"].get_well("B01").solvent_volume("DMSO") == 0


class TestBlockedAndShortPlans:

    def test_failed_checkpoint_blocks_allocation(self, make_input):
        data = make_input()
        data.patterns[0].type = "Mystery"
        calc = EchoCalculator(EchoPreCalculator(data))
        with pytest.raises(PlanningBlockedError):
            calc.run()

    def test_exhausted_source_warns(self, make_input):
        calc, plan = _plan(make_input(volume=2.6))
        checkpoint = plan.checkpoint_tracker.get_checkpoint(TRANSFER_ALLOCATION)
        assert checkpoint.status == CheckStatus.WARNING
        assert checkpoint.messages[0].startswith("No source well with enough volume of CPD1")
        assert plan.transfer_steps == ()
        assert not plan.checkpoint_tracker.has_failures()


class TestExport:

    def test_to_csv_per_stage(self, make_input, tmp_path):
        _, plan = _plan(make_input(concentrations=[1], stock=100000, layout=["A01"]))
        paths = plan.to_csv(tmp_path / "out")
        assert [p.name for p in paths] == ["1_source_to_intermediate1.csv", "4_intermediate1_to_destination.csv"]
        df = pd.read_csv(paths[1])
        assert list(df.columns) == [
            "Source Barcode", "Source Well", "Destination Barcode", "Destination Well", "Volume (nL)",
        ]
        assert df["Volume (nL)"].iloc[0] == 202.5

    def test_dataframe(self, make_input):
        _, plan = _plan(make_input(concentrations=[10, 1], layout=["A01:A02"]))
        df = plan.to_dataframe()
        assert len(df) == 2
        assert set(df["Transfer Type"]) == {"source_to_destination"}
