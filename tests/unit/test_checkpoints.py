"""Tests for the checkpoint log."""

import pytest

from echo_transfer.checkpoints import CheckpointTracker, CheckStatus


@pytest.fixture
def tracker():
    tracker = CheckpointTracker()
    tracker.add_checkpoint("First")
    tracker.add_checkpoint("Second")
    return tracker


def test_insertion_order(tracker):
    assert list(tracker.checkpoints) == ["First", "Second"]
    assert all(cp.status == CheckStatus.PENDING for cp in tracker)


def test_has_failures(tracker):
    assert not tracker.has_failures()
    tracker.update_checkpoint("First", CheckStatus.WARNING, ["careful"])
    assert not tracker.has_failures()
    tracker.update_checkpoint("Second", CheckStatus.FAILED, ["broken"])
    assert tracker.has_failures()


def test_update_replaces_messages(tracker):
    tracker.update_checkpoint("First", CheckStatus.WARNING, ["a"])
    tracker.update_checkpoint("First", CheckStatus.WARNING, ["b"])
    assert tracker.get_checkpoint("First").messages == ("b",)


def test_resolved_checkpoint_cannot_revert_to_pending(tracker):
    tracker.update_checkpoint("First", CheckStatus.PASSED)
    with pytest.raises(ValueError):
        tracker.update_checkpoint("First", CheckStatus.PENDING)


def test_add_checkpoint_starts_new_run(tracker):
    tracker.update_checkpoint("First", CheckStatus.FAILED, ["x"])
    tracker.add_checkpoint("First")
    assert tracker.get_checkpoint("First").status == CheckStatus.PENDING
    assert not tracker.has_failures()


def test_escalate_keeps_worst_status(tracker):
    tracker.escalate_checkpoint("First", CheckStatus.FAILED, ["bad"])
    tracker.escalate_checkpoint("First", CheckStatus.WARNING, ["meh"])
    checkpoint = tracker.get_checkpoint("First")
    assert checkpoint.status == CheckStatus.FAILED
    assert checkpoint.messages == ("bad", "meh")


def test_escalate_creates_missing_checkpoint():
    tracker = CheckpointTracker()
    tracker.escalate_checkpoint("New", CheckStatus.WARNING, ["hello"])
    assert tracker.get_checkpoint("New").status == CheckStatus.WARNING


def test_update_unknown_checkpoint(tracker):
    with pytest.raises(KeyError):
        tracker.update_checkpoint("Missing", CheckStatus.PASSED)


def test_clone_is_independent(tracker):
    copy = tracker.clone()
    copy.update_checkpoint("First", CheckStatus.FAILED)
    assert tracker.get_checkpoint("First").status == CheckStatus.PENDING


def test_report_lists_messages(tracker):
    tracker.update_checkpoint("First", CheckStatus.WARNING, ["low volume"])
    report = tracker.report()
    assert "[Warning] First" in report
    assert "low volume" in report
    assert tracker.messages(CheckStatus.WARNING) == ["low volume"]
