"""Tests for outcome transitions and aggregation."""

import pytest

from pipewave.errors import InvalidTransition
from pipewave.model import CANCELLED, Outcome, Status, aggregate


class TestOutcome:
    def test_starts_pending(self):
        assert Outcome().status is Status.PENDING

    def test_run_to_success(self):
        o = Outcome()
        o.start()
        o.succeed("done")
        assert o.status is Status.SUCCEEDED
        assert o.exit_detail == "done"
        assert o.duration is not None and o.duration >= 0

    def test_run_to_failure(self):
        o = Outcome()
        o.start()
        o.fail("exit code 1")
        assert o.status is Status.FAILED
        assert o.exit_detail == "exit code 1"

    def test_pending_to_skipped(self):
        o = Outcome()
        o.skip("previous step failed")
        assert o.status is Status.SKIPPED
        assert o.terminal

    def test_pending_can_fail_only_when_cancelled(self):
        o = Outcome()
        o.fail(CANCELLED)
        assert o.status is Status.FAILED

        with pytest.raises(InvalidTransition):
            Outcome().fail("boom")

    def test_terminal_states_are_immutable(self):
        o = Outcome()
        o.start()
        o.succeed()
        for move in (o.start, o.succeed, o.fail, o.skip):
            with pytest.raises(InvalidTransition):
                move()
        assert o.status is Status.SUCCEEDED

    def test_cannot_succeed_without_running(self):
        with pytest.raises(InvalidTransition):
            Outcome().succeed()

    def test_running_cannot_be_skipped(self):
        o = Outcome()
        o.start()
        with pytest.raises(InvalidTransition):
            o.skip()

    def test_to_dict(self):
        o = Outcome()
        o.skip("not triggered")
        assert o.to_dict() == {"status": "skipped", "exit_detail": "not triggered", "duration": None}


class TestAggregate:
    def test_any_failure_fails(self):
        assert aggregate([Status.SUCCEEDED, Status.FAILED, Status.SKIPPED]) is Status.FAILED

    def test_all_succeeded(self):
        assert aggregate([Status.SUCCEEDED, Status.SUCCEEDED]) is Status.SUCCEEDED

    def test_skipped_is_never_success(self):
        assert aggregate([Status.SUCCEEDED, Status.SKIPPED]) is Status.SKIPPED

    def test_empty_is_not_success(self):
        assert aggregate([]) is Status.SKIPPED
