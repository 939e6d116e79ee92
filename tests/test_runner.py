"""End-to-end tests for wave scheduling, fail-fast and cancellation."""

from __future__ import annotations

import json
import threading
import time

import pytest

from pipewave import executor
from pipewave.dsl import checkout, job, on_push, pipeline, sh
from pipewave.errors import StepFailure
from pipewave.loader import load_pipeline
from pipewave.model import CANCELLED, ActionKind, Event, EventKind, Status
from pipewave.runner import job_statuses, run_pipeline
from pipewave.status import JsonReportSink, StatusSink


class RecordingSink(StatusSink):
    def __init__(self):
        self.updates: list[tuple[str, str]] = []
        self.published = None

    def job_update(self, result, job):
        self.updates.append((job, result.jobs[job].status.value))

    def publish(self, result):
        self.published = result.to_dict()


def run(p, settings, source, *, event=None, **kwargs):
    return run_pipeline(
        p,
        event or Event(EventKind.PUSH, "dev"),
        settings=settings,
        source_root=source,
        **kwargs,
    )


class TestTriggering:
    def test_not_triggered_runs_nothing(self, settings, source):
        marker = source / "ran"
        p = pipeline("ci", job("a", sh("Touch", f"touch {marker}")), on=[on_push("dev")])
        result = run(p, settings, source, event=Event(EventKind.PUSH, "main"))

        assert not result.triggered
        assert result.status is Status.SKIPPED
        assert result.jobs == {}
        assert result.ok
        assert not marker.exists()

    def test_pipeline_without_triggers_never_runs(self, settings, source):
        p = pipeline("ci", job("a", sh("A", "true")))
        assert not run(p, settings, source).triggered

    def test_not_triggered_result_is_published(self, settings, source):
        sink = RecordingSink()
        p = pipeline("ci", job("a", sh("A", "true")), on=[on_push("dev")])
        run(p, settings, source, event=Event(EventKind.PUSH, "main"), sink=sink)

        assert sink.updates == []
        assert sink.published["triggered"] is False
        assert sink.published["status"] == "skipped"
        assert sink.published["exit_detail"] == "not triggered"


class TestWaves:
    def test_all_jobs_succeed(self, settings, source):
        p = pipeline(
            "ci",
            job("lint", sh("Lint", "true")),
            job("test", sh("Test", "true")),
            job("package", sh("Package", "true"), needs=["lint", "test"]),
            on=[on_push("dev")],
        )
        result = run(p, settings, source)
        assert result.triggered
        assert result.status is Status.SUCCEEDED
        assert result.waves == [["lint", "test"], ["package"]]
        assert job_statuses(result) == {"lint": "succeeded", "test": "succeeded", "package": "succeeded"}

    def test_jobs_in_a_wave_run_concurrently(self, settings, source):
        p = pipeline(
            "ci",
            job("a", sh("Sleep", "sleep 1")),
            job("b", sh("Sleep", "sleep 1")),
            job("c", sh("Sleep", "sleep 1")),
            on=[on_push("dev")],
        )
        started = time.monotonic()
        result = run(p, settings, source)
        assert result.status is Status.SUCCEEDED
        assert time.monotonic() - started < 2.5

    def test_next_wave_waits_for_the_previous_one(self, settings, source):
        stamp = source / "order"
        p = pipeline(
            "ci",
            job("first", sh("Slow", f"sleep 0.5 && echo first >> {stamp}")),
            job("second", sh("After", f"echo second >> {stamp}"), needs=["first"]),
            on=[on_push("dev")],
        )
        assert run(p, settings, source).status is Status.SUCCEEDED
        assert stamp.read_text().split() == ["first", "second"]


class TestFailFast:
    def test_failure_skips_later_waves(self, settings, source):
        p = pipeline(
            "ci",
            job("a", sh("Break", "false")),
            job("b", sh("Fine", "true")),
            job("c", sh("Never", "true"), needs=["a"]),
            job("d", sh("Never", "true"), needs=["b"]),
            on=[on_push("dev")],
        )
        result = run(p, settings, source)

        assert result.status is Status.FAILED
        assert result.outcome.exit_detail == "failed jobs: a"
        assert job_statuses(result) == {"a": "failed", "b": "succeeded", "c": "skipped", "d": "skipped"}
        assert result.job("c").outcome.exit_detail == "upstream failure in a"
        assert all(s.outcome.status is Status.SKIPPED for s in result.job("d").steps)

    def test_siblings_in_the_failing_wave_complete(self, settings, source):
        marker = source / "sibling-done"
        p = pipeline(
            "ci",
            job("fast-fail", sh("Fail", "false")),
            job("slow", sh("Slow", f"sleep 0.5 && touch {marker}")),
            on=[on_push("dev")],
        )
        result = run(p, settings, source)
        assert result.job("slow").status is Status.SUCCEEDED
        assert marker.exists()

    def test_engine_error_fails_only_that_job(self, settings, source, monkeypatch):
        def boom(ctx, step):
            if step.name == "Crash":
                raise RuntimeError("boom")
            return None

        monkeypatch.setitem(executor.HANDLERS, ActionKind.RUN, boom)
        p = pipeline(
            "ci",
            job("a", sh("Ok", "true"), sh("Crash", "true"), sh("After", "true")),
            job("b", sh("Fine", "true")),
            on=[on_push("dev")],
        )
        result = run(p, settings, source)
        a = result.job("a")
        assert a.status is Status.FAILED
        assert a.outcome.exit_detail == "internal error: boom"
        assert [(s.name, s.outcome.status) for s in a.steps] == [
            ("Ok", Status.SUCCEEDED),
            ("Crash", Status.FAILED),
            ("After", Status.SKIPPED),
        ]
        assert a.failed_step.name == "Crash"
        assert result.job("b").status is Status.SUCCEEDED


class TestCancellation:
    def test_cancel_before_start(self, settings, source):
        cancel = threading.Event()
        cancel.set()
        p = pipeline("ci", job("a", sh("A", "true")), job("b", sh("B", "true"), needs=["a"]), on=[on_push("dev")])
        result = run(p, settings, source, cancel=cancel)

        assert result.cancelled
        assert result.status is Status.FAILED
        assert result.outcome.exit_detail == CANCELLED
        assert job_statuses(result) == {"a": "skipped", "b": "skipped"}

    def test_running_job_fails_and_pending_job_is_skipped(self, settings, source):
        """One worker: 'build_and_test' is running when the cancel lands, 'rustfmt' has not started."""
        cancel = threading.Event()
        p = pipeline(
            "ci",
            job("build_and_test", sh("Build", "sleep 20")),
            job("rustfmt", sh("Format", "true")),
            job("publish", sh("Publish", "true"), needs=["build_and_test", "rustfmt"]),
            on=[on_push("dev")],
        )
        timer = threading.Timer(0.5, cancel.set)
        timer.start()
        started = time.monotonic()
        try:
            result = run(p, settings.override(max_workers=1), source, cancel=cancel)
        finally:
            timer.cancel()

        assert time.monotonic() - started < 10
        assert result.cancelled
        assert result.outcome.exit_detail == CANCELLED
        assert result.job("build_and_test").status is Status.FAILED
        assert result.job("build_and_test").outcome.exit_detail == CANCELLED
        assert result.job("rustfmt").status is Status.SKIPPED
        assert result.job("rustfmt").outcome.exit_detail == CANCELLED
        assert result.job("publish").status is Status.SKIPPED

    def test_control_plane_cancel_request(self, settings, source):
        polls = []

        def should_cancel():
            polls.append(time.monotonic())
            return len(polls) > 3

        p = pipeline("ci", job("a", sh("Sleep", "sleep 20")), on=[on_push("dev")])
        result = run(p, settings, source, should_cancel=should_cancel)
        assert result.cancelled
        assert result.job("a").outcome.exit_detail == CANCELLED


class TestWorkspaces:
    def test_isolated_jobs_do_not_see_each_other(self, settings, source):
        p = pipeline(
            "ci",
            job("writer", checkout(), sh("Write", "touch from-writer && test -f README.md")),
            job("reader", sh("Wait", "sleep 0.5"), sh("Read", "test ! -e from-writer")),
            on=[on_push("dev")],
        )
        result = run(p, settings, source)
        assert result.status is Status.SUCCEEDED, job_statuses(result)
        assert not (source / "from-writer").exists()

    def test_workspaces_are_removed(self, settings, source):
        p = pipeline("ci", job("a", checkout(), sh("A", "true")), on=[on_push("dev")])
        run(p, settings, source, run_id="run-1")
        assert not (settings.work_dir / "run-1").exists()

    def test_keep_workspaces(self, settings, source):
        p = pipeline("ci", job("a", checkout(), sh("A", "touch out")), on=[on_push("dev")])
        run(p, settings, source, run_id="run-2", keep_workspaces=True)
        assert (settings.work_dir / "run-2" / "a" / "out").exists()


class TestReporting:
    def test_sink_sees_every_job_transition(self, settings, source):
        sink = RecordingSink()
        p = pipeline(
            "ci",
            job("a", sh("A", "false")),
            job("b", sh("B", "true"), needs=["a"]),
            on=[on_push("dev")],
        )
        run(p, settings, source, sink=sink)

        assert ("a", "pending") in sink.updates
        assert ("a", "running") in sink.updates
        assert ("a", "failed") in sink.updates
        assert ("b", "skipped") in sink.updates
        assert sink.published["status"] == "failed"

    def test_json_report(self, settings, source):
        p = pipeline("ci", job("a", sh("A", "true"), sh("B", "exit 2")), on=[on_push("dev")])
        run(p, settings, source, sink=JsonReportSink(settings.report_path))

        report = json.loads(settings.report_path.read_text())
        assert report["pipeline"] == "ci"
        assert report["event"] == {"kind": "push", "target_branch": "dev", "commit_reference": None}
        assert report["status"] == "failed"
        job_report = report["jobs"]["a"]
        assert job_report["failed_step"] == "B"
        assert [s["status"] for s in job_report["steps"]] == ["succeeded", "failed"]
        assert job_report["steps"][1]["exit_detail"] == "exit code 2"

    def test_streamed_output_reaches_the_console(self, settings, source, quiet_console):
        p = pipeline("ci", job("greeter", sh("Greet", "echo hello-from-step")), on=[on_push("dev")])
        run(p, settings, source)
        assert "[greeter] hello-from-step" in quiet_console.out.getvalue()


@pytest.mark.parametrize("shared", [True, False])
def test_shared_and_isolated_workspaces_both_run(settings, source, shared):
    p = pipeline("ci", job("a", checkout(), sh("Read", "test -f README.md")), on=[on_push("dev")])
    result = run(p, settings.override(shared_workspace=shared), source)
    assert result.status is Status.SUCCEEDED


class TestRustWorkflow:
    """The bundled Rust workflow, with the toolchain and cargo replaced by fakes."""

    @pytest.fixture
    def fake_cargo(self, monkeypatch):
        ran: list[str] = []

        def setup_step(ctx, step):
            ctx.fingerprints["rust"] = "rustc 1.80.0"
            return "stable"

        def run_step(ctx, step):
            ran.append(f"{ctx.job.name}:{step.name}")
            if step.name == "Test":
                raise StepFailure(job=ctx.job.name, step=step.name, cmd=step.run, exit_code=101)
            return None

        monkeypatch.setitem(executor.HANDLERS, ActionKind.SETUP, setup_step)
        monkeypatch.setitem(executor.HANDLERS, ActionKind.RUN, run_step)
        return ran

    def test_failing_tests_skip_docs_and_leave_rustfmt_alone(self, settings, source, rust_workflow, fake_cargo):
        p = load_pipeline(rust_workflow)
        result = run(p, settings, source, event=Event(EventKind.PUSH, "dev"))

        assert result.triggered
        assert result.waves == [["build_and_test", "rustfmt"]]
        build = result.job("build_and_test")
        assert [(s.name, s.outcome.status, s.outcome.exit_detail) for s in build.steps] == [
            ("Checkout repository", Status.SUCCEEDED, "copied working tree"),
            ("Install stable rust toolchain", Status.SUCCEEDED, "stable"),
            ("Use caching", Status.SUCCEEDED, "cache miss"),
            ("Clippy", Status.SUCCEEDED, None),
            ("Build", Status.SUCCEEDED, None),
            ("Test", Status.FAILED, "exit code 101"),
            ("Check documentation", Status.SKIPPED, "previous step failed"),
        ]
        assert build.failed_step.name == "Test"
        assert result.job("rustfmt").status is Status.SUCCEEDED
        assert "build_and_test:Check documentation" not in fake_cargo
        assert "rustfmt:Check formatting" in fake_cargo
        assert result.status is Status.FAILED
        assert result.outcome.exit_detail == "failed jobs: build_and_test"

    def test_other_branches_do_not_trigger(self, settings, source, rust_workflow, fake_cargo):
        result = run(load_pipeline(rust_workflow), settings, source, event=Event(EventKind.PUSH, "main"))
        assert not result.triggered
        assert fake_cargo == []
