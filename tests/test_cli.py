"""Tests for the pipewave command line."""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from textwrap import dedent

import pytest
from click.testing import CliRunner

from pipewave.cli import cli

WORKFLOW = """\
from pipewave.dsl import pipeline, job, sh, checkout, on_push, on_pull_request

def workflow():
    return pipeline(
        "demo",
        job("lint", checkout(), sh("Lint", "test -f README.md")),
        job("test", sh("Test", "{test_cmd}")),
        job("package", sh("Package", "true"), needs=["lint", "test"]),
        on=[on_push("dev"), on_pull_request("dev")],
    )
"""


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for var in ("PIPEWAVE_STATUS_URL", "PIPEWAVE_REPORT_PATH", "PIPEWAVE_WORK_DIR", "PIPEWAVE_CACHE_DIR"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    (tmp_path / "README.md").write_text("demo\n")
    return tmp_path


def write_workflow(root: Path, test_cmd: str = "true") -> Path:
    path = root / "pipewave_workflow.py"
    path.write_text(WORKFLOW.format(test_cmd=test_cmd))
    return path


def invoke(*args: str):
    return CliRunner().invoke(cli, list(args), catch_exceptions=False)


class TestRun:
    def test_successful_run(self, project):
        write_workflow(project)
        result = invoke("run", "--branch", "dev")
        assert result.exit_code == 0, result.output
        assert "PIPELINE: SUCCEEDED" in result.output

        report = json.loads((project / ".pipewave" / "report.json").read_text())
        assert report["status"] == "succeeded"
        assert report["waves"] == [["lint", "test"], ["package"]]

    def test_failed_run_exits_1(self, project):
        write_workflow(project, test_cmd="exit 4")
        result = invoke("run", "--branch", "dev")
        assert result.exit_code == 1
        assert "test: FAILED at 'Test' (exit code 4)" in result.output
        assert "package: SKIPPED (upstream failure in test)" in result.output

    def test_not_triggered(self, project):
        write_workflow(project)
        result = invoke("run", "--branch", "main")
        assert result.exit_code == 0
        assert "Nothing to do." in result.output
        report = json.loads((project / ".pipewave" / "report.json").read_text())
        assert report["triggered"] is False
        assert report["status"] == "skipped"
        assert report["exit_detail"] == "not triggered"
        assert report["jobs"] == {}

    def test_pull_request_event(self, project):
        write_workflow(project)
        result = invoke("run", "--event", "pull_request", "--branch", "dev", "--ref", "abc123")
        assert result.exit_code == 0, result.output
        assert "Event: pull_request -> dev @ abc123" in result.output

    def test_custom_report_path_and_shared_workspace(self, project):
        write_workflow(project)
        result = invoke("run", "--branch", "dev", "--report", "out.json", "--shared-workspace", "--workers", "1")
        assert result.exit_code == 0, result.output
        assert json.loads((project / "out.json").read_text())["status"] == "succeeded"

    def test_yaml_workflow(self, project):
        workflows = project / ".github" / "workflows"
        workflows.mkdir(parents=True)
        (workflows / "ci.yml").write_text(
            dedent(
                """\
                on:
                  push:
                    branches: [dev]
                jobs:
                  hello:
                    steps:
                      - run: echo hello-yaml
                """
            )
        )
        result = invoke("run", "--branch", "dev")
        assert result.exit_code == 0, result.output
        assert "[hello] hello-yaml" in result.output


class TestConfigErrors:
    def test_cycle_exits_2(self, project):
        (project / "pipewave_workflow.py").write_text(
            dedent(
                """\
                from pipewave.dsl import pipeline, job, sh, on_push

                PIPELINE = pipeline(
                    "loop",
                    job("a", sh("A", "true"), needs=["b"]),
                    job("b", sh("B", "true"), needs=["a"]),
                    on=[on_push("dev")],
                )
                """
            )
        )
        result = invoke("run", "--branch", "dev")
        assert result.exit_code == 2

    def test_missing_workflow_exits_2(self, project):
        assert invoke("run", "--branch", "dev").exit_code == 2
        assert invoke("run", "--workflow", "nope.yml", "--branch", "dev").exit_code == 2

    def test_ambiguous_workflow_exits_2(self, project):
        write_workflow(project)
        shutil.copy(project / "pipewave_workflow.py", project / "other_workflow.py")
        assert invoke("check").exit_code == 2


class TestPlanAndCheck:
    def test_plan_shows_waves(self, project):
        write_workflow(project)
        result = invoke("plan")
        assert result.exit_code == 0
        assert "Trigger: push -> dev" in result.output
        assert "Wave 1:" in result.output
        assert "package (needs: lint, test)" in result.output

    def test_check(self, project):
        write_workflow(project)
        result = invoke("check", "--workflow", "pipewave_workflow.py")
        assert result.exit_code == 0
        assert "3 job(s), 2 wave(s), 2 trigger rule(s)" in result.output

    def test_check_rust_fixture(self, project, rust_workflow):
        result = invoke("check", "--workflow", str(rust_workflow))
        assert result.exit_code == 0
        assert "2 job(s), 1 wave(s)" in result.output
