"""Console output formatting utilities for pipewave."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from ..dag import JobGraph
    from ..model import Event, JobResult, Pipeline, PipelineResult, StepResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where normal output goes (defaults to sys.stdout at call time)
        """
        self.debug = debug
        self._stream = stream

    @property
    def out(self):
        return self._stream or sys.stdout

    def _print(self, text: str = "") -> None:
        print(text, file=self.out)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}")
        self._print("-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        workflow: str,
        event: "Event",
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._print("\nRUN STARTED")
        self._print(f"Pipeline: {pipeline}")
        self._print(f"Workflow: {workflow}")
        ref = f" @ {event.commit_reference}" if event.commit_reference else ""
        self._print(f"Event: {event.kind.value} -> {event.target_branch}{ref}")
        self._print(f"Jobs: {job_count}")
        self._print()

    def print_not_triggered(self, event: "Event") -> None:
        self._print(f"NOT TRIGGERED: no rule matches {event.kind.value} to '{event.target_branch}'")

    def print_wave(self, index: int, names: Iterable[str]) -> None:
        self._print(f"\n=== Wave {index}: {', '.join(names)} ===")

    def print_job_start(self, name: str, title: Optional[str] = None) -> None:
        """Print job start message."""
        label = f"{name} ({title})" if title and title != name else name
        self._print(f"\nJOB STARTED: {label}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._print(f"[{job}] STEP: {name}")

    def print_step_output(self, job: str, line: str) -> None:
        """Print one streamed line of step output."""
        self._print(f"[{job}] {line}")

    def print_step_result(self, job: str, step: "StepResult") -> None:
        detail = f" ({step.outcome.exit_detail})" if step.outcome.exit_detail else ""
        self._print(f"[{job}] {step.outcome.status.value.upper()}: {step.name}{detail}")

    def print_job_result(self, job: "JobResult") -> None:
        if job.outcome.status.value == "failed":
            failed = job.failed_step
            self.print_failure(
                job.name,
                reason=job.outcome.exit_detail or "failed",
                step=failed.name if failed else None,
                is_job=True,
            )
            if failed is not None and failed.output and not self.debug:
                self._print("Last output:")
                for line in failed.output.splitlines()[-10:]:
                    self._print(f"  {line}")
            return
        detail = f" ({job.outcome.exit_detail})" if job.outcome.exit_detail else ""
        self._print(f"JOB {job.outcome.status.value.upper()}: {job.name}{detail}")

    def print_failure(
        self,
        name: str,
        reason: str,
        step: Optional[str] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason / exit detail
            step: First failing step of a job, if known
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        self._print(f"{prefix}: {name}")
        if step:
            self._print(f"Failed step: {step}")
        self._print(f"Reason: {reason}")
        if hint:
            self._print(f"Hint: {hint}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._print(f"\nJOB SKIPPED: {name} ({reason})")

    def print_plan(self, pipeline: "Pipeline", graph: "JobGraph") -> None:
        """Print triggers and wave partition."""
        self.print_header(f"PLAN: {pipeline.name}")
        if not pipeline.triggers:
            self._print("Triggers: none (never runs on events)")
        for rule in pipeline.triggers:
            branches = "any branch" if rule.branch_patterns is None else ", ".join(sorted(rule.branch_patterns))
            self._print(f"Trigger: {rule.event_kind.value} -> {branches}")
        for idx, wave in enumerate(graph.waves, start=1):
            self._print(f"Wave {idx}:")
            for name in wave:
                job = graph.jobs[name]
                needs = f" (needs: {', '.join(job.needs)})" if job.needs else ""
                self._print(f"  {name}{needs}")
                for step in job.steps:
                    self._print(f"    - [{step.kind.value}] {step.name}")

    def print_results(self, result: "PipelineResult") -> None:
        """Print final results summary."""
        self._print("\n" + "=" * 40)
        self._print("RESULTS")
        self._print("=" * 40)
        for name, jr in result.jobs.items():
            line = f"  {name}: {jr.status.value.upper()}"
            failed = jr.failed_step
            if failed is not None:
                line += f" at '{failed.name}' ({failed.outcome.exit_detail})"
            elif jr.outcome.exit_detail:
                line += f" ({jr.outcome.exit_detail})"
            self._print(line)
        self._print("-" * 40)
        detail = f" ({result.outcome.exit_detail})" if result.outcome.exit_detail else ""
        self._print(f"  PIPELINE: {result.status.value.upper()}{detail}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
