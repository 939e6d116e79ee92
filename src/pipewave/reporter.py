# reporter.py
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional

from .errors import StatusReportError
from .model import (
    CANCELLED,
    ActionKind,
    Event,
    JobResult,
    Outcome,
    PipelineResult,
    Status,
    StepResult,
    aggregate,
)
from .ui.console import Console, get_console

if TYPE_CHECKING:
    from .dag import JobGraph
    from .status import StatusSink


# ---------------------------------------------------------------------
# Channel messages (job workers -> reporter)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class JobStarted:
    job: str


@dataclass(frozen=True)
class StepStarted:
    job: str
    step: str
    kind: ActionKind


@dataclass(frozen=True)
class StepOutput:
    job: str
    step: str
    line: str


@dataclass(frozen=True)
class StepFinished:
    job: str
    result: StepResult          # outcome is terminal, never mutated again


@dataclass(frozen=True)
class JobFinished:
    job: str
    result: JobResult


class ResultReporter:
    """
    Single consumer of the job channel. Owns the pipeline-level view:
    per-job results, the aggregate outcome, console output and the
    status sink. Runs on the scheduler thread only.
    """

    def __init__(
        self,
        pipeline: str,
        event: Event,
        *,
        sink: Optional["StatusSink"] = None,
        console: Optional[Console] = None,
    ):
        self.result = PipelineResult(pipeline=pipeline, event=event, triggered=True)
        self.sink = sink
        self.console = console or get_console()
        self._titles: Dict[str, str] = {}

    # ---- lifecycle ----

    def begin(self, graph: "JobGraph") -> None:
        self.result.waves = [list(w) for w in graph.waves]
        self.result.jobs = {
            name: JobResult.pending(graph.jobs[name])
            for wave in graph.waves
            for name in wave
        }
        self._titles = {name: job.title for name, job in graph.jobs.items()}
        self.result.outcome.start()
        for name in self.result.jobs:
            self._publish_job(name)

    def handle(self, msg: object) -> None:
        if isinstance(msg, StepOutput):
            self.console.print_step_output(msg.job, msg.line)
        elif isinstance(msg, StepStarted):
            self.console.print_step(msg.job, msg.step)
        elif isinstance(msg, StepFinished):
            self.console.print_step_result(msg.job, msg.result)
        elif isinstance(msg, JobStarted):
            self.result.jobs[msg.job].outcome.start()
            self.console.print_job_start(msg.job, self._titles.get(msg.job))
            self._publish_job(msg.job)
        elif isinstance(msg, JobFinished):
            self.result.jobs[msg.job] = msg.result
            self.console.print_job_result(msg.result)
            self._publish_job(msg.job)
        else:
            raise TypeError(f"unexpected reporter message: {msg!r}")

    def skip_job(self, name: str, reason: str) -> None:
        jr = self.result.jobs[name]
        jr.outcome.skip(reason)
        for s in jr.steps:
            s.outcome.skip(reason)
        self.console.print_job_skipped(name, reason)
        self._publish_job(name)

    def finish(self, *, cancelled: bool = False) -> PipelineResult:
        """Aggregate job outcomes into the pipeline outcome and emit the report."""
        status = self.aggregate()
        outcome = self.result.outcome
        # a cancel that arrives after every job finished changes nothing
        cancelled = cancelled and any(
            jr.outcome.exit_detail == CANCELLED for jr in self.result.jobs.values()
        )
        self.result.cancelled = cancelled

        if cancelled:
            outcome.fail(CANCELLED)
        elif status is Status.SUCCEEDED:
            outcome.succeed()
        elif status is Status.FAILED:
            failed = [n for n, jr in self.result.jobs.items() if jr.status is Status.FAILED]
            outcome.fail(f"failed jobs: {', '.join(failed)}")
        else:
            outcome.fail("no job succeeded")

        if self.sink is not None:
            try:
                self.sink.publish(self.result)
            except StatusReportError as e:
                self.console.print_error("Status report failed", str(e))
        return self.result

    # ---- queries ----

    def job_outcome(self, name: str) -> Outcome:
        return self.result.jobs[name].outcome

    def aggregate(self) -> Status:
        return aggregate([jr.status for jr in self.result.jobs.values()])

    def _publish_job(self, name: str) -> None:
        if self.sink is None:
            return
        try:
            self.sink.job_update(self.result, name)
        except StatusReportError as e:
            self.console.print_debug(f"status update for {name} failed: {e}")
