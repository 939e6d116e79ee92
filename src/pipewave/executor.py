# executor.py
from __future__ import annotations

import os
import shutil
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Tuple

from .cache import CacheStore
from .errors import CIError, StepCancelled, StepFailure, StepTimeout
from .model import CANCELLED, TIMEOUT, ActionKind, Event, Job, JobResult, Step
from .reporter import JobStarted, StepFinished, StepOutput, StepStarted
from .step_workflows import caching, shell, toolchain
from .step_workflows.checkout import run_step as checkout_step

OUTPUT_TAIL = 4000

# dispatch by tag
HANDLERS: Dict[ActionKind, Callable[["JobContext", Step], Optional[str]]] = {
    ActionKind.CHECKOUT: checkout_step,
    ActionKind.SETUP: toolchain.run_step,
    ActionKind.CACHE: caching.run_step,
    ActionKind.RUN: shell.run_step,
}


@dataclass
class JobContext:
    """
    Everything a job's steps share: the ephemeral workspace, env layers,
    the cancel flag and the channel to the reporter. Owned by one worker
    thread; only `emit` crosses threads.
    """
    job: Job
    workspace: Path
    source_root: Path
    cache: CacheStore
    emit: Callable[[object], None]
    cancel: threading.Event = field(default_factory=threading.Event)
    event: Event | None = None
    base_env: Dict[str, str] = field(default_factory=dict)
    step_timeout: float | None = None
    cache_keep: int = 3
    shared_workspace: bool = False
    ignore_paths: List[Path] = field(default_factory=list)

    # filled while the job runs
    fingerprints: Dict[str, str] = field(default_factory=dict)
    post_job: List[Callable[[], str]] = field(default_factory=list)
    _output: Deque[str] = field(default_factory=lambda: deque(maxlen=400))

    def env_for(self, step: Step) -> Dict[str, str]:
        """process env < pipeline env < job env < step env"""
        env = os.environ.copy()
        env.update(self.base_env)
        env.update(self.job.env or {})
        env.update(step.env or {})
        env["CI"] = "true"
        env["PIPEWAVE_JOB"] = self.job.name
        env["PIPEWAVE_WORKSPACE"] = str(self.workspace)
        return env

    def cwd_for(self, step: Step) -> Path:
        return (self.workspace / (step.cwd or ".")).resolve()

    def timeout_for(self, step: Step) -> float | None:
        # the first level that sets a timeout wins; 0 there means no timeout
        for t in (step.timeout, self.job.timeout, self.step_timeout):
            if t is not None:
                return t if t > 0 else None
        return None

    def log(self, step: Step, line: str) -> None:
        self._output.append(line)
        self.emit(StepOutput(job=self.job.name, step=step.name, line=line))

    def take_output(self) -> str:
        text = "\n".join(self._output)
        self._output.clear()
        return text[-OUTPUT_TAIL:]


def prepare_workspace(ctx: JobContext) -> None:
    """Fresh, empty workspace per job (unless jobs share the source tree)."""
    if ctx.shared_workspace:
        return
    if ctx.workspace.exists():
        shutil.rmtree(ctx.workspace)
    ctx.workspace.mkdir(parents=True)


def _execute(ctx: JobContext, step: Step) -> Tuple[Optional[str], Optional[str]]:
    """Run one step. Returns (success_detail, failure_detail); exactly one is meaningful."""
    handler = HANDLERS[step.kind]
    try:
        return handler(ctx, step), None
    except StepTimeout as e:
        ctx.log(step, str(e))
        return None, TIMEOUT
    except StepCancelled:
        return None, CANCELLED
    except StepFailure as e:
        return None, f"exit code {e.exit_code}"
    except CIError as e:
        ctx.log(step, str(e))
        hint = e.details.get("hint")
        if hint:
            ctx.log(step, f"hint: {hint}")
        return None, f"{e.kind}: {e.message}"
    except OSError as e:
        ctx.log(step, f"error: {e}")
        return None, str(e)
    except Exception as e:
        ctx.log(step, f"internal error: {e!r}")
        return None, f"internal error: {e}"


def run_job(ctx: JobContext) -> JobResult:
    """
    Run a job's steps in declaration order.

    Short-circuit: after the first failed step every remaining step is
    skipped. A job cancelled before it starts is skipped; a job cancelled
    while running fails with exit_detail "cancelled".
    """
    job = ctx.job
    result = JobResult.pending(job)

    if ctx.cancel.is_set():
        result.outcome.skip(CANCELLED)
        for rec in result.steps:
            rec.outcome.skip(CANCELLED)
        return result

    result.outcome.start()
    ctx.emit(JobStarted(job=job.name))

    failure: str | None = None
    try:
        prepare_workspace(ctx)
    except OSError as e:
        failure = f"workspace error: {e}"

    for step, rec in zip(job.steps, result.steps):
        if failure is None and ctx.cancel.is_set():
            failure = CANCELLED

        if failure is not None:
            rec.outcome.skip(CANCELLED if failure == CANCELLED else "previous step failed")
            ctx.emit(StepFinished(job=job.name, result=rec))
            continue

        rec.outcome.start()
        ctx.emit(StepStarted(job=job.name, step=step.name, kind=step.kind))
        detail, error = _execute(ctx, step)
        rec.output = ctx.take_output()
        if error is None:
            rec.outcome.succeed(detail)
        else:
            rec.outcome.fail(error)
            failure = error
        ctx.emit(StepFinished(job=job.name, result=rec))

    if failure is None:
        for post in ctx.post_job:
            ctx.emit(StepOutput(job=job.name, step="post", line=post()))
        result.outcome.succeed()
    else:
        result.outcome.fail(failure)
    return result
