# runner.py
from __future__ import annotations

import queue
import shutil
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, Optional, Set

from .cache import CacheStore
from .dag import JobGraph, build_graph
from .errors import StatusReportError
from .executor import JobContext, run_job
from .model import CANCELLED, Event, Job, JobResult, Pipeline, PipelineResult, Status
from .reporter import JobFinished, ResultReporter
from .settings import Settings
from .status import StatusSink
from .trigger import matches
from .ui.console import Console, get_console

POLL_INTERVAL = 0.1

# local dev ---> event ---> trigger match ---> waves ---> report


def new_run_id() -> str:
    return f"{time.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"


class JobScheduler:
    """
    Runs a wave-partitioned job graph.

    - every job of a wave runs concurrently on its own worker thread
    - a wave must finish completely before the next one starts
    - if any job of a wave did not succeed, later waves are skipped
    - workers talk to the reporter only through a queue; the reporter is
      driven from this (the calling) thread
    """

    def __init__(
        self,
        graph: JobGraph,
        reporter: ResultReporter,
        *,
        pipeline: Pipeline,
        event: Event,
        settings: Settings,
        source_root: Path,
        run_id: str,
        cancel: threading.Event,
        should_cancel: Optional[Callable[[], bool]] = None,
        console: Optional[Console] = None,
    ):
        self.graph = graph
        self.reporter = reporter
        self.pipeline = pipeline
        self.event = event
        self.settings = settings
        self.source_root = source_root
        self.run_id = run_id
        self.cancel = cancel
        self.should_cancel = should_cancel
        self.console = console or get_console()

        self.cache = CacheStore(settings.cache_dir)
        self.run_dir = Path(settings.work_dir).resolve() / run_id
        self.channel: "queue.Queue[object]" = queue.Queue()

    # ---- worker side ----

    def _context(self, job: Job) -> JobContext:
        workspace = self.source_root if self.settings.shared_workspace else self.run_dir / job.name
        return JobContext(
            job=job,
            workspace=workspace,
            source_root=self.source_root,
            cache=self.cache,
            emit=self.channel.put,
            cancel=self.cancel,
            event=self.event,
            base_env=dict(self.pipeline.env),
            step_timeout=self.settings.step_timeout,
            cache_keep=self.settings.cache_keep,
            shared_workspace=self.settings.shared_workspace,
            ignore_paths=[Path(self.settings.work_dir).resolve(), self.cache.root],
        )

    def _run_job(self, job: Job) -> None:
        try:
            result = run_job(self._context(job))
        except Exception as e:
            # a crash in the engine fails this job only, never the wave
            result = JobResult.pending(job)
            if self.cancel.is_set():
                result.outcome.fail(CANCELLED)
            else:
                result.outcome.start()
                result.outcome.fail(f"internal error: {e}")
            for rec in result.steps:
                if not rec.outcome.terminal:
                    rec.outcome.skip("internal error")
        self.channel.put(JobFinished(job=job.name, result=result))

    # ---- scheduler side ----

    def _poll_cancel(self) -> None:
        if self.cancel.is_set() or self.should_cancel is None:
            return
        if self.should_cancel():
            self.console.print_info("\nCancellation requested, stopping running jobs...")
            self.cancel.set()

    def _drain(self, futures: Set[Future]) -> None:
        pending = set(futures)
        while pending or not self.channel.empty():
            try:
                msg = self.channel.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                msg = None
            if msg is not None:
                self.reporter.handle(msg)
            self._poll_cancel()
            pending = {f for f in pending if not f.done()}
        for f in futures:
            # workers catch everything; surface anything that still escaped
            f.result()

    def run(self) -> PipelineResult:
        self.reporter.begin(self.graph)
        blocked_by: Optional[str] = None

        for idx, wave in enumerate(self.graph.waves, start=1):
            self._poll_cancel()
            if self.cancel.is_set():
                for name in wave:
                    self.reporter.skip_job(name, CANCELLED)
                continue
            if blocked_by is not None:
                for name in wave:
                    self.reporter.skip_job(name, f"upstream failure in {blocked_by}")
                continue

            self.console.print_wave(idx, wave)
            workers = self.settings.max_workers or len(wave)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"wave{idx}") as pool:
                futures = {pool.submit(self._run_job, self.graph.jobs[name]) for name in wave}
                self._drain(futures)

            failed = [n for n in wave if self.reporter.job_outcome(n).status is not Status.SUCCEEDED]
            if failed:
                blocked_by = ", ".join(failed)

        return self.reporter.finish(cancelled=self.cancel.is_set())


def run_pipeline(
    pipeline: Pipeline,
    event: Event,
    *,
    settings: Optional[Settings] = None,
    source_root: str | Path = ".",
    sink: Optional[StatusSink] = None,
    cancel: Optional[threading.Event] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
    run_id: Optional[str] = None,
    keep_workspaces: bool = False,
    console: Optional[Console] = None,
) -> PipelineResult:
    """
    event -> trigger match -> job graph -> waves -> aggregated result.

    A trigger mismatch is not an error: the returned result has
    triggered=False and nothing runs. Configuration errors raise
    ConfigError before any job starts.
    """
    settings = settings or Settings()
    console = console or get_console()

    if not matches(event, pipeline.triggers):
        console.print_not_triggered(event)
        result = PipelineResult(pipeline=pipeline.name, event=event, triggered=False)
        result.outcome.skip("not triggered")
        if sink is not None:
            try:
                sink.publish(result)
            except StatusReportError as e:
                console.print_error("Status report failed", str(e))
        return result

    graph = build_graph(pipeline.jobs)
    run_id = run_id or new_run_id()
    reporter = ResultReporter(pipeline.name, event, sink=sink, console=console)
    scheduler = JobScheduler(
        graph,
        reporter,
        pipeline=pipeline,
        event=event,
        settings=settings,
        source_root=Path(source_root).resolve(),
        run_id=run_id,
        cancel=cancel or threading.Event(),
        should_cancel=should_cancel,
        console=console,
    )
    try:
        return scheduler.run()
    finally:
        if not keep_workspaces and not settings.shared_workspace:
            shutil.rmtree(scheduler.run_dir, ignore_errors=True)


def job_statuses(result: PipelineResult) -> Dict[str, str]:
    """{job name: status} flat view, handy for exit codes and assertions."""
    return {name: jr.status.value for name, jr in result.jobs.items()}
