# cli.py
from __future__ import annotations

import signal
import subprocess
import sys
import threading
from pathlib import Path

import click

from pipewave.dag import build_graph
from pipewave.errors import ConfigError
from pipewave.git_facts.git import get_current_ref, head_sha, is_dirty
from pipewave.loader import load_pipeline
from pipewave.model import Event, EventKind
from pipewave.runner import new_run_id, run_pipeline
from pipewave.settings import load_settings
from pipewave.status import HttpStatusSink, JsonReportSink, MultiSink, StatusSink
from pipewave.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def find_workflow_files() -> list[Path]:
    """
    Find candidate workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    workflow_files = []

    default_workflow = current_dir / "pipewave_workflow.py"
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    gha_dir = current_dir / ".github" / "workflows"
    if gha_dir.is_dir():
        workflow_files.extend(gha_dir.glob("*.yml"))
        workflow_files.extend(gha_dir.glob("*.yaml"))

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix == "":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  pipewave run --workflow .github/workflows/ci.yml",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  pipewave_workflow.py",
                "  *_workflow.py",
                "  .github/workflows/*.yml",
            ],
            suggestion="Specify a workflow explicitly:\n  pipewave run --workflow my_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  pipewave run --workflow pipewave_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def _load_or_exit(workflow_path: Path):
    console = get_console()
    try:
        return load_pipeline(workflow_path)
    except ConfigError as e:
        console.print_error(
            "Invalid pipeline declaration",
            f"{workflow_path}: {e.message}",
            details=[f"{k}={v}" for k, v in e.details.items()] or None,
        )
        sys.exit(EXIT_CONFIG)


def _default_branch() -> str:
    try:
        return get_current_ref()
    except (subprocess.CalledProcessError, FileNotFoundError):
        get_console().print_error(
            "Could not determine branch",
            "No --branch specified and git could not tell the current branch.",
            suggestion="Specify the target branch explicitly:\n  pipewave run --branch dev",
        )
        sys.exit(EXIT_CONFIG)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """pipewave: trigger-aware, wave-scheduled CI runner."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py or .yml); discovered if omitted")
@click.option(
    "--event",
    "event_kind",
    type=click.Choice([k.value for k in EventKind]),
    default=EventKind.PUSH.value,
    show_default=True,
    help="Event kind to simulate",
)
@click.option("--branch", default=None, help="Target branch (defaults to the current git branch)")
@click.option("--ref", default=None, help="Commit to check out in isolated workspaces")
@click.option("--workers", default=None, type=int, help="Max parallel jobs per wave")
@click.option("--step-timeout", default=None, type=float, help="Per-step timeout in seconds")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--work-dir", default=None, help="Directory for job workspaces")
@click.option("--report", default=None, help="Where to write the JSON report")
@click.option("--status-url", default=None, help="Control plane URL for status reporting")
@click.option("--run-id", default=None, help="Run id (as assigned by the control plane)")
@click.option("--shared-workspace/--isolated-workspace", default=None, help="Run jobs in the source tree")
@click.option("--keep-workspaces", is_flag=True, default=False, help="Do not delete job workspaces afterwards")
@click.pass_context
def run(
    ctx,
    workflow,
    event_kind,
    branch,
    ref,
    workers,
    step_timeout,
    cache_dir,
    work_dir,
    report,
    status_url,
    run_id,
    shared_workspace,
    keep_workspaces,
):
    """Run a pipeline for a (simulated) repository event."""
    console = get_console()

    workflow_path = discover_workflow(workflow)
    pipeline = _load_or_exit(workflow_path)

    settings = load_settings().override(
        max_workers=workers,
        step_timeout=step_timeout,
        cache_dir=Path(cache_dir) if cache_dir else None,
        work_dir=Path(work_dir) if work_dir else None,
        report_path=Path(report) if report else None,
        status_url=status_url,
        shared_workspace=shared_workspace,
    )

    event = Event(kind=EventKind(event_kind), target_branch=branch or _default_branch(), commit_reference=ref)
    run_id = run_id or new_run_id()

    if console.debug:
        try:
            console.print_debug(f"HEAD={head_sha()} dirty={is_dirty()}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_debug("not a git repository")

    sinks: list[StatusSink] = []
    if settings.report_path:
        sinks.append(JsonReportSink(settings.report_path))
    http_sink = HttpStatusSink(settings.status_url, run_id) if settings.status_url else None
    if http_sink is not None:
        sinks.append(http_sink)
    sink = MultiSink(sinks)

    # SIGINT / SIGTERM cancel the run; jobs still report their outcome
    cancel = threading.Event()

    def _signal_handler(signum, frame):
        console.print_info(f"\nReceived signal {signum}, cancelling...")
        cancel.set()

    previous = {sig: signal.signal(sig, _signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)}

    console.print_run_started(
        pipeline=pipeline.name,
        workflow=str(workflow_path),
        event=event,
        job_count=len(pipeline.jobs),
    )

    try:
        result = run_pipeline(
            pipeline,
            event,
            settings=settings,
            source_root=".",
            sink=sink,
            cancel=cancel,
            should_cancel=http_sink.cancelled if http_sink else None,
            run_id=run_id,
            keep_workspaces=keep_workspaces,
            console=console,
        )
    except ConfigError as e:
        console.print_error("Invalid pipeline declaration", str(e))
        sys.exit(EXIT_CONFIG)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if not result.triggered:
        console.print_info("Nothing to do.")
        return

    console.print_results(result)
    if settings.report_path:
        console.print_info(f"Report: {settings.report_path}")

    if result.cancelled:
        sys.exit(EXIT_INTERRUPTED)
    if not result.ok:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py or .yml); discovered if omitted")
def plan(workflow):
    """Show triggers and the wave partition without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    pipeline = _load_or_exit(workflow_path)
    console.print_plan(pipeline, build_graph(pipeline.jobs))


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py or .yml); discovered if omitted")
def check(workflow):
    """Validate a pipeline declaration."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    pipeline = _load_or_exit(workflow_path)
    waves = build_graph(pipeline.jobs).waves
    console.print_info(
        f"OK: {workflow_path} ({len(pipeline.jobs)} job(s), {len(waves)} wave(s), "
        f"{len(pipeline.triggers)} trigger rule(s))"
    )


if __name__ == "__main__":
    cli()
