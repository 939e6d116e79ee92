# step_workflows/shell.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Mapping, Union

from ..errors import CIError, StepCancelled, StepFailure, StepTimeout
from ..model import ActionKind, Step

if TYPE_CHECKING:
    from ..executor import JobContext

POLL_INTERVAL = 0.05     # seconds between cancel/timeout checks
KILL_GRACE = 5.0         # seconds between SIGTERM and SIGKILL
DRAIN_GRACE = 1.0        # seconds to wait for output after the command exited
TAIL_LINES = 200


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    shell: str | None = None,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    params: Dict[str, str] = {"run": cmd}
    if shell:
        params["shell"] = shell
    return Step(
        name=name,
        kind=ActionKind.RUN,
        params=params,
        env=dict(env or {}),
        cwd=cwd,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Subprocess primitive shared by every step kind
# ---------------------------------------------------------------------

@dataclass
class RunResult:
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _signal_group(proc: subprocess.Popen, sig: int) -> bool:
    """Signal the step's whole session. False once nothing is left to signal."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except ProcessLookupError:
        return False
    return True


def _terminate(proc: subprocess.Popen) -> None:
    """SIGTERM the whole process group, escalate to SIGKILL after a grace period."""
    if proc.poll() is not None:
        # only leftover background children remain
        _signal_group(proc, signal.SIGKILL)
        return
    if not _signal_group(proc, signal.SIGTERM):
        return
    try:
        proc.wait(timeout=KILL_GRACE)
    except subprocess.TimeoutExpired:
        if _signal_group(proc, signal.SIGKILL):
            proc.wait()


def run_command(
    ctx: "JobContext",
    step: Step,
    cmd: Union[str, List[str]],
    *,
    cwd: Path | None = None,
    check: bool = True,
) -> RunResult:
    """
    Run cmd for `step`, streaming each output line to the reporter as it
    is produced.

    A string runs through the shell, a list runs directly. The call is
    bounded by the step timeout and polls the job's cancel flag; on either
    the process group is terminated and StepTimeout / StepCancelled is
    raised. Background processes still holding the output open DRAIN_GRACE
    seconds after the command exits are killed. With check=True a non-zero
    exit raises StepFailure.
    """
    workdir = cwd or ctx.cwd_for(step)
    if not workdir.exists():
        raise CIError(
            kind="cwd_not_found",
            job=ctx.job.name,
            step=step.name,
            message=f"working directory not found: {workdir}",
        )

    timeout = ctx.timeout_for(step)
    tail: deque[str] = deque(maxlen=TAIL_LINES)

    proc = subprocess.Popen(
        cmd,
        shell=isinstance(cmd, str),
        cwd=str(workdir),
        env=ctx.env_for(step),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
        bufsize=1,
        start_new_session=(os.name == "posix"),
    )

    def _pump() -> None:
        assert proc.stdout is not None
        for line in proc.stdout:
            line = line.rstrip("\n")
            tail.append(line)
            ctx.log(step, line)

    reader = threading.Thread(target=_pump, name=f"{ctx.job.name}:{step.name}:output", daemon=True)
    reader.start()

    deadline = time.monotonic() + timeout if timeout else None
    returncode: int | None = None
    drain_until: float | None = None
    while True:
        if returncode is None:
            try:
                returncode = proc.wait(timeout=POLL_INTERVAL)
                drain_until = time.monotonic() + DRAIN_GRACE
            except subprocess.TimeoutExpired:
                pass
        else:
            reader.join(timeout=POLL_INTERVAL)
        if returncode is not None and not reader.is_alive():
            break
        if ctx.cancel.is_set():
            _terminate(proc)
            reader.join(timeout=KILL_GRACE)
            raise StepCancelled(job=ctx.job.name, step=step.name)
        if deadline is not None and time.monotonic() >= deadline:
            _terminate(proc)
            reader.join(timeout=KILL_GRACE)
            raise StepTimeout(job=ctx.job.name, step=step.name, seconds=timeout)
        if drain_until is not None and time.monotonic() >= drain_until:
            # background children still hold the output pipe open
            ctx.log(step, "stopping background processes left behind by the step")
            _terminate(proc)
            reader.join(timeout=KILL_GRACE)
            break

    output = "\n".join(tail)
    if check and returncode != 0:
        shown = cmd if isinstance(cmd, str) else " ".join(cmd)
        raise StepFailure(job=ctx.job.name, step=step.name, cmd=shown, exit_code=returncode, output=output)
    return RunResult(returncode=returncode, output=output)


# ---------------------------------------------------------------------
# Shell step execution
# ---------------------------------------------------------------------

def run_step(ctx: "JobContext", step: Step) -> str | None:
    """Run a `run:` step through sh (or the step's declared shell)."""
    cmd = step.run
    if not cmd:
        raise CIError(
            kind="invalid_step",
            job=ctx.job.name,
            step=step.name,
            message="run step has no command",
        )

    shell = step.params.get("shell")
    if shell:
        run_command(ctx, step, [shell, "-c", cmd])
    else:
        run_command(ctx, step, cmd)
    return None
