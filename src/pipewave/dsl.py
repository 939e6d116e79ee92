# src/pipewave/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .model import EventKind, Job, Pipeline, Step, TriggerRule
from .step_workflows import cache, checkout, setup, sh

__all__ = [
    "sh",
    "checkout",
    "setup",
    "cache",
    "job",
    "JobBuilder",
    "build",
    "on_push",
    "on_pull_request",
    "pipeline",
    "wf",
]


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def on_push(*branches: str) -> TriggerRule:
    """Fire on pushes to any of `branches` (no branches: every push)."""
    return TriggerRule(EventKind.PUSH, frozenset(branches) if branches else None)


def on_pull_request(*branches: str) -> TriggerRule:
    """Fire on pull requests targeting any of `branches`."""
    return TriggerRule(EventKind.PULL_REQUEST, frozenset(branches) if branches else None)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    runs_on: str | None = None,
    display_name: str | None = None,
    timeout: float | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        env={k: str(v) for k, v in (env or {}).items()},
        runs_on=runs_on,
        display_name=display_name,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._runs_on: Optional[str] = None
        self._display_name: Optional[str] = None
        self._timeout: Optional[float] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs_on(self, environment: str):
        self._runs_on = environment
        return self

    def titled(self, display_name: str):
        self._display_name = display_name
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(sh(name, run, cwd=cwd))
        return self

    def add(self, *steps: Step):
        self._steps.extend(steps)
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def step_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            env=dict(self._env),
            runs_on=self._runs_on,
            display_name=self._display_name,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Pipeline helpers (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *jobs: Union[Job, Sequence[Job]],
    on: Iterable[TriggerRule] = (),
    env: Optional[Dict[str, str]] = None,
) -> Pipeline:
    """
    Pipeline definition helper.

        from pipewave.dsl import pipeline, job, sh, on_push

        def workflow():
            return pipeline(
                "ci",
                job("lint", sh("Ruff", "ruff check .")),
                on=[on_push("dev")],
            )
    """
    flat: List[Job] = []
    for j in jobs:
        if isinstance(j, Job):
            flat.append(j)
        else:
            flat.extend(j)
    return Pipeline(
        name=name,
        jobs=flat,
        triggers=list(on),
        env={k: str(v) for k, v in (env or {}).items()},
    )


def wf(*jobs: Job) -> List[Job]:
    """Plain job list; wrap with pipeline() to attach triggers."""
    return list(jobs)
