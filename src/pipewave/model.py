# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .errors import InvalidTransition

CANCELLED = "cancelled"
TIMEOUT = "timeout"


class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (Status.SUCCEEDED, Status.FAILED, Status.SKIPPED)


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"


class ActionKind(str, Enum):
    CHECKOUT = "checkout"
    SETUP = "setup"
    CACHE = "cache"
    RUN = "run"


@dataclass(frozen=True)
class Event:
    """A repository event delivered by the version-control host."""
    kind: EventKind
    target_branch: str
    commit_reference: str | None = None

    def __post_init__(self) -> None:
        # accept "push" / "pull_request" strings from callers
        object.__setattr__(self, "kind", EventKind(self.kind))


@dataclass(frozen=True)
class TriggerRule:
    """
    Fires for events of `event_kind` whose target branch is one of
    `branch_patterns`. `branch_patterns=None` means no branch filter.
    """
    event_kind: EventKind
    branch_patterns: Optional[frozenset[str]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_kind", EventKind(self.event_kind))
        if self.branch_patterns is not None:
            object.__setattr__(self, "branch_patterns", frozenset(self.branch_patterns))


@dataclass(frozen=True)
class Step:
    """
    A single action inside a CI job. `kind` is the dispatch tag; `params`
    holds the kind-specific parameters (e.g. `run` for shell steps).
    """
    name: str
    kind: ActionKind = ActionKind.RUN
    params: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: str | None = None
    timeout: float | None = None      # seconds; None -> engine default

    @property
    def run(self) -> str | None:
        return self.params.get("run")


@dataclass
class Job:
    """
    A CI job: ordered steps + dependencies + execution environment.

    `needs` lists jobs that must succeed BEFORE this job.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    runs_on: str | None = None         # opaque environment descriptor
    display_name: str | None = None
    timeout: float | None = None       # per-step default for this job, seconds

    @property
    def title(self) -> str:
        return self.display_name or self.name


@dataclass
class Pipeline:
    name: str
    jobs: list[Job]
    triggers: list[TriggerRule] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


# ---------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------

class Outcome:
    """
    Status of a step, job or pipeline.

        pending -> running -> {succeeded, failed, skipped}
        pending -> skipped
        pending -> failed      (cancellation only)

    Terminal states never change again.
    """

    def __init__(self) -> None:
        self.status = Status.PENDING
        self.exit_detail: str | None = None
        self.started_at: float | None = None
        self.finished_at: float | None = None

    def __repr__(self) -> str:
        if self.exit_detail:
            return f"Outcome({self.status.value}, {self.exit_detail!r})"
        return f"Outcome({self.status.value})"

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def _require(self, *allowed: Status, target: Status) -> None:
        if self.status not in allowed:
            raise InvalidTransition(f"cannot move outcome from {self.status.value} to {target.value}")

    def start(self) -> None:
        self._require(Status.PENDING, target=Status.RUNNING)
        self.status = Status.RUNNING
        self.started_at = time.time()

    def succeed(self, detail: str | None = None) -> None:
        self._require(Status.RUNNING, target=Status.SUCCEEDED)
        self._finish(Status.SUCCEEDED, detail)

    def fail(self, detail: str | None = None) -> None:
        if self.status is Status.PENDING and detail == CANCELLED:
            self._finish(Status.FAILED, detail)
            return
        self._require(Status.RUNNING, target=Status.FAILED)
        self._finish(Status.FAILED, detail)

    def skip(self, detail: str | None = None) -> None:
        self._require(Status.PENDING, target=Status.SKIPPED)
        self._finish(Status.SKIPPED, detail)

    def _finish(self, status: Status, detail: str | None) -> None:
        self.status = status
        self.exit_detail = detail
        self.finished_at = time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "exit_detail": self.exit_detail,
            "duration": self.duration,
        }


@dataclass
class StepResult:
    name: str
    kind: ActionKind
    outcome: Outcome = field(default_factory=Outcome)
    output: str = ""                   # tail of combined stdout/stderr

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "kind": self.kind.value, **self.outcome.to_dict()}


@dataclass
class JobResult:
    name: str
    outcome: Outcome = field(default_factory=Outcome)
    steps: List[StepResult] = field(default_factory=list)

    @classmethod
    def pending(cls, job: Job) -> "JobResult":
        return cls(name=job.name, steps=[StepResult(name=s.name, kind=s.kind) for s in job.steps])

    @property
    def status(self) -> Status:
        return self.outcome.status

    @property
    def failed_step(self) -> StepResult | None:
        """First failing step, if any."""
        for s in self.steps:
            if s.outcome.status is Status.FAILED:
                return s
        return None

    def step(self, name: str) -> StepResult:
        for s in self.steps:
            if s.name == name:
                return s
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        failed = self.failed_step
        return {
            "name": self.name,
            **self.outcome.to_dict(),
            "failed_step": failed.name if failed else None,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class PipelineResult:
    pipeline: str
    event: Event
    triggered: bool
    outcome: Outcome = field(default_factory=Outcome)
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    waves: List[List[str]] = field(default_factory=list)
    cancelled: bool = False

    @property
    def status(self) -> Status:
        return self.outcome.status

    @property
    def ok(self) -> bool:
        return not self.triggered or self.outcome.status is Status.SUCCEEDED

    def job(self, name: str) -> JobResult:
        return self.jobs[name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "event": {
                "kind": self.event.kind.value,
                "target_branch": self.event.target_branch,
                "commit_reference": self.event.commit_reference,
            },
            "triggered": self.triggered,
            "cancelled": self.cancelled,
            **self.outcome.to_dict(),
            "waves": self.waves,
            "jobs": {name: jr.to_dict() for name, jr in self.jobs.items()},
        }


def aggregate(statuses: List[Status]) -> Status:
    """
    Collapse child statuses into one:
      - any failed      -> failed
      - all succeeded   -> succeeded
      - otherwise       -> skipped (never succeeded)
    """
    if any(s is Status.FAILED for s in statuses):
        return Status.FAILED
    if statuses and all(s is Status.SUCCEEDED for s in statuses):
        return Status.SUCCEEDED
    return Status.SKIPPED
