# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ConfigError(Exception):
    """
    Invalid pipeline declaration. Raised at load time, before any job starts.

    kind is a short machine-friendly tag ("duplicate_job", "cycle", ...).
    """
    kind: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class CycleError(ConfigError):
    cycle: list[str] = field(default_factory=list)


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - a readable step exit_detail
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class StepTimeout(Exception):
    job: str
    step: str
    seconds: float

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' timed out after {self.seconds:g}s"


@dataclass
class StepCancelled(Exception):
    job: str
    step: str

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' cancelled"


class InvalidTransition(Exception):
    """Raised when an Outcome is moved along an edge the state machine forbids."""


class StatusReportError(Exception):
    """Raised when a status sink cannot deliver an update."""
