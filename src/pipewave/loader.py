# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .dag import build_graph
from .errors import ConfigError
from .model import ActionKind, EventKind, Job, Pipeline, Step, TriggerRule
from .step_workflows.toolchain import action_name

YAML_SUFFIXES = (".yml", ".yaml")
SUPPORTED_EVENTS = {k.value: k for k in EventKind}


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------

def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load and validate a pipeline declaration.

    - .yml / .yaml: GitHub Actions style workflow (subset)
    - .py: module defining pipeline() -> Pipeline, or PIPELINE = Pipeline(...)

    Raises ConfigError for anything malformed, including cyclic or
    duplicate jobs, so a bad declaration never starts a run.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in YAML_SUFFIXES:
        pipeline = load_yaml_pipeline(wf_path)
    elif wf_path.suffix == ".py":
        pipeline = load_python_pipeline(wf_path)
    else:
        raise ConfigError(
            kind="unsupported_workflow",
            message=f"Workflow must be a .yml/.yaml or .py file, got: {wf_path.name}",
        )

    validate(pipeline)
    return pipeline


def validate(pipeline: Pipeline) -> None:
    if not pipeline.jobs:
        raise ConfigError(kind="no_jobs", message=f"Pipeline '{pipeline.name}' declares no jobs")
    for j in pipeline.jobs:
        if not j.steps:
            raise ConfigError(kind="empty_job", message=f"Job '{j.name}' has no steps")
        names = [s.name for s in j.steps]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ConfigError(
                kind="duplicate_step",
                message=f"Job '{j.name}' has duplicate step names: {dupes}",
            )
    build_graph(pipeline.jobs)


# ----------------------------------------------------------------------
# Python workflows
# ----------------------------------------------------------------------

def load_python_pipeline(wf_path: Path) -> Pipeline:
    """
    The file must define either:
      - pipeline() -> Pipeline   (or workflow() -> Pipeline)
      - PIPELINE = Pipeline(...)
    """
    module_name = f"pipewave_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    found: Any = None
    for fn_name in ("pipeline", "workflow"):
        fn = globals_dict.get(fn_name)
        # skip the DSL's own pipeline() helper when it was only imported
        if callable(fn) and getattr(fn, "__module__", None) == module_name:
            found = fn()
            break
    if found is None and "PIPELINE" in globals_dict:
        found = globals_dict["PIPELINE"]

    if not isinstance(found, Pipeline):
        raise ConfigError(
            kind="invalid_workflow",
            message="Workflow must return/define a Pipeline. "
            "Define pipeline() -> Pipeline or PIPELINE = pipeline(...).",
            details={"path": str(wf_path)},
        )
    return found


# ----------------------------------------------------------------------
# YAML workflows (GitHub Actions subset)
# ----------------------------------------------------------------------

def _yaml() -> YAML:
    yaml = YAML(typ="safe", pure=True)
    return yaml


def load_yaml_pipeline(wf_path: Path) -> Pipeline:
    try:
        with wf_path.open("r", encoding="utf-8") as f:
            doc = _yaml().load(f)
    except YAMLError as e:
        raise ConfigError(kind="invalid_yaml", message=str(e), details={"path": str(wf_path)}) from e
    return parse_workflow(doc, default_name=wf_path.stem)


def parse_workflow(doc: Any, *, default_name: str = "workflow") -> Pipeline:
    if not isinstance(doc, Mapping):
        raise ConfigError(kind="invalid_workflow", message="Workflow document must be a mapping")

    # YAML 1.1 loaders read a bare `on` key as boolean True
    on = doc.get("on", doc.get(True))
    jobs_doc = doc.get("jobs")
    if not isinstance(jobs_doc, Mapping) or not jobs_doc:
        raise ConfigError(kind="no_jobs", message="Workflow must declare a non-empty 'jobs' mapping")

    return Pipeline(
        name=str(doc.get("name") or default_name),
        triggers=parse_triggers(on),
        jobs=[parse_job(str(job_id), body) for job_id, body in jobs_doc.items()],
        env=_str_map(doc.get("env"), where="env"),
    )


def parse_triggers(on: Any) -> List[TriggerRule]:
    """
    Accepts:
        on: push
        on: [push, pull_request]
        on:
          push:
            branches: [dev]
    Unsupported event kinds (schedule, workflow_dispatch, ...) are ignored.
    """
    if on is None:
        return []
    if isinstance(on, str):
        on = [on]
    if isinstance(on, list):
        return [TriggerRule(SUPPORTED_EVENTS[str(k)]) for k in on if str(k) in SUPPORTED_EVENTS]
    if not isinstance(on, Mapping):
        raise ConfigError(kind="invalid_trigger", message=f"Unsupported 'on' value: {on!r}")

    rules: List[TriggerRule] = []
    for kind, body in on.items():
        if str(kind) not in SUPPORTED_EVENTS:
            continue
        branches: Optional[frozenset] = None
        if isinstance(body, Mapping) and body.get("branches") is not None:
            raw = body["branches"]
            raw = [raw] if isinstance(raw, str) else raw
            if not isinstance(raw, list):
                raise ConfigError(kind="invalid_trigger", message=f"'{kind}.branches' must be a list")
            branches = frozenset(str(b) for b in raw)
        rules.append(TriggerRule(SUPPORTED_EVENTS[str(kind)], branches))
    return rules


def parse_job(job_id: str, body: Any) -> Job:
    if not isinstance(body, Mapping):
        raise ConfigError(kind="invalid_job", message=f"Job '{job_id}' must be a mapping")

    steps_doc = body.get("steps")
    if not isinstance(steps_doc, list) or not steps_doc:
        raise ConfigError(kind="empty_job", message=f"Job '{job_id}' must declare a non-empty 'steps' list")

    needs = body.get("needs") or []
    if isinstance(needs, str):
        needs = [needs]

    timeout = body.get("timeout-minutes")
    return Job(
        name=job_id,
        steps=_unique_names([parse_step(job_id, idx, s) for idx, s in enumerate(steps_doc, start=1)]),
        needs=[str(n) for n in needs],
        env=_str_map(body.get("env"), where=f"jobs.{job_id}.env"),
        runs_on=str(body["runs-on"]) if body.get("runs-on") is not None else None,
        display_name=str(body["name"]) if body.get("name") else None,
        timeout=float(timeout) * 60 if timeout is not None else None,
    )


def classify_uses(uses: str) -> ActionKind:
    """Map a `uses:` action reference onto a step kind."""
    name = action_name(uses).lower()
    if name == "checkout":
        return ActionKind.CHECKOUT
    if "cache" in name:
        return ActionKind.CACHE
    return ActionKind.SETUP


def parse_step(job_id: str, idx: int, body: Any) -> Step:
    where = f"jobs.{job_id}.steps[{idx}]"
    if not isinstance(body, Mapping):
        raise ConfigError(kind="invalid_step", message=f"{where} must be a mapping")

    uses = body.get("uses")
    run = body.get("run")
    if bool(uses) == bool(run):
        raise ConfigError(kind="invalid_step", message=f"{where} needs exactly one of 'uses' or 'run'")

    with_params = body.get("with") or {}
    if not isinstance(with_params, Mapping):
        raise ConfigError(kind="invalid_step", message=f"{where}.with must be a mapping")

    timeout = body.get("timeout-minutes")
    common = dict(
        env=_str_map(body.get("env"), where=f"{where}.env"),
        cwd=str(body["working-directory"]) if body.get("working-directory") else None,
        timeout=float(timeout) * 60 if timeout is not None else None,
    )

    if run:
        params: Dict[str, Any] = {"run": str(run)}
        if body.get("shell"):
            params["shell"] = str(body["shell"])
        name = body.get("name") or _first_line(str(run))
        return Step(name=str(name), kind=ActionKind.RUN, params=params, **common)

    uses = str(uses)
    params = {str(k): v for k, v in with_params.items()}
    params["uses"] = uses
    name = body.get("name") or uses
    return Step(name=str(name), kind=classify_uses(uses), params=params, **common)


def _first_line(cmd: str) -> str:
    lines = [ln.strip() for ln in cmd.splitlines() if ln.strip()]
    return f"Run {lines[0]}" if lines else "Run"


def _unique_names(steps: List[Step]) -> List[Step]:
    """Unnamed steps can collide (two `uses: actions/checkout@v4`); suffix repeats."""
    seen: Dict[str, int] = {}
    out: List[Step] = []
    for s in steps:
        n = seen.get(s.name, 0)
        seen[s.name] = n + 1
        if n:
            s = Step(name=f"{s.name} ({n + 1})", kind=s.kind, params=s.params, env=s.env, cwd=s.cwd, timeout=s.timeout)
        out.append(s)
    return out


def _str_map(value: Any, *, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(kind="invalid_env", message=f"'{where}' must be a mapping")
    out: Dict[str, str] = {}
    for k, v in value.items():
        if isinstance(v, bool):
            v = "true" if v else "false"
        out[str(k)] = str(v)
    return out
