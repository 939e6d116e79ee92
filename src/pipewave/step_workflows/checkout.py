# step_workflows/checkout.py
from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, List, Set

from ..git_facts.git import is_git_repo
from ..model import ActionKind, Step
from .shell import run_command

if TYPE_CHECKING:
    from ..executor import JobContext

IGNORED_NAMES = {".git", ".pipewave"}
REMOTE_PREFIXES = ("http://", "https://", "ssh://", "git://", "git@", "file://")


# ---------------------------------------------------------------------
# Checkout step helper
# ---------------------------------------------------------------------

def checkout(
    name: str = "Checkout repository",
    *,
    repository: str | None = None,
    ref: str | None = None,
) -> Step:
    """Create a checkout step (materializes the repository into the job workspace)."""
    params = {}
    if repository:
        params["repository"] = repository
    if ref:
        params["ref"] = ref
    return Step(name=name, kind=ActionKind.CHECKOUT, params=params)


def _is_remote(repository: str) -> bool:
    return repository.startswith(REMOTE_PREFIXES)


def _ignore_for(skip_paths: Iterable[Path]) -> Callable[[str, List[str]], Set[str]]:
    skip = {p.resolve() for p in skip_paths}

    def _ignore(dirpath: str, names: List[str]) -> Set[str]:
        d = Path(dirpath).resolve()
        return {n for n in names if n in IGNORED_NAMES or (d / n) in skip}

    return _ignore


# ---------------------------------------------------------------------
# Checkout step execution
# ---------------------------------------------------------------------

def run_step(ctx: "JobContext", step: Step) -> str | None:
    """
    Materialize the repository in the job workspace:
      - shared workspace: nothing to do, the job runs in the source tree
      - remote repository: git clone (+ checkout ref)
      - local repository with a ref: clone the local repo, checkout ref
      - otherwise: copy the working tree (uncommitted changes included)
    """
    if ctx.shared_workspace:
        return "using source tree"

    repository = step.params.get("repository")
    ref = step.params.get("ref") or (ctx.event.commit_reference if ctx.event else None)
    ws = ctx.workspace

    if repository and _is_remote(str(repository)):
        run_command(ctx, step, ["git", "clone", "--quiet", str(repository), str(ws)], cwd=ws.parent)
        if ref:
            run_command(ctx, step, ["git", "checkout", "--quiet", str(ref)], cwd=ws)
            return f"cloned {repository} at {ref}"
        return f"cloned {repository}"

    source = Path(repository).expanduser().resolve() if repository else ctx.source_root
    if ref and is_git_repo(source):
        run_command(ctx, step, ["git", "clone", "--quiet", "--no-checkout", str(source), str(ws)], cwd=ws.parent)
        run_command(ctx, step, ["git", "checkout", "--quiet", str(ref)], cwd=ws)
        return f"checked out {ref}"

    shutil.copytree(
        source,
        ws,
        symlinks=True,
        dirs_exist_ok=True,
        ignore=_ignore_for(ctx.ignore_paths),
    )
    return "copied working tree"
