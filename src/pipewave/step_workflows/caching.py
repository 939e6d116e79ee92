# step_workflows/caching.py
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List

from ..cache import compute_cache_key
from ..model import ActionKind, Step

if TYPE_CHECKING:
    from ..executor import JobContext

# toolchain -> workspace-relative paths worth caching
DEFAULT_PATHS: Dict[str, List[str]] = {
    "rust": ["target"],
    "python": [".venv"],
    "node": ["node_modules"],
}

# toolchain -> files whose content invalidates the cache
DEFAULT_KEY_FILES: Dict[str, List[str]] = {
    "rust": ["Cargo.lock", "**/Cargo.toml", "rust-toolchain", "rust-toolchain.toml"],
    "python": ["requirements*.txt", "pyproject.toml", "poetry.lock"],
    "node": ["package-lock.json", "yarn.lock", "pnpm-lock.yaml"],
}


# ---------------------------------------------------------------------
# Cache step helper
# ---------------------------------------------------------------------

def cache(
    name: str = "Use caching",
    *,
    paths: List[str] | None = None,
    key_files: List[str] | None = None,
    key: str | None = None,
    save: bool = True,
) -> Step:
    """
    Create a cache step: restore now, save after the job succeeds.
    Without explicit paths/key_files the defaults of the toolchains set up
    earlier in the job are used.
    """
    params: Dict[str, Any] = {"save": save}
    if paths:
        params["path"] = list(paths)
    if key_files:
        params["key-files"] = list(key_files)
    if key:
        params["key"] = key
    return Step(name=name, kind=ActionKind.CACHE, params=params)


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.splitlines() if v.strip()]
    return [str(v) for v in value]


def _defaults(table: Dict[str, List[str]], tools: List[str]) -> List[str]:
    out: List[str] = []
    for tool in sorted(tools):
        for p in table.get(tool, []):
            if p not in out:
                out.append(p)
    return out


# ---------------------------------------------------------------------
# Cache step execution
# ---------------------------------------------------------------------

def run_step(ctx: "JobContext", step: Step) -> str | None:
    """
    Best-effort restore. Never raises: any problem is logged and reported
    as a miss, because a cache can only make a job slower, never wrong.
    """
    try:
        requested = _as_list(step.params.get("path") or step.params.get("paths"))
        paths = requested or _defaults(DEFAULT_PATHS, list(ctx.fingerprints))

        kept = [p for p in paths if not p.startswith(("~", "/"))]
        for p in paths:
            if p not in kept:
                ctx.log(step, f"cache: ignoring path outside workspace: {p}")
        if not kept:
            return "nothing to cache"

        key_files = _as_list(step.params.get("key-files")) or _defaults(DEFAULT_KEY_FILES, list(ctx.fingerprints))
        commands = [s.run for s in ctx.job.steps if s.run]
        extra = {"key": str(step.params["key"])} if step.params.get("key") else None

        key, manifest = compute_cache_key(
            ctx.job.name,
            root=ctx.workspace,
            fingerprints=ctx.fingerprints,
            commands=commands,
            key_files=key_files,
            extra=extra,
        )
        hit = ctx.cache.get(ctx.job.name, key, dest=ctx.workspace)
        ctx.log(step, f"cache: {hit.reason} ({key[:12]}...)")

        if not hit.hit and step.params.get("save", True) is not False:
            ctx.post_job.append(lambda: _save(ctx, key, manifest, kept))
        return "cache hit" if hit.hit else "cache miss"
    except Exception as e:
        ctx.log(step, f"cache: error ignored: {e}")
        return f"cache error: {e}"


def _save(ctx: "JobContext", key: str, manifest: Dict, paths: List[str]) -> str:
    try:
        saved = ctx.cache.put(ctx.job.name, key, manifest, root=ctx.workspace, paths=paths)
        if saved.saved:
            ctx.cache.prune(ctx.job.name, keep=ctx.cache_keep)
            return f"cache: saved ({key[:12]}...) {saved.reason}"
        return f"cache: not saved ({saved.reason})"
    except Exception as e:
        return f"cache: save error ignored: {e}"
