# step_workflows/toolchain.py
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..errors import CIError, StepFailure
from ..model import ActionKind, Step
from .shell import run_command

if TYPE_CHECKING:
    from ..executor import JobContext


TOOL_HINTS = {
    "rust": "Install Rust with rustup (https://rustup.rs) or fix PATH.",
    "clippy": "Install clippy (rustup component add clippy).",
    "rustfmt": "Install rustfmt (rustup component add rustfmt).",
    "python": "Install Python 3 or fix PATH (python3).",
    "node": "Install Node.js (includes npm) or fix PATH.",
    "go": "Install Go or fix PATH.",
    "java": "Install a JDK or fix PATH.",
}

# action repository name (without owner/ref) -> toolchain
ACTION_TOOLS = {
    "rust-toolchain": "rust",
    "setup-rust": "rust",
    "setup-python": "python",
    "setup-node": "node",
    "setup-go": "go",
    "setup-java": "java",
}

TOOL_VERSION_CMDS: Dict[str, List[List[str]]] = {
    "rust": [["cargo", "--version"], ["rustc", "--version"]],
    "python": [["python3", "--version"]],
    "node": [["node", "--version"]],
    "go": [["go", "version"]],
    "java": [["java", "-version"]],
}

COMPONENT_VERSION_CMDS: Dict[str, List[str]] = {
    "clippy": ["cargo", "clippy", "--version"],
    "rustfmt": ["cargo", "fmt", "--version"],
}

VERSION_PARAMS = ("version", "toolchain", "python-version", "node-version", "go-version", "java-version")
CHANNELS = {"stable", "beta", "nightly", "latest"}


# ---------------------------------------------------------------------
# Setup step helper
# ---------------------------------------------------------------------

def setup(
    name: str,
    tool: str,
    *,
    version: str | None = None,
    components: List[str] | None = None,
    install: str | None = None,
) -> Step:
    """Create a toolchain setup step (verifies / installs a toolchain)."""
    params: Dict[str, Any] = {"tool": tool}
    if version:
        params["version"] = version
    if components:
        params["components"] = list(components)
    if install:
        params["install"] = install
    return Step(name=name, kind=ActionKind.SETUP, params=params)


def action_name(uses: str) -> str:
    """'dtolnay/rust-toolchain@stable' -> 'rust-toolchain'"""
    return uses.split("@", 1)[0].rstrip("/").split("/")[-1]


def resolve_tool(step: Step) -> Optional[str]:
    tool = step.params.get("tool")
    if tool:
        return str(tool)
    uses = step.params.get("uses")
    if uses:
        return ACTION_TOOLS.get(action_name(str(uses)))
    return None


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v for v in value.replace(",", " ").split() if v]
    return [str(v) for v in value]


def requested_version(step: Step) -> Optional[str]:
    for key in VERSION_PARAMS:
        value = step.params.get(key)
        if value:
            return str(value)
    # `uses: dtolnay/rust-toolchain@stable` encodes the channel in the ref
    uses = step.params.get("uses")
    if uses and "@" in str(uses):
        ref = str(uses).split("@", 1)[1]
        if ref in CHANNELS:
            return ref
    return None


# ---------------------------------------------------------------------
# Setup step execution
# ---------------------------------------------------------------------

def _tool_version(ctx: "JobContext", step: Step, argv: List[str], hint_key: str) -> str:
    """Run `<tool> --version` style check; return its first output line."""
    try:
        res = run_command(ctx, step, argv)
    except (FileNotFoundError, StepFailure) as e:
        raise CIError(
            kind="tool_unavailable",
            job=ctx.job.name,
            step=step.name,
            message=f"{argv[0]} is not available",
            details={
                "hint": TOOL_HINTS.get(hint_key, f"Install {hint_key} or fix PATH."),
                "command": " ".join(argv),
                "error": str(e),
            },
        ) from e
    lines = [ln for ln in res.output.splitlines() if ln.strip()]
    return " ".join(lines[0].split()) if lines else " ".join(argv)


def run_step(ctx: "JobContext", step: Step) -> str | None:
    """
    Prepare the toolchain for later steps of the job:
      1. run the optional install command
      2. verify the tool (and requested components) answer a version check
      3. record a fingerprint used by cache keys
    A failure here is fatal for the job.
    """
    tool = resolve_tool(step)
    if not tool:
        raise CIError(
            kind="unknown_toolchain",
            job=ctx.job.name,
            step=step.name,
            message="cannot tell which toolchain this step sets up",
            details={"uses": step.params.get("uses")},
        )

    install = step.params.get("install")
    if install:
        run_command(ctx, step, str(install))

    version_cmds = list(TOOL_VERSION_CMDS.get(tool, [[tool, "--version"]]))
    components = _as_list(step.params.get("components"))

    versions = [_tool_version(ctx, step, argv, tool) for argv in version_cmds]
    for comp in components:
        versions.append(_tool_version(ctx, step, COMPONENT_VERSION_CMDS.get(comp, [comp, "--version"]), comp))

    fingerprint = " | ".join(versions)
    version = requested_version(step)
    if version and version not in CHANNELS and version not in fingerprint:
        raise CIError(
            kind="version_mismatch",
            job=ctx.job.name,
            step=step.name,
            message=f"{tool} {version} requested, found: {fingerprint}",
            details={"hint": TOOL_HINTS.get(tool, f"Install {tool} {version}.")},
        )

    ctx.fingerprints[tool] = fingerprint
    return versions[0] if versions else tool
