# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_STATE_DIR = ".pipewave"


@dataclass(frozen=True)
class Settings:
    cache_dir: Path = Path(DEFAULT_STATE_DIR) / "cache"
    work_dir: Path = Path(DEFAULT_STATE_DIR) / "work"
    report_path: Optional[Path] = Path(DEFAULT_STATE_DIR) / "report.json"
    step_timeout: Optional[float] = 3600.0
    max_workers: Optional[int] = None          # None -> one worker per job in a wave
    cache_keep: int = 3
    status_url: Optional[str] = None
    shared_workspace: bool = False

    def override(self, **changes) -> "Settings":
        """Return a copy with every non-None change applied (CLI flags)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def _optional_float(raw: Optional[str], default: Optional[float]) -> Optional[float]:
    if raw is None or raw == "":
        return default
    value = float(raw)
    # 0 disables the timeout
    return value if value > 0 else None


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ
    defaults = Settings()

    report = env.get("PIPEWAVE_REPORT_PATH")
    workers = env.get("PIPEWAVE_MAX_WORKERS")

    return Settings(
        cache_dir=Path(env.get("PIPEWAVE_CACHE_DIR", str(defaults.cache_dir))),
        work_dir=Path(env.get("PIPEWAVE_WORK_DIR", str(defaults.work_dir))),
        report_path=Path(report) if report else defaults.report_path,
        step_timeout=_optional_float(env.get("PIPEWAVE_STEP_TIMEOUT"), defaults.step_timeout),
        max_workers=int(workers) if workers else None,
        cache_keep=int(env.get("PIPEWAVE_CACHE_KEEP", str(defaults.cache_keep))),
        status_url=env.get("PIPEWAVE_STATUS_URL") or None,
        shared_workspace=env.get("PIPEWAVE_SHARED_WORKSPACE", "").lower() in ("1", "true", "yes"),
    )
