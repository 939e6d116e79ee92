# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import shutil
import tarfile
import tempfile
import time
import uuid
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Toolchain caching:
#   cache_key = hash(
#       job name,
#       toolchain fingerprints (recorded by setup steps),
#       step commands,
#       contents of declared key files (globs, e.g. Cargo.lock),
#       optional extra salt
#   )
#
# Cache artifact:
#   a tar.gz containing the declared cache paths (relative to the job
#   workspace) plus a manifest.json for explainability.
#
# Every operation is best-effort: a broken or missing artifact is a miss,
# never an error for the job. Writers build into a private temp file and
# publish with an atomic rename, so concurrent writers for the same key
# never expose a half-written archive to readers.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".pipewave/cache"
MANIFEST_DIR = ".pipewave_cache_manifest"   # manifest copy stored inside each archive
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".pipewave/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict


@dataclass(frozen=True)
class CacheSave:
    saved: bool
    key: str
    reason: str


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    for g in globs:
        try:
            if rel_path.match(g):
                return True
        except ValueError:
            # a weird pattern is ignored rather than breaking the cache
            continue
    return False


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand patterns into concrete paths under root.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "src/"
      - glob:      "crates/**/Cargo.toml"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        try:
            matches = sorted(root.glob(pat))
        except ValueError:
            matches = []
        out.extend(m for m in matches if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def hash_key_files(root: Path, patterns: List[str], *, excludes: List[str]) -> Tuple[str, Dict]:
    """
    Hash the declared key files deterministically (relative path, content
    digest, size).
    """
    file_fps: List[Tuple[str, str, int]] = []
    for p in _resolve_globs(root, patterns):
        candidates = [p] if p.is_file() else list(_iter_files_under(p)) if p.is_dir() else []
        for f in candidates:
            rel = _relpath(f, root)
            if _matches_any_glob(rel, excludes):
                continue
            file_fps.append((rel, _hash_file_contents(f), f.stat().st_size))

    file_fps.sort(key=lambda t: t[0])  # stable ordering by relpath
    payload = {"files": file_fps}
    return _sha256_str(_json_dumps_stable(payload)), payload


def compute_cache_key(
    namespace: str,
    *,
    root: str | Path,
    fingerprints: Dict[str, str],
    commands: List[str],
    key_files: List[str],
    extra: Optional[Dict[str, str]] = None,
) -> Tuple[str, Dict]:
    """
    Returns (cache_key, manifest) where manifest is stored next to the
    artifact for explainability.
    """
    root_p = Path(root).resolve()
    files_hash, files_manifest = hash_key_files(root_p, key_files, excludes=DEFAULT_CACHE_EXCLUDES)

    payload = {
        "v": 1,  # bump this if the hashing format changes
        "namespace": namespace,
        "fingerprints": dict(sorted(fingerprints.items())),
        "commands": list(commands),
        "key_files_hash": files_hash,
        "extra": dict(extra or {}),
    }
    key = _sha256_str(_json_dumps_stable(payload))
    manifest = {
        "key": key,
        "payload": payload,
        "key_files": files_manifest,
        "generated_at_unix": int(time.time()),
    }
    return key, manifest


def _tar_add_path(
    tar: tarfile.TarFile,
    root: Path,
    src: Path,
    *,
    exclude_globs: List[str],
) -> int:
    """
    Add src (file/dir) into tar under its path relative to root, skipping
    excluded paths. Returns number of files added.
    """
    src = src.resolve()
    if not src.exists():
        return 0

    files = [src] if src.is_file() else list(_iter_files_under(src))
    added = 0
    for f in files:
        rel = _relpath(f, root)
        if _matches_any_glob(rel, exclude_globs):
            continue
        tar.add(str(f), arcname=rel, recursive=False)
        added += 1
    return added


def _merge_into(staging: Path, dest: Path) -> None:
    """Move every extracted file from staging into dest, replacing what is there."""
    for dirpath, _, filenames in os.walk(staging):
        rel = Path(dirpath).relative_to(staging)
        target_dir = dest / rel
        if target_dir.is_symlink() or (target_dir.exists() and not target_dir.is_dir()):
            target_dir.unlink()
        target_dir.mkdir(parents=True, exist_ok=True)
        for name in filenames:
            os.replace(os.path.join(dirpath, name), target_dir / name)


class CacheStore:
    """
    File-based cache store:
      root/
        <namespace>/
          <key>.tar.gz
          <key>.manifest.json
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).expanduser().resolve()

    def _ns_dir(self, namespace: str) -> Path:
        d = self.root / namespace
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, namespace: str, key: str) -> Path:
        return self._ns_dir(namespace) / f"{key}.tar.gz"

    def manifest_path(self, namespace: str, key: str) -> Path:
        return self._ns_dir(namespace) / f"{key}.manifest.json"

    def get(self, namespace: str, key: str, *, dest: str | Path) -> CacheHit:
        """
        Restore an artifact into dest. Any problem is reported as a miss.

        The archive is extracted into a staging directory first; dest is
        only touched once extraction has fully succeeded.
        """
        try:
            art = self.artifact_path(namespace, key)
            man = self.manifest_path(namespace, key)
        except OSError as e:
            return CacheHit(hit=False, key=key, reason=f"cache unavailable: {e}", manifest={})

        if not art.exists():
            return CacheHit(hit=False, key=key, reason="cache miss", manifest={})

        dest_p = Path(dest).resolve()
        staging: Optional[Path] = None
        try:
            dest_p.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=".pipewave-restore-", dir=str(dest_p)))
            with tarfile.open(str(art), mode="r:gz") as tar:
                tar.extractall(path=str(staging), filter="data")
            shutil.rmtree(staging / MANIFEST_DIR, ignore_errors=True)
            _merge_into(staging, dest_p)
        except (OSError, EOFError, zlib.error, tarfile.TarError) as e:
            return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}", manifest={})
        finally:
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)

        try:
            stored = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            stored = {}

        return CacheHit(hit=True, key=key, reason="cache hit: restored artifact", manifest=stored)

    def put(
        self,
        namespace: str,
        key: str,
        manifest: Dict,
        *,
        root: str | Path,
        paths: List[str],
        excludes: Optional[List[str]] = None,
    ) -> CacheSave:
        """
        Archive `paths` (relative to root) under `key`.

        Build into a writer-private temp file, then atomic rename. If two
        writers race on the same key, the last rename wins and readers only
        ever see a complete archive.
        """
        root_p = Path(root).resolve()
        exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

        try:
            art = self.artifact_path(namespace, key)
            man = self.manifest_path(namespace, key)
        except OSError as e:
            return CacheSave(saved=False, key=key, reason=f"cache unavailable: {e}")

        tmp = art.with_name(f".{art.name}.{uuid.uuid4().hex}.tmp")
        man_tmp = man.with_name(f".{man.name}.{uuid.uuid4().hex}.tmp")
        try:
            added = 0
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for entry in paths:
                    src = (root_p / entry).resolve()
                    added += _tar_add_path(tar, root_p, src, exclude_globs=exclude_globs)

                payload = json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False).encode("utf-8")
                info = tarfile.TarInfo(name=f"{MANIFEST_DIR}/{namespace}/{key}.manifest.json")
                info.size = len(payload)
                info.mtime = int(time.time())
                tar.addfile(info, fileobj=io.BytesIO(payload))

            if added == 0:
                return CacheSave(saved=False, key=key, reason="nothing to cache")

            man_tmp.write_text(json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(man_tmp, man)
            os.replace(tmp, art)
        except (OSError, tarfile.TarError) as e:
            return CacheSave(saved=False, key=key, reason=f"cache save failed: {e}")
        finally:
            tmp.unlink(missing_ok=True)
            man_tmp.unlink(missing_ok=True)

        return CacheSave(saved=True, key=key, reason=f"saved {added} file(s)")

    def prune(self, namespace: str, keep: int = 3) -> None:
        """
        Keep only the newest N artifacts for a namespace (by mtime).
        """
        try:
            d = self._ns_dir(namespace)
            tars = sorted(d.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
            for p in tars[keep:]:
                key = p.name[: -len(".tar.gz")]
                p.unlink(missing_ok=True)
                (d / f"{key}.manifest.json").unlink(missing_ok=True)
        except OSError:
            # a concurrent prune may already have removed files
            pass
