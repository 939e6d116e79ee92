# status.py
from __future__ import annotations

import json
import os
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote, urljoin

from .errors import StatusReportError
from .model import PipelineResult, Status

# engine status -> commit-status state understood by the hosting platform
HOST_STATES = {
    Status.PENDING: "pending",
    Status.RUNNING: "pending",
    Status.SUCCEEDED: "success",
    Status.FAILED: "failure",
    Status.SKIPPED: "skipped",
}


def _job_payload(result: PipelineResult, name: str) -> Dict:
    jr = result.jobs[name]
    failed = jr.failed_step
    detail = jr.outcome.exit_detail
    if failed is not None:
        detail = f"{failed.name}: {failed.outcome.exit_detail}"
    return {
        "status": jr.status.value,
        "state": HOST_STATES[jr.status],
        "detail": detail,
        "failed_step": failed.name if failed else None,
    }


class StatusSink:
    """
    Where outcomes go. The reporter calls job_update on every job state
    change and publish once at the end; the scheduler polls cancelled().
    """

    def job_update(self, result: PipelineResult, job: str) -> None:
        pass

    def publish(self, result: PipelineResult) -> None:
        pass

    def cancelled(self) -> bool:
        return False


class JsonReportSink(StatusSink):
    """Durable JSON report written atomically at the end of a run."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def publish(self, result: PipelineResult) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StatusReportError(f"could not create report directory {self.path.parent}: {e}") from e

        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        try:
            tmp.write_text(json.dumps(result.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            raise StatusReportError(f"could not write report {self.path}: {e}") from e
        finally:
            tmp.unlink(missing_ok=True)


class HttpStatusSink(StatusSink):
    """Status-reporting client for the pipewave control plane."""

    def __init__(self, base_url: str, run_id: str, *, poll_interval: float = 5.0, timeout: float = 10.0):
        # Ensure base_url doesn't end with /
        self.base_url = base_url.rstrip("/")
        self.run_id = run_id
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._last_poll: Optional[float] = None
        self._cancelled = False

    def _request(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        """
        Make an HTTP request to the API.

        Raises:
            StatusReportError: If the request fails
        """
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        req_data = json.dumps(data).encode("utf-8") if data is not None else None
        req = urllib.request.Request(
            url,
            data=req_data,
            headers={"Content-Type": "application/json"},
            method=method,
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
                return json.loads(body) if body else {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise StatusReportError(f"API request failed: {e.code} {e.reason}. {error_body}") from e
        except urllib.error.URLError as e:
            raise StatusReportError(f"Network error: {e.reason}") from e
        except (OSError, json.JSONDecodeError) as e:
            raise StatusReportError(f"Status request failed: {e}") from e

    def _status_path(self) -> str:
        return f"/runs/{quote(self.run_id)}/status"

    def job_update(self, result: PipelineResult, job: str) -> None:
        self._request(
            "POST",
            self._status_path(),
            data={
                "status": result.status.value,
                "state": HOST_STATES[result.status],
                "jobs": {job: _job_payload(result, job)},
            },
        )

    def publish(self, result: PipelineResult) -> None:
        self._request(
            "POST",
            self._status_path(),
            data={
                "status": result.status.value,
                "state": HOST_STATES[result.status],
                "detail": result.outcome.exit_detail,
                "jobs": {name: _job_payload(result, name) for name in result.jobs},
            },
        )

    def cancelled(self) -> bool:
        """Poll the control plane (at most every poll_interval) for supersession."""
        if self._cancelled:
            return True
        now = time.monotonic()
        if self._last_poll is not None and now - self._last_poll < self.poll_interval:
            return False
        self._last_poll = now
        try:
            resp = self._request("GET", f"/runs/{quote(self.run_id)}/cancelled")
        except StatusReportError:
            return False
        self._cancelled = bool(resp.get("cancelled"))
        return self._cancelled


class MultiSink(StatusSink):
    """Fan out to several sinks; one failing sink does not starve the others."""

    def __init__(self, sinks: List[StatusSink]):
        self.sinks = list(sinks)

    def _each(self, fn_name: str, *args) -> None:
        errors: List[str] = []
        for sink in self.sinks:
            try:
                getattr(sink, fn_name)(*args)
            except StatusReportError as e:
                errors.append(str(e))
        if errors:
            raise StatusReportError("; ".join(errors))

    def job_update(self, result: PipelineResult, job: str) -> None:
        self._each("job_update", result, job)

    def publish(self, result: PipelineResult) -> None:
        self._each("publish", result)

    def cancelled(self) -> bool:
        return any(sink.cancelled() for sink in self.sinks)
