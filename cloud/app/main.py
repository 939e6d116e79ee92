from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from . import redisq
from .db import SessionLocal, engine
from .models import Base, JobStatus, Run
from .settings import SUPERSEDE_RUNS

app = FastAPI(title="pipewave Control Plane")

TERMINAL = ("succeeded", "failed", "skipped")
EVENT_KINDS = ("push", "pull_request")

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    repo: str
    kind: str
    target_branch: str
    commit_reference: str | None = None

class EventResponse(BaseModel):
    run_id: str
    superseded: list[str]

class JobStatusIn(BaseModel):
    status: str
    state: str
    detail: str | None = None
    failed_step: str | None = None

class StatusRequest(BaseModel):
    status: str
    state: str
    detail: str | None = None
    jobs: dict[str, JobStatusIn] = Field(default_factory=dict)

class JobStatusOut(BaseModel):
    status: str
    state: str
    detail: str | None
    failed_step: str | None

class RunResponse(BaseModel):
    id: str
    repo: str
    kind: str
    branch: str
    commit_ref: str | None
    status: str
    state: str
    detail: str | None
    superseded_by: str | None
    created_at: datetime
    jobs: dict[str, JobStatusOut]

# -------------------- Startup --------------------

@app.on_event("startup")
async def startup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

# -------------------- Endpoints --------------------

@app.post("/events", response_model=EventResponse)
async def receive_event(req: EventRequest):
    """Record a run for an incoming event; older unfinished runs on the same branch get cancelled."""
    if req.kind not in EVENT_KINDS:
        raise HTTPException(status_code=400, detail=f"kind must be one of {'|'.join(EVENT_KINDS)}")

    superseded: list[str] = []
    async with SessionLocal() as s:
        async with s.begin():
            run = Run(
                repo=req.repo,
                kind=req.kind,
                branch=req.target_branch,
                commit_ref=req.commit_reference,
                status="pending",
            )
            s.add(run)
            await s.flush()

            if SUPERSEDE_RUNS:
                q = sa.select(Run).where(
                    Run.repo == req.repo,
                    Run.branch == req.target_branch,
                    Run.id != run.id,
                    Run.status.not_in(TERMINAL),
                )
                for old in (await s.execute(q)).scalars():
                    old.superseded_by = run.id
                    superseded.append(old.id)

            run_id = run.id

    # flag after commit so a poller never sees a cancel for a run it can't look up
    for old_id in superseded:
        await redisq.request_cancel(old_id)

    return EventResponse(run_id=run_id, superseded=superseded)

@app.post("/runs/{run_id}/status")
async def report_status(run_id: str, req: StatusRequest):
    async with SessionLocal() as s:
        async with s.begin():
            run = await s.get(Run, run_id)
            if not run:
                raise HTTPException(status_code=404, detail="Run not found")
            if run.status in TERMINAL and req.status != run.status:
                raise HTTPException(status_code=409, detail=f"Run already {run.status}")

            run.status = req.status
            run.state = req.state
            if req.detail is not None:
                run.detail = req.detail

            # merge: a job update only touches the jobs it names
            for name, js in req.jobs.items():
                row = await s.get(JobStatus, (run_id, name))
                if row is None:
                    row = JobStatus(run_id=run_id, job_name=name, status=js.status, state=js.state)
                    s.add(row)
                row.status = js.status
                row.state = js.state
                row.detail = js.detail
                row.failed_step = js.failed_step

    return {"ok": True}

@app.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str):
    async with SessionLocal() as s:
        run = await s.get(Run, run_id)
        if not run:
            raise HTTPException(status_code=404, detail="Run not found")
        rows = (await s.execute(sa.select(JobStatus).where(JobStatus.run_id == run_id))).scalars()
        jobs: dict[str, Any] = {
            row.job_name: JobStatusOut(
                status=row.status, state=row.state, detail=row.detail, failed_step=row.failed_step
            )
            for row in rows
        }
        return RunResponse(
            id=run.id,
            repo=run.repo,
            kind=run.kind,
            branch=run.branch,
            commit_ref=run.commit_ref,
            status=run.status,
            state=run.state,
            detail=run.detail,
            superseded_by=run.superseded_by,
            created_at=run.created_at,
            jobs=jobs,
        )

@app.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str):
    async with SessionLocal() as s:
        run = await s.get(Run, run_id)
        if not run:
            raise HTTPException(status_code=404, detail="Run not found")
        if run.status in TERMINAL:
            raise HTTPException(status_code=409, detail=f"Run already {run.status}")
    await redisq.request_cancel(run_id)
    return {"ok": True}

@app.get("/runs/{run_id}/cancelled")
async def run_cancelled(run_id: str):
    """Polled by running engines; true once the run was cancelled or superseded."""
    return {"cancelled": await redisq.is_cancelled(run_id)}
