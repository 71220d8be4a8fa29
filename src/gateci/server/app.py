from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional

import sqlalchemy as sa
from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel, Field

from gateci.config import load_workflows
from gateci.model import Event, EventKind, JobResult, JobStatus, RunStatus, Workflow, aggregate

from . import redisq, settings
from .db import SessionLocal, engine
from .models import Base, JobResultRecord, RunRecord

app = FastAPI(title="gateci event gateway")

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    event: EventKind
    branch: str = Field(min_length=1)
    commit: Optional[str] = None  # defaults to the branch tip
    repo: str = "."

class EventResponse(BaseModel):
    run_ids: list[str]

class ClaimRequest(BaseModel):
    agent_id: str

class ClaimedRun(BaseModel):
    run_id: str
    workflow: str
    event: EventKind
    branch: str
    commit: str
    repo: str

class JobReport(BaseModel):
    job_name: str
    status: Literal["succeeded", "failed"]
    exit_code: Optional[int] = None
    log: str = ""
    error: Optional[str] = None

class CompleteRequest(BaseModel):
    agent_id: str
    jobs: list[JobReport] = Field(default_factory=list)

class JobView(BaseModel):
    job_name: str
    status: str
    exit_code: Optional[int]
    error: Optional[str]

class RunResponse(BaseModel):
    run_id: str
    workflow: str
    event: str
    branch: str
    commit: str
    status: str
    created_at: datetime
    finished_at: Optional[datetime]
    jobs: list[JobView]

# -------------------- Startup --------------------

@app.on_event("startup")
async def startup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    # load -> freeze; a new definition requires a restart
    app.state.workflows = load_workflows(settings.WORKFLOWS)

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def _workflows(request: Request) -> List[Workflow]:
    return list(getattr(request.app.state, "workflows", []))

async def _job_rows(s, run_id: str) -> list[JobResultRecord]:
    q = sa.select(JobResultRecord).where(JobResultRecord.run_id == run_id).order_by(JobResultRecord.position)
    return list((await s.execute(q)).scalars())

def _run_response(run: RunRecord, rows: list[JobResultRecord]) -> RunResponse:
    return RunResponse(
        run_id=run.id,
        workflow=run.workflow,
        event=run.event,
        branch=run.branch,
        commit=run.commit,
        status=run.status,
        created_at=run.created_at,
        finished_at=run.finished_at,
        jobs=[JobView(job_name=j.job_name, status=j.status, exit_code=j.exit_code, error=j.error) for j in rows],
    )

# -------------------- Endpoints --------------------

@app.post("/events", response_model=EventResponse)
async def receive_event(req: EventRequest, request: Request):
    event = Event(kind=req.event, branch=req.branch, commit=req.commit, repo=req.repo)
    matched = [wf for wf in _workflows(request) if wf.matches(event)]
    run_ids: list[str] = []

    if not matched:
        return EventResponse(run_ids=[])

    async with SessionLocal() as s:
        async with s.begin():
            for wf in matched:
                run = RunRecord(
                    workflow=wf.name,
                    event=event.kind.value,
                    branch=event.branch,
                    commit=event.commit,
                    repo=event.repo,
                    status=RunStatus.PENDING.value,
                )
                s.add(run)
                await s.flush()

                for position, job in enumerate(wf.jobs):
                    s.add(JobResultRecord(
                        run_id=run.id,
                        job_name=job.name,
                        position=position,
                        status=JobStatus.PENDING.value,
                    ))
                run_ids.append(run.id)

    # push to Redis after DB commit
    for rid in run_ids:
        await redisq.enqueue_run(rid)

    return EventResponse(run_ids=run_ids)

@app.post("/runs/claim", response_model=ClaimedRun)
async def claim(req: ClaimRequest):
    run_id = await redisq.dequeue_run(timeout_s=settings.CLAIM_TIMEOUT_SECONDS)
    if not run_id:
        return Response(status_code=204)

    async with SessionLocal() as s:
        async with s.begin():
            run = await s.get(RunRecord, run_id)
            if not run:
                raise HTTPException(status_code=404, detail="Run not found")
            if run.status != RunStatus.PENDING.value:
                raise HTTPException(status_code=409, detail=f"Run already {run.status}")

            run.status = RunStatus.RUNNING.value
            run.agent_id = req.agent_id

            return ClaimedRun(
                run_id=run.id,
                workflow=run.workflow,
                event=EventKind(run.event),
                branch=run.branch,
                commit=run.commit,
                repo=run.repo,
            )

@app.post("/runs/{run_id}/complete", response_model=RunResponse)
async def complete(run_id: str, req: CompleteRequest):
    async with SessionLocal() as s:
        async with s.begin():
            run = await s.get(RunRecord, run_id)
            if not run:
                raise HTTPException(status_code=404, detail="Run not found")
            if run.agent_id != req.agent_id:
                raise HTTPException(status_code=403, detail="Run claimed by different agent")
            if run.status != RunStatus.RUNNING.value:
                raise HTTPException(status_code=409, detail=f"Run is {run.status}")

            rows = await _job_rows(s, run_id)
            by_name = {row.job_name: row for row in rows}
            unknown = sorted(j.job_name for j in req.jobs if j.job_name not in by_name)
            if unknown:
                raise HTTPException(status_code=400, detail=f"Unknown jobs: {unknown}")

            reports = {j.job_name: j for j in req.jobs}
            results: list[JobResult] = []
            for row in rows:
                report = reports.get(row.job_name)
                if report is None:
                    # the gate is binary: a job nobody reported did not pass
                    row.status = JobStatus.FAILED.value
                    row.error = "not reported by agent"
                else:
                    row.status = report.status
                    row.exit_code = report.exit_code
                    row.error = report.error
                    row.log = report.log or None
                results.append(JobResult(job_name=row.job_name, status=JobStatus(row.status), exit_code=row.exit_code))

            run.status = aggregate(results).value
            run.finished_at = now_utc()

            return _run_response(run, rows)

@app.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str):
    """Run status with every job's status and exit code."""
    async with SessionLocal() as s:
        run = await s.get(RunRecord, run_id)
        if not run:
            raise HTTPException(status_code=404, detail="Run not found")
        rows = await _job_rows(s, run_id)
        return _run_response(run, rows)
