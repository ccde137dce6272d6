# Control plane. Serve with:
#   uvicorn --factory actionci.cloud.main:create_app

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Literal, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..dispatcher import Dispatcher
from ..errors import ApprovalError, RunNotFoundError, SchemaError, UnauthorizedApprover
from ..model import Event
from ..notify import WebhookNotifier
from ..parser import parse_environments, parse_workflow
from ..runner import StepRunner
from ..scheduler import Scheduler
from ..secrets import ChainSecretStore, EnvSecretStore, MappingSecretStore
from .db import make_engine, make_session_factory
from .redisq import event_queue
from .settings import (
    APPROVAL_TIMEOUT_SECONDS,
    DATABASE_URL,
    DISPATCH_POLL_SECONDS,
    ENVIRONMENTS_FILE,
    MAX_CONCURRENT_JOBS,
    NOTIFY_WEBHOOK_URL,
)
from .store import RunHistory, WorkflowStore, create_tables

logger = logging.getLogger(__name__)

# -------------------- Schemas --------------------

class WorkflowIn(BaseModel):
    source: str


class WorkflowOut(BaseModel):
    name: str
    version: int
    versions: list[int] = Field(default_factory=list)
    jobs: list[str] = Field(default_factory=list)
    source: Optional[str] = None


class EventIn(BaseModel):
    kind: Literal["push", "pull_request", "manual"]
    ref: str = ""
    actor: str = ""
    action: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DecisionIn(BaseModel):
    approver: str
    decision: Literal["approve", "reject"]


# -------------------- Wiring --------------------

def build_dispatcher(history: Optional[RunHistory] = None) -> Dispatcher:
    """Dispatcher configured from actionci.cloud.settings."""
    environments = parse_environments(Path(ENVIRONMENTS_FILE)) if ENVIRONMENTS_FILE else {}
    scheduler = Scheduler(
        StepRunner(),
        max_concurrent_jobs=MAX_CONCURRENT_JOBS,
        secret_store=ChainSecretStore(MappingSecretStore(environments), EnvSecretStore()),
        notifier=WebhookNotifier(NOTIFY_WEBHOOK_URL) if NOTIFY_WEBHOOK_URL else None,
        approval_timeout=APPROVAL_TIMEOUT_SECONDS,
    )
    return Dispatcher(scheduler, events=event_queue(), environments=environments, history=history)


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, SchemaError):
        return HTTPException(status_code=422, detail={"error": type(e).__name__, "path": e.path, "message": str(e)})
    if isinstance(e, UnauthorizedApprover):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, ApprovalError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, RunNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def create_app(
    dispatcher: Optional[Dispatcher] = None,
    workflow_store: Optional[WorkflowStore] = None,
    history: Optional[RunHistory] = None,
    *,
    database_url: str = DATABASE_URL,
    start_dispatcher: bool = True,
) -> FastAPI:
    if workflow_store is None or history is None:
        engine = make_engine(database_url)
        create_tables(engine)
        session_factory = make_session_factory(engine)
        if workflow_store is None:
            workflow_store = WorkflowStore(session_factory)
        if history is None:
            history = RunHistory(session_factory)

    if dispatcher is None:
        dispatcher = build_dispatcher(history)

    # the latest stored version of every workflow is the active one
    for name in workflow_store.names():
        definition = workflow_store.latest(name)
        if definition is not None:
            dispatcher.register(definition)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("control plane up: %d workflows registered", len(dispatcher.workflows()))
        if start_dispatcher:
            dispatcher.start(poll_interval=DISPATCH_POLL_SECONDS)
        try:
            yield
        finally:
            if start_dispatcher:
                dispatcher.stop(timeout=DISPATCH_POLL_SECONDS * 2)

    app = FastAPI(title="actionci control plane", lifespan=lifespan)
    app.state.dispatcher = dispatcher
    app.state.workflow_store = workflow_store
    app.state.history = history

    # -------------------- Workflows --------------------

    @app.put("/workflows/{name}", response_model=WorkflowOut)
    def put_workflow(name: str, req: WorkflowIn):
        try:
            definition = parse_workflow(req.source)
            if definition.name != name:
                raise SchemaError(f"document is named '{definition.name}', expected '{name}'", "name")
            # only a stored version may become the live one
            version = workflow_store.save(name, req.source)
            dispatcher.register(definition)
        except SchemaError as e:
            raise _http_error(e)
        return WorkflowOut(name=name, version=version, jobs=definition.job_ids)

    @app.get("/workflows/{name}", response_model=WorkflowOut)
    def get_workflow(name: str, version: Optional[int] = None):
        doc = workflow_store.get(name, version)
        if doc is None:
            raise HTTPException(status_code=404, detail=f"Workflow not found: {name}")
        return WorkflowOut(
            name=name,
            version=doc.version,
            versions=workflow_store.versions(name),
            jobs=parse_workflow(doc.source).job_ids,
            source=doc.source,
        )

    @app.get("/workflows/{name}/runs")
    def list_workflow_runs(name: str, limit: int = 20):
        return history.list(name, limit=limit)

    # -------------------- Events --------------------

    @app.post("/events", status_code=202)
    def post_event(req: EventIn):
        event = Event(kind=req.kind, ref=req.ref, actor=req.actor, action=req.action, metadata=req.metadata)
        dispatcher.submit(event)
        return {"queued": True}

    # -------------------- Runs --------------------

    @app.get("/runs")
    def list_runs():
        return [handle.run.to_dict() for handle in dispatcher.runs()]

    @app.get("/runs/{run_id}")
    def get_run(run_id: str):
        try:
            return dispatcher.get_run(run_id).run.to_dict()
        except RunNotFoundError as e:
            recorded = history.find(run_id)
            if recorded is None:
                raise _http_error(e)
            return recorded

    @app.post("/runs/{run_id}/cancel", status_code=202)
    def cancel_run(run_id: str):
        try:
            dispatcher.cancel(run_id)
        except RunNotFoundError as e:
            raise _http_error(e)
        return {"cancel_requested": True}

    @app.post("/runs/{run_id}/jobs/{job_id}/decisions")
    def submit_decision(run_id: str, job_id: str, req: DecisionIn):
        try:
            job = dispatcher.submit_decision(run_id, job_id, req.approver, req.decision)
        except (RunNotFoundError, UnauthorizedApprover, ApprovalError) as e:
            raise _http_error(e)
        return job.to_dict()

    return app

