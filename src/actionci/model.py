# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


# ---------------------------------------------------------------------
# Definitions (parsed once, never mutated)
# ---------------------------------------------------------------------

PULL_REQUEST_TYPES = ("opened", "synchronize", "reopened")
EVENT_KINDS = ("push", "pull_request", "manual")


@dataclass(frozen=True)
class TriggerRule:
    """One `on:` entry. Empty `branches` matches every ref."""
    kind: str
    branches: Tuple[str, ...] = ()
    types: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Trigger:
    rules: Tuple[TriggerRule, ...] = ()

    def rule_for(self, kind: str) -> Optional[TriggerRule]:
        for rule in self.rules:
            if rule.kind == kind:
                return rule
        return None


@dataclass(frozen=True)
class StepDefinition:
    """
    A single step inside a job: either a shell command (`run`) or an
    action reference (`uses`) with its `with` inputs.
    """
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Mapping[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    working_directory: Optional[str] = None
    if_: str = "success()"
    timeout_minutes: Optional[float] = None

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.uses:
            return self.uses
        first_line = (self.run or "").strip().splitlines()[0:1]
        return f"Run {first_line[0]}" if first_line else "Run"


@dataclass(frozen=True)
class JobDefinition:
    id: str
    runs_on: str
    steps: Tuple[StepDefinition, ...]
    needs: Tuple[str, ...] = ()
    environment: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    name: Optional[str] = None
    timeout_minutes: Optional[float] = None


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    trigger: Trigger
    jobs: Mapping[str, JobDefinition]
    run_name: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def job_ids(self) -> List[str]:
        return list(self.jobs)


@dataclass(frozen=True)
class EnvironmentConfig:
    """Deployment target: secrets plus an optional list of required approvers."""
    name: str
    secrets: Mapping[str, str] = field(default_factory=dict)
    approvers: Tuple[str, ...] = ()

    @property
    def requires_approval(self) -> bool:
        return bool(self.approvers)


# ---------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------

def normalize_ref(ref: Optional[str]) -> str:
    ref = ref or ""
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


@dataclass(frozen=True)
class Event:
    """Repository event as delivered by the hosting side."""
    kind: str
    ref: str = ""
    actor: str = ""
    action: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "ref", normalize_ref(self.ref))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Event:
        return cls(
            kind=data["kind"],
            ref=data.get("ref", ""),
            actor=data.get("actor", ""),
            action=data.get("action"),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "ref": self.ref,
            "actor": self.actor,
            "action": self.action,
            "metadata": dict(self.metadata),
        }


# ---------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    WAITING_APPROVAL = "waiting_approval"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED)


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


@dataclass
class StepResult:
    name: str
    status: StepStatus
    exit_code: Optional[int] = None
    output: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)
    duration: float = 0.0
    error: Optional[str] = None
    step_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "id": self.step_id,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "error": self.error,
            "outputs": dict(self.outputs),
            "output": self.output,
        }


@dataclass
class JobRun:
    job_id: str
    status: JobStatus = JobStatus.PENDING
    environment: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    steps: List[StepResult] = field(default_factory=list)
    reason: Optional[str] = None
    attempts: int = 0
    approved_by: Optional[str] = None
    waiting_since: Optional[datetime] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "environment": self.environment,
            "reason": self.reason,
            "attempts": self.attempts,
            "approved_by": self.approved_by,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class WorkflowRun:
    """
    One execution of a workflow for one matched event. Owns every JobRun
    and StepResult for its lifetime.
    """
    run_id: str
    workflow: str
    event: Event
    jobs: Dict[str, JobRun]
    run_name: Optional[str] = None
    status: RunStatus = RunStatus.QUEUED
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    cancel_requested: bool = False

    def reduce_status(self) -> RunStatus:
        statuses = [j.status for j in self.jobs.values()]
        if not all(s.terminal for s in statuses):
            return RunStatus.RUNNING
        if any(s == JobStatus.FAILED for s in statuses):
            return RunStatus.FAILED
        if self.cancel_requested or any(s == JobStatus.CANCELLED for s in statuses):
            return RunStatus.CANCELLED
        if all(s == JobStatus.SUCCEEDED for s in statuses):
            return RunStatus.SUCCEEDED
        # only reachable with skipped jobs and no failing upstream, which the scheduler never produces
        return RunStatus.FAILED

    def summary(self) -> RunSummary:
        return RunSummary(
            run_id=self.run_id,
            workflow=self.workflow,
            run_name=self.run_name or self.workflow,
            status=self.status,
            event=self.event,
            jobs=tuple(
                JobSummary(job_id=j.job_id, status=j.status, reason=j.reason, duration=j.duration)
                for j in self.jobs.values()
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "run_name": self.run_name,
            "status": self.status.value,
            "event": self.event.to_dict(),
            "created_at": _iso(self.created_at),
            "finished_at": _iso(self.finished_at),
            "jobs": {job_id: j.to_dict() for job_id, j in self.jobs.items()},
        }


@dataclass(frozen=True)
class JobSummary:
    job_id: str
    status: JobStatus
    reason: Optional[str] = None
    duration: Optional[float] = None


@dataclass(frozen=True)
class RunSummary:
    """What the notifier and the console get to see of a finished run."""
    run_id: str
    workflow: str
    run_name: str
    status: RunStatus
    event: Event
    jobs: Tuple[JobSummary, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "run_name": self.run_name,
            "status": self.status.value,
            "event": self.event.to_dict(),
            "jobs": [
                {"job_id": j.job_id, "status": j.status.value, "reason": j.reason, "duration": j.duration}
                for j in self.jobs
            ],
        }
