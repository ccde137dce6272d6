# scheduler.py
from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from .dag import ExecutionPlan, build_plan
from .errors import ApprovalError, SecretNotFoundError, UnauthorizedApprover
from .expressions import render
from .model import (
    EnvironmentConfig,
    Event,
    JobRun,
    JobStatus,
    RunStatus,
    StepResult,
    WorkflowDefinition,
    WorkflowRun,
    utcnow,
)
from .notify import Notifier, deliver
from .runner import JobContext, JobOutcome, StepRunner, job_secret_refs
from .secrets import MappingSecretStore, SecretStore, snapshot

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Job-level retry. The default (one attempt) means no retry; a retried job
    starts over in a fresh workspace.
    """
    max_attempts: int = 1
    delay: float = 0.0

    def should_retry(self, attempt: int, outcome: JobOutcome) -> bool:
        return outcome.status == JobStatus.FAILED and attempt < self.max_attempts


class RunListener:
    """Observer of run progress. Override what you need."""

    def job_changed(self, run: WorkflowRun, job: JobRun) -> None:
        pass

    def step_finished(self, run: WorkflowRun, job: JobRun, result: StepResult) -> None:
        pass

    def run_finished(self, run: WorkflowRun) -> None:
        pass


def default_max_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def render_run_name(workflow: WorkflowDefinition, event: Event) -> str:
    if not workflow.run_name:
        return workflow.name
    github = {
        "actor": event.actor,
        "ref": event.ref,
        "ref_name": event.ref,
        "event_name": event.kind,
        "action": event.action,
        "event": dict(event.metadata),
        "workflow": workflow.name,
    }
    return render(workflow.run_name, {"github": github})


class _RunExecution:
    """
    Drives one WorkflowRun: a coordinator thread walks the DAG and hands
    runnable jobs to a thread pool. All state changes happen under
    `self._cond`, which is the scheduler-wide condition shared by every run,
    so a slot freed by one run wakes the coordinators of the others.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        run: WorkflowRun,
        workflow: WorkflowDefinition,
        plan: ExecutionPlan,
        environments: Mapping[str, EnvironmentConfig],
        source_dir: Optional[Path],
    ):
        self.scheduler = scheduler
        self.run = run
        self.workflow = workflow
        self.plan = plan
        self.environments = environments
        self.source_dir = source_dir

        self._cond = scheduler._cond
        self._ready: List[str] = []
        self._approved: Dict[str, str] = {}
        self._approval_deadlines: Dict[str, float] = {}
        self._in_flight: Dict[str, JobContext] = {}
        self._changed = False
        self._done = threading.Event()
        self._pool = ThreadPoolExecutor(
            max_workers=scheduler.max_concurrent_jobs,
            thread_name_prefix=f"actionci-{run.run_id[:8]}",
        )
        self._thread = threading.Thread(target=self._coordinate, name=f"actionci-run-{run.run_id[:8]}", daemon=True)

    # ---- helpers ----

    def _emit_job(self, job: JobRun) -> None:
        for listener in self.scheduler.listeners:
            try:
                listener.job_changed(self.run, job)
            except Exception:
                logger.exception("listener failed on job %s", job.job_id)

    def _finish(self, job: JobRun, status: JobStatus, reason: Optional[str]) -> None:
        self._changed = True
        job.status = status
        job.reason = reason
        job.finished_at = utcnow()
        self._emit_job(job)

    def _environment(self, job_id: str) -> Optional[EnvironmentConfig]:
        name = self.workflow.jobs[job_id].environment
        if name is None:
            return None
        return self.environments.get(name) or EnvironmentConfig(name=name)

    def _all_terminal(self) -> bool:
        return all(j.status.terminal for j in self.run.jobs.values())

    # ---- state transitions (lock held) ----

    def _advance(self) -> None:
        for job_id in self.plan.order:
            job = self.run.jobs[job_id]
            if job.status != JobStatus.PENDING or job_id in self._ready:
                continue

            blocked = [
                (dep, self.run.jobs[dep].status)
                for dep in self.plan.predecessors(job_id)
                if self.run.jobs[dep].status in (JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.SKIPPED)
            ]
            if blocked:
                dep, status = blocked[0]
                self._finish(job, JobStatus.SKIPPED, f"dependency '{dep}' {status.value}")
                continue

            if not all(self.run.jobs[d].status == JobStatus.SUCCEEDED for d in self.plan.predecessors(job_id)):
                continue

            env = self._environment(job_id)
            if env is not None and env.requires_approval:
                job.status = JobStatus.WAITING_APPROVAL
                job.waiting_since = utcnow()
                if self.scheduler.approval_timeout is not None:
                    self._approval_deadlines[job_id] = time.monotonic() + self.scheduler.approval_timeout
                logger.info("run %s: job %s waiting for approval (%s)", self.run.run_id, job_id, list(env.approvers))
                self._emit_job(job)
            else:
                self._ready.append(job_id)

    def _expire_approvals(self) -> None:
        now = time.monotonic()
        for job_id, deadline in list(self._approval_deadlines.items()):
            job = self.run.jobs[job_id]
            if job.status != JobStatus.WAITING_APPROVAL or job_id in self._approved:
                del self._approval_deadlines[job_id]
                continue
            if now >= deadline:
                del self._approval_deadlines[job_id]
                logger.info("run %s: approval window for job %s expired", self.run.run_id, job_id)
                self._finish(job, JobStatus.CANCELLED, "approval window expired")

    def _build_context(self, job_id: str) -> JobContext:
        job_def = self.workflow.jobs[job_id]
        env = self._environment(job_id)
        secrets = snapshot(self.scheduler.secret_store, job_def.environment, job_secret_refs(self.workflow, job_def))
        return JobContext(
            run_id=self.run.run_id,
            workflow=self.workflow,
            job=job_def,
            event=self.run.event,
            environment=env,
            secrets=MappingProxyType(secrets),
            cancel_event=threading.Event(),
            source_dir=self.source_dir,
        )

    def _dispatch(self) -> None:
        self._ready.sort(key=self.plan.position)
        while self._ready and self.scheduler._running < self.scheduler.max_concurrent_jobs:
            job_id = self._ready.pop(0)
            job = self.run.jobs[job_id]
            try:
                ctx = self._build_context(job_id)
            except SecretNotFoundError as e:
                self._finish(job, JobStatus.FAILED, str(e))
                continue

            job.status = JobStatus.RUNNING
            job.started_at = utcnow()
            job.approved_by = self._approved.get(job_id)
            self._in_flight[job_id] = ctx
            self.scheduler._running += 1
            self._emit_job(job)
            self._pool.submit(self._execute_job, job_id, ctx)

    def _wait_timeout(self) -> Optional[float]:
        if not self._approval_deadlines:
            return None
        return max(min(self._approval_deadlines.values()) - time.monotonic(), 0.0)

    # ---- worker ----

    def _execute_job(self, job_id: str, ctx: JobContext) -> None:
        job = self.run.jobs[job_id]
        policy = self.scheduler.retry_policy
        attempt = 0

        def on_step(result: StepResult) -> None:
            with self._cond:
                job.steps.append(result)
                for listener in self.scheduler.listeners:
                    try:
                        listener.step_finished(self.run, job, result)
                    except Exception:
                        logger.exception("listener failed on step %s", result.name)

        while True:
            attempt += 1
            with self._cond:
                job.attempts = attempt
                job.steps = []
            try:
                outcome = self.scheduler.runner.run_job(ctx, on_step=on_step)
            except Exception as e:
                logger.exception("run %s: job %s crashed", self.run.run_id, job_id)
                outcome = JobOutcome(JobStatus.FAILED, [], f"{type(e).__name__}: {e}")

            if policy.should_retry(attempt, outcome) and not ctx.cancel_event.is_set():
                logger.info("run %s: retrying job %s (attempt %d/%d)", self.run.run_id, job_id, attempt + 1, policy.max_attempts)
                if policy.delay:
                    time.sleep(policy.delay)
                continue
            break

        with self._cond:
            job.steps = outcome.steps
            self._in_flight.pop(job_id, None)
            self.scheduler._running -= 1
            self._finish(job, outcome.status, outcome.reason)
            self._cond.notify_all()

    # ---- coordinator ----

    def start(self) -> None:
        self._thread.start()

    def _drive(self) -> None:
        try:
            with self._cond:
                self.run.status = RunStatus.RUNNING
                while True:
                    self._changed = False
                    self._advance()
                    self._expire_approvals()
                    self._dispatch()
                    if self._all_terminal():
                        break
                    if self._changed:
                        # a job finished without running; re-evaluate its dependents
                        continue
                    self._cond.wait(timeout=self._wait_timeout())

                self.run.status = self.run.reduce_status()
                self.run.finished_at = utcnow()
        finally:
            self._pool.shutdown(wait=True)

    def _coordinate(self) -> None:
        try:
            self._drive()
            logger.info("run %s (%s) finished: %s", self.run.run_id, self.workflow.name, self.run.status.value)
            for listener in self.scheduler.listeners:
                try:
                    listener.run_finished(self.run)
                except Exception:
                    logger.exception("listener failed on run %s", self.run.run_id)
            deliver(self.scheduler.notifier, self.run.summary())
        finally:
            self._done.set()

    # ---- external operations ----

    def submit_decision(self, job_id: str, approver: str, decision: Decision | str) -> JobRun:
        decision = Decision(decision)
        with self._cond:
            job = self.run.jobs.get(job_id)
            if job is None:
                raise ApprovalError(f"Run {self.run.run_id} has no job '{job_id}'")
            if job.status != JobStatus.WAITING_APPROVAL or job_id in self._approved:
                raise ApprovalError(f"Job '{job_id}' is not waiting for approval (status={job.status.value})")

            env = self._environment(job_id)
            allowed = list(env.approvers) if env else []
            if approver not in allowed:
                raise UnauthorizedApprover(self.run.run_id, job_id, approver, allowed)

            if decision == Decision.APPROVE:
                logger.info("run %s: job %s approved by %s", self.run.run_id, job_id, approver)
                self._approved[job_id] = approver
                job.approved_by = approver
                self._ready.append(job_id)
            else:
                logger.info("run %s: job %s rejected by %s", self.run.run_id, job_id, approver)
                self._finish(job, JobStatus.CANCELLED, f"rejected by {approver}")
            self._cond.notify_all()
            return job

    def cancel(self) -> None:
        with self._cond:
            if self.run.status.terminal:
                return
            self.run.cancel_requested = True
            self._ready.clear()
            for job in self.run.jobs.values():
                if job.status in (JobStatus.PENDING, JobStatus.WAITING_APPROVAL):
                    self._finish(job, JobStatus.CANCELLED, "run cancelled")
                elif job.status == JobStatus.RUNNING:
                    self._in_flight[job.job_id].cancel_event.set()
            self._cond.notify_all()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    @property
    def done(self) -> bool:
        return self._done.is_set()


class RunHandle:
    """Caller-side view of a started run."""

    def __init__(self, execution: _RunExecution):
        self._execution = execution

    @property
    def run(self) -> WorkflowRun:
        return self._execution.run

    @property
    def run_id(self) -> str:
        return self._execution.run.run_id

    @property
    def workflow(self) -> WorkflowDefinition:
        return self._execution.workflow

    @property
    def plan(self) -> ExecutionPlan:
        return self._execution.plan

    @property
    def done(self) -> bool:
        return self._execution.done

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._execution.wait(timeout)

    def result(self, timeout: Optional[float] = None) -> WorkflowRun:
        if not self.wait(timeout):
            raise TimeoutError(f"run {self.run_id} did not finish within {timeout}s")
        return self.run

    def cancel(self) -> None:
        self._execution.cancel()

    def submit_decision(self, job_id: str, approver: str, decision: Decision | str) -> JobRun:
        return self._execution.submit_decision(job_id, approver, decision)

    def waiting_jobs(self) -> List[str]:
        with self._execution._cond:
            return [
                job_id
                for job_id, job in self.run.jobs.items()
                if job.status == JobStatus.WAITING_APPROVAL and job_id not in self._execution._approved
            ]


class Scheduler:
    """
    Executes workflow runs: DAG order, approval gates, bounded parallelism,
    skip propagation and best-effort notification. The concurrency limit is
    shared by all runs started on the same scheduler.
    """

    def __init__(
        self,
        runner: Optional[StepRunner] = None,
        *,
        max_concurrent_jobs: Optional[int] = None,
        secret_store: Optional[SecretStore] = None,
        notifier: Optional[Notifier] = None,
        approval_timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        listeners: Iterable[RunListener] = (),
    ):
        if max_concurrent_jobs is not None and max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be >= 1")
        self.runner = runner or StepRunner()
        self.max_concurrent_jobs = max_concurrent_jobs or default_max_workers()
        self.secret_store = secret_store or MappingSecretStore()
        self.notifier = notifier
        self.approval_timeout = approval_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.listeners: List[RunListener] = list(listeners)
        # max_concurrent_jobs bounds running jobs across every run of this scheduler
        self._cond = threading.Condition()
        self._running = 0

    def add_listener(self, listener: RunListener) -> None:
        self.listeners.append(listener)

    def start(
        self,
        workflow: WorkflowDefinition,
        event: Event,
        *,
        environments: Optional[Mapping[str, EnvironmentConfig]] = None,
        plan: Optional[ExecutionPlan] = None,
        run_id: Optional[str] = None,
        source_dir: Optional[str | Path] = None,
    ) -> RunHandle:
        """
        Create a WorkflowRun and start executing it in the background.

        Raises:
            SchemaError / CycleError: the workflow cannot be planned; no run is created
        """
        plan = plan or build_plan(workflow)
        run = WorkflowRun(
            run_id=run_id or uuid.uuid4().hex,
            workflow=workflow.name,
            event=event,
            run_name=render_run_name(workflow, event),
            jobs={
                job_id: JobRun(job_id=job_id, environment=job.environment)
                for job_id, job in workflow.jobs.items()
            },
        )
        execution = _RunExecution(
            self,
            run,
            workflow,
            plan,
            dict(environments or {}),
            Path(source_dir).resolve() if source_dir else None,
        )
        logger.info("run %s: starting '%s' for %s on %s", run.run_id, workflow.name, event.kind, event.ref)
        execution.start()
        return RunHandle(execution)

    def execute(self, workflow: WorkflowDefinition, event: Event, **kwargs) -> WorkflowRun:
        """Start a run and block until it finishes. Runs needing approval will block forever."""
        handle = self.start(workflow, event, **kwargs)
        handle.wait()
        return handle.run
