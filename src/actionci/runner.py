# runner.py
from __future__ import annotations

import logging
import os
import runpy
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError

from .actions import (
    ActionOutcome,
    ActionRegistry,
    ShellAction,
    StepContext,
    default_registry,
    format_validation_error,
)
from .errors import ActionNotFound, StepExecutionError
from .expressions import render, render_mapping, secret_refs
from .model import (
    EnvironmentConfig,
    Event,
    JobDefinition,
    JobStatus,
    StepDefinition,
    StepResult,
    StepStatus,
    WorkflowDefinition,
)
from .parser import parse_workflow

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> WorkflowDefinition:
    """
    Load a workflow from a YAML document or a python file.

    A python file must define either:
      - workflow() -> WorkflowDefinition
      - WORKFLOW = WorkflowDefinition(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml"):
        return parse_workflow(wf_path)

    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")

    module_name = f"actionci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    definition = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        definition = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        definition = globals_dict["WORKFLOW"]

    if not isinstance(definition, WorkflowDefinition):
        raise TypeError(
            "Workflow module must return/define a WorkflowDefinition. "
            "Define workflow() -> WorkflowDefinition or WORKFLOW = ..."
        )
    return definition


# ----------------------------------------------------------------------
# Job execution context
# ----------------------------------------------------------------------

def job_secret_refs(workflow: WorkflowDefinition, job: JobDefinition) -> List[str]:
    """Every `secrets.X` a job can observe, so only those get resolved."""
    texts: List[Any] = list(workflow.env.values()) + list(job.env.values())
    for step in job.steps:
        texts.append(step.run)
        texts.extend(step.env.values())
        texts.extend(step.with_.values())
    return sorted(secret_refs(texts))


@dataclass(frozen=True)
class JobContext:
    """
    Immutable snapshot handed to one job execution at dispatch time.
    Secrets live here only for the lifetime of the job.
    """
    run_id: str
    workflow: WorkflowDefinition
    job: JobDefinition
    event: Event
    environment: Optional[EnvironmentConfig] = None
    secrets: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    cancel_event: threading.Event = field(default_factory=threading.Event)
    source_dir: Optional[Path] = None


@dataclass
class JobOutcome:
    status: JobStatus
    steps: List[StepResult]
    reason: Optional[str] = None


def mask(text: Optional[str], secrets: Iterable[str]) -> Optional[str]:
    if not text:
        return text
    for value in secrets:
        if value:
            text = text.replace(value, "***")
    return text


def _should_run(step: StepDefinition, failed: bool) -> bool:
    if step.if_ == "always()":
        return True
    if step.if_ == "failure()":
        return failed
    if step.if_ == "cancelled()":
        # the runner stops at cancellation, so this never holds
        return False
    return not failed


# ----------------------------------------------------------------------
# Step runner
# ----------------------------------------------------------------------

class StepRunner:
    """
    Executes the steps of one job, strictly in order, inside a fresh
    temporary workspace that is removed afterwards.
    """

    def __init__(
        self,
        registry: Optional[ActionRegistry] = None,
        *,
        shell: Optional[str] = None,
        base_env: Optional[Mapping[str, str]] = None,
        workspace_root: Optional[str | Path] = None,
        keep_workspace: bool = False,
    ):
        self.registry = registry or default_registry()
        self.shell_action = ShellAction(shell=shell)
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.workspace_root = Path(workspace_root) if workspace_root else None
        self.keep_workspace = keep_workspace

    # ---- contexts ----

    def _github_context(self, ctx: JobContext) -> Dict[str, Any]:
        event = ctx.event
        return {
            "event_name": event.kind,
            "event": dict(event.metadata),
            "ref": event.ref,
            "ref_name": event.ref,
            "actor": event.actor,
            "action": event.action,
            "run_id": ctx.run_id,
            "workflow": ctx.workflow.name,
            "job": ctx.job.id,
            "sha": event.metadata.get("sha", ""),
            "repository": event.metadata.get("repository", ""),
        }

    def _builtin_env(self, ctx: JobContext, workspace: Path) -> Dict[str, str]:
        return {
            "CI": "true",
            "ACTIONCI": "true",
            "ACTIONCI_WORKSPACE": str(workspace),
            "ACTIONCI_RUN_ID": ctx.run_id,
            "ACTIONCI_WORKFLOW": ctx.workflow.name,
            "ACTIONCI_JOB": ctx.job.id,
            "ACTIONCI_REF": ctx.event.ref,
            "ACTIONCI_ACTOR": ctx.event.actor,
            "ACTIONCI_EVENT": ctx.event.kind,
            "ACTIONCI_RUNNER": ctx.job.runs_on,
        }

    @staticmethod
    def merge_env(contexts: Dict[str, Any], *scopes: Mapping[str, str]) -> Dict[str, str]:
        """Widest scope first; narrower scopes override (step > job > workflow)."""
        merged: Dict[str, str] = {}
        for scope in scopes:
            for key, value in scope.items():
                merged[key] = render(value, {**contexts, "env": merged})
        return merged

    # ---- execution ----

    def _execute(self, ctx: JobContext, step: StepDefinition, sctx: StepContext, contexts: Dict[str, Any]) -> ActionOutcome:
        if step.run is not None:
            return self.shell_action.run(sctx, render(step.run, contexts))

        handler = self.registry.resolve(step.uses or "")
        raw_inputs = render_mapping(step.with_, contexts)
        inputs = handler.parse_inputs(raw_inputs)
        return handler.run(sctx, inputs)

    def run_step(
        self,
        ctx: JobContext,
        index: int,
        step: StepDefinition,
        workspace: Path,
        state_dir: Path,
        contexts: Dict[str, Any],
        timeout: Optional[float],
    ) -> StepResult:
        name = step.display_name
        step_env = self.merge_env(contexts, ctx.workflow.env, ctx.job.env, step.env)
        contexts = {**contexts, "env": step_env}

        env = dict(self.base_env)
        env.update(self._builtin_env(ctx, workspace))
        env.update(step_env)

        cwd = (workspace / (step.working_directory or ".")).resolve()
        sctx = StepContext(
            run_id=ctx.run_id,
            job_id=ctx.job.id,
            step_name=name,
            workspace=workspace,
            cwd=cwd,
            env=env,
            event=ctx.event,
            cancel_event=ctx.cancel_event,
            timeout=timeout,
            source_dir=ctx.source_dir,
            state_dir=state_dir,
            step_index=index,
        )

        started = time.monotonic()
        try:
            outcome = self._execute(ctx, step, sctx, contexts)
        except ActionNotFound as e:
            outcome = ActionOutcome(exit_code=1, error=str(e))
        except ValidationError as e:
            outcome = ActionOutcome(exit_code=1, error=f"invalid inputs for {step.uses}: {format_validation_error(e)}")
        except Exception as e:
            logger.exception("[%s] step '%s' raised", ctx.job.id, name)
            outcome = ActionOutcome(exit_code=1, error=f"{type(e).__name__}: {e}")
        duration = time.monotonic() - started

        if outcome.cancelled:
            status = StepStatus.CANCELLED
        elif outcome.ok:
            status = StepStatus.SUCCEEDED
        else:
            status = StepStatus.FAILED

        secret_values = list(ctx.secrets.values())
        error = outcome.error
        if status == StepStatus.FAILED:
            error = str(StepExecutionError(ctx.job.id, name, error or "step failed", outcome.exit_code))

        return StepResult(
            name=name,
            step_id=step.id,
            status=status,
            exit_code=outcome.exit_code,
            output=mask(outcome.output, secret_values) or "",
            outputs={k: mask(v, secret_values) or "" for k, v in outcome.outputs.items()},
            duration=duration,
            error=mask(error, secret_values),
        )

    def run_job(
        self,
        ctx: JobContext,
        on_step: Optional[Callable[[StepResult], None]] = None,
    ) -> JobOutcome:
        """
        Run every step of `ctx.job`.

        The first failing step (without continue-on-error) fails the job;
        following steps only run if their condition is `always()` or
        `failure()`. Cancellation terminates the current step and marks the
        rest cancelled.
        """
        job = ctx.job
        root = Path(tempfile.mkdtemp(prefix=f"actionci-{job.id}-", dir=self.workspace_root))
        workspace = root / "workspace"
        state_dir = root / "state"
        workspace.mkdir()
        state_dir.mkdir()

        github = self._github_context(ctx)
        secrets = dict(ctx.secrets)
        steps_ctx: Dict[str, Dict[str, Any]] = {}
        results: List[StepResult] = []
        failed = False
        reason: Optional[str] = None
        deadline = time.monotonic() + job.timeout_minutes * 60 if job.timeout_minutes else None

        try:
            for index, step in enumerate(job.steps):
                if ctx.cancel_event.is_set():
                    results.append(StepResult(name=step.display_name, step_id=step.id, status=StepStatus.CANCELLED))
                    continue

                if not _should_run(step, failed):
                    result = StepResult(name=step.display_name, step_id=step.id, status=StepStatus.SKIPPED)
                    results.append(result)
                    if on_step:
                        on_step(result)
                    continue

                timeout = step.timeout_minutes * 60 if step.timeout_minutes else None
                if deadline is not None:
                    remaining = max(deadline - time.monotonic(), 0.001)
                    timeout = min(timeout, remaining) if timeout else remaining

                contexts = {
                    "github": github,
                    "secrets": secrets,
                    "job": {"status": "failure" if failed else "success"},
                    "steps": steps_ctx,
                }
                logger.debug("[%s] step %d: %s", job.id, index + 1, step.display_name)
                result = self.run_step(ctx, index, step, workspace, state_dir, contexts, timeout)
                results.append(result)
                if step.id:
                    steps_ctx[step.id] = {"outputs": dict(result.outputs), "outcome": result.status.value}
                if on_step:
                    on_step(result)

                if result.status == StepStatus.FAILED and not step.continue_on_error and not failed:
                    failed = True
                    reason = result.error
        finally:
            if not self.keep_workspace:
                shutil.rmtree(root, ignore_errors=True)

        if ctx.cancel_event.is_set() and any(r.status == StepStatus.CANCELLED for r in results):
            return JobOutcome(JobStatus.CANCELLED, results, "cancelled while running")
        if failed:
            return JobOutcome(JobStatus.FAILED, results, reason)
        return JobOutcome(JobStatus.SUCCEEDED, results, None)
