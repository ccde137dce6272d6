# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class ActionCIError(Exception):
    """Base class for every error raised by actionci."""


class SchemaError(ActionCIError):
    """
    Malformed workflow or environment definition.

    Raised before any run is created. `path` points at the offending node,
    e.g. "jobs.deploy.steps[1]".
    """

    def __init__(self, message: str, path: Optional[str] = None):
        self.message = message
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class CycleError(SchemaError):
    """The `needs` graph contains a cycle. `cycle` lists it, first node repeated at the end."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"dependency cycle detected: {' -> '.join(self.cycle)}", path="jobs")


@dataclass
class StepExecutionError(ActionCIError):
    """A step could not be executed (unknown action, bad inputs, timeout...)."""
    job: str
    step: str
    message: str
    exit_code: Optional[int] = None

    def __str__(self) -> str:
        suffix = f" (exit={self.exit_code})" if self.exit_code is not None else ""
        return f"[{self.job}] step '{self.step}' failed{suffix}: {self.message}"


@dataclass
class UnauthorizedApprover(ActionCIError):
    run_id: str
    job: str
    approver: str
    allowed: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"'{self.approver}' may not approve job '{self.job}' of run {self.run_id}. "
            f"Approvers: {self.allowed}"
        )


class ApprovalError(ActionCIError):
    """A decision was submitted for a job that is not waiting for one."""


class RunNotFoundError(ActionCIError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class SecretNotFoundError(ActionCIError):
    def __init__(self, environment: Optional[str], name: str):
        self.environment = environment
        self.name = name
        scope = f"environment '{environment}'" if environment else "repository"
        super().__init__(f"Secret '{name}' not found in {scope}")


class DeliveryError(ActionCIError):
    """A notification could not be delivered. Never affects run status."""

    def __init__(self, transport: str, message: str):
        self.transport = transport
        super().__init__(f"{transport}: {message}")


class HistoryConflict(ActionCIError):
    """Run history is append-only; the (workflow, run_id) key already exists."""

    def __init__(self, workflow: str, run_id: str):
        self.workflow = workflow
        self.run_id = run_id
        super().__init__(f"Run {run_id} of workflow '{workflow}' is already recorded")


class ActionNotFound(ActionCIError):
    def __init__(self, ref: str, known: List[str]):
        self.ref = ref
        super().__init__(f"Unknown action '{ref}'. Registered actions: {known}")
