from .dsl import job, sh, uses, wf, workflow, push, pull_request, manual
from .parser import parse_workflow, parse_environments
from .runner import StepRunner, load_workflow
from .scheduler import Decision, RetryPolicy, RunHandle, Scheduler
from .dispatcher import Dispatcher
from .model import Event, EnvironmentConfig, WorkflowDefinition, WorkflowRun
from .triggers import matches
from .dag import build_plan

__all__ = [
    "job", "sh", "uses", "wf", "workflow", "push", "pull_request", "manual",
    "parse_workflow", "parse_environments", "load_workflow", "build_plan", "matches",
    "StepRunner", "Scheduler", "RunHandle", "RetryPolicy", "Decision", "Dispatcher",
    "Event", "EnvironmentConfig", "WorkflowDefinition", "WorkflowRun",
]
