# parser.py
# Turns a workflow document (YAML text, a path or an already-loaded mapping)
# into an immutable WorkflowDefinition. Everything here is pure: no I/O apart
# from reading the file when a Path is given.
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from .errors import SchemaError
from .model import (
    PULL_REQUEST_TYPES,
    EnvironmentConfig,
    JobDefinition,
    StepDefinition,
    Trigger,
    TriggerRule,
    WorkflowDefinition,
)

Document = Union[str, Path, Mapping[str, Any]]

# GitHub spells the manual trigger "workflow_dispatch"
TRIGGER_ALIASES = {
    "push": "push",
    "pull_request": "pull_request",
    "workflow_dispatch": "manual",
    "manual": "manual",
}

STEP_CONDITIONS = ("success()", "failure()", "always()", "cancelled()")


def _load(document: Document, what: str) -> Mapping[str, Any]:
    if isinstance(document, Path):
        if not document.exists():
            raise FileNotFoundError(f"{what} file not found: {document}")
        document = document.read_text(encoding="utf-8")

    if isinstance(document, str):
        try:
            document = yaml.safe_load(document)
        except yaml.YAMLError as e:
            raise SchemaError(f"invalid YAML: {e}") from e

    if not isinstance(document, Mapping):
        raise SchemaError(f"{what} must be a mapping, got {type(document).__name__}")
    return document


def _str_list(value: Any, path: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise SchemaError("expected a string or a list of strings", path)


def _env(value: Any, path: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise SchemaError("env must be a mapping", path)
    out: Dict[str, str] = {}
    for k, v in value.items():
        if isinstance(v, bool):
            v = "true" if v else "false"
        out[str(k)] = "" if v is None else str(v)
    return out


def _number(value: Any, path: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise SchemaError("expected a positive number", path)
    return float(value)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def _parse_trigger(raw: Any) -> Trigger:
    if raw is None:
        return Trigger()

    if isinstance(raw, str):
        raw = {raw: None}
    elif isinstance(raw, list):
        if not all(isinstance(k, str) for k in raw):
            raise SchemaError("trigger list must contain event names", "on")
        raw = {k: None for k in raw}
    elif not isinstance(raw, Mapping):
        raise SchemaError("expected a string, list or mapping", "on")

    rules: List[TriggerRule] = []
    for key, cfg in raw.items():
        kind = TRIGGER_ALIASES.get(key)
        if kind is None:
            raise SchemaError(
                f"unsupported event '{key}'. Supported: {sorted(TRIGGER_ALIASES)}", "on"
            )
        cfg = cfg or {}
        if not isinstance(cfg, Mapping):
            raise SchemaError("trigger configuration must be a mapping", f"on.{key}")

        branches = _str_list(cfg.get("branches"), f"on.{key}.branches")
        types: Tuple[str, ...] = ()
        if kind == "pull_request":
            types = _str_list(cfg.get("types"), f"on.{key}.types") or PULL_REQUEST_TYPES
            unknown = [t for t in types if t not in PULL_REQUEST_TYPES]
            if unknown:
                raise SchemaError(
                    f"unsupported pull_request types {unknown}. Supported: {list(PULL_REQUEST_TYPES)}",
                    f"on.{key}.types",
                )
        rules.append(TriggerRule(kind=kind, branches=branches, types=types))

    return Trigger(rules=tuple(rules))


# ---------------------------------------------------------------------
# Steps and jobs
# ---------------------------------------------------------------------

def _parse_condition(raw: Any, path: str) -> str:
    if raw is None:
        return "success()"
    if not isinstance(raw, str):
        raise SchemaError("`if` must be a string", path)
    cond = raw.strip()
    if cond.startswith("${{") and cond.endswith("}}"):
        cond = cond[3:-2].strip()
    if cond not in STEP_CONDITIONS:
        raise SchemaError(f"unsupported condition {raw!r}. Supported: {list(STEP_CONDITIONS)}", path)
    return cond


def _parse_step(raw: Any, path: str) -> StepDefinition:
    if not isinstance(raw, Mapping):
        raise SchemaError("step must be a mapping", path)

    run = raw.get("run")
    uses = raw.get("uses")
    if run is None and uses is None:
        raise SchemaError("step must specify either `run` or `uses`", path)
    if run is not None and uses is not None:
        raise SchemaError("step cannot specify both `run` and `uses`", path)
    if run is not None and not isinstance(run, str):
        raise SchemaError("`run` must be a string", f"{path}.run")
    if uses is not None and (not isinstance(uses, str) or not uses.strip()):
        raise SchemaError("`uses` must be an action reference", f"{path}.uses")

    with_ = raw.get("with") or {}
    if not isinstance(with_, Mapping):
        raise SchemaError("`with` must be a mapping", f"{path}.with")
    if run is not None and with_:
        raise SchemaError("`with` is only valid on `uses` steps", f"{path}.with")

    continue_on_error = raw.get("continue-on-error", False)
    if not isinstance(continue_on_error, bool):
        raise SchemaError("`continue-on-error` must be a boolean", f"{path}.continue-on-error")

    return StepDefinition(
        name=raw.get("name"),
        run=run,
        uses=uses.strip() if uses else None,
        with_=dict(with_),
        id=raw.get("id"),
        env=_env(raw.get("env"), f"{path}.env"),
        continue_on_error=continue_on_error,
        working_directory=raw.get("working-directory"),
        if_=_parse_condition(raw.get("if"), f"{path}.if"),
        timeout_minutes=_number(raw.get("timeout-minutes"), f"{path}.timeout-minutes"),
    )


def _parse_environment_ref(raw: Any, path: str) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw
    if isinstance(raw, Mapping) and isinstance(raw.get("name"), str):
        return raw["name"]
    raise SchemaError("environment must be a name or a mapping with `name`", path)


def _parse_job(job_id: str, raw: Any) -> JobDefinition:
    path = f"jobs.{job_id}"
    if not isinstance(raw, Mapping):
        raise SchemaError("job must be a mapping", path)

    runs_on = raw.get("runs-on")
    if isinstance(runs_on, (list, tuple)) and runs_on and all(isinstance(r, str) for r in runs_on):
        runs_on = ",".join(runs_on)
    if not isinstance(runs_on, str) or not runs_on.strip():
        raise SchemaError("`runs-on` (runner label) is required", path)

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise SchemaError("at least one step is required", f"{path}.steps")
    steps = tuple(_parse_step(s, f"{path}.steps[{i}]") for i, s in enumerate(raw_steps))

    seen_ids = set()
    for i, step in enumerate(steps):
        if step.id is None:
            continue
        if step.id in seen_ids:
            raise SchemaError(f"duplicate step id '{step.id}'", f"{path}.steps[{i}]")
        seen_ids.add(step.id)

    return JobDefinition(
        id=job_id,
        runs_on=runs_on.strip(),
        steps=steps,
        needs=_str_list(raw.get("needs"), f"{path}.needs"),
        environment=_parse_environment_ref(raw.get("environment"), f"{path}.environment"),
        env=_env(raw.get("env"), f"{path}.env"),
        name=raw.get("name"),
        timeout_minutes=_number(raw.get("timeout-minutes"), f"{path}.timeout-minutes"),
    )


def validate_needs(jobs: Mapping[str, JobDefinition]) -> None:
    for job in jobs.values():
        for dep in job.needs:
            if dep not in jobs:
                raise SchemaError(
                    f"job '{job.id}' needs undeclared job '{dep}'. Known jobs: {sorted(jobs)}",
                    f"jobs.{job.id}.needs",
                )


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def parse_workflow(document: Document) -> WorkflowDefinition:
    """
    Parse and validate a workflow document.

    Args:
        document: YAML text, a Path to a YAML file or an already-loaded mapping

    Returns:
        WorkflowDefinition

    Raises:
        SchemaError: when the document is malformed
    """
    data = _load(document, "workflow")

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise SchemaError("`name` is required", "name")

    # YAML 1.1 reads a bare `on` key as boolean True
    raw_on = data["on"] if "on" in data else data.get(True)

    raw_jobs = data.get("jobs")
    if not isinstance(raw_jobs, Mapping) or not raw_jobs:
        raise SchemaError("at least one job is required", "jobs")

    jobs: Dict[str, JobDefinition] = {}
    for job_id, raw_job in raw_jobs.items():
        job_id = str(job_id)
        jobs[job_id] = _parse_job(job_id, raw_job)
    validate_needs(jobs)

    run_name = data.get("run-name")
    if run_name is not None and not isinstance(run_name, str):
        raise SchemaError("`run-name` must be a string", "run-name")

    return WorkflowDefinition(
        name=name.strip(),
        trigger=_parse_trigger(raw_on),
        jobs=jobs,
        run_name=run_name,
        env=_env(data.get("env"), "env"),
    )


def parse_environments(document: Document) -> Dict[str, EnvironmentConfig]:
    """
    Parse an environments document:

        environments:
          prod:
            approvers: [alice]
            secrets:
              DEPLOY_TOKEN: ...

    The top-level `environments` key is optional.
    """
    data = _load(document, "environments")
    if "environments" in data:
        data = data["environments"] or {}
        if not isinstance(data, Mapping):
            raise SchemaError("`environments` must be a mapping", "environments")

    out: Dict[str, EnvironmentConfig] = {}
    for name, cfg in data.items():
        path = f"environments.{name}"
        cfg = cfg or {}
        if not isinstance(cfg, Mapping):
            raise SchemaError("environment must be a mapping", path)
        secrets = cfg.get("secrets") or {}
        if not isinstance(secrets, Mapping):
            raise SchemaError("`secrets` must be a mapping", f"{path}.secrets")
        out[str(name)] = EnvironmentConfig(
            name=str(name),
            secrets={str(k): str(v) for k, v in secrets.items()},
            approvers=_str_list(cfg.get("approvers"), f"{path}.approvers"),
        )
    return out
