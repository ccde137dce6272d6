# src/actionci/dsl.py
# Python alternative to YAML documents. Every helper goes through the same
# validation as the parser, so both produce identical definitions.
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .errors import SchemaError
from .model import JobDefinition, StepDefinition, Trigger, TriggerRule, WorkflowDefinition
from .parser import (
    _env,
    _number,
    _parse_environment_ref,
    _parse_step,
    _parse_trigger,
    _str_list,
    validate_needs,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    id: Optional[str] = None,
    env: Optional[Dict[str, Any]] = None,
    continue_on_error: bool = False,
    if_: Optional[str] = None,
    timeout_minutes: Optional[float] = None,
) -> StepDefinition:
    """Create a shell step."""
    raw: Dict[str, Any] = {
        "name": name,
        "run": cmd,
        "id": id,
        "env": env,
        "continue-on-error": continue_on_error,
        "working-directory": cwd,
        "if": if_,
        "timeout-minutes": timeout_minutes,
    }
    return _parse_step(raw, f"step '{name}'")


def uses(
    ref: str,
    *,
    name: Optional[str] = None,
    id: Optional[str] = None,
    env: Optional[Dict[str, Any]] = None,
    with_: Optional[Mapping[str, Any]] = None,
    continue_on_error: bool = False,
    if_: Optional[str] = None,
    **inputs: Any,
) -> StepDefinition:
    """
    Create an action step. Inputs go as keyword arguments; inputs whose
    names are not identifiers (`webhook-type`, `from`) go through `with_`.

        uses("actions/checkout@v3")
        uses("slackapi/slack-github-action@v1.26.0", payload='{"text": "hi"}')
    """
    raw: Dict[str, Any] = {
        "name": name,
        "uses": ref,
        "with": {**(with_ or {}), **inputs},
        "id": id,
        "env": env,
        "continue-on-error": continue_on_error,
        "if": if_,
    }
    return _parse_step(raw, f"step '{name or ref}'")


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: StepDefinition,  # allow: job("x", sh(...), sh(...))
    runs_on: Union[str, Sequence[str]],
    steps_list: Optional[List[StepDefinition]] = None,  # allow: job("x", steps_list=[...])
    needs: Union[str, Sequence[str], None] = None,
    environment: Optional[str] = None,
    env: Optional[Dict[str, Any]] = None,
    name: Optional[str] = None,
    timeout_minutes: Optional[float] = None,
) -> JobDefinition:
    steps_final: List[StepDefinition] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    path = f"jobs.{id}"
    if isinstance(runs_on, (list, tuple)):
        runs_on = ",".join(runs_on)
    if not isinstance(runs_on, str) or not runs_on.strip():
        raise SchemaError("`runs-on` (runner label) is required", path)
    if not steps_final:
        raise SchemaError("at least one step is required", f"{path}.steps")

    seen_ids = set()
    for i, step in enumerate(steps_final):
        if step.id is not None and step.id in seen_ids:
            raise SchemaError(f"duplicate step id '{step.id}'", f"{path}.steps[{i}]")
        if step.id is not None:
            seen_ids.add(step.id)

    return JobDefinition(
        id=id,
        runs_on=runs_on.strip(),
        steps=tuple(steps_final),
        needs=_str_list(needs, f"{path}.needs"),
        environment=_parse_environment_ref(environment, f"{path}.environment"),
        env=_env(env, f"{path}.env"),
        name=name,
        timeout_minutes=_number(timeout_minutes, f"{path}.timeout-minutes"),
    )


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def push(*branches: str) -> TriggerRule:
    return TriggerRule(kind="push", branches=tuple(branches))


def pull_request(*branches: str, types: Iterable[str] = ()) -> TriggerRule:
    cfg: Dict[str, Any] = {"branches": list(branches)}
    if types:
        cfg["types"] = list(types)
    return _parse_trigger({"pull_request": cfg}).rules[0]


def manual() -> TriggerRule:
    return TriggerRule(kind="manual")


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: JobDefinition,
    on: Union[TriggerRule, Iterable[TriggerRule], Trigger, None] = None,
    env: Optional[Dict[str, Any]] = None,
    run_name: Optional[str] = None,
) -> WorkflowDefinition:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(...).

    Users can write:
        from actionci.dsl import wf, job, sh, push

        def workflow():
            return wf(
                "ci",
                job("build", sh("Build", "make"), runs_on="ubuntu-latest"),
                on=push("main"),
            )

    Or define WORKFLOW directly:
        WORKFLOW = wf("ci", job(...), on=[push("main"), manual()])
    """
    if not name or not name.strip():
        raise SchemaError("`name` is required", "name")
    if not jobs:
        raise SchemaError("at least one job is required", "jobs")

    if on is None:
        trigger = Trigger()
    elif isinstance(on, Trigger):
        trigger = on
    elif isinstance(on, TriggerRule):
        trigger = Trigger(rules=(on,))
    else:
        trigger = Trigger(rules=tuple(on))

    by_id: Dict[str, JobDefinition] = {}
    for j in jobs:
        if j.id in by_id:
            raise SchemaError(f"duplicate job id '{j.id}'", f"jobs.{j.id}")
        by_id[j.id] = j
    validate_needs(by_id)

    return WorkflowDefinition(
        name=name.strip(),
        trigger=trigger,
        jobs=by_id,
        run_name=run_name,
        env=_env(env, "env"),
    )


workflow = wf  # alias (avoid naming your function workflow if you use it)
