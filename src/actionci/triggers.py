# triggers.py
from __future__ import annotations

from fnmatch import fnmatchcase
from typing import Iterable

from .model import Event, Trigger, TriggerRule

__all__ = ["Event", "matches", "branch_matches"]


def branch_matches(ref: str, patterns: Iterable[str]) -> bool:
    """Empty filter set matches every ref. Patterns are globs (`release/*`)."""
    patterns = list(patterns)
    if not patterns:
        return True
    return any(fnmatchcase(ref, p) for p in patterns)


def _rule_matches(rule: TriggerRule, event: Event) -> bool:
    if rule.kind == "manual":
        return True

    if not branch_matches(event.ref, rule.branches):
        return False

    if rule.kind == "pull_request":
        # pull_request events always carry a sub-action
        return event.action in rule.types

    return True


def matches(trigger: Trigger, event: Event) -> bool:
    """
    Decide whether `event` starts a run of a workflow with `trigger`.

    A False return is the "trigger mismatch" outcome: no run is created.
    """
    rule = trigger.rule_for(event.kind)
    if rule is None:
        return False
    return _rule_matches(rule, event)
