# expressions.py
# Minimal `${{ ... }}` interpolation: dotted context lookups, quoted
# literals and `||` fallbacks. Enough for run-name templates, secrets and
# job status in notification steps.
from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Set

EXPR_RE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}", re.DOTALL)
SECRET_REF_RE = re.compile(r"\bsecrets\.([A-Za-z_][A-Za-z0-9_]*)")


def _lookup(path: str, contexts: Mapping[str, Any]) -> Any:
    current: Any = contexts
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return None
    return current


def _term(term: str, contexts: Mapping[str, Any]) -> Any:
    term = term.strip()
    if len(term) >= 2 and term[0] == term[-1] and term[0] in "'\"":
        return term[1:-1]
    if term in ("true", "false"):
        return term == "true"
    if term == "null":
        return None
    try:
        return float(term) if "." in term else int(term)
    except ValueError:
        pass
    return _lookup(term, contexts)


def evaluate(expr: str, contexts: Mapping[str, Any]) -> Any:
    """Evaluate `a || b || 'fallback'`: first truthy operand wins."""
    value: Any = None
    for term in expr.split("||"):
        value = _term(term, contexts)
        if value:
            return value
    return value


def _to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render(text: Any, contexts: Mapping[str, Any]) -> Any:
    """Interpolate every `${{ }}` in `text`. Non-strings pass through."""
    if not isinstance(text, str) or "${{" not in text:
        return text
    return EXPR_RE.sub(lambda m: _to_str(evaluate(m.group(1), contexts)), text)


def render_mapping(values: Mapping[str, Any], contexts: Mapping[str, Any]) -> dict:
    return {k: render(v, contexts) for k, v in values.items()}


def secret_refs(texts: Iterable[Any]) -> Set[str]:
    """Names of every `secrets.X` referenced inside expressions of `texts`."""
    names: Set[str] = set()
    for text in texts:
        if not isinstance(text, str):
            continue
        for expr in EXPR_RE.findall(text):
            names.update(SECRET_REF_RE.findall(expr))
    return names
