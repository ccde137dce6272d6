# actions.py
# Step handlers. A step is executed by an ActionHandler: either the shell
# variant (`run:` steps) or a registered action looked up by its `uses:`
# reference in a table built once at startup.
from __future__ import annotations

import json
import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ActionNotFound, DeliveryError
from .git_facts.git import clone
from .model import Event
from .notify import post_json, send_mail

logger = logging.getLogger(__name__)

OUTPUT_TAIL = 4000  # keep the end of long logs


@dataclass
class StepContext:
    """Everything one step may touch. Built fresh for every step."""
    run_id: str
    job_id: str
    step_name: str
    workspace: Path
    cwd: Path
    env: Dict[str, str]
    event: Event
    cancel_event: threading.Event = field(default_factory=threading.Event)
    timeout: Optional[float] = None
    source_dir: Optional[Path] = None
    state_dir: Optional[Path] = None
    step_index: int = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class ActionOutcome:
    exit_code: int = 0
    output: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.cancelled


class ActionHandler(Protocol):
    def run(self, ctx: StepContext, inputs: Any) -> ActionOutcome:
        ...


# ---------------------------------------------------------------------
# Shell variant
# ---------------------------------------------------------------------

def _read_outputs(path: Path) -> Dict[str, str]:
    outputs: Dict[str, str] = {}
    if not path.exists():
        return outputs
    for line in path.read_text(encoding="utf-8").splitlines():
        key, sep, value = line.partition("=")
        if sep and key.strip():
            outputs[key.strip()] = value
    return outputs


def _terminate(proc: subprocess.Popen) -> None:
    """Stop the whole process group so children of the shell go too."""
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        proc.terminate()


class ShellAction:
    """
    Runs a `run:` command with the job's shell. Steps may publish outputs
    by appending `key=value` lines to $ACTIONCI_OUTPUT.
    """

    poll_interval = 0.05

    def __init__(self, shell: Optional[str] = None):
        self.shell = shell

    def run(self, ctx: StepContext, inputs: str) -> ActionOutcome:
        if not ctx.cwd.exists():
            return ActionOutcome(exit_code=1, error=f"working directory not found: {ctx.cwd}")

        output_file = (ctx.state_dir or ctx.workspace) / f"step-{ctx.step_index}.out"
        env = dict(ctx.env)
        env["ACTIONCI_OUTPUT"] = str(output_file)

        proc = subprocess.Popen(
            inputs,
            shell=True,
            executable=self.shell,
            cwd=str(ctx.cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
        deadline = time.monotonic() + ctx.timeout if ctx.timeout else None
        chunks: List[str] = []
        cancelled = False
        timed_out = False

        while True:
            try:
                out, _ = proc.communicate(timeout=self.poll_interval)
                chunks.append(out or "")
                break
            except subprocess.TimeoutExpired:
                if ctx.cancelled:
                    cancelled = True
                elif deadline is not None and time.monotonic() > deadline:
                    timed_out = True
                else:
                    continue
                _terminate(proc)
                try:
                    out, _ = proc.communicate(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    out, _ = proc.communicate()
                chunks.append(out or "")
                break

        outputs = _read_outputs(output_file)
        output_file.unlink(missing_ok=True)
        output = "".join(chunks)[-OUTPUT_TAIL:]

        if cancelled:
            return ActionOutcome(exit_code=proc.returncode, output=output, cancelled=True, error="cancelled")
        if timed_out:
            return ActionOutcome(
                exit_code=proc.returncode if proc.returncode else 124,
                output=output,
                error=f"timed out after {ctx.timeout:.0f}s",
            )
        error = None if proc.returncode == 0 else f"command exited with {proc.returncode}"
        return ActionOutcome(exit_code=proc.returncode, output=output, outputs=outputs, error=error)


# ---------------------------------------------------------------------
# Registered actions
# ---------------------------------------------------------------------

class ActionInputs(BaseModel):
    """Base for typed `with:` inputs. Unknown inputs are rejected."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class NoInputs(ActionInputs):
    pass


class RegisteredAction:
    """A reusable action: validates its inputs, then runs."""

    Inputs: Type[ActionInputs] = NoInputs

    def parse_inputs(self, raw: Mapping[str, Any]) -> ActionInputs:
        return self.Inputs.model_validate(dict(raw))

    def run(self, ctx: StepContext, inputs: Any) -> ActionOutcome:
        raise NotImplementedError


class FunctionAction(RegisteredAction):
    """Wraps `fn(ctx, inputs)`; the function may return an outcome, a dict of outputs or None."""

    def __init__(self, fn: Callable[[StepContext, Any], Any], inputs: Type[ActionInputs] = NoInputs):
        self.fn = fn
        self.Inputs = inputs

    def run(self, ctx: StepContext, inputs: Any) -> ActionOutcome:
        result = self.fn(ctx, inputs)
        if isinstance(result, ActionOutcome):
            return result
        if isinstance(result, Mapping):
            return ActionOutcome(outputs={str(k): str(v) for k, v in result.items()})
        return ActionOutcome()


class CheckoutAction(RegisteredAction):
    """`actions/checkout`: bring the sources into the job workspace."""

    class Inputs(ActionInputs):
        repository: Optional[str] = None
        ref: Optional[str] = None
        path: str = "."

    def run(self, ctx: StepContext, inputs: "CheckoutAction.Inputs") -> ActionOutcome:
        dest = (ctx.workspace / inputs.path).resolve()
        repo_url = inputs.repository or ctx.event.metadata.get("repository_url")

        if repo_url:
            ref = inputs.ref or ctx.event.metadata.get("sha") or ctx.event.ref or None
            logger.debug("[%s] cloning %s at %s", ctx.job_id, repo_url, ref)
            if dest.exists() and any(dest.iterdir()):
                return ActionOutcome(exit_code=1, error=f"checkout destination is not empty: {dest}")
            if dest.exists():
                dest.rmdir()
            try:
                clone(repo_url, dest, ref)
            except RuntimeError as e:
                return ActionOutcome(exit_code=1, error=str(e))
            return ActionOutcome(output=f"Checked out {repo_url}@{ref or 'default'} into {dest}\n")

        if ctx.source_dir is not None:
            shutil.copytree(
                ctx.source_dir,
                dest,
                dirs_exist_ok=True,
                ignore=shutil.ignore_patterns(".git", ".actionci", "__pycache__"),
            )
            return ActionOutcome(output=f"Copied {ctx.source_dir} into {dest}\n")

        return ActionOutcome(output="Nothing to check out\n")


class SlackAction(RegisteredAction):
    """`slackapi/slack-github-action`: post a JSON payload to SLACK_WEBHOOK_URL."""

    class Inputs(ActionInputs):
        payload: str
        webhook: Optional[str] = None
        webhook_type: Optional[str] = Field(default=None, alias="webhook-type")

    def run(self, ctx: StepContext, inputs: "SlackAction.Inputs") -> ActionOutcome:
        url = inputs.webhook or ctx.env.get("SLACK_WEBHOOK_URL")
        if not url:
            return ActionOutcome(exit_code=1, error="SLACK_WEBHOOK_URL is not set")
        try:
            payload = json.loads(inputs.payload)
        except json.JSONDecodeError as e:
            return ActionOutcome(exit_code=1, error=f"payload is not valid JSON: {e}")
        try:
            status = post_json(url, payload)
        except DeliveryError as e:
            return ActionOutcome(exit_code=1, error=str(e))
        return ActionOutcome(output=f"Posted payload (HTTP {status})\n", outputs={"http_status": str(status)})


class SendMailAction(RegisteredAction):
    """`dawidd6/action-send-mail`: send a plain-text mail over SMTP."""

    class Inputs(ActionInputs):
        server_address: str
        server_port: int = 465
        username: Optional[str] = None
        password: Optional[str] = None
        subject: str
        body: str = ""
        to: str
        from_: str = Field(alias="from")
        secure: Optional[bool] = None

    def run(self, ctx: StepContext, inputs: "SendMailAction.Inputs") -> ActionOutcome:
        recipients = [r.strip() for r in inputs.to.split(",") if r.strip()]
        try:
            send_mail(
                server=inputs.server_address,
                port=inputs.server_port,
                sender=inputs.from_,
                recipients=recipients,
                subject=inputs.subject,
                body=inputs.body,
                username=inputs.username,
                password=inputs.password,
                use_tls=inputs.secure if inputs.secure is not None else True,
            )
        except DeliveryError as e:
            return ActionOutcome(exit_code=1, error=str(e))
        return ActionOutcome(output=f"Mail sent to {', '.join(recipients)}\n")


class ActionRegistry:
    """Lookup table `owner/name` -> handler. References may carry `@version`."""

    def __init__(self):
        self._actions: Dict[str, RegisteredAction] = {}

    @staticmethod
    def _key(ref: str) -> str:
        return ref.split("@", 1)[0].strip().lower()

    def register(self, ref: str, handler: RegisteredAction) -> None:
        self._actions[self._key(ref)] = handler

    def action(self, ref: str, inputs: Type[ActionInputs] = NoInputs):
        """Decorator form of `register` for plain functions."""
        def decorator(fn):
            self.register(ref, FunctionAction(fn, inputs))
            return fn
        return decorator

    def resolve(self, ref: str) -> RegisteredAction:
        try:
            return self._actions[self._key(ref)]
        except KeyError:
            raise ActionNotFound(ref, sorted(self._actions)) from None

    def __contains__(self, ref: str) -> bool:
        return self._key(ref) in self._actions

    def names(self) -> List[str]:
        return sorted(self._actions)


def default_registry() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("actions/checkout", CheckoutAction())
    registry.register("slackapi/slack-github-action", SlackAction())
    registry.register("dawidd6/action-send-mail", SendMailAction())
    return registry


def format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "inputs"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)

