# cli.py
from __future__ import annotations

import getpass
import json
import logging
import subprocess
import sys
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Set

import click

from actionci.dag import build_plan
from actionci.errors import (
    ActionCIError,
    ApprovalError,
    CycleError,
    HistoryConflict,
    SchemaError,
    UnauthorizedApprover,
)
from actionci.git_facts.git import current_user, get_current_ref, get_remote_url, head_sha, repo_root
from actionci.model import EnvironmentConfig, Event, RunStatus
from actionci.notify import WebhookNotifier
from actionci.parser import parse_environments
from actionci.runner import StepRunner, load_workflow
from actionci.scheduler import Decision, RunHandle, Scheduler, render_run_name
from actionci.secrets import ChainSecretStore, EnvSecretStore, MappingSecretStore
from actionci.triggers import matches
from actionci.ui.console import Console, ConsoleListener, get_console, set_console

WORKFLOW_DIR = Path(".github") / "workflows"
APPROVAL_POLL_SECONDS = 0.2


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files: list[Path] = []
    if WORKFLOW_DIR.is_dir():
        for pattern in ("*.yml", "*.yaml"):
            workflow_files.extend(WORKFLOW_DIR.glob(pattern))

    # Python DSL workflows
    workflow_files.extend(Path(".").glob("*_workflow.py"))
    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Args:
        workflow_arg: Optional workflow argument from CLI

    Returns:
        Path to workflow file

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    # If workflow is explicitly provided, use it
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            candidates = [WORKFLOW_DIR / f"{workflow_arg}{ext}" for ext in (".yml", ".yaml")]
            workflow_path = next((c for c in candidates if c.exists()), workflow_path)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  actionci run --workflow .github/workflows/ci.yml",
            )
            sys.exit(1)
        return workflow_path

    # Otherwise, try to discover workflow
    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  .github/workflows/*.yml",
                "  *_workflow.py",
            ],
            suggestion="Create a workflow file:\n  .github/workflows/ci.yml\n\nOr specify a workflow explicitly:\n  actionci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  actionci run --workflow {workflow_files[0]}",
        )
        sys.exit(1)

    return workflow_files[0]


def report_definition_error(path: Path, e: Exception) -> None:
    console = get_console()
    if isinstance(e, CycleError):
        console.print_error(
            "Dependency cycle",
            f"{path}: jobs depend on each other in a loop",
            details=[" -> ".join(e.cycle)],
            suggestion="Remove one of the `needs` entries on the cycle.",
        )
    elif isinstance(e, SchemaError):
        console.print_error(
            "Invalid workflow",
            f"{path}: {e.message}",
            details=[f"at: {e.path}"] if e.path else None,
        )
    else:
        console.print_error("Failed to load workflow", f"Could not load workflow from {path}", details=[str(e)])
        if console.debug:
            console.print_exception(e)


def load_environments(path: Optional[str]) -> Dict[str, EnvironmentConfig]:
    if not path:
        return {}
    try:
        return parse_environments(Path(path))
    except SchemaError as e:
        report_definition_error(Path(path), e)
        sys.exit(1)


def _git_or(default: str, fn, *args) -> str:
    try:
        return fn(*args)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return default


def local_event(kind: str, ref: Optional[str], actor: Optional[str], action: Optional[str]) -> Event:
    """Simulate the event the hosting side would deliver for this checkout."""
    console = get_console()
    if ref is None:
        ref = _git_or("", get_current_ref)
        console.print_debug(f"Using git ref: {ref or '<none>'}")
    if actor is None:
        actor = _git_or("", current_user) or getpass.getuser()
    if kind == "pull_request" and action is None:
        action = "opened"

    metadata = {}
    sha = _git_or("", head_sha)
    if sha:
        metadata["sha"] = sha
    remote = _git_or("", get_remote_url, "origin")
    if remote:
        metadata["repository"] = remote.rstrip("/").split("/")[-1].replace(".git", "")
    return Event(kind=kind, ref=ref, actor=actor, action=action, metadata=metadata)


def collect_approvals(
    handle: RunHandle,
    environments: Dict[str, EnvironmentConfig],
    approve_as: Optional[str],
) -> None:
    """Block until the run finishes, answering approval gates on the way."""
    console = get_console()
    asked: Set[str] = set()

    while not handle.wait(APPROVAL_POLL_SECONDS):
        for job_id in handle.waiting_jobs():
            if job_id in asked:
                continue
            asked.add(job_id)
            env_name = handle.workflow.jobs[job_id].environment
            env = environments.get(env_name or "")
            console.print_waiting_approval(job_id, env_name, env.approvers if env else ())

            if approve_as:
                try:
                    handle.submit_decision(job_id, approve_as, Decision.APPROVE)
                except UnauthorizedApprover as e:
                    console.print_error("Approval refused", str(e))
                    handle.cancel()
                continue

            approver = click.prompt("Approver", default=handle.run.event.actor or None)
            approved = click.confirm(f"Approve job '{job_id}'?", default=False)
            try:
                handle.submit_decision(job_id, approver, Decision.APPROVE if approved else Decision.REJECT)
            except UnauthorizedApprover as e:
                console.print_error("Approval refused", str(e))
                asked.discard(job_id)  # ask again
            except ApprovalError as e:
                console.print_info(str(e))


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """actionci: run CI workflows locally, the way the server would."""
    # Initialize console with debug flag
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("workflows", nargs=-1, type=click.Path(exists=True, dir_okay=False))
def validate(workflows):
    """Parse and plan workflow files (all discovered ones by default)."""
    console = get_console()
    paths = [Path(w) for w in workflows] or find_workflow_files()
    if not paths:
        console.print_error("No workflow file found", "Nothing to validate.")
        sys.exit(1)

    failed = False
    for path in paths:
        try:
            definition = load_workflow(path)
            build_plan(definition)
        except Exception as e:
            report_definition_error(path, e)
            failed = True
            continue
        console.print_info(f"OK {path} ({definition.name}: {len(definition.jobs)} jobs)")

    if failed:
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (discovered when only one exists)")
def plan(workflow):
    """Print the execution layers of a workflow."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        definition = load_workflow(workflow_path)
        execution_plan = build_plan(definition)
    except Exception as e:
        report_definition_error(workflow_path, e)
        sys.exit(1)

    console.print_header(f"{definition.name} ({workflow_path})")
    console.print_plan(execution_plan)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (discovered when only one exists)")
@click.option(
    "--event",
    "event_kind",
    type=click.Choice(["push", "pull_request", "manual"]),
    default="push",
    show_default=True,
    help="Event to simulate",
)
@click.option("--ref", default=None, help="Branch of the event (defaults to the current git branch)")
@click.option("--actor", default=None, help="Who triggered the event (defaults to git user.name)")
@click.option("--action", default=None, help="pull_request action (opened, synchronize, reopened)")
@click.option("--environments", "environments_file", default=None, envvar="ACTIONCI_ENVIRONMENTS", help="Environments YAML file")
@click.option("--max-jobs", default=None, type=int, envvar="ACTIONCI_MAX_JOBS", help="Maximum jobs running at once")
@click.option("--approval-timeout", default=None, type=float, envvar="ACTIONCI_APPROVAL_TIMEOUT", help="Seconds before an unanswered approval cancels the job")
@click.option("--approve-as", default=None, help="Answer every approval gate as this approver")
@click.option("--notify-webhook", default=None, envvar="ACTIONCI_NOTIFY_WEBHOOK", help="Post the run summary to this webhook")
@click.option("--source-dir", default=None, type=click.Path(file_okay=False), help="Directory copied by actions/checkout [default: repository root]")
@click.option("--record/--no-record", default=False, help="Append the finished run to the run history database")
@click.option("--database-url", default=None, envvar="DATABASE_URL", help="Run history database (with --record)")
@click.pass_context
def run(
    ctx,
    workflow,
    event_kind,
    ref,
    actor,
    action,
    environments_file,
    max_jobs,
    approval_timeout,
    approve_as,
    notify_webhook,
    source_dir,
    record,
    database_url,
):
    """Run a workflow for a simulated event."""
    console = get_console()

    # Discover workflow file
    workflow_path = discover_workflow(workflow)

    try:
        definition = load_workflow(workflow_path)
        execution_plan = build_plan(definition)
    except Exception as e:
        report_definition_error(workflow_path, e)
        sys.exit(1)

    environments = load_environments(environments_file)
    event = local_event(event_kind, ref, actor, action)

    if not matches(definition.trigger, event):
        console.print_no_run(definition.name, event.kind, event.ref)
        return

    try:
        scheduler = Scheduler(
            StepRunner(),
            max_concurrent_jobs=max_jobs,
            secret_store=ChainSecretStore(MappingSecretStore(environments), EnvSecretStore()),
            notifier=WebhookNotifier(notify_webhook) if notify_webhook else None,
            approval_timeout=approval_timeout,
            listeners=[ConsoleListener(console)],
        )
        run_id = uuid.uuid4().hex
        console.print_run_started(
            run_id=run_id,
            run_name=render_run_name(definition, event),
            workflow=definition.name,
            event=event.kind,
            ref=event.ref,
            job_count=len(definition.jobs),
        )
        handle = scheduler.start(
            definition,
            event,
            environments=environments,
            plan=execution_plan,
            run_id=run_id,
            source_dir=source_dir or _git_or(".", repo_root),
        )
        try:
            collect_approvals(handle, environments, approve_as)
        except KeyboardInterrupt:
            console.print_info("\nInterrupted by user, cancelling run")
            handle.cancel()
            handle.wait()

        result = handle.run
        console.print_results(result)

        if record:
            from actionci.cloud.db import make_engine, make_session_factory
            from actionci.cloud.store import RunHistory, create_tables

            engine = make_engine(database_url) if database_url else make_engine()
            create_tables(engine)
            try:
                RunHistory(make_session_factory(engine)).append(result)
            except HistoryConflict as e:
                console.print_error("Run not recorded", str(e))

        if result.status != RunStatus.SUCCEEDED:
            sys.exit(1)

    except ActionCIError as e:
        console.print_error(type(e).__name__, str(e))
        sys.exit(1)
    except ValueError as e:
        console.print_error("Invalid option", str(e))
        sys.exit(1)


@cli.command()
@click.option("--workflow", "workflow_name", default=None, help="Only runs of this workflow name")
@click.option("--limit", default=20, show_default=True, type=int)
@click.option("--database-url", default=None, envvar="DATABASE_URL", help="Run history database")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print raw records")
def history(workflow_name, limit, database_url, as_json):
    """List recorded runs, newest first."""
    from actionci.cloud.db import make_engine, make_session_factory
    from actionci.cloud.store import RunHistory, create_tables

    console = get_console()
    engine = make_engine(database_url) if database_url else make_engine()
    create_tables(engine)
    records: List[dict] = RunHistory(make_session_factory(engine)).list(workflow_name, limit=limit)

    if as_json:
        console.print_info(json.dumps(records, indent=2))
        return
    if not records:
        console.print_info("No recorded runs")
        return
    for rec in records:
        jobs = ", ".join(f"{job_id}={j['status']}" for job_id, j in rec["jobs"].items())
        console.print_info(f"{rec['run_id'][:12]}  {rec['workflow']}  {rec['status'].upper()}  {jobs}")


if __name__ == "__main__":
    cli()
