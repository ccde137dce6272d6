"""Console output formatting utilities for actionci."""

from __future__ import annotations

import sys
from typing import Optional, Sequence

from ..dag import ExecutionPlan
from ..model import JobRun, JobStatus, StepResult, StepStatus, WorkflowRun
from ..scheduler import RunListener


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        run_name: str,
        workflow: str,
        event: str,
        ref: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Run: {run_name} ({run_id[:12]})")
        print(f"Workflow: {workflow}")
        print(f"Event: {event} on {ref or '-'}")
        print(f"Jobs: {job_count}")
        print()

    def print_no_run(self, workflow: str, event: str, ref: str) -> None:
        print(f"Workflow '{workflow}' is not triggered by {event} on {ref or '-'}: no run created")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        print(f"\nJOB STARTED: {name}")

    def print_step(self, result: StepResult) -> None:
        """Print one finished step."""
        if result.status == StepStatus.SUCCEEDED:
            print(f"STEP: {result.name} ({result.duration:.1f}s)")
        elif result.status == StepStatus.FAILED:
            self.print_failure(result.name, result.error or "", exit_code=result.exit_code)
            if self.debug and result.output:
                for line in result.output.rstrip().splitlines()[-20:]:
                    print(f"  | {line}")
        else:
            print(f"STEP: {result.name} ({result.status.value})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        print(f"{prefix}: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if hint:
            print(f"Hint: {hint}")
        if self.debug:
            print(f"Error details: {reason}")
        elif reason:
            print(f"Error: {reason.splitlines()[0]}")

    def print_job_finished(self, job: JobRun) -> None:
        if job.status == JobStatus.SUCCEEDED:
            print(f"JOB SUCCEEDED: {job.job_id}")
        elif job.status == JobStatus.FAILED:
            self.print_failure(job.job_id, job.reason or "", is_job=True)
        elif job.status == JobStatus.SKIPPED:
            print(f"\nJOB SKIPPED: {job.job_id} ({job.reason})")
        elif job.status == JobStatus.CANCELLED:
            print(f"\nJOB CANCELLED: {job.job_id} ({job.reason})")

    def print_waiting_approval(self, job_id: str, environment: Optional[str], approvers: Sequence[str]) -> None:
        print(f"\nWAITING FOR APPROVAL: {job_id}")
        print(f"Environment: {environment}")
        print(f"Approvers: {', '.join(approvers)}")

    def print_plan(self, plan: ExecutionPlan) -> None:
        """Print the execution layers of a plan."""
        for i, layer in enumerate(plan.layers, start=1):
            print(f"  {i}. {', '.join(layer)}")
            for job_id in layer:
                needs = plan.predecessors(job_id)
                if needs:
                    print(f"       {job_id} <- {', '.join(needs)}")

    def print_results(self, run: WorkflowRun) -> None:
        """Print final results summary: every job of the DAG with its status."""
        print("\n" + "=" * 40)
        print(f"RESULTS: {run.status.value.upper()}")
        print("=" * 40)
        for job in run.jobs.values():
            line = f"  {job.job_id}: {job.status.value.upper()}"
            if job.reason and job.status != JobStatus.SUCCEEDED:
                line += f" ({job.reason.splitlines()[0]})"
            if job.approved_by:
                line += f" [approved by {job.approved_by}]"
            print(line)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


class ConsoleListener(RunListener):
    """Streams run progress to a Console."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or get_console()

    def job_changed(self, run: WorkflowRun, job: JobRun) -> None:
        if job.status == JobStatus.RUNNING:
            self.console.print_job_start(job.job_id)
        elif job.status == JobStatus.WAITING_APPROVAL:
            # approvers are printed by whoever collects the decision
            self.console.print_debug(f"{job.job_id} is waiting for approval")
        elif job.status.terminal:
            self.console.print_job_finished(job)

    def step_finished(self, run: WorkflowRun, job: JobRun, result: StepResult) -> None:
        self.console.print_step(result)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
