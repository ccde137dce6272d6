"""Unit tests for the scheduler: DAG order, gates, concurrency, cancellation."""

import threading
import time

import pytest

from actionci.actions import ActionOutcome, default_registry
from actionci.errors import ApprovalError, CycleError, DeliveryError, UnauthorizedApprover
from actionci.model import EnvironmentConfig, JobStatus, RunStatus
from actionci.notify import Ack
from actionci.parser import parse_workflow
from actionci.runner import StepRunner
from actionci.scheduler import Decision, RetryPolicy, RunListener, Scheduler
from actionci.secrets import MappingSecretStore


def workflow(jobs, name="ci"):
    return parse_workflow({"name": name, "on": "push", "jobs": jobs})


def shell_job(cmd="true", needs=None, environment=None):
    job = {"runs-on": "ubuntu-latest", "steps": [{"run": cmd}]}
    if needs:
        job["needs"] = needs
    if environment:
        job["environment"] = environment
    return job


def action_job(ref, needs=None):
    job = {"runs-on": "ubuntu-latest", "steps": [{"uses": ref}]}
    if needs:
        job["needs"] = needs
    return job


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def scheduler(registry):
    return Scheduler(StepRunner(registry), max_concurrent_jobs=4)


class RecordingNotifier:
    def __init__(self):
        self.summaries = []

    def notify(self, summary):
        self.summaries.append(summary)
        return Ack(transport="recording")


class FailingNotifier:
    def notify(self, summary):
        raise DeliveryError("webhook", "connection refused")


class TestDagExecution:
    def test_build_then_deploy(self, scheduler, push_main):
        wf = workflow({"build": shell_job(), "deploy": shell_job(needs="build")})
        run = scheduler.execute(wf, push_main)
        assert run.status == RunStatus.SUCCEEDED
        assert run.jobs["build"].finished_at <= run.jobs["deploy"].started_at

    def test_failure_skips_transitive_dependents(self, scheduler, push_main):
        wf = workflow(
            {
                "build": shell_job("exit 1"),
                "test": shell_job(needs="build"),
                "deploy": shell_job(needs="test"),
                "lint": shell_job(),
            }
        )
        run = scheduler.execute(wf, push_main)
        assert run.status == RunStatus.FAILED
        assert run.jobs["build"].status == JobStatus.FAILED
        assert run.jobs["test"].status == JobStatus.SKIPPED
        assert run.jobs["test"].reason == "dependency 'build' failed"
        assert run.jobs["deploy"].status == JobStatus.SKIPPED
        assert run.jobs["deploy"].reason == "dependency 'test' skipped"
        assert run.jobs["lint"].status == JobStatus.SUCCEEDED
        assert run.jobs["test"].steps == []

    def test_cycle_creates_no_run(self, scheduler, push_main):
        wf = workflow({"a": shell_job(needs="b"), "b": shell_job(needs="a")})
        with pytest.raises(CycleError):
            scheduler.start(wf, push_main)

    def test_run_name_rendered(self, scheduler, push_main):
        wf = parse_workflow({"name": "ci", "run-name": "${{ github.actor }} pushed", "on": "push", "jobs": {"build": shell_job()}})
        run = scheduler.execute(wf, push_main)
        assert run.run_name == "octocat pushed"

    def test_missing_secret_fails_job_before_steps(self, scheduler, push_main):
        wf = workflow({"deploy": shell_job("echo ${{ secrets.DEPLOY_TOKEN }}"), "after": shell_job(needs="deploy")})
        run = scheduler.execute(wf, push_main)
        assert run.jobs["deploy"].status == JobStatus.FAILED
        assert "DEPLOY_TOKEN" in run.jobs["deploy"].reason
        assert run.jobs["deploy"].steps == []
        assert run.jobs["after"].status == JobStatus.SKIPPED

    def test_environment_secret_resolved(self, registry, push_main):
        envs = {"staging": EnvironmentConfig(name="staging", secrets={"TOKEN": "abc"})}
        scheduler = Scheduler(StepRunner(registry), max_concurrent_jobs=2, secret_store=MappingSecretStore(envs))
        wf = workflow({"deploy": shell_job("echo ${{ secrets.TOKEN }}", environment="staging")})
        run = scheduler.execute(wf, push_main, environments=envs)
        assert run.status == RunStatus.SUCCEEDED
        assert run.jobs["deploy"].steps[0].output.strip() == "***"


class TestConcurrency:
    def test_independent_jobs_run_in_parallel(self, registry, push_main):
        barrier = threading.Barrier(2, timeout=5)

        @registry.action("test/rendezvous")
        def rendezvous(ctx, inputs):
            barrier.wait()

        scheduler = Scheduler(StepRunner(registry), max_concurrent_jobs=2)
        wf = workflow({"a": action_job("test/rendezvous"), "b": action_job("test/rendezvous")})
        run = scheduler.execute(wf, push_main)
        assert run.status == RunStatus.SUCCEEDED

    def test_limit_is_respected(self, registry, push_main):
        lock = threading.Lock()
        state = {"active": 0, "peak": 0}

        @registry.action("test/track")
        def track(ctx, inputs):
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            time.sleep(0.05)
            with lock:
                state["active"] -= 1

        scheduler = Scheduler(StepRunner(registry), max_concurrent_jobs=2)
        wf = workflow({f"j{i}": action_job("test/track") for i in range(6)})
        run = scheduler.execute(wf, push_main)
        assert run.status == RunStatus.SUCCEEDED
        assert state["peak"] <= 2

    def test_limit_is_shared_across_runs(self, registry, push_main):
        lock = threading.Lock()
        state = {"active": 0, "peak": 0}

        @registry.action("test/track")
        def track(ctx, inputs):
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            time.sleep(0.1)
            with lock:
                state["active"] -= 1

        scheduler = Scheduler(StepRunner(registry), max_concurrent_jobs=1)
        handles = [
            scheduler.start(workflow({"only": action_job("test/track")}, name=f"wf{i}"), push_main)
            for i in range(3)
        ]
        runs = [h.result(timeout=10) for h in handles]
        assert [r.status for r in runs] == [RunStatus.SUCCEEDED] * 3
        assert state["peak"] == 1

    def test_queued_jobs_start_in_declaration_order(self, registry, push_main):
        started = []

        @registry.action("test/record")
        def record(ctx, inputs):
            started.append(ctx.job_id)

        scheduler = Scheduler(StepRunner(registry), max_concurrent_jobs=1)
        wf = workflow({name: action_job("test/record") for name in ("zeta", "alpha", "mid", "beta")})
        run = scheduler.execute(wf, push_main)
        assert run.status == RunStatus.SUCCEEDED
        assert started == ["zeta", "alpha", "mid", "beta"]

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            Scheduler(max_concurrent_jobs=0)


class TestApprovals:
    def test_unauthorized_then_approved(self, scheduler, build_deploy, prod_gate, push_main, wait_until):
        handle = scheduler.start(build_deploy, push_main, environments=prod_gate)
        assert wait_until(lambda: handle.waiting_jobs() == ["deploy"])
        assert handle.run.jobs["deploy"].status == JobStatus.WAITING_APPROVAL

        with pytest.raises(UnauthorizedApprover) as exc:
            handle.submit_decision("deploy", "bob", Decision.APPROVE)
        assert exc.value.allowed == ["alice"]
        assert handle.run.jobs["deploy"].status == JobStatus.WAITING_APPROVAL

        handle.submit_decision("deploy", "alice", "approve")
        run = handle.result(timeout=10)
        assert run.status == RunStatus.SUCCEEDED
        assert run.jobs["deploy"].approved_by == "alice"

    def test_rejection_cancels_job(self, scheduler, build_deploy, prod_gate, push_main, wait_until):
        handle = scheduler.start(build_deploy, push_main, environments=prod_gate)
        assert wait_until(lambda: handle.waiting_jobs() == ["deploy"])
        handle.submit_decision("deploy", "alice", Decision.REJECT)
        run = handle.result(timeout=10)
        assert run.jobs["deploy"].status == JobStatus.CANCELLED
        assert run.jobs["deploy"].reason == "rejected by alice"
        assert run.status == RunStatus.CANCELLED

    def test_decision_for_job_not_waiting(self, scheduler, build_deploy, prod_gate, push_main, wait_until):
        handle = scheduler.start(build_deploy, push_main, environments=prod_gate)
        assert wait_until(lambda: handle.waiting_jobs() == ["deploy"])
        with pytest.raises(ApprovalError):
            handle.submit_decision("build", "alice", Decision.APPROVE)
        handle.submit_decision("deploy", "alice", Decision.APPROVE)
        handle.result(timeout=10)
        with pytest.raises(ApprovalError):
            handle.submit_decision("deploy", "alice", Decision.APPROVE)

    def test_approval_window_expires(self, registry, build_deploy, prod_gate, push_main):
        scheduler = Scheduler(StepRunner(registry), max_concurrent_jobs=2, approval_timeout=0.2)
        run = scheduler.start(build_deploy, push_main, environments=prod_gate).result(timeout=10)
        assert run.jobs["deploy"].status == JobStatus.CANCELLED
        assert run.jobs["deploy"].reason == "approval window expired"
        assert run.status == RunStatus.CANCELLED

    def test_environment_without_approvers_runs_directly(self, scheduler, build_deploy, push_main):
        run = scheduler.execute(build_deploy, push_main, environments={"prod": EnvironmentConfig(name="prod")})
        assert run.status == RunStatus.SUCCEEDED
        assert run.jobs["deploy"].approved_by is None


class TestCancellation:
    def test_cancel_running_and_pending(self, scheduler, push_main, wait_until):
        wf = workflow({"slow": shell_job("sleep 5"), "after": shell_job(needs="slow")})
        handle = scheduler.start(wf, push_main)
        assert wait_until(lambda: handle.run.jobs["slow"].status == JobStatus.RUNNING)
        handle.cancel()
        run = handle.result(timeout=10)
        assert run.status == RunStatus.CANCELLED
        assert run.jobs["slow"].status == JobStatus.CANCELLED
        assert run.jobs["after"].status == JobStatus.CANCELLED
        assert run.jobs["after"].reason == "run cancelled"

    def test_cancel_waiting_for_approval(self, scheduler, build_deploy, prod_gate, push_main, wait_until):
        handle = scheduler.start(build_deploy, push_main, environments=prod_gate)
        assert wait_until(lambda: handle.waiting_jobs() == ["deploy"])
        handle.cancel()
        run = handle.result(timeout=10)
        assert run.jobs["build"].status == JobStatus.SUCCEEDED
        assert run.jobs["deploy"].status == JobStatus.CANCELLED
        assert run.status == RunStatus.CANCELLED

    def test_cancel_finished_run_is_noop(self, scheduler, push_main):
        handle = scheduler.start(workflow({"a": shell_job()}), push_main)
        handle.result(timeout=10)
        handle.cancel()
        assert handle.run.status == RunStatus.SUCCEEDED


class TestRetryAndNotify:
    def test_retry_until_success(self, registry, push_main):
        attempts = []

        @registry.action("test/flaky")
        def flaky(ctx, inputs):
            attempts.append(1)
            return ActionOutcome(exit_code=0 if len(attempts) >= 3 else 1, error="flaky")

        scheduler = Scheduler(StepRunner(registry), max_concurrent_jobs=1, retry_policy=RetryPolicy(max_attempts=3))
        run = scheduler.execute(workflow({"a": action_job("test/flaky")}), push_main)
        assert run.status == RunStatus.SUCCEEDED
        assert run.jobs["a"].attempts == 3

    def test_no_retry_by_default(self, scheduler, push_main):
        run = scheduler.execute(workflow({"a": shell_job("exit 1")}), push_main)
        assert run.jobs["a"].attempts == 1

    def test_notifier_gets_summary(self, registry, push_main):
        notifier = RecordingNotifier()
        scheduler = Scheduler(StepRunner(registry), max_concurrent_jobs=2, notifier=notifier)
        run = scheduler.execute(workflow({"a": shell_job()}), push_main)
        assert len(notifier.summaries) == 1
        summary = notifier.summaries[0]
        assert summary.run_id == run.run_id
        assert summary.status == RunStatus.SUCCEEDED
        assert [j.job_id for j in summary.jobs] == ["a"]

    def test_delivery_failure_does_not_change_status(self, registry, push_main):
        scheduler = Scheduler(StepRunner(registry), max_concurrent_jobs=2, notifier=FailingNotifier())
        run = scheduler.execute(workflow({"a": shell_job()}), push_main)
        assert run.status == RunStatus.SUCCEEDED

    def test_listener_events(self, scheduler, push_main):
        seen = []

        class Listener(RunListener):
            def job_changed(self, run, job):
                seen.append((job.job_id, job.status))

            def run_finished(self, run):
                seen.append(("run", run.status))

        scheduler.add_listener(Listener())
        scheduler.execute(workflow({"a": shell_job()}), push_main)
        assert seen == [("a", JobStatus.RUNNING), ("a", JobStatus.SUCCEEDED), ("run", RunStatus.SUCCEEDED)]
