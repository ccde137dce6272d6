"""Unit tests for the step runner."""

import os
import threading
import time
from dataclasses import replace
from types import MappingProxyType

import pytest

from actionci.actions import ActionInputs, ActionOutcome, default_registry
from actionci.model import Event, JobStatus, StepStatus
from actionci.parser import parse_workflow
from actionci.runner import JobContext, StepRunner, job_secret_refs, load_workflow


def context(steps, *, workflow_env=None, job_env=None, secrets=None, timeout_minutes=None):
    job = {"runs-on": "ubuntu-latest", "steps": steps}
    if job_env:
        job["env"] = job_env
    if timeout_minutes:
        job["timeout-minutes"] = timeout_minutes
    wf = parse_workflow({"name": "ci", "on": "push", "env": workflow_env or {}, "jobs": {"build": job}})
    return JobContext(
        run_id="run-1",
        workflow=wf,
        job=wf.jobs["build"],
        event=Event(kind="push", ref="main", actor="octocat"),
        secrets=MappingProxyType(dict(secrets or {})),
    )


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def runner(registry):
    return StepRunner(registry, base_env={"PATH": "/usr/bin:/bin"})


class TestSequencing:
    def test_steps_run_in_order(self, runner):
        outcome = runner.run_job(context([{"run": "echo one"}, {"run": "echo two"}]))
        assert outcome.status == JobStatus.SUCCEEDED
        assert [s.output.strip() for s in outcome.steps] == ["one", "two"]

    def test_failure_skips_rest_but_always_runs(self, runner):
        outcome = runner.run_job(
            context(
                [
                    {"name": "boom", "run": "exit 1"},
                    {"name": "after", "run": "echo after"},
                    {"name": "cleanup", "run": "echo cleanup", "if": "always()"},
                    {"name": "on-failure", "run": "echo failed", "if": "failure()"},
                ]
            )
        )
        assert outcome.status == JobStatus.FAILED
        assert [s.status for s in outcome.steps] == [
            StepStatus.FAILED,
            StepStatus.SKIPPED,
            StepStatus.SUCCEEDED,
            StepStatus.SUCCEEDED,
        ]
        assert "step 'boom' failed (exit=1)" in outcome.reason

    def test_continue_on_error(self, runner):
        outcome = runner.run_job(
            context([{"run": "exit 3", "continue-on-error": True}, {"run": "echo still"}])
        )
        assert outcome.status == JobStatus.SUCCEEDED
        assert outcome.steps[0].status == StepStatus.FAILED
        assert outcome.steps[0].exit_code == 3
        assert outcome.steps[1].status == StepStatus.SUCCEEDED

    def test_failure_condition_not_run_on_success(self, runner):
        outcome = runner.run_job(context([{"run": "true"}, {"run": "echo x", "if": "failure()"}]))
        assert outcome.steps[1].status == StepStatus.SKIPPED


class TestEnvironment:
    def test_step_over_job_over_workflow(self, runner):
        ctx = context(
            [
                {"run": 'echo "$LEVEL"', "env": {"LEVEL": "step"}},
                {"run": 'echo "$LEVEL $ONLY_WF"'},
            ],
            workflow_env={"LEVEL": "workflow", "ONLY_WF": "wf"},
            job_env={"LEVEL": "job"},
        )
        outcome = runner.run_job(ctx)
        assert outcome.steps[0].output.strip() == "step"
        assert outcome.steps[1].output.strip() == "job wf"

    def test_builtin_variables(self, runner):
        outcome = runner.run_job(context([{"run": 'echo "$CI $ACTIONCI_JOB $ACTIONCI_REF"'}]))
        assert outcome.steps[0].output.strip() == "true build main"

    def test_expressions_in_run(self, runner):
        outcome = runner.run_job(context([{"run": "echo ${{ github.actor }}-${{ job.status }}"}]))
        assert outcome.steps[0].output.strip() == "octocat-success"

    def test_step_outputs(self, runner):
        outcome = runner.run_job(
            context(
                [
                    {"id": "meta", "run": 'echo "version=1.2.3" >> "$ACTIONCI_OUTPUT"'},
                    {"run": "echo v${{ steps.meta.outputs.version }}"},
                ]
            )
        )
        assert outcome.steps[0].outputs == {"version": "1.2.3"}
        assert outcome.steps[1].output.strip() == "v1.2.3"

    def test_working_directory(self, runner):
        outcome = runner.run_job(
            context([{"run": "mkdir -p sub && touch sub/marker"}, {"run": "ls", "working-directory": "sub"}])
        )
        assert outcome.steps[1].output.strip() == "marker"

    def test_workspace_is_isolated_and_removed(self, runner):
        first = runner.run_job(context([{"run": "pwd; touch leftover"}]))
        second = runner.run_job(context([{"run": "ls"}]))
        assert "leftover" not in second.steps[0].output
        workspace = first.steps[0].output.strip()
        assert not os.path.exists(workspace)


class TestSecrets:
    def test_secret_masked_in_output(self, runner):
        ctx = context([{"run": "echo token=${{ secrets.TOKEN }}"}], secrets={"TOKEN": "hunter2"})
        outcome = runner.run_job(ctx)
        assert outcome.steps[0].output.strip() == "token=***"

    def test_secret_masked_in_error(self, runner):
        ctx = context([{"run": "echo ${{ secrets.TOKEN }} >&2; exit 2"}], secrets={"TOKEN": "hunter2"})
        outcome = runner.run_job(ctx)
        assert "hunter2" not in outcome.steps[0].output
        assert "hunter2" not in (outcome.reason or "")

    def test_job_secret_refs(self):
        ctx = context(
            [{"run": "echo ${{ secrets.A }}", "env": {"X": "${{ secrets.B }}"}}],
            job_env={"Y": "${{ secrets.C }}"},
        )
        assert job_secret_refs(ctx.workflow, ctx.job) == ["A", "B", "C"]


class TestActions:
    def test_unknown_action(self, runner):
        outcome = runner.run_job(context([{"uses": "nobody/nothing@v1"}]))
        assert outcome.status == JobStatus.FAILED
        assert "Unknown action 'nobody/nothing@v1'" in outcome.steps[0].error

    def test_invalid_inputs(self, runner):
        outcome = runner.run_job(context([{"uses": "actions/checkout@v3", "with": {"bogus": 1}}]))
        assert outcome.status == JobStatus.FAILED
        assert "invalid inputs" in outcome.steps[0].error

    def test_registered_function_action(self, registry, runner):
        class GreetInputs(ActionInputs):
            who: str

        @registry.action("acme/greet", inputs=GreetInputs)
        def greet(ctx, inputs):
            return {"greeting": f"hello {inputs.who} from {ctx.job_id}"}

        outcome = runner.run_job(
            context(
                [
                    {"id": "g", "uses": "acme/greet@v2", "with": {"who": "${{ github.actor }}"}},
                    {"run": "echo '${{ steps.g.outputs.greeting }}'"},
                ]
            )
        )
        assert outcome.status == JobStatus.SUCCEEDED
        assert outcome.steps[1].output.strip() == "hello octocat from build"

    def test_action_exception_fails_step(self, registry, runner):
        @registry.action("acme/crash")
        def crash(ctx, inputs):
            raise RuntimeError("kaboom")

        outcome = runner.run_job(context([{"uses": "acme/crash"}]))
        assert outcome.status == JobStatus.FAILED
        assert "RuntimeError: kaboom" in outcome.steps[0].error

    def test_slack_action_without_webhook(self, runner):
        outcome = runner.run_job(
            context([{"uses": "slackapi/slack-github-action@v1.26.0", "with": {"payload": '{"text": "hi"}'}}])
        )
        assert outcome.status == JobStatus.FAILED
        assert "SLACK_WEBHOOK_URL is not set" in outcome.steps[0].error

    def test_checkout_copies_source_dir(self, runner, tmp_path):
        (tmp_path / "README.md").write_text("hello")
        ctx = context([{"uses": "actions/checkout@v3"}, {"run": "cat README.md"}])
        ctx = replace(ctx, source_dir=tmp_path)
        outcome = runner.run_job(ctx)
        assert outcome.steps[1].output.strip() == "hello"

    def test_returned_outcome_is_used(self, registry, runner):
        registry.action("acme/fail")(lambda ctx, inputs: ActionOutcome(exit_code=4, error="nope"))
        outcome = runner.run_job(context([{"uses": "acme/fail"}]))
        assert outcome.steps[0].exit_code == 4


class TestTimeoutsAndCancellation:
    def test_step_timeout(self, runner):
        outcome = runner.run_job(context([{"run": "sleep 5", "timeout-minutes": 0.01}]))
        assert outcome.status == JobStatus.FAILED
        assert "timed out" in outcome.steps[0].error

    def test_cancel_running_step(self, runner):
        ctx = context([{"run": "sleep 5"}, {"run": "echo never"}])
        threading.Timer(0.3, ctx.cancel_event.set).start()
        started = time.monotonic()
        outcome = runner.run_job(ctx)
        assert time.monotonic() - started < 5
        assert outcome.status == JobStatus.CANCELLED
        assert [s.status for s in outcome.steps] == [StepStatus.CANCELLED, StepStatus.CANCELLED]


class TestLoadWorkflow:
    def test_yaml(self, tmp_path, build_deploy_source):
        path = tmp_path / "ci.yml"
        path.write_text(build_deploy_source)
        assert load_workflow(path).name == "ci"

    def test_python_module(self, tmp_path):
        path = tmp_path / "ci_workflow.py"
        path.write_text(
            "from actionci.dsl import job, push, sh, wf\n"
            "\n"
            "def workflow():\n"
            "    return wf('py', job('build', sh('Build', 'true'), runs_on='x'), on=push('main'))\n"
        )
        assert load_workflow(path).job_ids == ["build"]

    def test_python_module_without_definition(self, tmp_path):
        path = tmp_path / "bad_workflow.py"
        path.write_text("X = 1\n")
        with pytest.raises(TypeError):
            load_workflow(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workflow(tmp_path / "nope.yml")
