"""Unit tests for persisted workflow versions and run history."""

import pytest

from actionci.cloud.db import make_engine, make_session_factory
from actionci.cloud.store import RunHistory, WorkflowStore, create_tables
from actionci.errors import CycleError, HistoryConflict, SchemaError
from actionci.model import Event, JobRun, JobStatus, RunStatus, WorkflowRun, utcnow


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    create_tables(engine)
    return make_session_factory(engine)


@pytest.fixture
def workflows(session_factory):
    return WorkflowStore(session_factory)


@pytest.fixture
def history(session_factory):
    return RunHistory(session_factory)


def finished_run(run_id="r1", workflow="ci", status=RunStatus.SUCCEEDED):
    return WorkflowRun(
        run_id=run_id,
        workflow=workflow,
        event=Event(kind="push", ref="main", actor="octocat"),
        jobs={"build": JobRun(job_id="build", status=JobStatus.SUCCEEDED, finished_at=utcnow())},
        run_name=f"{workflow} run",
        status=status,
        finished_at=utcnow(),
    )


class TestWorkflowStore:
    def test_versions_increment(self, workflows, build_deploy_source):
        assert workflows.save("ci", build_deploy_source) == 1
        assert workflows.save("ci", build_deploy_source.replace("echo building", "make")) == 2
        assert workflows.versions("ci") == [1, 2]
        assert workflows.get("ci").version == 2
        assert "echo building" in workflows.get("ci", 1).source
        assert workflows.latest("ci").jobs["build"].steps[0].run == "make"

    def test_names(self, workflows, build_deploy_source):
        workflows.save("ci", build_deploy_source)
        workflows.save("nightly", build_deploy_source.replace("name: ci", "name: nightly"))
        assert workflows.names() == ["ci", "nightly"]

    def test_invalid_document_not_stored(self, workflows):
        with pytest.raises(SchemaError):
            workflows.save("ci", "name: ci\njobs: {}\n")
        assert workflows.versions("ci") == []
        assert workflows.get("ci") is None
        assert workflows.latest("ci") is None

    def test_cyclic_document_not_stored(self, workflows):
        source = (
            "name: loop\n"
            "on: push\n"
            "jobs:\n"
            "  a: {runs-on: x, needs: b, steps: [{run: 'true'}]}\n"
            "  b: {runs-on: x, needs: a, steps: [{run: 'true'}]}\n"
        )
        with pytest.raises(CycleError):
            workflows.save("loop", source)
        assert workflows.versions("loop") == []


class TestRunHistory:
    def test_append_and_get(self, history):
        history.append(finished_run())
        rec = history.get("ci", "r1")
        assert rec["status"] == "succeeded"
        assert rec["event"]["ref"] == "main"
        assert rec["jobs"]["build"]["status"] == "succeeded"
        assert history.find("r1")["workflow"] == "ci"

    def test_append_only(self, history):
        history.append(finished_run())
        with pytest.raises(HistoryConflict):
            history.append(finished_run(status=RunStatus.FAILED))
        assert history.get("ci", "r1")["status"] == "succeeded"

    def test_same_run_id_in_other_workflow(self, history):
        history.append(finished_run(workflow="ci"))
        history.append(finished_run(workflow="nightly"))
        assert len(history.list()) == 2
        assert [r["workflow"] for r in history.list("nightly")] == ["nightly"]

    def test_missing(self, history):
        assert history.get("ci", "nope") is None
        assert history.find("nope") is None
        assert history.list("ci") == []
