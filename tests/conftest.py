"""Shared fixtures for actionci tests."""

import time

import pytest

from actionci.model import EnvironmentConfig, Event
from actionci.parser import parse_workflow


BUILD_DEPLOY = """
name: ci
run-name: ci by ${{ github.actor }}
on:
  push:
    branches: [main]
jobs:
  build:
    runs-on: ubuntu-latest
    steps:
      - name: Build
        run: echo building
  deploy:
    runs-on: ubuntu-latest
    needs: build
    environment: prod
    steps:
      - name: Deploy
        run: echo deploying
"""


@pytest.fixture
def build_deploy_source():
    return BUILD_DEPLOY


@pytest.fixture
def build_deploy():
    """build -> deploy, deploy bound to environment prod."""
    return parse_workflow(BUILD_DEPLOY)


@pytest.fixture
def prod_gate():
    """Environment prod requiring alice's approval."""
    return {"prod": EnvironmentConfig(name="prod", approvers=("alice",))}


@pytest.fixture
def push_main():
    return Event(kind="push", ref="main", actor="octocat")


@pytest.fixture
def wait_until():
    """Poll `predicate` until it holds or `timeout` elapses."""

    def _wait(predicate, timeout=5.0, interval=0.01):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait
