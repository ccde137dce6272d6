# dispatcher.py
from __future__ import annotations

import json
import logging
import queue
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Tuple

from redis import Redis

from .dag import ExecutionPlan, build_plan
from .errors import RunNotFoundError
from .model import EnvironmentConfig, Event, JobRun, WorkflowDefinition, WorkflowRun
from .scheduler import Decision, RunHandle, RunListener, Scheduler
from .triggers import matches

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Event queues
# ---------------------------------------------------------------------

class EventQueue(Protocol):
    def put(self, event: Event) -> None:
        ...

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None when nothing arrived within `timeout` (0 = don't block)."""
        ...


class LocalEventQueue:
    def __init__(self):
        self._q: "queue.Queue[Event]" = queue.Queue()

    def put(self, event: Event) -> None:
        self._q.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        try:
            if timeout == 0:
                return self._q.get_nowait()
            return self._q.get(timeout=timeout)
        except queue.Empty:
            return None

    def __len__(self) -> int:
        return self._q.qsize()


class RedisEventQueue:
    """FIFO list in Redis: RPUSH to enqueue, (B)LPOP to consume."""

    def __init__(self, client: Redis, name: str = "actionci:events"):
        self.client = client
        self.name = name

    def put(self, event: Event) -> None:
        self.client.rpush(self.name, json.dumps(event.to_dict()))  # FIFO: push right

    def requeue(self, event: Event) -> None:
        self.client.lpush(self.name, json.dumps(event.to_dict()))

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        if timeout == 0:
            raw = self.client.lpop(self.name)
        else:
            # BLPOP timeout 0 blocks forever
            item = self.client.blpop([self.name], timeout=0 if timeout is None else max(timeout, 0.01))
            raw = item[1] if item else None
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", "replace")
        try:
            return Event.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            # the record is already popped; an undecodable one is dropped
            logger.warning("dropping malformed event on %s: %s (%r)", self.name, e, raw[:200])
            return None

    def __len__(self) -> int:
        return int(self.client.llen(self.name))


# ---------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------

class RunRecorder(Protocol):
    def append(self, run: WorkflowRun) -> None:
        ...


class _HistoryListener(RunListener):
    def __init__(self, history: RunRecorder):
        self.history = history

    def run_finished(self, run: WorkflowRun) -> None:
        self.history.append(run)


class _RunArchiver(RunListener):
    def __init__(self, dispatcher: Dispatcher):
        self.dispatcher = dispatcher

    def run_finished(self, run: WorkflowRun) -> None:
        self.dispatcher._archive(run.run_id)


class Dispatcher:
    """
    Single consumer of the event queue. For every event it evaluates the
    trigger of each registered workflow and starts a run per match.

    Finished runs move to a bounded map of the `keep_finished` most recent
    ones; older runs are only available from the run history.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        events: Optional[EventQueue] = None,
        environments: Optional[Mapping[str, EnvironmentConfig]] = None,
        history: Optional[RunRecorder] = None,
        source_dir: Optional[str | Path] = None,
        keep_finished: int = 100,
    ):
        self.scheduler = scheduler
        # queues define __len__, so an empty one is falsy
        self.events = events if events is not None else LocalEventQueue()
        self.environments: Dict[str, EnvironmentConfig] = dict(environments or {})
        self.source_dir = source_dir
        self.keep_finished = keep_finished
        self._workflows: Dict[str, Tuple[WorkflowDefinition, ExecutionPlan]] = {}
        self._runs: Dict[str, RunHandle] = {}
        self._finished: "OrderedDict[str, RunHandle]" = OrderedDict()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        # history first: a run leaves memory only once it is recorded
        if history is not None:
            scheduler.add_listener(_HistoryListener(history))
        scheduler.add_listener(_RunArchiver(self))

    # ---- workflow registry ----

    def register(self, workflow: WorkflowDefinition) -> ExecutionPlan:
        """
        Validate and register (or replace) a workflow.

        Raises:
            SchemaError / CycleError: the workflow is rejected
        """
        plan = build_plan(workflow)
        with self._lock:
            self._workflows[workflow.name] = (workflow, plan)
        logger.info("registered workflow '%s' (%d jobs)", workflow.name, len(workflow.jobs))
        return plan

    def unregister(self, name: str) -> None:
        with self._lock:
            self._workflows.pop(name, None)

    def workflows(self) -> List[WorkflowDefinition]:
        with self._lock:
            return [wf for wf, _plan in self._workflows.values()]

    # ---- events ----

    def submit(self, event: Event) -> None:
        self.events.put(event)

    def dispatch(self, event: Event) -> List[RunHandle]:
        """Evaluate triggers synchronously and start a run per matching workflow."""
        with self._lock:
            candidates = list(self._workflows.values())

        handles: List[RunHandle] = []
        for workflow, plan in candidates:
            if not matches(workflow.trigger, event):
                logger.debug("workflow '%s' not triggered by %s on %s", workflow.name, event.kind, event.ref)
                continue
            handle = self.scheduler.start(
                workflow,
                event,
                environments=self.environments,
                plan=plan,
                source_dir=self.source_dir,
            )
            with self._lock:
                self._runs[handle.run_id] = handle
                # the run may have finished before it was stored here
                if handle.run.status.terminal:
                    self._archive_locked(handle.run_id)
            handles.append(handle)
        return handles

    def process_next(self, timeout: Optional[float] = None) -> List[RunHandle]:
        event = self.events.get(timeout=timeout)
        if event is None:
            return []
        return self.dispatch(event)

    def drain(self) -> List[RunHandle]:
        """Dispatch every queued event without blocking."""
        handles: List[RunHandle] = []
        while True:
            event = self.events.get(timeout=0)
            if event is None:
                return handles
            handles.extend(self.dispatch(event))

    def serve_forever(self, poll_interval: float = 1.0) -> None:
        logger.info("dispatcher loop started")
        while not self._stop.is_set():
            try:
                self.process_next(timeout=poll_interval)
            except Exception:
                # one bad event must not stop trigger evaluation for the rest
                logger.exception("dispatcher failed to process an event")
                self._stop.wait(poll_interval)
        logger.info("dispatcher loop stopped")

    def start(self, poll_interval: float = 1.0) -> threading.Thread:
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.serve_forever, args=(poll_interval,), name="actionci-dispatcher", daemon=True
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    # ---- runs ----

    def _archive(self, run_id: str) -> None:
        with self._lock:
            self._archive_locked(run_id)

    def _archive_locked(self, run_id: str) -> None:
        handle = self._runs.pop(run_id, None)
        if handle is None:
            return
        self._finished[run_id] = handle
        while len(self._finished) > self.keep_finished:
            evicted, _ = self._finished.popitem(last=False)
            logger.debug("run %s evicted from memory", evicted)

    def get_run(self, run_id: str) -> RunHandle:
        """Active or recently finished run."""
        with self._lock:
            handle = self._runs.get(run_id) or self._finished.get(run_id)
        if handle is None:
            raise RunNotFoundError(run_id)
        return handle

    def runs(self) -> List[RunHandle]:
        """Recently finished runs (oldest first), then active ones."""
        with self._lock:
            return list(self._finished.values()) + list(self._runs.values())

    def submit_decision(self, run_id: str, job_id: str, approver_id: str, decision: Decision | str) -> JobRun:
        """
        Approve or reject a job waiting at an environment gate.

        Raises:
            RunNotFoundError: unknown run
            UnauthorizedApprover: approver not in the environment's list
            ApprovalError: the job is not waiting for a decision
        """
        return self.get_run(run_id).submit_decision(job_id, approver_id, decision)

    def cancel(self, run_id: str) -> None:
        self.get_run(run_id).cancel()
